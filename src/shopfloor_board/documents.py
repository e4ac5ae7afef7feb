"""Remote document capability and its in-process implementation.

Paths are slash-separated keys into one JSON tree (``imgStates``,
``snapshots/20250301_061500``, ``fcmTokens/<token>``).  A write replaces
everything at its path; writing ``None`` or an empty object removes the
node.  Subscribers receive the full value at their path, first right
away and then after every write that touches it.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import os
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Protocol

import orjson

logger = logging.getLogger(__name__)


class RemoteError(Exception):
    """A remote document operation failed."""


class DocumentStore(Protocol):
    """What the board needs from the realtime database."""

    async def read(self, path: str) -> Any: ...

    async def write(self, path: str, value: Any) -> None: ...

    def subscribe(self, path: str) -> AsyncIterator[Any]: ...


def split_path(path: str) -> list[str]:
    parts = [p for p in path.strip("/").split("/") if p]
    if not parts:
        raise ValueError("Empty document path")
    return parts


def _related(a: list[str], b: list[str]) -> bool:
    """True when one path is a prefix of the other."""
    n = min(len(a), len(b))
    return a[:n] == b[:n]


_CLOSED = object()


class InMemoryDocumentStore:
    """A :class:`DocumentStore` held in memory, optionally persisted to JSON.

    Parameters
    ----------
    persist_path:
        When given, the tree is loaded from this file at start and written
        back (atomically) after every change.
    """

    def __init__(self, persist_path: str | Path | None = None) -> None:
        self._tree: dict[str, Any] = {}
        self._subscribers: list[tuple[list[str], asyncio.Queue]] = []
        self._persist_path = Path(persist_path) if persist_path else None
        if self._persist_path and self._persist_path.exists():
            try:
                loaded = orjson.loads(self._persist_path.read_bytes())
            except orjson.JSONDecodeError as exc:
                logger.error("Ignoring unreadable data file %s: %s", self._persist_path, exc)
            else:
                if isinstance(loaded, dict):
                    self._tree = loaded
            logger.info("Loaded document tree from %s", self._persist_path)

    # ── DocumentStore ───────────────────────────────────────────────

    async def read(self, path: str) -> Any:
        return self.get(path)

    async def write(self, path: str, value: Any) -> None:
        self.set(path, value)

    async def subscribe(self, path: str) -> AsyncIterator[Any]:
        parts = split_path(path)
        queue: asyncio.Queue = asyncio.Queue()
        entry = (parts, queue)
        self._subscribers.append(entry)
        try:
            yield self.get(path)
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

    # ── synchronous API (used by the hub) ───────────────────────────

    def get(self, path: str) -> Any:
        node: Any = self._tree
        for key in split_path(path):
            if not isinstance(node, dict) or key not in node:
                return None
            node = node[key]
        return copy.deepcopy(node)

    def set(self, path: str, value: Any) -> None:
        parts = split_path(path)
        self._assign(parts, copy.deepcopy(value))
        self._persist()
        for sub_parts, queue in list(self._subscribers):
            if _related(parts, sub_parts):
                queue.put_nowait(self.get("/".join(sub_parts)))

    def close(self) -> None:
        """End every open subscription."""
        for _, queue in list(self._subscribers):
            queue.put_nowait(_CLOSED)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ── internal ────────────────────────────────────────────────────

    def _assign(self, parts: list[str], value: Any) -> None:
        node = self._tree
        trail: list[tuple[dict, str]] = []
        for key in parts[:-1]:
            child = node.get(key)
            if not isinstance(child, dict):
                child = {}
                node[key] = child
            trail.append((node, key))
            node = child

        if value is None or value == {}:
            node.pop(parts[-1], None)
            # prune parents left empty
            for parent, key in reversed(trail):
                if parent[key]:
                    break
                del parent[key]
        else:
            node[parts[-1]] = value

    def _persist(self) -> None:
        if self._persist_path is None:
            return
        self._persist_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._persist_path.with_suffix(self._persist_path.suffix + ".tmp")
        tmp.write_bytes(orjson.dumps(self._tree))
        os.replace(tmp, self._persist_path)


def child_keys(value: Optional[Any]) -> list[str]:
    """Keys of an object node (empty for anything else)."""
    return list(value.keys()) if isinstance(value, dict) else []
