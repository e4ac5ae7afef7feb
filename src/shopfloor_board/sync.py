"""Two-way synchronization between the local store and the shared board.

Conflict policy: last writer wins at *document* granularity.  Every local
change publishes the whole board, so two clients editing different machines
within one propagation window can overwrite each other; the later write
wins.  Per-machine timestamps or a CRDT merge would fix that and are not
attempted here.

Loop suppression uses two one-shot flags owned by the instance:

* ``first_attempt``: the first write attempt after :meth:`RemoteSync.start`
  is never published (nothing authoritative has loaded yet).
* ``ignore_next``: set right before a remote delivery replaces the store and
  consumed by the write attempt that replacement triggers.

Both are consumed by the next write attempt whatever its origin.  If two
remote deliveries and a local edit interleave within one loop turn, the
edit can be swallowed; that window is accepted.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

import orjson

from shopfloor_board.codec import decode_board, encode_board
from shopfloor_board.documents import DocumentStore
from shopfloor_board.models import MachineStatus
from shopfloor_board.store import StateStore

logger = logging.getLogger(__name__)


class RemoteSync:
    """Keeps a :class:`StateStore` converged with one remote document.

    Parameters
    ----------
    store:
        The local store to keep in sync.
    documents:
        Remote document capability.
    path:
        Document path of the board (``imgStates``).
    mirror:
        Optional local write-through copy.
    """

    def __init__(
        self,
        store: StateStore,
        documents: DocumentStore,
        path: str = "imgStates",
        mirror: Optional["LocalMirror"] = None,
    ) -> None:
        self._store = store
        self._documents = documents
        self._path = path
        self._mirror = mirror
        self._first_attempt = True
        self._ignore_next = False
        self._task: Optional[asyncio.Task] = None
        self._pending: set[asyncio.Task] = set()
        self.loaded = asyncio.Event()
        self.writes_published = 0
        self.writes_suppressed = 0

    @property
    def ignore_next(self) -> bool:
        return self._ignore_next

    def start(self) -> None:
        """Attach to the store and subscribe to the remote document."""
        self._store.add_listener(self._on_store_change)
        # the state loaded at start (mirror or empty) is the suppressed first attempt
        self._on_store_change(self._store.snapshot())
        self._task = asyncio.create_task(self._consume(), name=f"sync:{self._path}")

    async def stop(self) -> None:
        self._store.remove_listener(self._on_store_change)
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.drain()

    async def drain(self) -> None:
        """Wait for in-flight writes to settle (results are only logged)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def apply_remote(self, payload: Any) -> bool:
        """Replace the store with a remote payload.

        Empty or non-object payloads are ignored so that a blank document
        never wipes a board that is already showing data.

        Returns
        -------
        bool
            Whether the store was replaced.
        """
        if not isinstance(payload, dict) or not payload:
            logger.debug("Ignoring empty remote payload for %s", self._path)
            return False
        states = decode_board(payload)
        self._ignore_next = True
        self._store.replace(states)
        return True

    # ── internal ────────────────────────────────────────────────────

    async def _consume(self) -> None:
        try:
            async for payload in self._documents.subscribe(self._path):
                self.apply_remote(payload)
                self.loaded.set()
        except asyncio.CancelledError:
            raise
        except Exception:
            # keep the last known board; the caller sees stale but usable data
            logger.exception("Subscription to %s failed, keeping last known state", self._path)

    def _on_store_change(self, states: dict[str, MachineStatus]) -> None:
        if self._mirror is not None:
            self._mirror.save(states)

        suppressed = self._first_attempt or self._ignore_next
        self._first_attempt = False
        self._ignore_next = False
        if suppressed:
            self.writes_suppressed += 1
            logger.debug("Write of %s suppressed", self._path)
            return

        document = encode_board(states)
        task = asyncio.get_running_loop().create_task(self._write(document))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, document: dict[str, Any]) -> None:
        try:
            await self._documents.write(self._path, document)
        except Exception as exc:
            logger.error("Writing %s failed (not retried): %s", self._path, exc)
            return
        self.writes_published += 1
        logger.debug("Published %s (%d machines)", self._path, len(document))


class LocalMirror:
    """Write-through JSON copy of the board on local disk.

    Another process using the same file (a second board window on this
    machine) shows up in :meth:`poll` as an external change.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()
        self._last_written: Optional[bytes] = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, MachineStatus]:
        """Read the mirrored board; a missing or unreadable file is empty."""
        payload = self._read_payload()
        return decode_board(payload) if payload is not None else {}

    def save(self, states: dict[str, MachineStatus]) -> None:
        data = orjson.dumps(encode_board(states), option=orjson.OPT_SORT_KEYS)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_bytes(data)
        except OSError as exc:
            logger.warning("Could not write mirror %s: %s", self._path, exc)
            return
        self._last_written = data

    def poll(self) -> Optional[dict[str, Any]]:
        """Return the file's payload if someone else changed it since our last write."""
        try:
            data = self._path.read_bytes()
        except OSError:
            return None
        if data == self._last_written:
            return None
        self._last_written = data
        try:
            payload = orjson.loads(data)
        except orjson.JSONDecodeError:
            return None
        return payload if isinstance(payload, dict) else None

    async def watch(self, sync: RemoteSync, interval_ms: int = 1000) -> None:
        """Feed external changes into *sync* as remote deliveries, forever."""
        while True:
            await asyncio.sleep(interval_ms / 1000.0)
            payload = self.poll()
            if payload is not None:
                logger.info("Mirror %s changed externally", self._path)
                sync.apply_remote(payload)

    def _read_payload(self) -> Optional[Any]:
        try:
            data = self._path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Could not read mirror %s: %s", self._path, exc)
            return None
        self._last_written = data
        try:
            return orjson.loads(data)
        except orjson.JSONDecodeError:
            logger.warning("Mirror %s is not valid JSON, starting empty", self._path)
            return None
