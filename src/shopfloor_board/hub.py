"""Board document hub: a websockets server in front of a document tree.

Protocol (JSON text frames)::

    → {"type": "connection_init", "payload": {"Authorization": "Bearer <token>"}}
    ← {"type": "connection_ack"} | {"type": "error", "message": ...} + close
    → {"type": "subscribe", "id", "path"}     ← {"type": "value", "id", "path", "data"} ...
    → {"type": "unsubscribe", "id"}
    → {"type": "get", "id", "path"}           ← {"type": "result", "id", "data"}
    → {"type": "set", "id", "path", "data"}   ← {"type": "ack", "id"}
    → {"type": "ping"}                        ← {"type": "pong"}

Writes replace the whole node at their path; there is no merge and no
transaction, so concurrent writers race and the last one wins.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from typing import Any

import orjson
import websockets
import websockets.exceptions

from shopfloor_board.config import HubServerConfig
from shopfloor_board.documents import InMemoryDocumentStore

logger = logging.getLogger(__name__)


def _dumps(frame: dict[str, Any]) -> str:
    return orjson.dumps(frame).decode()


class DocumentHub:
    """Serves one :class:`InMemoryDocumentStore` to websocket clients."""

    def __init__(self, documents: InMemoryDocumentStore, auth_token: str = "") -> None:
        self._documents = documents
        self._auth_token = auth_token

    def authorized(self, init: dict[str, Any]) -> bool:
        if not self._auth_token:
            return True
        header = ((init.get("payload") or {}).get("Authorization") or "")
        return hmac.compare_digest(header, f"Bearer {self._auth_token}")

    async def handler(self, ws) -> None:
        """Per-connection handler for :func:`websockets.serve`."""
        subscriptions: dict[str, asyncio.Task] = {}
        try:
            try:
                init = orjson.loads(await asyncio.wait_for(ws.recv(), timeout=10.0))
            except (asyncio.TimeoutError, orjson.JSONDecodeError):
                await ws.close(code=4400, reason="connection_init expected")
                return
            if not isinstance(init, dict) or init.get("type") != "connection_init":
                await ws.close(code=4400, reason="connection_init expected")
                return
            if not self.authorized(init):
                logger.warning("Rejected hub client %s: bad token", ws.remote_address)
                await ws.send(_dumps({"type": "error", "message": "Unauthorized"}))
                await ws.close(code=4401, reason="Unauthorized")
                return
            await ws.send(_dumps({"type": "connection_ack"}))

            async for raw in ws:
                try:
                    msg = orjson.loads(raw)
                except orjson.JSONDecodeError:
                    await ws.send(_dumps({"type": "error", "message": "Invalid JSON"}))
                    continue
                if not isinstance(msg, dict):
                    await ws.send(_dumps({"type": "error", "message": "Frame must be an object"}))
                    continue
                await self._dispatch(ws, msg, subscriptions)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            for task in subscriptions.values():
                task.cancel()

    async def _dispatch(self, ws, msg: dict[str, Any], subscriptions: dict[str, asyncio.Task]) -> None:
        msg_type = msg.get("type")
        frame_id = msg.get("id")
        path = msg.get("path")

        if msg_type == "ping":
            await ws.send(_dumps({"type": "pong"}))
            return
        if msg_type == "unsubscribe":
            task = subscriptions.pop(frame_id, None)
            if task is not None:
                task.cancel()
            return
        if msg_type not in ("subscribe", "get", "set"):
            await ws.send(_dumps({"type": "error", "id": frame_id, "message": f"Unknown type {msg_type!r}"}))
            return
        if not isinstance(path, str) or not path.strip("/"):
            await ws.send(_dumps({"type": "error", "id": frame_id, "message": "Missing path"}))
            return

        if msg_type == "subscribe":
            subscriptions[frame_id] = asyncio.create_task(self._forward(ws, frame_id, path))
        elif msg_type == "get":
            await ws.send(_dumps({"type": "result", "id": frame_id, "data": self._documents.get(path)}))
        else:
            self._documents.set(path, msg.get("data"))
            logger.debug("set %s", path)
            await ws.send(_dumps({"type": "ack", "id": frame_id}))

    async def _forward(self, ws, sub_id: str, path: str) -> None:
        try:
            async for value in self._documents.subscribe(path):
                await ws.send(_dumps({"type": "value", "id": sub_id, "path": path, "data": value}))
        except websockets.exceptions.ConnectionClosed:
            pass


async def serve(config: HubServerConfig, stop: asyncio.Event) -> None:
    """Run the hub until *stop* is set."""
    documents = InMemoryDocumentStore(config.data_file or None)
    hub = DocumentHub(documents, config.auth_token)
    async with websockets.serve(hub.handler, config.host, config.port):
        logger.info("Hub listening on %s:%d", config.host, config.port)
        await stop.wait()
    documents.close()
    logger.info("Hub stopped")
