"""WebSocket connection to the board document hub.

Subscriptions run an exponential-backoff reconnect state machine::

    INIT → CONNECTING → (success) → CONNECTED → (disconnect) → WAIT_BACKOFF → CONNECTING
                      → (failure) →              WAIT_BACKOFF → CONNECTING
    CONNECTED → (shutdown) → SHUTTING_DOWN

Reads and writes open a short-lived request connection each and raise
:class:`~shopfloor_board.documents.RemoteError` on failure; callers decide
whether that is worth more than a log line.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
import uuid
from typing import Any, AsyncIterator, Optional

import orjson
import websockets
import websockets.exceptions

from shopfloor_board.codec import classify_frame
from shopfloor_board.config import HubConfig
from shopfloor_board.documents import RemoteError
from shopfloor_board.models import MalformedFrame

logger = logging.getLogger(__name__)

ACK_TIMEOUT_S = 10.0


class ConnectionState(enum.Enum):
    """States in the reconnect state machine."""

    INIT = "INIT"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    WAIT_BACKOFF = "WAIT_BACKOFF"
    SHUTTING_DOWN = "SHUTTING_DOWN"


class HubConnection:
    """A :class:`~shopfloor_board.documents.DocumentStore` backed by the hub.

    Parameters
    ----------
    config:
        Hub settings (URL, token, reconnect params).
    """

    def __init__(self, config: HubConfig) -> None:
        self._url = config.url
        self._token = config.auth_token
        self._reconnect = config.reconnect
        self._state = ConnectionState.INIT
        self._shutdown = asyncio.Event()
        self._attempt = 0
        self.malformed_count = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    def request_shutdown(self) -> None:
        """Stop subscriptions gracefully (no reconnect)."""
        self._set_state(ConnectionState.SHUTTING_DOWN)
        self._shutdown.set()

    # ── DocumentStore ───────────────────────────────────────────────

    async def read(self, path: str) -> Any:
        reply = await self._request({"type": "get", "path": path})
        return reply.get("data")

    async def write(self, path: str, value: Any) -> None:
        await self._request({"type": "set", "path": path, "data": value})

    async def subscribe(self, path: str) -> AsyncIterator[Any]:
        """Async generator yielding every value delivered for *path*.

        Handles connection, authentication, subscription, and automatic
        reconnection with exponential backoff.  Stops when
        :meth:`request_shutdown` is called or the hub rejects the token.
        """
        while not self._shutdown.is_set():
            try:
                async for value in self._connect_and_receive(path):
                    yield value
            except _FatalAuthError:
                logger.error("Hub rejected credentials, will not reconnect")
                break
            except Exception as exc:
                if self._shutdown.is_set():
                    break
                logger.warning("Hub connection error: %s", exc)

            if self._shutdown.is_set():
                break

            await self._backoff()

    # ── internal: subscription ──────────────────────────────────────

    async def _connect_and_receive(self, path: str) -> AsyncIterator[Any]:
        self._set_state(ConnectionState.CONNECTING)
        sub_id = str(uuid.uuid4())

        try:
            async with websockets.connect(
                self._url,
                ping_interval=20,
                ping_timeout=20,
                close_timeout=10,
            ) as ws:
                await self._handshake(ws)

                await ws.send(orjson.dumps({
                    "id": sub_id,
                    "type": "subscribe",
                    "path": path,
                }).decode())

                self._set_state(ConnectionState.CONNECTED)
                self._attempt = 0

                async for raw in ws:
                    if self._shutdown.is_set():
                        break

                    frame = classify_frame(raw)
                    if isinstance(frame, MalformedFrame):
                        self.malformed_count += 1
                        logger.warning("Malformed hub frame: %s", frame.error.get("message"))
                        continue
                    if frame is None:
                        await self._handle_protocol_frame(ws, raw)
                        continue
                    if frame.get("id") == sub_id:
                        yield frame.get("data")

        except _FatalAuthError:
            raise
        except asyncio.TimeoutError:
            logger.warning("Timeout waiting for hub connection_ack")
        except websockets.exceptions.ConnectionClosed as exc:
            logger.warning("Hub connection closed: %s", exc)
        except OSError as exc:
            logger.warning("Network error: %s", exc)

    async def _handle_protocol_frame(self, ws, raw: str | bytes) -> None:
        msg = orjson.loads(raw)
        msg_type = msg.get("type")
        if msg_type == "ping":
            await ws.send(orjson.dumps({"type": "pong"}).decode())
        elif msg_type == "error":
            logger.error("Hub error: %s", msg.get("message"))
        # ignore acks and pongs

    # ── internal: request/response ──────────────────────────────────

    async def _request(self, frame: dict[str, Any]) -> dict[str, Any]:
        request_id = str(uuid.uuid4())
        frame = {**frame, "id": request_id}
        try:
            async with websockets.connect(self._url, close_timeout=5) as ws:
                await self._handshake(ws)
                await ws.send(orjson.dumps(frame).decode())
                while True:
                    reply = orjson.loads(await ws.recv())
                    if reply.get("id") != request_id:
                        continue
                    if reply.get("type") == "error":
                        raise RemoteError(reply.get("message") or "hub error")
                    return reply
        except _FatalAuthError as exc:
            raise RemoteError(f"Hub rejected credentials: {exc}") from exc
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
            raise RemoteError(f"{frame['type']} {frame.get('path')} failed: {exc}") from exc

    async def _handshake(self, ws) -> None:
        """Send ``connection_init`` and wait for ``connection_ack``."""
        await ws.send(orjson.dumps({
            "type": "connection_init",
            "payload": {"Authorization": f"Bearer {self._token}"} if self._token else {},
        }).decode())

        ack = orjson.loads(await asyncio.wait_for(ws.recv(), timeout=ACK_TIMEOUT_S))
        if ack.get("type") != "connection_ack":
            logger.error("Expected connection_ack, got: %s", ack.get("type"))
            if ack.get("type") == "error":
                raise _FatalAuthError(ack.get("message", ""))
            raise ConnectionError("No connection_ack received")

    # ── backoff ─────────────────────────────────────────────────────

    async def _backoff(self) -> None:
        """Wait with exponential backoff + jitter before reconnecting."""
        self._set_state(ConnectionState.WAIT_BACKOFF)
        self._attempt += 1
        delay = backoff_delay(
            self._attempt,
            initial_ms=self._reconnect.initial_delay_ms,
            max_ms=self._reconnect.max_delay_ms,
            multiplier=self._reconnect.backoff_multiplier,
            jitter_pct=self._reconnect.jitter_pct,
        )

        logger.info("Reconnecting to hub in %.1fs (attempt %d)", delay, self._attempt)

        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass  # backoff elapsed normally

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        self._state = new
        logger.info("Hub connection state: %s → %s", old.value, new.value)


def backoff_delay(
    attempt: int,
    initial_ms: int,
    max_ms: int,
    multiplier: int,
    jitter_pct: int,
    rand: Optional[float] = None,
) -> float:
    """Seconds to wait before reconnect *attempt* (1-based)."""
    base = initial_ms / 1000.0
    delay = min(base * (multiplier ** (attempt - 1)), max_ms / 1000.0)
    r = random.random() if rand is None else rand
    jitter = delay * (jitter_pct / 100.0) * (2 * r - 1)
    return max(0.1, delay + jitter)


class _FatalAuthError(Exception):
    """The hub rejected our credentials; reconnecting will not help."""
