"""Outbound notification requests for local status changes.

One user action produces at most one push request: a second request with
the same change key inside the rate-limit interval is dropped.  Delivery
is best effort; failures end up in the log and nowhere else.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from shopfloor_board.push import mask_token

logger = logging.getLogger(__name__)

Poster = Callable[[str, dict[str, Any]], Awaitable[Any]]


class NotificationDispatcher:
    """Sends ``POST {api_url} {"title", "body"}`` for local changes.

    Parameters
    ----------
    api_url:
        Push fan-out endpoint (``/api/send-fcm``).
    interval_ms:
        Minimum spacing between two requests for the same change key.
    poster:
        Coroutine ``(url, json) -> response``; defaults to an aiohttp POST.
    clock:
        Monotonic clock in seconds; injectable for tests.
    """

    def __init__(
        self,
        api_url: str,
        interval_ms: int = 2000,
        poster: Optional[Poster] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._api_url = api_url
        self._interval = interval_ms / 1000.0
        self._poster = poster or _aiohttp_post
        self._clock = clock
        self._token: Optional[str] = None
        self._last_key: Optional[str] = None
        self._last_at = 0.0
        self._pending: set[asyncio.Task] = set()
        self.sent_count = 0

    @property
    def token(self) -> Optional[str]:
        return self._token

    def set_token(self, token: Optional[str]) -> None:
        """Arm (or disarm with ``None``) the dispatcher."""
        self._token = token or None
        if self._token:
            logger.info("Dispatcher armed with token %s", mask_token(self._token))

    async def dispatch(self, title: str, body: str, change_key: str) -> bool:
        """Send one request unless suppressed.

        Returns
        -------
        bool
            Whether a network call was made.
        """
        if not self._token:
            logger.debug("No push registration, not notifying %s", change_key)
            return False

        now = self._clock()
        if self._last_key == change_key and now - self._last_at < self._interval:
            logger.debug("Rate-limited notification for %s", change_key)
            return False
        self._last_key = change_key
        self._last_at = now

        self.sent_count += 1
        try:
            await self._poster(self._api_url, {"title": title, "body": body})
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as exc:
            logger.error("Push request for %s failed: %s", change_key, exc)
        return True

    def fire(self, title: str, body: str, change_key: str) -> asyncio.Task:
        """Schedule :meth:`dispatch` without waiting for it."""
        task = asyncio.get_running_loop().create_task(self.dispatch(title, body, change_key))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


async def _aiohttp_post(url: str, payload: dict[str, Any]) -> Any:
    async with aiohttp.ClientSession() as session:
        async with session.post(url, json=payload) as resp:
            data = await resp.json(content_type=None)
            if resp.status >= 400 or not (isinstance(data, dict) and data.get("success")):
                logger.warning("Push API answered %d: %s", resp.status, data)
            return data
