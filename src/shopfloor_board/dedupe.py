"""Duplicate suppression for notifications arriving on several channels.

Some platforms hand the same push message to both the foreground handler
and the background/service-worker handler.  The deduper lets at most one
of them surface.

Decision rule for an incoming ``(title, body, channel)``::

    1. policy uses the lock and the lock is held          → suppress
    2. same (title, body) as last shown within the window → suppress
    3. otherwise → show, remember (title, body, now) and hold the lock
       for the channel's lock duration

``DedupPolicy`` selects which of the two checks apply.
"""

from __future__ import annotations

import enum
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from shopfloor_board.models import Channel, Notification

logger = logging.getLogger(__name__)

_MOBILE_RE = re.compile(r"iphone|ipad|ipod|ios|mobile", re.IGNORECASE)

DEFAULT_LOCK_MS: dict[Channel, int] = {
    Channel.FOREGROUND: 1000,
    Channel.BACKGROUND: 2000,
    Channel.PUSH: 2000,
}


class DedupPolicy(str, enum.Enum):
    """Which suppression checks are active."""

    GLOBAL_LOCK = "global_lock"
    MOBILE_LOCK = "mobile_lock"
    CONTENT_MATCH = "content_match"
    DISABLED = "disabled"


def is_mobile_user_agent(user_agent: Optional[str]) -> bool:
    return bool(user_agent) and _MOBILE_RE.search(user_agent) is not None


@dataclass
class _Shown:
    title: str
    body: str
    at: float


class NotificationDeduper:
    """Decides whether an incoming notification should be displayed.

    Parameters
    ----------
    policy:
        Suppression strategy.
    window_ms:
        Identical (title, body) within this many ms of the last shown one
        are duplicates.
    lock_ms:
        Per-channel lock duration after a notification is shown.
    mobile:
        Whether this endpoint is a mobile device (``mobile_lock`` only).
    clock:
        Monotonic clock in seconds; injectable for tests.
    """

    def __init__(
        self,
        policy: DedupPolicy = DedupPolicy.GLOBAL_LOCK,
        window_ms: int = 2000,
        lock_ms: Optional[Mapping[str, int]] = None,
        mobile: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policy = DedupPolicy(policy)
        self._window = window_ms / 1000.0
        self._lock_s = {ch: ms / 1000.0 for ch, ms in DEFAULT_LOCK_MS.items()}
        for name, ms in (lock_ms or {}).items():
            self._lock_s[Channel(name)] = ms / 1000.0
        self._mobile = mobile
        self._clock = clock
        self._last: Optional[_Shown] = None
        self._lock_until = 0.0

    @property
    def policy(self) -> DedupPolicy:
        return self._policy

    @property
    def locked(self) -> bool:
        return self._clock() < self._lock_until

    def offer(self, notification: Notification) -> bool:
        """Return True if *notification* should be shown, updating state."""
        if self._policy is DedupPolicy.DISABLED:
            return True

        now = self._clock()
        if self._uses_lock and now < self._lock_until:
            logger.debug("Suppressed %r via %s: lock held", notification.title, notification.channel.value)
            return False

        last = self._last
        if (
            last is not None
            and last.title == notification.title
            and last.body == notification.body
            and now - last.at < self._window
        ):
            logger.debug("Suppressed duplicate %r via %s", notification.title, notification.channel.value)
            return False

        self._last = _Shown(notification.title, notification.body, now)
        if self._uses_lock:
            self._lock_until = now + self._lock_s[notification.channel]
        return True

    def should_show(self, title: str, body: str, channel: Channel | str = Channel.PUSH) -> bool:
        return self.offer(Notification(title=title, body=body, channel=Channel(channel)))

    @property
    def _uses_lock(self) -> bool:
        if self._policy is DedupPolicy.GLOBAL_LOCK:
            return True
        return self._policy is DedupPolicy.MOBILE_LOCK and self._mobile
