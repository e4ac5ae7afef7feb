"""The board client: one operator station attached to the shared board.

Wiring::

    set_machine ──► StateStore ──► RemoteSync ──► DocumentStore (imgStates)
         │               ▲              │
         │               └──────────────┘  remote deliveries
         └──► NotificationDispatcher ──► push API ──► every endpoint
                                                          │
    receive_push ◄────────────────────────────────────────┘
         └──► NotificationDeduper ──► on_notification
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from shopfloor_board.catalog import Category, resolve_label
from shopfloor_board.config import AppConfig
from shopfloor_board.dedupe import DedupPolicy, NotificationDeduper, is_mobile_user_agent
from shopfloor_board.dispatcher import NotificationDispatcher
from shopfloor_board.documents import DocumentStore
from shopfloor_board.models import Channel, MachineStatus, Notification
from shopfloor_board.push import register_endpoint
from shopfloor_board.snapshot import SnapshotArchive, SnapshotRecorder
from shopfloor_board.store import StateStore
from shopfloor_board.sync import LocalMirror, RemoteSync

logger = logging.getLogger(__name__)


def notification_title(machine_id: str) -> str:
    return f"Máquina {machine_id}"


class BoardClient:
    """Store, sync, notifications and snapshots for one station.

    Parameters
    ----------
    config:
        Application config.
    documents:
        Remote document capability (hub connection or in-memory store).
    dispatcher:
        Outbound notifier; built from ``config.push`` when omitted.
    mirror:
        Local write-through copy; built from ``config.mirror`` when omitted
        and enabled.
    deduper:
        Incoming notification filter; built from ``config.notifications``
        when omitted.
    on_notification:
        Called with every incoming notification the deduper lets through.
    """

    def __init__(
        self,
        config: AppConfig,
        documents: DocumentStore,
        dispatcher: Optional[NotificationDispatcher] = None,
        mirror: Optional[LocalMirror] = None,
        deduper: Optional[NotificationDeduper] = None,
        on_notification: Optional[Callable[[Notification], None]] = None,
    ) -> None:
        self.config = config
        self.documents = documents

        if mirror is None and config.mirror.enabled:
            mirror = LocalMirror(config.mirror.path)
        self.mirror = mirror

        self.store = StateStore(mirror.load() if mirror is not None else None)
        self.sync = RemoteSync(self.store, documents, config.hub.document_path, mirror)

        nc = config.notifications
        self.dispatcher = dispatcher or NotificationDispatcher(
            config.push.api_url, interval_ms=nc.dispatch_interval_ms
        )
        self.deduper = deduper or NotificationDeduper(
            DedupPolicy(nc.dedup_policy),
            window_ms=nc.dedup_window_ms,
            lock_ms=nc.lock_ms,
            mobile=is_mobile_user_agent(nc.user_agent),
        )
        self.recorder = SnapshotRecorder(
            self.store,
            documents,
            observations_only_operator=config.snapshot.observations_only_operator,
            exclude_categories=config.snapshot.exclude_categories,
        )
        self.archive = SnapshotArchive(documents)
        self._on_notification = on_notification
        self._mirror_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self.sync.start()
        if self.mirror is not None:
            self._mirror_task = asyncio.create_task(
                self.mirror.watch(self.sync, self.config.mirror.poll_interval_ms),
                name="mirror-watch",
            )
        logger.info(
            "Board client started (%d machines from mirror)", len(self.store)
        )

    async def wait_loaded(self, timeout: Optional[float] = None) -> bool:
        """Wait for the first remote delivery; False on timeout."""
        try:
            await asyncio.wait_for(self.sync.loaded.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def close(self) -> None:
        if self._mirror_task is not None:
            self._mirror_task.cancel()
            try:
                await self._mirror_task
            except asyncio.CancelledError:
                pass
            self._mirror_task = None
        await self.sync.stop()
        await self.dispatcher.drain()

    def status(self, machine_id: str) -> MachineStatus:
        return self.store.get(machine_id)

    def set_machine(
        self,
        machine_id: str,
        category: object,
        reason_index: Optional[int] = None,
        reason_text: Optional[str] = None,
    ) -> MachineStatus:
        """Record an operator's status change and announce it.

        Raises
        ------
        ValueError
            If the combination violates the status invariants.
        """
        category = Category.parse(category)
        status = MachineStatus(category, reason_index, reason_text or None)
        self.store.set_status(machine_id, status)
        logger.info("Machine %s set to %s", machine_id, category.name.lower())
        self.dispatcher.fire(
            notification_title(machine_id),
            resolve_label(category, reason_index, reason_text),
            machine_id,
        )
        return status

    def receive_push(self, title: str, body: str, channel: Channel | str = Channel.PUSH) -> bool:
        """Offer an incoming notification; returns whether it was surfaced."""
        notification = Notification(title=title, body=body, channel=Channel(channel))
        if not self.deduper.offer(notification):
            return False
        if self._on_notification is not None:
            self._on_notification(notification)
        return True

    async def register_push(self, token: str, user_agent: str = "") -> None:
        """Register this station's push endpoint and arm the dispatcher."""
        await register_endpoint(self.documents, token, user_agent, self.config.push.tokens_path)
        self.dispatcher.set_token(token)
