"""Shift handover snapshots.

A snapshot is two records written under the same key::

    snapshots/<key>      machine id → {"category", "reason", "src"}   (exceptions only)
    snapshotNotes/<key>  {"operator", "recordedAt", "observations", "log"}

Keys are ``YYYYMMDD_HHMMSS`` in local time, so lexicographic order is
chronological order.  Category and reason are stored as display text, not
codes, so old snapshots stay readable when the label lists change.
Snapshots are append-only: recording onto an existing key fails.

The operator-facing flow is :class:`SnapshotWizard`::

    SELECT_OPERATOR → EDIT_LOG ⇄ CONFIRM → DONE
           └──────────────┴─────────┴──→ CANCELLED
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from shopfloor_board.catalog import (
    Category,
    category_label,
    reason_label,
)
from shopfloor_board.codec import remove_undefined
from shopfloor_board.documents import DocumentStore, RemoteError
from shopfloor_board.filter import StatusFilter
from shopfloor_board.models import MachineStatus
from shopfloor_board.store import StateStore

logger = logging.getLogger(__name__)

KEY_FORMAT = "%Y%m%d_%H%M%S"
_KEY_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})_(\d{2})(\d{2})")


class SnapshotExistsError(Exception):
    """A snapshot with this key was already written."""


class WizardError(Exception):
    """Operation not allowed in the wizard's current state."""


def snapshot_key(now: datetime) -> str:
    return now.strftime(KEY_FORMAT)


def format_key(key: str) -> str:
    """``20250301_061500`` → ``01/03/25 06:15``; unknown formats pass through."""
    match = _KEY_RE.match(key)
    if not match:
        return key
    y, m, d, h, mi = match.groups()
    return f"{d}/{m}/{y[2:]} {h}:{mi}"


def resolve_entry(status: MachineStatus) -> dict[str, Any]:
    """Machine status as self-describing display text."""
    return remove_undefined({
        "category": category_label(status.category),
        "reason": reason_label(status.category, status.reason_index, status.reason_text) or None,
        "src": status.icon_ref,
    })


@dataclass
class LogEntry:
    """One line of the "reviewed during the shift" log."""

    machine_id: str
    status: MachineStatus

    def resolved(self) -> dict[str, Any]:
        entry = resolve_entry(self.status)
        entry.pop("src", None)
        return entry


@dataclass
class SnapshotDraft:
    operator: str
    observations: str = ""
    log: dict[str, LogEntry] = field(default_factory=dict)


@dataclass
class SnapshotRecord:
    key: str
    machines: dict[str, dict[str, Any]] = field(default_factory=dict)
    notes: dict[str, Any] = field(default_factory=dict)

    @property
    def operator(self) -> str:
        return self.notes.get("operator", "")


class WizardState(enum.Enum):
    SELECT_OPERATOR = "select_operator"
    EDIT_LOG = "edit_log"
    CONFIRM = "confirm"
    DONE = "done"
    CANCELLED = "cancelled"


class SnapshotWizard:
    """Data-driven handover form, independent of how it is rendered.

    Parameters
    ----------
    operators:
        Names offered for selection; free text is accepted as well.
    observations_only_operator:
        Operator identity whose snapshots carry notes but no machine states.
    """

    def __init__(
        self,
        operators: Iterable[str] = (),
        observations_only_operator: str = "",
    ) -> None:
        self.operators = list(operators)
        self.observations_only_operator = observations_only_operator
        self.state = WizardState.SELECT_OPERATOR
        self._draft: Optional[SnapshotDraft] = None

    @property
    def draft(self) -> Optional[SnapshotDraft]:
        return self._draft

    @property
    def observations_only(self) -> bool:
        return bool(
            self._draft
            and self.observations_only_operator
            and self._draft.operator == self.observations_only_operator
        )

    def select_operator(self, name: str) -> None:
        self._require(WizardState.SELECT_OPERATOR)
        name = name.strip()
        if not name:
            raise WizardError("Operator name is required")
        self._draft = SnapshotDraft(operator=name)
        self.state = WizardState.EDIT_LOG

    def add_log_entry(
        self,
        machine_id: str,
        category: object,
        reason_index: Optional[int] = None,
        reason_text: Optional[str] = None,
    ) -> LogEntry:
        self._require(WizardState.EDIT_LOG)
        if self.observations_only:
            raise WizardError("Observation-only snapshots carry no machine log")
        machine_id = machine_id.strip()
        if not machine_id:
            raise WizardError("Machine id is required")
        try:
            status = MachineStatus(Category.parse(category), reason_index, reason_text or None)
        except ValueError as exc:
            raise WizardError(str(exc)) from exc
        entry = LogEntry(machine_id, status)
        self._draft.log[machine_id] = entry
        return entry

    def remove_log_entry(self, machine_id: str) -> None:
        self._require(WizardState.EDIT_LOG)
        self._draft.log.pop(machine_id, None)

    def set_observations(self, text: str) -> None:
        self._require(WizardState.EDIT_LOG)
        self._draft.observations = text.strip()

    def review(self) -> SnapshotDraft:
        self._require(WizardState.EDIT_LOG)
        self.state = WizardState.CONFIRM
        return self._draft

    def back(self) -> None:
        self._require(WizardState.CONFIRM)
        self.state = WizardState.EDIT_LOG

    def confirm(self) -> SnapshotDraft:
        self._require(WizardState.CONFIRM)
        self.state = WizardState.DONE
        return self._draft

    def cancel(self) -> None:
        if self.state in (WizardState.DONE, WizardState.CANCELLED):
            raise WizardError(f"Wizard already {self.state.value}")
        self.state = WizardState.CANCELLED

    def _require(self, state: WizardState) -> None:
        if self.state is not state:
            raise WizardError(f"Expected state {state.value}, wizard is {self.state.value}")


class SnapshotRecorder:
    """Captures the non-default machine states plus operator notes.

    Parameters
    ----------
    store:
        Live board.
    documents:
        Where snapshots are written.
    observations_only_operator:
        Operator whose snapshots skip machine states.
    exclude_categories:
        Categories left out in addition to producing.
    clock:
        Wall clock; injectable for tests.
    """

    def __init__(
        self,
        store: StateStore,
        documents: DocumentStore,
        observations_only_operator: str = "Observaciones",
        exclude_categories: Iterable[object] = (),
        clock: Callable[[], datetime] = datetime.now,
        snapshots_path: str = "snapshots",
        notes_path: str = "snapshotNotes",
    ) -> None:
        self._store = store
        self._documents = documents
        self._observations_only = observations_only_operator
        excluded = {Category.PRODUCING, *(Category.parse(c) for c in exclude_categories)}
        self._filter = StatusFilter(exclude_categories=excluded)
        self._clock = clock
        self._snapshots_path = snapshots_path
        self._notes_path = notes_path

    def build(self, draft: SnapshotDraft, now: Optional[datetime] = None) -> SnapshotRecord:
        """Assemble the record without writing it."""
        now = now or self._clock()
        key = snapshot_key(now)

        machines: dict[str, dict[str, Any]] = {}
        if draft.operator != self._observations_only:
            machines = {
                mid: resolve_entry(status)
                for mid, status in sorted(self._filter.apply(self._store.snapshot()).items())
            }

        log = {mid: entry.resolved() for mid, entry in draft.log.items()}
        notes = remove_undefined({
            "operator": draft.operator,
            "recordedAt": now.isoformat(timespec="seconds"),
            "observations": draft.observations or None,
            "log": log or None,
        })
        return SnapshotRecord(key=key, machines=machines, notes=notes)

    async def record(self, draft: SnapshotDraft) -> SnapshotRecord:
        """Write a new snapshot.

        Raises
        ------
        SnapshotExistsError
            If a snapshot already exists under the computed key.
        RemoteError
            If either write fails.  A machines record written before a
            failed notes write is removed again, leaving the key free.
        """
        snap = self.build(draft)
        machines_path = f"{self._snapshots_path}/{snap.key}"
        notes_path = f"{self._notes_path}/{snap.key}"

        if await self._documents.read(machines_path) is not None or \
                await self._documents.read(notes_path) is not None:
            raise SnapshotExistsError(f"Snapshot {snap.key} already exists")

        if snap.machines:
            await self._documents.write(machines_path, snap.machines)
        try:
            await self._documents.write(notes_path, snap.notes)
        except RemoteError:
            if snap.machines:
                await self._discard(machines_path)
            raise
        logger.info(
            "Recorded snapshot %s by %s (%d machines)",
            snap.key,
            draft.operator,
            len(snap.machines),
        )
        return snap

    async def _discard(self, path: str) -> None:
        try:
            await self._documents.write(path, None)
        except RemoteError as exc:
            logger.error("Could not remove partial snapshot %s: %s", path, exc)
        else:
            logger.warning("Removed partial snapshot %s after failed notes write", path)


class SnapshotArchive:
    """Read side of the snapshots, newest first."""

    def __init__(
        self,
        documents: DocumentStore,
        snapshots_path: str = "snapshots",
        notes_path: str = "snapshotNotes",
    ) -> None:
        self._documents = documents
        self._snapshots_path = snapshots_path
        self._notes_path = notes_path

    async def list(self) -> list[SnapshotRecord]:
        machines = await self._documents.read(self._snapshots_path)
        notes = await self._documents.read(self._notes_path)
        machines = machines if isinstance(machines, dict) else {}
        notes = notes if isinstance(notes, dict) else {}

        records = []
        for key in sorted(set(machines) | set(notes), reverse=True):
            m = machines.get(key)
            n = notes.get(key)
            records.append(SnapshotRecord(
                key=key,
                machines=m if isinstance(m, dict) else {},
                notes=n if isinstance(n, dict) else {},
            ))
        return records
