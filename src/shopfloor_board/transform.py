"""Transform board deliveries into NDJSON ``machine_change`` records.

Maintains an in-memory ``machine_id → last status`` dict so each record
carries the *previous* category.  The dict is **not** persisted: after a
restart the first delivery reports every machine with
``previous_category: null``.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Mapping, Optional

import orjson

from shopfloor_board.catalog import category_label, reason_label, resolve_label
from shopfloor_board.filter import StatusFilter
from shopfloor_board.models import MachineChangeEvent, MachineStatus


class ChangeTransformer:
    """Stateful diff: board map → serialized NDJSON lines for changed machines."""

    def __init__(self, client_id: str = "", status_filter: Optional[StatusFilter] = None) -> None:
        self._client_id = client_id
        self._filter = status_filter
        self._state: dict[str, MachineStatus] = {}

    def diff(self, states: Mapping[str, MachineStatus]) -> list[bytes]:
        """Return one line per machine whose status changed since the last call.

        Machines dropped from the delivery revert to the default status.
        """
        lines: list[bytes] = []
        for machine_id in sorted(set(states) | set(self._state)):
            current = states.get(machine_id) or MachineStatus.default()
            previous = self._state.get(machine_id)
            if previous == current:
                continue
            self._state[machine_id] = current
            if self._filter is not None and not self._filter.passes(machine_id, current):
                continue
            lines.append(self.transform(machine_id, current, previous))
        return lines

    def transform(
        self,
        machine_id: str,
        status: MachineStatus,
        previous: Optional[MachineStatus] = None,
    ) -> bytes:
        """Convert one status into a newline-terminated NDJSON line."""
        event = MachineChangeEvent(
            received_at=datetime.now(timezone.utc).isoformat(),
            machine_id=machine_id,
            previous_category=previous.category.name.lower() if previous else None,
            current_category=status.category.name.lower(),
            category_label=category_label(status.category),
            reason_label=reason_label(status.category, status.reason_index, status.reason_text),
            label=resolve_label(status.category, status.reason_index, status.reason_text),
            icon=status.icon_ref,
            source={"client_id": self._client_id},
        )
        return orjson.dumps(asdict(event), option=orjson.OPT_APPEND_NEWLINE)
