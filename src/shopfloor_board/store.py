"""In-memory machine status store.

The store is the client-side mirror of the shared board document.  An
absent machine id means "never set" and reads back as the default
(producing) status.  Entries are never removed one by one: the map is
either mutated per machine or replaced wholesale.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterator, Mapping, Optional

from shopfloor_board.models import MachineStatus

logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, MachineStatus]], None]


class StateStore:
    """Machine id → :class:`MachineStatus` map with change listeners.

    Listeners are called synchronously after every mutation with a copy of
    the full map.
    """

    def __init__(self, initial: Optional[Mapping[str, MachineStatus]] = None) -> None:
        self._states: dict[str, MachineStatus] = dict(initial or {})
        self._listeners: list[Listener] = []

    def get(self, machine_id: str) -> MachineStatus:
        return self._states.get(machine_id) or MachineStatus.default()

    def snapshot(self) -> dict[str, MachineStatus]:
        return dict(self._states)

    def set_status(self, machine_id: str, status: MachineStatus) -> None:
        """Replace the status of one machine."""
        self._states[machine_id] = status
        self._notify()

    def replace(self, states: Mapping[str, MachineStatus]) -> None:
        """Swap the whole map (remote delivery)."""
        self._states = dict(states)
        self._notify()

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def __contains__(self, machine_id: object) -> bool:
        return machine_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[str]:
        return iter(self._states)

    def _notify(self) -> None:
        states = self.snapshot()
        for listener in list(self._listeners):
            listener(states)
