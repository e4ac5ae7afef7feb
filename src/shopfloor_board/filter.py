"""Machine status filtering by category and machine identity.

Filter chain (evaluated in order)::

    1. category in ``exclude_categories``                → drop
    2. machine id in ``drop_machine_ids``                → drop
    3. ``keep_machine_ids`` non-empty AND id not in list → drop
    4. Otherwise                                         → pass
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, Optional

from shopfloor_board.catalog import Category
from shopfloor_board.models import MachineStatus

logger = logging.getLogger(__name__)


class StatusFilter:
    """Stateless filter over ``(machine_id, status)`` pairs."""

    def __init__(
        self,
        exclude_categories: Iterable[object] = (),
        drop_machine_ids: Iterable[str] = (),
        keep_machine_ids: Iterable[str] = (),
    ) -> None:
        self._exclude: set[Category] = {Category.parse(c) for c in exclude_categories}
        self._drop_ids: set[str] = set(drop_machine_ids)
        self._keep_ids: set[str] = set(keep_machine_ids)

    @classmethod
    def exceptions_only(cls) -> "StatusFilter":
        """Only machines that are not producing."""
        return cls(exclude_categories=[Category.PRODUCING])

    def passes(self, machine_id: str, status: MachineStatus) -> bool:
        if status.category in self._exclude:
            return False
        if machine_id in self._drop_ids:
            logger.debug("Filtered machine %s: in drop_machine_ids", machine_id)
            return False
        if self._keep_ids and machine_id not in self._keep_ids:
            logger.debug("Filtered machine %s: not in keep_machine_ids", machine_id)
            return False
        return True

    def apply(self, states: Mapping[str, MachineStatus]) -> dict[str, MachineStatus]:
        """Return the subset of *states* that passes the chain."""
        return {mid: st for mid, st in states.items() if self.passes(mid, st)}

    def __call__(self, machine_id: str, status: MachineStatus) -> Optional[MachineStatus]:
        return status if self.passes(machine_id, status) else None
