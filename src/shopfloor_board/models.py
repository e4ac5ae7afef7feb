"""Dataclass models for the shop-floor board.

Output records (``MachineChangeEvent``, ``MalformedFrame``) are designed to
be serializable via ``dataclasses.asdict()`` followed by ``orjson.dumps()``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional

from shopfloor_board.catalog import (
    DEFAULT_CATEGORY,
    Category,
    icon_ref,
    is_other,
    reasons_for,
)


@dataclass(frozen=True)
class MachineStatus:
    """Status record of one machine.

    ``icon_ref`` is cached at write time so that snapshots keep showing the
    asset that was current when they were taken.
    """

    category: Category = DEFAULT_CATEGORY
    reason_index: Optional[int] = None
    reason_text: Optional[str] = None
    icon_ref: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.category, Category):
            object.__setattr__(self, "category", Category.parse(self.category))
        if not self.icon_ref:
            object.__setattr__(self, "icon_ref", icon_ref(self.category))

        options = reasons_for(self.category)
        if self.reason_index is not None:
            if not options:
                raise ValueError(
                    f"{self.category.name} takes no reason, got index {self.reason_index}"
                )
            if not 0 <= self.reason_index < len(options):
                raise ValueError(
                    f"Reason index {self.reason_index} out of range for {self.category.name}"
                )
        if self.reason_text and not is_other(self.category, self.reason_index):
            raise ValueError("reason_text is only allowed with the 'Otros' reason")

    @classmethod
    def default(cls) -> "MachineStatus":
        return cls()

    @property
    def is_default(self) -> bool:
        return self.category is DEFAULT_CATEGORY


class Channel(str, enum.Enum):
    """Path through which a push notification reached this endpoint."""

    FOREGROUND = "foreground"
    BACKGROUND = "background"
    PUSH = "push"


@dataclass(frozen=True)
class Notification:
    """A logical notification as seen by the receiving endpoint."""

    title: str
    body: str
    channel: Channel = Channel.PUSH


@dataclass
class MachineChangeEvent:
    """A machine status transition observed on the shared board."""

    event_type: str = "machine_change"
    received_at: str = ""
    machine_id: str = ""
    previous_category: Optional[str] = None
    current_category: Optional[str] = None
    category_label: str = ""
    reason_label: str = ""
    label: str = ""
    icon: str = ""
    source: Optional[dict] = field(default_factory=dict)


@dataclass
class MalformedFrame:
    """Wrapper for hub frames that fail classification.

    These are logged and counted, never applied to the board.
    """

    event_type: str = "malformed"
    received_at: str = ""
    error: Optional[dict] = field(default_factory=dict)
