"""Machine status categories, reason lists, icons and display labels.

Category codes are the integers stored in the shared board document
(``main``); reason indices point into the per-category lists below
(``secondary``).  The lists are append-only: existing documents and
snapshots refer to them by position.

``resolve_label`` is the one place where codes become display text.
"""

from __future__ import annotations

import enum
from typing import Optional


class Category(enum.IntEnum):
    """Top-level reason a machine is (not) producing."""

    MECHANICAL = 1
    BARRING = 2
    ELECTRONIC = 3
    PRODUCING = 4
    TRACKING = 5
    SIZE_CHANGE = 6

    @classmethod
    def parse(cls, value: object) -> "Category":
        """Accept a code, a member name (any case) or a member."""
        if isinstance(value, Category):
            return value
        if isinstance(value, str):
            name = value.strip().upper().replace("-", "_")
            if name in cls.__members__:
                return cls[name]
            if name.isdigit():
                return cls(int(name))
            raise ValueError(f"Unknown category: {value!r}")
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(value)
        raise ValueError(f"Unknown category: {value!r}")


DEFAULT_CATEGORY = Category.PRODUCING

OTHER_REASON = "Otros"

CATEGORY_LABELS: dict[Category, str] = {
    Category.MECHANICAL: "Mecánico",
    Category.BARRING: "Barrado",
    Category.ELECTRONIC: "Electrónico",
    Category.PRODUCING: "Producción",
    Category.TRACKING: "Seguimiento",
    Category.SIZE_CHANGE: "Cambio de talla",
}

_MECHANICAL = [
    "Transferencia", "Vanizado", "Reviente LC", "Succion", "Reviente L180",
    "Huecos y rotos", "Aguja", "Selectores", "Motores MPP", "Cuchillas",
]
_BARRING = ["Materia prima", "Motores"]
_ELECTRONIC = [
    "Valvulas", "Motores MPP", "No enciende", "Turbina", "Motor principal",
    "Paros", "Sin programa", "Fusible",
]

REASONS: dict[Category, list[str]] = {
    Category.MECHANICAL: _MECHANICAL + [OTHER_REASON],
    Category.BARRING: list(_BARRING),
    Category.ELECTRONIC: _ELECTRONIC + [OTHER_REASON],
    Category.PRODUCING: [],
    # Tracking follows up on any earlier intervention.
    Category.TRACKING: _MECHANICAL + _ELECTRONIC + _BARRING + [OTHER_REASON],
    Category.SIZE_CHANGE: [],
}

ICONS: dict[Category, str] = {
    Category.MECHANICAL: "assets/cpdrojo.png",
    Category.BARRING: "assets/cpdnegro.png",
    Category.ELECTRONIC: "assets/cpdamarillo.png",
    Category.PRODUCING: "assets/cpdblanco.png",
    Category.TRACKING: "assets/cpdverde.png",
    Category.SIZE_CHANGE: "assets/cpdazul.png",
}


def reasons_for(category: Category) -> list[str]:
    """Return the reason list of *category* (empty when it has none)."""
    return list(REASONS.get(category, []))


def reason_index(category: Category, label: str) -> int:
    """Return the first index of *label* in the reason list of *category*.

    Raises
    ------
    ValueError
        If the category has no such reason.
    """
    options = REASONS.get(category, [])
    wanted = label.strip().casefold()
    for idx, option in enumerate(options):
        if option.casefold() == wanted:
            return idx
    raise ValueError(f"{CATEGORY_LABELS[category]} has no reason {label!r}")


def is_other(category: Category, index: Optional[int]) -> bool:
    """True when *index* selects the free-text "Otros" reason."""
    options = REASONS.get(category, [])
    return index is not None and 0 <= index < len(options) and options[index] == OTHER_REASON


def icon_ref(category: Category) -> str:
    """Status icon asset for *category*; unknown codes get the producing icon."""
    return ICONS.get(category, ICONS[DEFAULT_CATEGORY])


def category_label(category: object) -> str:
    """Display text for a category code; empty for unknown codes."""
    try:
        return CATEGORY_LABELS[Category.parse(category)]
    except ValueError:
        return ""


def reason_label(
    category: object,
    index: Optional[int],
    text: Optional[str] = None,
) -> str:
    """Display text for a reason; the free text stands in for "Otros"."""
    try:
        cat = Category.parse(category)
    except ValueError:
        return ""
    options = REASONS.get(cat, [])
    if index is None or not isinstance(index, int) or not 0 <= index < len(options):
        return ""
    if options[index] == OTHER_REASON and text:
        return text
    return options[index]


def resolve_label(
    category: object,
    reason_index: Optional[int] = None,
    reason_text: Optional[str] = None,
) -> str:
    """Full display label, e.g. ``"Mecánico - Selectores"``."""
    main = category_label(category)
    secondary = reason_label(category, reason_index, reason_text)
    if main and secondary:
        return f"{main} - {secondary}"
    return main or secondary
