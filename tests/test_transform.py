"""Tests for the transform module."""

import orjson

from shopfloor_board.catalog import Category
from shopfloor_board.filter import StatusFilter
from shopfloor_board.models import MachineStatus
from shopfloor_board.transform import ChangeTransformer


def _records(lines: list[bytes]) -> list[dict]:
    return [orjson.loads(line) for line in lines]


def test_transform_basic() -> None:
    """A status becomes one newline-terminated machine_change record."""
    xform = ChangeTransformer(client_id="board-01")
    line = xform.transform("S1", MachineStatus(Category.MECHANICAL, 7))

    assert line.endswith(b"\n")
    rec = orjson.loads(line)
    assert rec["event_type"] == "machine_change"
    assert rec["machine_id"] == "S1"
    assert rec["previous_category"] is None
    assert rec["current_category"] == "mechanical"
    assert rec["category_label"] == "Mecánico"
    assert rec["reason_label"] == "Selectores"
    assert rec["label"] == "Mecánico - Selectores"
    assert rec["icon"] == "assets/cpdrojo.png"
    assert rec["source"] == {"client_id": "board-01"}
    assert rec["received_at"]


def test_diff_reports_only_changes() -> None:
    """Unchanged machines produce no record on the next delivery."""
    xform = ChangeTransformer()
    first = _records(xform.diff({"S1": MachineStatus(Category.MECHANICAL, 7), "S2": MachineStatus()}))
    assert [r["machine_id"] for r in first] == ["S1", "S2"]

    second = _records(xform.diff({
        "S1": MachineStatus(Category.MECHANICAL, 7),
        "S2": MachineStatus(Category.BARRING, 0),
    }))
    assert len(second) == 1
    assert second[0]["machine_id"] == "S2"
    assert second[0]["previous_category"] == "producing"
    assert second[0]["current_category"] == "barring"


def test_diff_removed_machine_reverts_to_default() -> None:
    xform = ChangeTransformer()
    xform.diff({"S1": MachineStatus(Category.ELECTRONIC, 2)})
    (rec,) = _records(xform.diff({}))
    assert rec["machine_id"] == "S1"
    assert rec["previous_category"] == "electronic"
    assert rec["current_category"] == "producing"
    assert rec["label"] == "Producción"


def test_diff_applies_filter() -> None:
    """Filtered machines are tracked but not emitted."""
    xform = ChangeTransformer(status_filter=StatusFilter(exclude_categories=["producing"]))
    assert xform.diff({"S1": MachineStatus()}) == []

    (rec,) = _records(xform.diff({"S1": MachineStatus(Category.TRACKING)}))
    assert rec["previous_category"] == "producing"


def test_other_reason_uses_free_text() -> None:
    xform = ChangeTransformer()
    rec = orjson.loads(xform.transform("S4", MachineStatus(Category.ELECTRONIC, 8, "Cable suelto")))
    assert rec["reason_label"] == "Cable suelto"
    assert rec["label"] == "Electrónico - Cable suelto"
