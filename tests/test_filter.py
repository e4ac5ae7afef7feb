"""Tests for the filter module."""

from shopfloor_board.catalog import Category
from shopfloor_board.filter import StatusFilter
from shopfloor_board.models import MachineStatus

MECHANICAL = MachineStatus(Category.MECHANICAL, 7)
PRODUCING = MachineStatus()


def test_exclude_category() -> None:
    """Status whose category is excluded is filtered out."""
    f = StatusFilter(exclude_categories=["producing"])
    assert f("S1", PRODUCING) is None
    assert f("S1", MECHANICAL) == MECHANICAL


def test_exclude_category_by_code() -> None:
    f = StatusFilter(exclude_categories=[1])
    assert not f.passes("S1", MECHANICAL)


def test_drop_machine_id() -> None:
    """Machine in drop_machine_ids is filtered out."""
    f = StatusFilter(drop_machine_ids=["S9"])
    assert not f.passes("S9", MECHANICAL)
    assert f.passes("S1", MECHANICAL)


def test_keep_machine_ids_match() -> None:
    f = StatusFilter(keep_machine_ids=["S1", "S2"])
    assert f.passes("S1", MECHANICAL)


def test_keep_machine_ids_no_match() -> None:
    """Machine NOT in keep_machine_ids is filtered."""
    f = StatusFilter(keep_machine_ids=["S1", "S2"])
    assert not f.passes("S3", MECHANICAL)


def test_empty_keep_allows_all() -> None:
    f = StatusFilter(keep_machine_ids=[])
    assert f.passes("anything", MECHANICAL)


def test_exceptions_only_apply() -> None:
    """exceptions_only() keeps the machines that need attention."""
    states = {"S1": MECHANICAL, "S2": PRODUCING, "S3": MachineStatus(Category.TRACKING)}
    assert StatusFilter.exceptions_only().apply(states) == {
        "S1": MECHANICAL,
        "S3": MachineStatus(Category.TRACKING),
    }
