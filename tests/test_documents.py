"""Tests for the in-memory document store."""

import asyncio
from pathlib import Path

import orjson
import pytest

from shopfloor_board.documents import InMemoryDocumentStore, child_keys, split_path


def test_split_path() -> None:
    assert split_path("/snapshots/20250301_061500/") == ["snapshots", "20250301_061500"]
    with pytest.raises(ValueError):
        split_path("//")


def test_set_and_get_nested() -> None:
    docs = InMemoryDocumentStore()
    docs.set("fcmTokens/abc", {"userAgent": "x"})
    assert docs.get("fcmTokens") == {"abc": {"userAgent": "x"}}
    assert docs.get("fcmTokens/abc/userAgent") == "x"
    assert docs.get("missing/path") is None


def test_get_returns_copy() -> None:
    docs = InMemoryDocumentStore()
    docs.set("imgStates", {"S1": {"main": 1}})
    docs.get("imgStates")["S1"]["main"] = 99
    assert docs.get("imgStates/S1/main") == 1


def test_write_none_removes_and_prunes() -> None:
    docs = InMemoryDocumentStore()
    docs.set("a/b/c", 1)
    docs.set("a/b/c", None)
    assert docs.get("a") is None


def test_child_keys() -> None:
    assert child_keys({"x": 1, "y": 2}) == ["x", "y"]
    assert child_keys(None) == []
    assert child_keys("scalar") == []


def test_persistence_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "docs.json"
    docs = InMemoryDocumentStore(path)
    docs.set("imgStates/S1", {"main": 1, "secondary": 7})

    assert orjson.loads(path.read_bytes()) == {"imgStates": {"S1": {"main": 1, "secondary": 7}}}
    assert InMemoryDocumentStore(path).get("imgStates/S1/secondary") == 7


def test_unreadable_persist_file_starts_empty(tmp_path: Path) -> None:
    path = tmp_path / "docs.json"
    path.write_text("{broken")
    assert InMemoryDocumentStore(path).get("imgStates") is None


def test_subscribe_yields_current_then_updates() -> None:
    async def scenario() -> list:
        docs = InMemoryDocumentStore()
        docs.set("imgStates", {"S1": {"main": 4}})
        seen = []

        async def reader() -> None:
            async for value in docs.subscribe("imgStates"):
                seen.append(value)

        task = asyncio.create_task(reader())
        await asyncio.sleep(0)
        docs.set("imgStates/S2", {"main": 1})   # child write reaches the parent subscriber
        docs.set("other", {"x": 1})             # unrelated
        await asyncio.sleep(0)
        docs.close()
        await task
        assert docs.subscriber_count == 0
        return seen

    seen = asyncio.run(scenario())
    assert seen == [
        {"S1": {"main": 4}},
        {"S1": {"main": 4}, "S2": {"main": 1}},
    ]
