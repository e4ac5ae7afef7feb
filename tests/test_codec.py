"""Tests for the codec module."""

import orjson
import pytest

from shopfloor_board.catalog import Category
from shopfloor_board.codec import (
    MAX_RAW_PAYLOAD_BYTES,
    classify_frame,
    decode_board,
    decode_status,
    encode_board,
    remove_undefined,
)
from shopfloor_board.models import MachineStatus, MalformedFrame


def test_remove_undefined_is_recursive() -> None:
    assert remove_undefined({"a": None, "b": {"c": None, "d": 1}, "e": [None, 2]}) == {
        "b": {"d": 1},
        "e": [2],
    }


def _contains_none(obj) -> bool:
    if obj is None:
        return True
    if isinstance(obj, dict):
        return any(_contains_none(v) for v in obj.values())
    if isinstance(obj, (list, tuple)):
        return any(_contains_none(item) for item in obj)
    return False


@pytest.mark.parametrize("value", [
    {},
    [],
    {"a": None},
    [None, None],
    (None,),
    {"a": {"b": None}},
    {"a": [None, {"b": None, "c": 0}], "d": (1, None, "")},
    [[None], {"x": None}, ({"y": None, "z": False},)],
    {"S1": {"main": 4, "secondary": None, "text": None, "src": "assets/cpdblanco.png"}},
    "plain",
    0,
])
def test_remove_undefined_strips_every_none_and_is_idempotent(value) -> None:
    once = remove_undefined(value)
    assert not _contains_none(once)
    assert remove_undefined(once) == once


def test_encode_board_strips_missing_values() -> None:
    """Producing has no secondary and no text key at all."""
    doc = encode_board({
        "S1": MachineStatus(Category.MECHANICAL, 7),
        "S2": MachineStatus(),
    })
    assert doc == {
        "S1": {"main": 1, "secondary": 7, "src": "assets/cpdrojo.png"},
        "S2": {"main": 4, "src": "assets/cpdblanco.png"},
    }


def test_encode_board_keeps_other_text() -> None:
    doc = encode_board({"S3": MachineStatus(Category.TRACKING, 20, "Revisar de nuevo")})
    assert doc["S3"]["text"] == "Revisar de nuevo"


def test_decode_status_keeps_cached_icon() -> None:
    status = decode_status({"main": 3, "secondary": 0, "src": "assets/old.png"})
    assert status.category is Category.ELECTRONIC
    assert status.reason_index == 0
    assert status.icon_ref == "assets/old.png"


def test_decode_status_producing_drops_secondary() -> None:
    assert decode_status({"main": 4, "secondary": 3}) == MachineStatus()


def test_decode_status_missing_main_is_default() -> None:
    assert decode_status({}) == MachineStatus()


@pytest.mark.parametrize("raw", [
    "S1",
    {"main": 99},
    {"main": 1, "secondary": "7"},
    {"main": 1, "secondary": 42},
    {"main": 2, "secondary": 0, "text": "nope"},
])
def test_decode_status_rejects_invalid(raw) -> None:
    with pytest.raises(ValueError):
        decode_status(raw)


def test_decode_board_malformed_entry_becomes_default() -> None:
    states = decode_board({"S1": {"main": 1, "secondary": 7}, "S2": {"main": "bogus"}})
    assert states["S1"] == MachineStatus(Category.MECHANICAL, 7)
    assert states["S2"] == MachineStatus()


@pytest.mark.parametrize("payload", [None, [], "x", 3])
def test_decode_board_non_object_is_empty(payload) -> None:
    assert decode_board(payload) == {}


class TestClassifyFrame:
    """Tests for :func:`classify_frame`."""

    def test_value_frame(self) -> None:
        raw = orjson.dumps({"type": "value", "id": "1", "path": "imgStates", "data": {}})
        frame = classify_frame(raw)
        assert isinstance(frame, dict)
        assert frame["path"] == "imgStates"

    @pytest.mark.parametrize("msg_type", ["connection_ack", "pong", "ack", "result"])
    def test_protocol_frames_return_none(self, msg_type: str) -> None:
        assert classify_frame(orjson.dumps({"type": msg_type})) is None

    def test_invalid_json(self) -> None:
        result = classify_frame("{not json")
        assert isinstance(result, MalformedFrame)
        assert result.error["code"] == "parse_error"
        assert result.error["raw_payload"] == "{not json"

    def test_non_object(self) -> None:
        result = classify_frame("[1, 2]")
        assert isinstance(result, MalformedFrame)
        assert result.error["code"] == "schema_mismatch"

    def test_value_without_path(self) -> None:
        result = classify_frame('{"type": "value", "data": {}}')
        assert isinstance(result, MalformedFrame)
        assert result.error["code"] == "missing_fields"

    def test_raw_payload_truncated(self) -> None:
        raw = "x" * (MAX_RAW_PAYLOAD_BYTES + 100)
        result = classify_frame(raw)
        assert isinstance(result, MalformedFrame)
        assert result.error["raw_payload_truncated"] is True
        assert len(result.error["raw_payload"]) == MAX_RAW_PAYLOAD_BYTES
