"""Board document encoding and hub frame classification.

Board document shape (one entry per machine)::

    {"S1": {"main": 1, "secondary": 7, "src": "assets/cpdrojo.png"},
     "S2": {"main": 3, "secondary": 8, "text": "Cable suelto", "src": "..."}}

Decoding is best-effort: a payload that is not an object decodes to an
empty board and a malformed entry decodes to the default status.

Frame classification pipeline::

    raw string
      │
      ├─ JSON parse failure  → MalformedFrame(code="parse_error")
      ├─ not an object       → MalformedFrame(code="schema_mismatch")
      ├─ type ≠ "value"      → None  (protocol frame, handled by caller)
      ├─ missing path        → MalformedFrame(code="missing_fields")
      └─ valid               → dict  (the frame)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Union

import orjson

from shopfloor_board.catalog import Category
from shopfloor_board.models import MachineStatus, MalformedFrame

logger = logging.getLogger(__name__)

# Maximum bytes of raw payload preserved in malformed records.
MAX_RAW_PAYLOAD_BYTES = 4096


def remove_undefined(obj: Any) -> Any:
    """Recursively drop ``None`` values from dicts and lists.

    The remote store has no "no value" value; a missing key is used instead.
    """
    if isinstance(obj, dict):
        return {k: remove_undefined(v) for k, v in obj.items() if v is not None}
    if isinstance(obj, (list, tuple)):
        return [remove_undefined(item) for item in obj if item is not None]
    return obj


def encode_status(status: MachineStatus) -> dict[str, Any]:
    return {
        "main": int(status.category),
        "secondary": status.reason_index,
        "text": status.reason_text or None,
        "src": status.icon_ref,
    }


def encode_board(states: Mapping[str, MachineStatus]) -> dict[str, Any]:
    """Serialize the store into the remote document shape (``None`` stripped)."""
    return remove_undefined({mid: encode_status(st) for mid, st in states.items()})


def decode_status(raw: Any) -> MachineStatus:
    """Decode one machine entry.

    Raises
    ------
    ValueError
        If the entry is not an object or violates the status invariants.
    """
    if not isinstance(raw, dict):
        raise ValueError(f"entry is {type(raw).__name__}, expected object")
    main = raw.get("main")
    if main is None:
        return MachineStatus.default()
    category = Category.parse(main)
    secondary = raw.get("secondary")
    if secondary is not None and (isinstance(secondary, bool) or not isinstance(secondary, int)):
        raise ValueError(f"secondary is {secondary!r}, expected integer")
    if category is Category.PRODUCING:
        secondary = None
    return MachineStatus(
        category=category,
        reason_index=secondary,
        reason_text=raw.get("text") or None,
        icon_ref=raw.get("src") or "",
    )


def decode_board(payload: Any) -> dict[str, MachineStatus]:
    """Decode a remote board document into a status map."""
    if not isinstance(payload, dict):
        if payload is not None:
            logger.warning("Board document is %s, treating as empty", type(payload).__name__)
        return {}

    states: dict[str, MachineStatus] = {}
    for machine_id, raw in payload.items():
        try:
            states[str(machine_id)] = decode_status(raw)
        except ValueError as exc:
            logger.warning("Malformed entry for machine %s (%s), using default", machine_id, exc)
            states[str(machine_id)] = MachineStatus.default()
    return states


def classify_frame(raw: str | bytes) -> Union[dict, MalformedFrame, None]:
    """Classify a single raw hub frame.

    Returns
    -------
    dict
        The frame when it is a well-formed ``value`` delivery.
    MalformedFrame
        When the frame cannot be parsed or fails structural checks.
    None
        For valid protocol frames that carry no document value
        (``connection_ack``, ``pong``, ``ack``, ...).
    """
    now = datetime.now(timezone.utc).isoformat()

    try:
        msg = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        return _malformed("parse_error", str(exc), raw, now)

    if not isinstance(msg, dict):
        return _malformed("schema_mismatch", "Frame is not a JSON object", raw, now)

    if msg.get("type") != "value":
        return None

    if not isinstance(msg.get("path"), str):
        return _malformed("missing_fields", "Value frame missing required field: path", raw, now)

    return msg


def _malformed(code: str, message: str, raw: str | bytes, now: str) -> MalformedFrame:
    """Build a :class:`MalformedFrame` with truncation handling."""
    raw_str = raw if isinstance(raw, str) else raw.decode("utf-8", errors="replace")
    truncated = len(raw_str.encode("utf-8")) > MAX_RAW_PAYLOAD_BYTES
    if truncated:
        raw_str = raw_str[:MAX_RAW_PAYLOAD_BYTES]

    return MalformedFrame(
        received_at=now,
        error={
            "code": code,
            "message": message,
            "raw_payload": raw_str,
            "raw_payload_truncated": truncated,
        },
    )
