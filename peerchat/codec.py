# codec.py
"""
Wire format of a chat datagram: one flat JSON object with exactly six
fields, always in this order:

    {"name": ..., "room": ..., "text": ..., "timestamp": ..., "latitude": ..., "longitude": ...}

The timestamp is ISO-8601 (datetime.isoformat), which round-trips losslessly.
"""

import json
from datetime import datetime
from typing import NamedTuple, Optional

from peerchat.errors import DecodeError

SENDER_NAME = "name"
CHATROOM = "room"
MESSAGE_TEXT = "text"
TIMESTAMP = "timestamp"
LATITUDE = "latitude"
LONGITUDE = "longitude"

FIELDS = (SENDER_NAME, CHATROOM, MESSAGE_TEXT, TIMESTAMP, LATITUDE, LONGITUDE)


class Envelope(NamedTuple):
    sender: str
    chatroom: str
    text: str
    timestamp: datetime
    latitude: Optional[float]
    longitude: Optional[float]


def serialize_timestamp(ts: datetime) -> str:
    if not isinstance(ts, datetime):
        raise TypeError(f"timestamp must be a datetime, got {type(ts).__name__}")
    return ts.isoformat()


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


def encode(sender: str, chatroom: str, text: str, timestamp: datetime,
           latitude: Optional[float], longitude: Optional[float]) -> bytes:
    obj = {
        SENDER_NAME: sender,
        CHATROOM: chatroom,
        MESSAGE_TEXT: text,
        TIMESTAMP: serialize_timestamp(timestamp),
        LATITUDE: None if latitude is None else float(latitude),
        LONGITUDE: None if longitude is None else float(longitude),
    }
    return json.dumps(obj, ensure_ascii=False, allow_nan=False, separators=(",", ":")).encode("utf-8")


def _string(pairs: dict, name: str) -> str:
    value = pairs[name]
    if not isinstance(value, str):
        raise DecodeError(f"field {name!r} must be a string")
    return value


def _coordinate(pairs: dict, name: str) -> Optional[float]:
    value = pairs[name]
    if value is None:
        return None
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DecodeError(f"field {name!r} must be a number")
    return float(value)


def decode(data) -> Envelope:
    """Parse a datagram payload. Raises DecodeError for anything the receive loop should skip."""
    if not data:
        raise DecodeError("empty payload")
    try:
        text = data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else data
        pairs = json.loads(text, object_pairs_hook=list)
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodeError(f"malformed payload: {e}") from e

    # object_pairs_hook turns every JSON object into a list of (name, value) tuples
    if not isinstance(pairs, list) or not all(isinstance(p, tuple) for p in pairs):
        raise DecodeError("payload is not a JSON object")

    names = [name for name, _ in pairs]
    missing = [f for f in FIELDS if f not in names]
    if missing:
        raise DecodeError(f"missing field(s): {', '.join(missing)}")
    if tuple(names) != FIELDS:
        raise DecodeError(f"unexpected field layout: {names}")

    fields = dict(pairs)
    raw_timestamp = _string(fields, TIMESTAMP)
    try:
        timestamp = parse_timestamp(raw_timestamp)
    except ValueError as e:
        raise DecodeError(f"bad timestamp: {e}") from e

    return Envelope(
        sender=_string(fields, SENDER_NAME),
        chatroom=_string(fields, CHATROOM),
        text=_string(fields, MESSAGE_TEXT),
        timestamp=timestamp,
        latitude=_coordinate(fields, LATITUDE),
        longitude=_coordinate(fields, LONGITUDE),
    )
