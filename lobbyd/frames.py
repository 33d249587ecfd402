from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from .codec import decode
from .constants import (
    F_CLIENT_ID,
    F_COUNT,
    F_MESSAGE,
    F_TARGET,
    F_TIMESTAMP,
    F_TYPE,
    F_USERNAME,
    INBOUND_TYPES,
    T_BLOCK,
    T_CHAT,
    T_LISTENER_COUNT,
    T_REGISTER,
    T_SYSTEM,
    T_UNBLOCK,
)
from .errors import MalformedFrame, UnknownFrameType, ValidationError

# Required string fields per inbound frame type.
_REQUIRED: dict[str, tuple[str, ...]] = {
    T_REGISTER: (F_CLIENT_ID, F_USERNAME),
    T_CHAT: (F_CLIENT_ID, F_USERNAME, F_MESSAGE),
    T_BLOCK: (F_CLIENT_ID, F_TARGET, F_USERNAME),
    T_UNBLOCK: (F_CLIENT_ID, F_TARGET, F_USERNAME),
}


def now_iso() -> str:
    ts = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return ts.replace("+00:00", "Z")


def make_system(message: str, *, ts: str | None = None) -> dict:
    return {F_TYPE: T_SYSTEM, F_MESSAGE: message, F_TIMESTAMP: ts or now_iso()}


def make_listener_count(count: int) -> dict:
    return {F_TYPE: T_LISTENER_COUNT, F_COUNT: int(count)}


def make_chat(
    client_id: str, username: str, message: str, *, ts: str | None = None
) -> dict:
    return {
        F_TYPE: T_CHAT,
        F_CLIENT_ID: client_id,
        F_USERNAME: username,
        F_MESSAGE: message,
        F_TIMESTAMP: ts or now_iso(),
    }


def validate_frame(frame: Any) -> str:
    """Check an inbound frame and return its type.

    Raises UnknownFrameType for a well-formed map with a type the hub does not
    handle, and ValidationError when a required field is absent or not a
    non-empty string.
    """
    if not isinstance(frame, dict):
        raise MalformedFrame("frame must be a map")

    for k in frame.keys():
        if not isinstance(k, str):
            raise MalformedFrame("frame keys must be strings")

    t = frame.get(F_TYPE)
    if not isinstance(t, str):
        raise MalformedFrame("frame type must be a string")
    if t not in INBOUND_TYPES:
        raise UnknownFrameType(f"unknown frame type {t!r}")

    for field in _REQUIRED[t]:
        value = frame.get(field)
        if not isinstance(value, str):
            raise ValidationError(f"{t} requires {field}")
        if not value.strip():
            raise ValidationError(f"{t} requires non-empty {field}")

    return t


def parse_frame(data: bytes, encoding: str = "cbor") -> tuple[str, dict]:
    try:
        frame = decode(data, encoding)
    except Exception as e:
        raise MalformedFrame(f"undecodable payload: {e}") from e
    return validate_frame(frame), frame
