from __future__ import annotations

import os

from .constants import CLIENT_ID_MAX_CHARS, NICK_MAX_CHARS


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def _clean_text(value, max_chars: int) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars > 0 and len(s) > int(max_chars):
        return None

    # Keep this conservative: avoid embedded newlines or NUL, which frequently
    # cause UI/log formatting issues.
    if "\n" in s or "\r" in s or "\x00" in s:
        return None

    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return None

    return s


def normalize_nick(value, *, max_chars: int = NICK_MAX_CHARS) -> str | None:
    return _clean_text(value, max_chars)


def normalize_client_id(value, *, max_chars: int = CLIENT_ID_MAX_CHARS) -> str | None:
    s = _clean_text(value, max_chars)
    if s is None or any(ch.isspace() for ch in s):
        return None
    return s


def parse_identity_hash(text: str) -> str:
    """Normalize a hex identity hash to lowercase hex without prefix."""
    s = str(text).strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    s = "".join(ch for ch in s if not ch.isspace())
    try:
        b = bytes.fromhex(s)
    except Exception as e:
        raise ValueError(f"invalid identity hash {text!r}: {e}") from e
    if len(b) < 4:
        raise ValueError(f"identity hash too short: {text!r}")
    return b.hex()
