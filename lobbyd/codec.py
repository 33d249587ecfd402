from __future__ import annotations

import json

import cbor2

ENCODINGS = ("cbor", "json")


def encode(obj, encoding: str = "cbor") -> bytes:
    if encoding == "json":
        return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode(
            "utf-8"
        )
    return cbor2.dumps(obj)


def decode(b: bytes, encoding: str = "cbor"):
    if encoding == "json":
        return json.loads(bytes(b).decode("utf-8"))
    return cbor2.loads(b)
