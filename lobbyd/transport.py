"""Reticulum link transport used by the hub to reach connected peers."""

from __future__ import annotations

import enum
import logging
from typing import Any

import RNS


class SendResult(enum.Enum):
    SENT = "sent"
    # The payload does not fit one packet on this link; the link is fine.
    TOO_LARGE = "too_large"
    # The link is closed or broken; the peer should be evicted.
    FAILED = "failed"


def fmt_link_id(link: Any) -> str:
    lid = getattr(link, "link_id", None)
    if isinstance(lid, (bytes, bytearray)):
        return bytes(lid).hex()
    h = getattr(link, "hash", None)
    if isinstance(h, (bytes, bytearray)):
        return bytes(h).hex()
    return "-"


class RnsTransport:
    """
    Sends payloads over established RNS links.

    ``send`` never blocks on the peer: RNS queues the packet and returns.
    An oversize payload is dropped and reported as TOO_LARGE; only a closed
    or failing link is reported as FAILED.
    """

    def __init__(self) -> None:
        self.log = logging.getLogger("lobbyd.transport")

    def max_payload(self, link: RNS.Link) -> int | None:
        mdu = getattr(link, "MDU", None)
        return int(mdu) if isinstance(mdu, int) and mdu > 0 else None

    def send(self, link: RNS.Link, payload: bytes) -> SendResult:
        if getattr(link, "status", None) == RNS.Link.CLOSED:
            return SendResult.FAILED

        mdu = self.max_payload(link)
        if mdu is not None and len(payload) > mdu:
            self.log.warning(
                "Payload exceeds link MDU link_id=%s bytes=%s mdu=%s",
                fmt_link_id(link),
                len(payload),
                mdu,
            )
            return SendResult.TOO_LARGE

        try:
            RNS.Packet(link, payload).send()
            return SendResult.SENT
        except OSError as e:
            self.log.warning(
                "Send failed link_id=%s bytes=%s err=%s",
                fmt_link_id(link),
                len(payload),
                e,
            )
        except Exception:
            self.log.debug(
                "Send failed link_id=%s bytes=%s",
                fmt_link_id(link),
                len(payload),
                exc_info=True,
            )
        return SendResult.FAILED

    def close(self, link: RNS.Link) -> None:
        try:
            link.teardown()
        except Exception:
            self.log.debug("Teardown failed link_id=%s", fmt_link_id(link), exc_info=True)

    def remote_identity(self, link: RNS.Link) -> str | None:
        """Hex hash of the peer's verified identity, if it identified."""
        try:
            ident = link.get_remote_identity()
        except Exception:
            return None
        if ident is None:
            return None
        h = getattr(ident, "hash", None)
        if isinstance(h, (bytes, bytearray)):
            return bytes(h).hex()
        return None

    def describe(self, link: RNS.Link) -> str:
        return fmt_link_id(link)
