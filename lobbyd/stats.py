"""Statistics tracking and reporting for the lobby hub."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import HubService


class StatsManager:
    """
    Lifetime counters for the hub.

    Tracks:
    - Frames and bytes in/out
    - Bad, unknown, ignored and rate-limited frames
    - Joins, parts and chats
    - Blocks, unblocks, rejections, forbidden commands and evictions
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "frames_in": 0,
            "frames_out": 0,
            "bytes_in": 0,
            "bytes_out": 0,
            "frames_bad": 0,
            "frames_unknown": 0,
            "frames_ignored": 0,
            "rate_limited": 0,
            "send_failures": 0,
            "frames_oversize": 0,
            "joins": 0,
            "parts": 0,
            "chats": 0,
            "blocks": 0,
            "unblocks": 0,
            "rejected": 0,
            "forbidden": 0,
            "evictions": 0,
            "announces": 0,
        }

    def set_start_time(self) -> None:
        """Set the start time for uptime calculations."""
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self.hub._state_lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self.hub._state_lock:
            return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, int]:
        with self.hub._state_lock:
            return dict(self._counters)

    def format_stats(self) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        started_mono = self.started_monotonic
        uptime_s = (time.monotonic() - started_mono) if started_mono is not None else 0.0

        with self.hub._state_lock:
            reg = self.hub.registry.get_stats()
            sessions_total = len(self.hub.router.sessions)
            c = dict(self._counters)
        blocked = self.hub.gate.blocked_count()

        lines: list[str] = []
        lines.append(f"lobbyd {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            f"connections={sessions_total} listeners={reg['total']} "
            f"verified={reg['verified']} blocked={blocked}"
        )
        lines.append(
            f"limits: rate_limit_msgs_per_minute={self.hub.config.rate_limit_msgs_per_minute} "
            f"max_message_chars={self.hub.config.max_message_chars} "
            f"nick_max_chars={self.hub.config.nick_max_chars}"
        )
        lines.append(
            "io: frames_in={} frames_out={} bytes_in={} bytes_out={} send_failures={} oversize={}".format(
                c.get("frames_in", 0),
                c.get("frames_out", 0),
                c.get("bytes_in", 0),
                c.get("bytes_out", 0),
                c.get("send_failures", 0),
                c.get("frames_oversize", 0),
            )
        )
        lines.append(
            "frames: bad={} unknown={} ignored={} rate_limited={}".format(
                c.get("frames_bad", 0),
                c.get("frames_unknown", 0),
                c.get("frames_ignored", 0),
                c.get("rate_limited", 0),
            )
        )
        lines.append(
            "events: joins={} parts={} chats={} announces={}".format(
                c.get("joins", 0),
                c.get("parts", 0),
                c.get("chats", 0),
                c.get("announces", 0),
            )
        )
        lines.append(
            "moderation: blocks={} unblocks={} rejected={} forbidden={} evictions={}".format(
                c.get("blocks", 0),
                c.get("unblocks", 0),
                c.get("rejected", 0),
                c.get("forbidden", 0),
                c.get("evictions", 0),
            )
        )

        return "\n".join(lines)
