"""Fan-out of outbound frames to connected peers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .codec import encode
from .frames import make_listener_count, make_system
from .transport import SendResult

if TYPE_CHECKING:
    from .service import HubService


class BroadcastHub:
    """
    Sends frames to every live connection or to a single one.

    Handles:
    - Encoding a frame once per fan-out
    - Best-effort delivery; a failed peer is evicted after the fan-out,
      never in the middle of it
    - Presence and listener-count system events
    - Unicast notices (rejections, errors)

    Never called with the state lock held: targets are snapshotted under the
    lock, sends happen outside it.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("lobbyd.broadcast")

    def _encode(self, frame: dict) -> bytes:
        return encode(frame, self.hub.config.frame_encoding)

    def _deliver(self, handle: Any, payload: bytes) -> SendResult:
        result = self.hub.transport.send(handle, payload)
        if result is SendResult.SENT:
            self.hub.stats_manager.inc("frames_out")
            self.hub.stats_manager.inc("bytes_out", len(payload))
        elif result is SendResult.TOO_LARGE:
            self.hub.stats_manager.inc("frames_oversize")
        else:
            self.hub.stats_manager.inc("send_failures")
        return result

    def broadcast_all(self, frame: dict) -> int:
        """Send frame to every connection registered at call time.

        Returns the number of successful deliveries. Handles whose transport
        failed are evicted once the fan-out is done; an oversize payload is
        dropped without evicting anyone.
        """
        with self.hub._state_lock:
            targets = list(self.hub.registry.broadcast_targets())

        payload = self._encode(frame)
        delivered = 0
        failed: list[Any] = []
        for handle in targets:
            result = self._deliver(handle, payload)
            if result is SendResult.SENT:
                delivered += 1
            elif result is SendResult.FAILED:
                failed.append(handle)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Broadcast type=%s recipients=%s delivered=%s failed=%s",
                frame.get("type"),
                len(targets),
                delivered,
                len(failed),
            )

        for handle in failed:
            self.hub.evict_handle(handle)

        return delivered

    def send_to(self, handle: Any, frame: dict) -> bool:
        result = self._deliver(handle, self._encode(frame))
        if result is SendResult.FAILED:
            self.hub.evict_handle(handle)
        return result is SendResult.SENT

    def notice(self, handle: Any, text: str) -> bool:
        return self.send_to(handle, make_system(text))

    def system_notice(self, text: str) -> int:
        return self.broadcast_all(make_system(text))

    def announce_join(self, display_name: str) -> int:
        return self.system_notice(f"{display_name} joined the chat")

    def announce_leave(self, display_name: str) -> int:
        return self.system_notice(f"{display_name} left the chat")

    def announce_listener_count(self) -> int:
        with self.hub._state_lock:
            count = self.hub.registry.count()
        self.log.info("Listeners connected: %d", count)
        return self.broadcast_all(make_listener_count(count))
