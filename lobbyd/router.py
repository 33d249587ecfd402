from __future__ import annotations

import enum
import logging
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .codec import encode
from .constants import (
    F_CLIENT_ID,
    F_MESSAGE,
    F_TARGET,
    F_USERNAME,
    N_CHAT_BLOCKED,
    N_DEVICE_BLOCKED,
    N_FORBIDDEN,
    N_MESSAGE_TOO_LARGE,
    N_MODERATION_FAILED,
    N_RATE_LIMITED,
    N_SESSION_REPLACED,
    N_USER_BLOCKED,
    N_USER_UNBLOCKED,
    T_BLOCK,
    T_CHAT,
    T_REGISTER,
)
from .errors import (
    Blocked,
    Forbidden,
    MalformedFrame,
    PersistenceFailure,
    UnknownFrameType,
    ValidationError,
)
from .frames import make_chat, parse_frame
from .moderation import ModerationResult
from .util import normalize_client_id, normalize_nick

if TYPE_CHECKING:
    from .permissions import Principal
    from .registry import ConnectionEntry
    from .service import HubService


class ConnState(enum.Enum):
    ANONYMOUS = "anonymous"
    IDENTIFIED = "identified"
    CLOSED = "closed"


@dataclass
class _Session:
    """Per-connection router state plus token bucket for rate limiting."""

    tokens: float
    last_refill: float
    state: ConnState = ConnState.ANONYMOUS


class ProtocolRouter:
    """
    Per-connection frame state machine for the lobby hub.

    This class is responsible for:
    - Decoding and validating inbound frames
    - Tracking ANONYMOUS -> IDENTIFIED -> CLOSED per connection
    - Admission checks on REGISTER and CHAT
    - Handing BLOCK/UNBLOCK to the moderation worker
    - Presence announcements on register and close
    - Rate limiting

    Every error is recovered here; nothing propagates into transport
    callbacks.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("lobbyd.router")
        self.sessions: dict[Any, _Session] = {}

    def on_open(self, handle: Any) -> None:
        with self.hub._state_lock:
            self.sessions[handle] = _Session(
                tokens=float(self.hub.config.rate_limit_msgs_per_minute),
                last_refill=time.monotonic(),
            )
        self.log.info("Connection opened link_id=%s", self.hub.transport.describe(handle))

    def state_of(self, handle: Any) -> ConnState:
        with self.hub._state_lock:
            sess = self.sessions.get(handle)
            return sess.state if sess is not None else ConnState.CLOSED

    def mark_closed(self, handle: Any) -> None:
        """Stop routing frames for a handle. Caller holds the state lock."""
        sess = self.sessions.get(handle)
        if sess is not None:
            sess.state = ConnState.CLOSED

    def on_close(self, handle: Any) -> None:
        with self.hub._state_lock:
            self.sessions.pop(handle, None)
            removed = self.hub.registry.unregister_handle(handle)

        if removed is None:
            self.log.debug(
                "Connection closed link_id=%s (not registered)",
                self.hub.transport.describe(handle),
            )
            return

        client_id, name = removed
        self.hub.stats_manager.inc("parts")
        self.log.info(
            "Client disconnected name=%r client_id=%s link_id=%s",
            name,
            client_id,
            self.hub.transport.describe(handle),
        )
        self.hub.broadcast.announce_listener_count()
        self.hub.broadcast.announce_leave(name)

    def refill_and_take(self, sess: _Session, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Must be called with state lock held.
        """
        now = time.monotonic()
        per_min = float(max(1, int(self.hub.config.rate_limit_msgs_per_minute)))
        rate_per_s = per_min / 60.0
        elapsed = max(0.0, now - sess.last_refill)
        sess.tokens = min(per_min, sess.tokens + elapsed * rate_per_s)
        sess.last_refill = now

        if sess.tokens < cost:
            return False

        sess.tokens -= cost
        return True

    def route_frame(self, handle: Any, data: bytes) -> Future | None:
        """
        Main entry point for an inbound frame.

        Returns the pending moderation future for BLOCK/UNBLOCK, else None.
        """
        with self.hub._state_lock:
            sess = self.sessions.get(handle)
            if sess is None or sess.state is ConnState.CLOSED:
                return None
            allowed = self.refill_and_take(sess)
            state = sess.state

        self.hub.stats_manager.inc("frames_in")
        self.hub.stats_manager.inc("bytes_in", len(data))

        if not allowed:
            self.hub.stats_manager.inc("rate_limited")
            self.log.debug("Rate limited link_id=%s", self.hub.transport.describe(handle))
            if state is ConnState.IDENTIFIED:
                self.hub.broadcast.notice(handle, N_RATE_LIMITED)
            return None

        try:
            t, frame = parse_frame(data, self.hub.config.frame_encoding)
        except UnknownFrameType as e:
            self.hub.stats_manager.inc("frames_unknown")
            self.log.warning(
                "Unknown frame link_id=%s: %s", self.hub.transport.describe(handle), e
            )
            return None
        except MalformedFrame as e:
            self.hub.stats_manager.inc("frames_bad")
            self.log.warning(
                "Malformed frame link_id=%s bytes=%s: %s",
                self.hub.transport.describe(handle),
                len(data),
                e,
            )
            return None
        except ValidationError as e:
            self.hub.stats_manager.inc("frames_bad")
            self.log.warning(
                "Invalid frame link_id=%s: %s", self.hub.transport.describe(handle), e
            )
            if state is ConnState.IDENTIFIED:
                self.hub.broadcast.notice(handle, f"invalid frame: {e}")
            return None

        if t == T_REGISTER:
            self._handle_register(handle, sess, frame)
            return None

        if state is not ConnState.IDENTIFIED:
            self.hub.stats_manager.inc("frames_ignored")
            self.log.debug(
                "Ignoring %s before REGISTER link_id=%s",
                t,
                self.hub.transport.describe(handle),
            )
            return None

        if t == T_CHAT:
            self._handle_chat(handle, frame)
            return None

        return self._handle_moderation(handle, t, frame)

    def _handle_register(self, handle: Any, sess: _Session, frame: dict) -> None:
        if sess.state is not ConnState.ANONYMOUS:
            self.log.debug(
                "Ignoring REGISTER on %s connection link_id=%s",
                sess.state.value,
                self.hub.transport.describe(handle),
            )
            return

        cfg = self.hub.config
        client_id = normalize_client_id(
            frame.get(F_CLIENT_ID), max_chars=cfg.client_id_max_chars
        )
        name = normalize_nick(frame.get(F_USERNAME), max_chars=cfg.nick_max_chars)
        if client_id is None or name is None:
            self.hub.stats_manager.inc("frames_bad")
            self.log.warning(
                "Invalid REGISTER link_id=%s: bad clientId or username",
                self.hub.transport.describe(handle),
            )
            return

        identity = self.hub.transport.remote_identity(handle)
        previous = None

        # Admission and registration happen in one critical section so a
        # concurrent BLOCK for the same client id either sees the entry and
        # evicts it, or lands first and rejects this REGISTER.
        with self.hub._state_lock:
            if self.sessions.get(handle) is not sess or sess.state is not ConnState.ANONYMOUS:
                return
            admission = self.hub.gate.admit(client_id)
            if admission.accepted:
                previous = self.hub.registry.register(client_id, name, handle, identity)
                sess.state = ConnState.IDENTIFIED
                if previous is not None:
                    self.mark_closed(previous)
            else:
                sess.state = ConnState.CLOSED

        if not admission.accepted:
            self.hub.stats_manager.inc("rejected")
            self.log.warning(
                "Blocked client tried to register client_id=%s name=%r link_id=%s",
                client_id,
                name,
                self.hub.transport.describe(handle),
            )
            self.hub.broadcast.notice(handle, N_DEVICE_BLOCKED)
            self.hub.transport.close(handle)
            return

        if previous is not None:
            self.hub.broadcast.notice(previous, N_SESSION_REPLACED)
            self.hub.transport.close(previous)

        self.hub.stats_manager.inc("joins")
        self.log.info(
            "Client registered name=%r client_id=%s verified=%s link_id=%s",
            name,
            client_id,
            identity is not None,
            self.hub.transport.describe(handle),
        )
        self.hub.broadcast.announce_listener_count()
        self.hub.broadcast.announce_join(name)

    def _entry_for(self, handle: Any, frame: dict) -> ConnectionEntry | None:
        """Registry entry for the sender, checked against the frame's clientId."""
        with self.hub._state_lock:
            entry = self.hub.registry.entry_for_handle(handle)
        if entry is None:
            return None
        claimed = normalize_client_id(
            frame.get(F_CLIENT_ID), max_chars=self.hub.config.client_id_max_chars
        )
        if claimed != entry.client_id:
            self.hub.stats_manager.inc("frames_bad")
            self.log.warning(
                "clientId mismatch link_id=%s registered=%s frame=%r",
                self.hub.transport.describe(handle),
                entry.client_id,
                frame.get(F_CLIENT_ID),
            )
            self.hub.broadcast.notice(handle, "invalid frame: clientId does not match registration")
            return None
        return entry

    def _handle_chat(self, handle: Any, frame: dict) -> None:
        entry = self._entry_for(handle, frame)
        if entry is None:
            return

        try:
            self.hub.gate.require_admitted(entry.client_id)
        except Blocked as e:
            self.hub.stats_manager.inc("rejected")
            self.log.info("Dropped chat: %s", e)
            self.hub.broadcast.notice(handle, N_CHAT_BLOCKED)
            return

        message = frame[F_MESSAGE]
        limit = int(self.hub.config.max_message_chars)
        if limit > 0 and len(message) > limit:
            self.hub.stats_manager.inc("frames_bad")
            self.hub.broadcast.notice(handle, f"invalid frame: message longer than {limit} characters")
            return

        echo = make_chat(entry.client_id, entry.display_name, message)
        size = len(encode(echo, self.hub.config.frame_encoding))
        mdu = self.hub.transport.max_payload(handle)
        if mdu is not None and size > mdu:
            self.hub.stats_manager.inc("frames_oversize")
            self.log.info(
                "Refused oversize chat client_id=%s bytes=%s mdu=%s",
                entry.client_id,
                size,
                mdu,
            )
            self.hub.broadcast.notice(handle, N_MESSAGE_TOO_LARGE)
            return

        self.hub.broadcast.broadcast_all(echo)
        self.hub.stats_manager.inc("chats")
        self.log.debug("CHAT %s: %s", entry.display_name, message)

    def _handle_moderation(self, handle: Any, t: str, frame: dict) -> Future | None:
        entry = self._entry_for(handle, frame)
        if entry is None:
            return None

        target = normalize_client_id(
            frame.get(F_TARGET), max_chars=self.hub.config.client_id_max_chars
        )
        if target is None:
            self.hub.stats_manager.inc("frames_bad")
            self.hub.broadcast.notice(handle, "invalid frame: bad targetClientId")
            return None

        return self.hub.submit_moderation(
            self._run_moderation, handle, entry, t, target, frame[F_USERNAME]
        )

    def _resolve_principal(
        self, entry: ConnectionEntry, username: str
    ) -> Principal | None:
        """Acting principal for a moderation command, resolved fresh each time.

        A verified transport identity bound at REGISTER takes precedence. The
        display-name path is only used when trust_display_names is enabled,
        and only for the name this connection registered with.
        """
        if entry.identity is not None:
            principal = self.hub.resolver.resolve_by_identity(entry.identity)
            if principal is not None:
                return principal

        if not self.hub.config.trust_display_names:
            self.log.warning(
                "Moderation from unverified principal client_id=%s name=%r",
                entry.client_id,
                entry.display_name,
            )
            return None

        if username.strip() != entry.display_name:
            self.log.warning(
                "Moderation username mismatch client_id=%s registered=%r frame=%r",
                entry.client_id,
                entry.display_name,
                username,
            )
            return None

        return self.hub.resolver.resolve_by_username(entry.display_name)

    def _run_moderation(
        self,
        handle: Any,
        entry: ConnectionEntry,
        t: str,
        target: str,
        username: str,
    ) -> ModerationResult | None:
        try:
            principal = self._resolve_principal(entry, username)
            if t == T_BLOCK:
                result = self.hub.gate.apply_block(principal, target)
            else:
                result = self.hub.gate.apply_unblock(principal, target)
        except Forbidden as e:
            self.log.warning(
                "Forbidden %s by client_id=%s target=%s: %s",
                t,
                entry.client_id,
                target,
                e,
            )
            self.hub.broadcast.notice(handle, N_FORBIDDEN)
            return None
        except PersistenceFailure as e:
            self.log.error(
                "Moderation %s failed by client_id=%s target=%s: %s",
                t,
                entry.client_id,
                target,
                e,
            )
            self.hub.broadcast.notice(handle, N_MODERATION_FAILED)
            return None
        except Exception:
            self.log.exception(
                "Moderation %s crashed by client_id=%s target=%s",
                t,
                entry.client_id,
                target,
            )
            self.hub.broadcast.notice(handle, N_MODERATION_FAILED)
            return None

        self.log.info(
            "%s target=%s by=%s result=%s",
            t.upper(),
            target,
            principal.id if principal is not None else "-",
            result.value,
        )
        if t == T_BLOCK:
            self.hub.broadcast.system_notice(N_USER_BLOCKED)
        elif result is ModerationResult.APPLIED:
            self.hub.broadcast.system_notice(N_USER_UNBLOCKED)
        else:
            self.hub.broadcast.notice(handle, f"{target} was not blocked")
        return result
