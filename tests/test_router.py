from conftest import ALICE_IDENTITY, CAROL_IDENTITY, FakeLink, connect, send

from lobbyd.constants import (
    N_BLOCKED_BY_MODERATOR,
    N_CHAT_BLOCKED,
    N_DEVICE_BLOCKED,
    N_FORBIDDEN,
    N_MODERATION_FAILED,
    N_RATE_LIMITED,
    N_SESSION_REPLACED,
    N_USER_BLOCKED,
    N_USER_UNBLOCKED,
)
from lobbyd.errors import PersistenceFailure
from lobbyd.moderation import ModerationResult
from lobbyd.router import ConnState
from lobbyd.store import MemoryBlockStore


def _block(hub, link, target, client_id="c-alice", username="alice"):
    return send(
        hub,
        link,
        {
            "type": "block",
            "clientId": client_id,
            "targetClientId": target,
            "username": username,
        },
    )


def _unblock(hub, link, target, client_id="c-alice", username="alice"):
    return send(
        hub,
        link,
        {
            "type": "unblock",
            "clientId": client_id,
            "targetClientId": target,
            "username": username,
        },
    )


def test_register_sends_count_before_join(hub) -> None:
    alice = connect(hub, "alice", identity=ALICE_IDENTITY)

    frames = alice.frames()
    assert [f["type"] for f in frames] == ["listenerCount", "system"]
    assert frames[0]["count"] == 1
    assert frames[1]["message"] == "alice joined the chat"
    assert frames[1]["timestamp"].endswith("Z")
    assert hub.router.state_of(alice) is ConnState.IDENTIFIED


def test_second_client_is_announced_to_everyone(hub) -> None:
    alice = connect(hub, "alice", identity=ALICE_IDENTITY)
    bob = connect(hub, "bob")

    assert alice.counts() == [1, 2]
    assert alice.messages()[-1] == "bob joined the chat"
    assert bob.counts() == [2]
    assert bob.messages() == ["bob joined the chat"]
    assert hub.listener_stats()["connected_clients"] == 2


def test_chat_is_broadcast_with_registered_identity(hub) -> None:
    alice = connect(hub, "alice", identity=ALICE_IDENTITY)
    bob = connect(hub, "bob")

    send(hub, bob, {"type": "chat", "clientId": "c-bob", "username": "mallory", "message": "hi"})

    for link in (alice, bob):
        chat = [f for f in link.frames() if f["type"] == "chat"]
        assert len(chat) == 1
        assert chat[0]["clientId"] == "c-bob"
        assert chat[0]["username"] == "bob"
        assert chat[0]["message"] == "hi"
    assert hub.stats_manager.get("chats") == 1


def test_chat_with_foreign_client_id_is_refused(hub) -> None:
    alice = connect(hub, "alice", identity=ALICE_IDENTITY)
    bob = connect(hub, "bob")

    send(hub, bob, {"type": "chat", "clientId": "c-alice", "username": "bob", "message": "hi"})

    assert not [f for f in alice.frames() if f["type"] == "chat"]
    assert "clientId does not match" in bob.messages()[-1]


def test_chat_client_id_is_normalised_like_register(hub) -> None:
    alice = connect(hub, "alice", client_id=" c1 ")

    send(hub, alice, {"type": "chat", "clientId": " c1 ", "username": "alice", "message": "hi"})

    [chat] = [f for f in alice.frames() if f["type"] == "chat"]
    assert chat["clientId"] == "c1"
    assert hub.registry.get("c1") is not None


def test_frames_before_register_are_ignored(hub) -> None:
    alice = connect(hub, "alice", identity=ALICE_IDENTITY)
    anon = FakeLink("anon")
    hub.router.on_open(anon)
    before = len(alice.sent)

    send(hub, anon, {"type": "chat", "clientId": "x", "username": "x", "message": "hi"})
    assert _block(hub, anon, "c-alice", client_id="x", username="x") is None

    assert len(alice.sent) == before
    assert anon.sent == []
    assert hub.stats_manager.get("frames_ignored") == 2
    assert not hub.gate.is_blocked("c-alice")


def test_malformed_and_unknown_frames_are_dropped(hub) -> None:
    alice = connect(hub, "alice", identity=ALICE_IDENTITY)
    before = len(alice.sent)

    hub.router.route_frame(alice, b"\xff\xff\xff")
    send(hub, alice, ["not", "a", "map"])
    send(hub, alice, {"type": "ping"})

    assert len(alice.sent) == before
    assert hub.stats_manager.get("frames_bad") == 2
    assert hub.stats_manager.get("frames_unknown") == 1
    assert hub.router.state_of(alice) is ConnState.IDENTIFIED


def test_missing_field_gets_notice_once_identified(hub) -> None:
    alice = connect(hub, "alice", identity=ALICE_IDENTITY)

    send(hub, alice, {"type": "chat", "clientId": "c-alice", "username": "alice"})

    assert alice.messages()[-1].startswith("invalid frame:")


def test_invalid_register_leaves_connection_anonymous(hub) -> None:
    link = FakeLink("bad")
    hub.router.on_open(link)

    send(hub, link, {"type": "register", "clientId": "has space", "username": "bob"})

    assert hub.router.state_of(link) is ConnState.ANONYMOUS
    assert hub.registry.count() == 0


def test_duplicate_register_replaces_old_connection(hub) -> None:
    old = connect(hub, "bob")
    new = connect(hub, "bob")

    assert old.closed
    assert N_SESSION_REPLACED in old.messages()
    assert not new.closed
    assert hub.registry.count() == 1
    assert hub.registry.get("c-bob").handle is new

    # The stale link's close callback must not announce a departure.
    sent = len(new.sent)
    hub.router.on_close(old)
    assert len(new.sent) == sent
    assert hub.registry.count() == 1


def test_second_register_on_same_connection_is_ignored(hub) -> None:
    bob = connect(hub, "bob")

    send(hub, bob, {"type": "register", "clientId": "c-other", "username": "other"})

    assert hub.registry.resolve_by_handle(bob) == "c-bob"
    assert hub.registry.get("c-other") is None


def test_close_announces_count_then_leave(hub) -> None:
    alice = connect(hub, "alice", identity=ALICE_IDENTITY)
    bob = connect(hub, "bob")
    before = len(alice.frames())

    hub.router.on_close(bob)

    tail = alice.frames()[before:]
    assert [f["type"] for f in tail] == ["listenerCount", "system"]
    assert tail[0]["count"] == 1
    assert tail[1]["message"] == "bob left the chat"
    assert hub.stats_manager.get("parts") == 1


def test_moderator_blocks_and_unblocks_connected_client(hub) -> None:
    alice = connect(hub, "alice", identity=ALICE_IDENTITY)
    bob = connect(hub, "bob")

    fut = _block(hub, alice, "c-bob")
    assert fut.result(timeout=5) is ModerationResult.APPLIED

    assert bob.closed
    assert bob.messages()[-1] == N_BLOCKED_BY_MODERATOR
    assert hub.router.state_of(bob) is ConnState.CLOSED
    assert hub.registry.count() == 1
    assert hub.gate.is_blocked("c-bob")
    assert alice.counts()[-1] == 1
    assert alice.messages()[-1] == N_USER_BLOCKED

    # The transport reports the close later; no second departure is announced.
    sent = len(alice.sent)
    hub.router.on_close(bob)
    assert len(alice.sent) == sent

    # Reconnecting with the same client id is refused.
    bob2 = connect(hub, "bob")
    assert bob2.closed
    assert bob2.messages() == [N_DEVICE_BLOCKED]
    assert hub.registry.count() == 1
    assert hub.stats_manager.get("rejected") == 1

    fut = _unblock(hub, alice, "c-bob")
    assert fut.result(timeout=5) is ModerationResult.APPLIED
    assert alice.messages()[-1] == N_USER_UNBLOCKED
    assert not hub.gate.is_blocked("c-bob")

    fut = _unblock(hub, alice, "c-bob")
    assert fut.result(timeout=5) is ModerationResult.NOOP
    assert alice.messages()[-1] == "c-bob was not blocked"

    bob3 = connect(hub, "bob")
    assert not bob3.closed
    assert hub.registry.count() == 2


def test_blocked_client_cannot_chat_if_still_routed(hub) -> None:
    alice = connect(hub, "alice", identity=ALICE_IDENTITY)
    bob = connect(hub, "bob")

    # Simulate a block that landed without an eviction, as after a resync
    # race: the admission check on CHAT still refuses the message.
    with hub._state_lock:
        hub.gate._active.add("c-bob")

    send(hub, bob, {"type": "chat", "clientId": "c-bob", "username": "bob", "message": "spam"})

    assert not [f for f in alice.frames() if f["type"] == "chat"]
    assert bob.messages()[-1] == N_CHAT_BLOCKED


def test_block_of_offline_client_rejects_later_register(hub) -> None:
    alice = connect(hub, "alice", identity=ALICE_IDENTITY)

    assert _block(hub, alice, "c-ghost").result(timeout=5) is ModerationResult.APPLIED
    assert hub.stats_manager.get("evictions") == 0

    ghost = connect(hub, "ghost")
    assert ghost.closed
    assert ghost.messages() == [N_DEVICE_BLOCKED]


def test_block_without_capability_is_forbidden(hub) -> None:
    alice = connect(hub, "alice", identity=ALICE_IDENTITY)
    carol = connect(hub, "carol", identity=CAROL_IDENTITY)

    fut = _block(hub, carol, "c-alice", client_id="c-carol", username="carol")

    assert fut.result(timeout=5) is None
    assert carol.messages()[-1] == N_FORBIDDEN
    assert not alice.closed
    assert not hub.gate.is_blocked("c-alice")
    assert hub.stats_manager.get("forbidden") == 1


def test_claimed_username_is_not_trusted_by_default(hub) -> None:
    alice = connect(hub, "alice", identity=ALICE_IDENTITY)
    # Registers as "alice" but has no verified identity.
    impostor = connect(hub, "alice", client_id="c-impostor")

    fut = _block(hub, impostor, "c-alice", client_id="c-impostor")

    assert fut.result(timeout=5) is None
    assert impostor.messages()[-1] == N_FORBIDDEN
    assert not alice.closed


def test_display_name_path_when_trusted(make_hub) -> None:
    hub = make_hub(trust_display_names=True)
    alice = connect(hub, "alice")
    bob = connect(hub, "bob")

    # The frame username must match the registered display name.
    fut = _block(hub, alice, "c-bob", username="someone-else")
    assert fut.result(timeout=5) is None
    assert alice.messages()[-1] == N_FORBIDDEN

    fut = _block(hub, alice, "c-bob")
    assert fut.result(timeout=5) is ModerationResult.APPLIED
    assert bob.closed


def test_identity_bound_after_register_enables_moderation(hub) -> None:
    class _Ident:
        hash = bytes.fromhex(ALICE_IDENTITY)

    alice = connect(hub, "alice")
    bob = connect(hub, "bob")

    hub._on_remote_identified(alice, _Ident())
    assert hub.registry.get("c-alice").identity == ALICE_IDENTITY

    assert _block(hub, alice, "c-bob").result(timeout=5) is ModerationResult.APPLIED
    assert bob.closed


def test_store_failure_leaves_state_unchanged(make_hub) -> None:
    class FailingStore(MemoryBlockStore):
        def add_block(self, client_id, actor_id, reason=None):
            raise PersistenceFailure("disk full")

    hub = make_hub(store=FailingStore())
    alice = connect(hub, "alice", identity=ALICE_IDENTITY)
    bob = connect(hub, "bob")

    assert _block(hub, alice, "c-bob").result(timeout=5) is None

    assert alice.messages()[-1] == N_MODERATION_FAILED
    assert not bob.closed
    assert not hub.gate.is_blocked("c-bob")
    assert hub.registry.count() == 2


def test_failed_peer_is_evicted_after_fanout(hub) -> None:
    alice = connect(hub, "alice", identity=ALICE_IDENTITY)
    bob = connect(hub, "bob")
    carol = connect(hub, "carol", identity=CAROL_IDENTITY)
    bob.fail = True

    send(hub, alice, {"type": "chat", "clientId": "c-alice", "username": "alice", "message": "hi"})

    # carol comes after bob in the fan-out and still gets the message.
    assert [f["message"] for f in carol.frames() if f["type"] == "chat"] == ["hi"]
    assert bob.closed
    assert hub.registry.get("c-bob") is None
    assert alice.counts()[-1] == 2
    assert alice.messages()[-1] == "bob left the chat"
    assert hub.stats_manager.get("evictions") == 1


def test_rate_limit_notifies_identified_sender(make_hub) -> None:
    hub = make_hub(rate_limit_msgs_per_minute=2)
    alice = connect(hub, "alice", identity=ALICE_IDENTITY)

    chat = {"type": "chat", "clientId": "c-alice", "username": "alice", "message": "hi"}
    send(hub, alice, chat)
    send(hub, alice, chat)

    assert len([f for f in alice.frames() if f["type"] == "chat"]) == 1
    assert alice.messages()[-1] == N_RATE_LIMITED
    assert hub.stats_manager.get("rate_limited") == 1


def test_long_message_is_refused(make_hub) -> None:
    hub = make_hub(max_message_chars=5)
    alice = connect(hub, "alice", identity=ALICE_IDENTITY)

    send(hub, alice, {"type": "chat", "clientId": "c-alice", "username": "alice", "message": "x" * 6})

    assert not [f for f in alice.frames() if f["type"] == "chat"]
    assert "longer than 5" in alice.messages()[-1]


def test_frames_after_close_are_ignored(hub) -> None:
    alice = connect(hub, "alice", identity=ALICE_IDENTITY)
    hub.router.on_close(alice)

    assert send(hub, alice, {"type": "chat", "clientId": "c-alice", "username": "alice", "message": "hi"}) is None
    assert hub.stats_manager.get("frames_in") == 1
