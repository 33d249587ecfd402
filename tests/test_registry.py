from lobbyd.registry import ConnectionRegistry


def test_register_and_lookup() -> None:
    reg = ConnectionRegistry()
    assert reg.register("c1", "alice", "h1") is None

    assert reg.count() == 1
    assert reg.resolve_by_handle("h1") == "c1"
    entry = reg.get("c1")
    assert entry.display_name == "alice"
    assert entry.identity is None


def test_reregister_same_handle_returns_none() -> None:
    reg = ConnectionRegistry()
    reg.register("c1", "alice", "h1")

    assert reg.register("c1", "alice2", "h1") is None
    assert reg.get("c1").display_name == "alice2"
    assert reg.count() == 1


def test_register_new_handle_returns_previous() -> None:
    reg = ConnectionRegistry()
    reg.register("c1", "alice", "h1")

    assert reg.register("c1", "alice", "h2") == "h1"
    assert reg.resolve_by_handle("h1") is None
    assert reg.resolve_by_handle("h2") == "c1"
    assert reg.get_stats()["indexed_by_handle"] == 1


def test_unregister_handle_ignores_stale_handles() -> None:
    reg = ConnectionRegistry()
    reg.register("c1", "alice", "h1")
    reg.register("c1", "alice", "h2")

    assert reg.unregister_handle("h1") is None
    assert reg.count() == 1
    assert reg.unregister_handle("h2") == ("c1", "alice")
    assert reg.count() == 0


def test_bind_identity() -> None:
    reg = ConnectionRegistry()
    reg.register("c1", "alice", "h1")

    assert reg.bind_identity("h1", "ab" * 16)
    assert not reg.bind_identity("h1", "ab" * 16)
    assert not reg.bind_identity("unknown", "ab" * 16)
    assert reg.get("c1").identity == "ab" * 16
    assert reg.get_stats()["verified"] == 1


def test_broadcast_targets_is_a_snapshot() -> None:
    reg = ConnectionRegistry()
    reg.register("c1", "alice", "h1")
    reg.register("c2", "bob", "h2")

    targets = reg.broadcast_targets()
    reg.unregister("c2")

    assert list(targets) == ["h1", "h2"]


def test_clear_all_returns_handles() -> None:
    reg = ConnectionRegistry()
    reg.register("c1", "alice", "h1")
    reg.register("c2", "bob", "h2")

    assert sorted(reg.clear_all()) == ["h1", "h2"]
    assert reg.count() == 0
    assert reg.resolve_by_handle("h1") is None
