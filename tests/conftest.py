from __future__ import annotations

import logging

import pytest

from lobbyd.codec import decode, encode
from lobbyd.config import HubRuntimeConfig
from lobbyd.permissions import TomlPermissionResolver
from lobbyd.service import HubService
from lobbyd.store import MemoryBlockStore
from lobbyd.transport import SendResult

ALICE_IDENTITY = "aa" * 16
CAROL_IDENTITY = "cc" * 16

PRINCIPALS = f"""
[roles.user]
capabilities = ["chat.send"]

[roles.moderator]
capabilities = ["chat.send", "chat.moderate"]

[principals.alice]
role = "moderator"
identities = ["{ALICE_IDENTITY}"]

[principals.carol]
role = "user"
identities = ["{CAROL_IDENTITY}"]
"""


class FakeLink:
    """Stands in for an RNS.Link: records payloads and teardown."""

    def __init__(
        self, name: str, identity: str | None = None, mdu: int | None = None
    ) -> None:
        self.name = name
        self.identity = identity
        self.MDU = mdu
        self.sent: list[bytes] = []
        self.closed = False
        self.fail = False

    def frames(self) -> list[dict]:
        return [decode(p) for p in self.sent]

    def teardown(self) -> None:
        self.closed = True

    def get_remote_identity(self):
        return None

    def messages(self) -> list[str]:
        return [f["message"] for f in self.frames() if f.get("type") == "system"]

    def counts(self) -> list[int]:
        return [f["count"] for f in self.frames() if f.get("type") == "listenerCount"]

    def __repr__(self) -> str:
        return f"FakeLink({self.name!r})"


class FakeTransport:
    def max_payload(self, link: FakeLink) -> int | None:
        return link.MDU

    def send(self, link: FakeLink, payload: bytes) -> SendResult:
        if link.fail or link.closed:
            return SendResult.FAILED
        if link.MDU is not None and len(payload) > link.MDU:
            return SendResult.TOO_LARGE
        link.sent.append(payload)
        return SendResult.SENT

    def close(self, link: FakeLink) -> None:
        link.closed = True

    def remote_identity(self, link: FakeLink) -> str | None:
        return link.identity

    def describe(self, link: FakeLink) -> str:
        return link.name


@pytest.fixture
def principals_path(tmp_path):
    p = tmp_path / "principals.toml"
    p.write_text(PRINCIPALS, encoding="utf-8")
    return p


@pytest.fixture
def make_hub(principals_path):
    hubs: list[HubService] = []

    def _make(store=None, transport=None, **overrides) -> HubService:
        cfg = HubRuntimeConfig(**overrides)
        hub = HubService(
            cfg,
            store=store if store is not None else MemoryBlockStore(),
            resolver=TomlPermissionResolver(str(principals_path)),
            transport=transport if transport is not None else FakeTransport(),
        )
        hubs.append(hub)
        return hub

    yield _make

    for hub in hubs:
        hub.stop()


@pytest.fixture
def hub(make_hub) -> HubService:
    return make_hub()


def send(hub: HubService, link: FakeLink, frame: dict):
    return hub.router.route_frame(link, encode(frame))


def connect(
    hub: HubService,
    name: str,
    client_id: str | None = None,
    identity: str | None = None,
    mdu: int | None = None,
) -> FakeLink:
    link = FakeLink(name, identity, mdu)
    hub.router.on_open(link)
    send(
        hub,
        link,
        {"type": "register", "clientId": client_id or f"c-{name}", "username": name},
    )
    return link


@pytest.fixture
def restore_logging():
    """Put the root logger back after a test that calls configure_logging."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)
    logging.getLogger("lobbyd.router").setLevel(logging.NOTSET)
