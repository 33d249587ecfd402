"""Principal and capability resolution for moderation commands."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .errors import PersistenceFailure
from .util import parse_identity_hash


@dataclass(frozen=True)
class Principal:
    id: str
    display_name: str
    role: str | None = None
    capabilities: frozenset[str] = field(default_factory=frozenset)
    identities: frozenset[str] = field(default_factory=frozenset)


class PermissionResolver:
    """
    Resolves acting principals for privileged commands.

    Implementations must not cache across calls: role and permission edits
    take effect on the next command. The base class knows no principals.
    """

    def resolve_by_username(self, username: str) -> Principal | None:
        return None

    def resolve_by_identity(self, identity: str) -> Principal | None:
        return None

    def has_capability(self, principal: Principal | None, capability: str) -> bool:
        if principal is None:
            return False
        return capability in principal.capabilities


class TomlPermissionResolver(PermissionResolver):
    """
    Reads principals.toml on every lookup.

    Layout::

        [roles.moderator]
        capabilities = ["chat.send", "chat.moderate"]

        [principals.alice]
        role = "moderator"
        display_name = "alice"
        identities = ["0123abcd..."]
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self.log = logging.getLogger("lobbyd.permissions")

    def _load(self) -> tuple[dict[str, frozenset[str]], list[Principal]]:
        import tomllib

        if not os.path.exists(self.path):
            self.log.warning("Principals file not found: %s", self.path)
            return {}, []

        try:
            with open(self.path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise PersistenceFailure(f"failed to read principals: {e}") from e

        roles: dict[str, frozenset[str]] = {}
        raw_roles = data.get("roles")
        if isinstance(raw_roles, dict):
            for name, cfg in raw_roles.items():
                caps = cfg.get("capabilities") if isinstance(cfg, dict) else None
                if isinstance(caps, list):
                    roles[str(name)] = frozenset(
                        str(c).strip() for c in caps if str(c).strip()
                    )

        principals: list[Principal] = []
        raw_principals = data.get("principals")
        if isinstance(raw_principals, dict):
            for username, cfg in raw_principals.items():
                if not isinstance(cfg, dict):
                    continue
                principals.append(self._build(str(username), cfg, roles))

        return roles, principals

    def _build(
        self, username: str, cfg: dict, roles: dict[str, frozenset[str]]
    ) -> Principal:
        role = cfg.get("role")
        role = str(role) if isinstance(role, str) and role.strip() else None

        caps = set(roles.get(role, frozenset())) if role else set()
        extra = cfg.get("capabilities")
        if isinstance(extra, list):
            caps.update(str(c).strip() for c in extra if str(c).strip())

        if cfg.get("active", True) is False:
            caps = set()

        identities: set[str] = set()
        raw_ids = cfg.get("identities")
        if isinstance(raw_ids, list):
            for item in raw_ids:
                try:
                    identities.add(parse_identity_hash(item))
                except ValueError:
                    self.log.warning(
                        "Ignoring bad identity for principal %s: %r", username, item
                    )

        display_name = cfg.get("display_name")
        if not isinstance(display_name, str) or not display_name.strip():
            display_name = username

        return Principal(
            id=username,
            display_name=display_name,
            role=role,
            capabilities=frozenset(caps),
            identities=frozenset(identities),
        )

    def resolve_by_username(self, username: str) -> Principal | None:
        key = str(username).strip().lower()
        _, principals = self._load()
        for p in principals:
            if p.id.lower() == key or p.display_name.lower() == key:
                return p
        return None

    def resolve_by_identity(self, identity: str) -> Principal | None:
        try:
            h = parse_identity_hash(identity)
        except ValueError:
            return None
        _, principals = self._load()
        for p in principals:
            if h in p.identities:
                return p
        return None
