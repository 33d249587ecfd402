from __future__ import annotations

import os
from pathlib import Path


def default_lobbyd_dir() -> Path:
    override = os.environ.get("LOBBYD_HOME")
    if override:
        return Path(override)
    return Path.home() / ".lobbyd"


def default_config_path() -> Path:
    return default_lobbyd_dir() / "lobbyd.toml"


def default_identity_path() -> Path:
    return default_lobbyd_dir() / "hub_identity"


def default_block_store_path() -> Path:
    return default_lobbyd_dir() / "blocks.toml"


def default_principals_path() -> Path:
    return default_lobbyd_dir() / "principals.toml"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except Exception:
        pass
