from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace

from .codec import ENCODINGS
from .util import expand_path


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    block_store_path: str | None = None
    principals_path: str | None = None
    dest_name: str = "lobby.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "lobby"
    frame_encoding: str = "cbor"
    nick_max_chars: int = 32
    client_id_max_chars: int = 128
    max_message_chars: int = 280
    rate_limit_msgs_per_minute: int = 240
    trust_display_names: bool = False
    store_timeout_s: float = 5.0
    block_retention_s: float = 30 * 24 * 3600
    block_prune_interval_s: float = 3600.0
    block_resync_interval_s: float = 300.0
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None
    log_levels: dict[str, str] = field(default_factory=dict)


# [logging] table key -> HubRuntimeConfig field
_LOGGING_KEYS = {
    "level": "log_level",
    "rns_level": "log_rns_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
    "levels": "log_levels",
}

# Fields where an empty string in the file means "unset".
_OPTIONAL_TEXT = (
    "configdir",
    "block_store_path",
    "principals_path",
    "log_file",
    "log_datefmt",
)


class ConfigManager:
    """Loads HubRuntimeConfig from TOML and resolves writable paths."""

    def __init__(self, config: HubRuntimeConfig) -> None:
        self.config = config

    def load_toml(self, path: str) -> dict:
        import tomllib

        with open(expand_path(path), "rb") as f:
            data = tomllib.load(f)
        return data if isinstance(data, dict) else {}

    def apply_config_data(
        self, base: HubRuntimeConfig, data: dict
    ) -> HubRuntimeConfig:
        hub = data.get("hub") if isinstance(data, dict) else None
        if isinstance(hub, dict):
            data = {**data, **hub}

        log_table = data.get("logging") if isinstance(data, dict) else None
        if isinstance(log_table, dict):
            mapped: dict[str, object] = {
                attr: log_table.get(key)
                for key, attr in _LOGGING_KEYS.items()
                if key in log_table
            }
            data = {**data, **mapped}

        allowed = set(asdict(base).keys())
        # This identifies where to load from; do not let the file override it.
        allowed.discard("config_path")

        updates = {k: v for k, v in data.items() if k in allowed}

        if "announce" in data and "announce_on_start" not in updates:
            updates["announce_on_start"] = bool(data["announce"])
        for key in _OPTIONAL_TEXT:
            if key in updates and updates[key] == "":
                updates[key] = None

        if "frame_encoding" in updates:
            enc = str(updates["frame_encoding"]).strip().lower()
            if enc not in ENCODINGS:
                raise ValueError(f"unsupported frame_encoding {enc!r}")
            updates["frame_encoding"] = enc

        if "log_levels" in updates:
            levels = updates["log_levels"]
            if not isinstance(levels, dict):
                raise ValueError("[logging.levels] must be a table")
            updates["log_levels"] = {str(k): str(v) for k, v in levels.items()}

        return replace(base, **updates) if updates else base

    def load(self, path: str) -> HubRuntimeConfig:
        self.config = self.apply_config_data(self.config, self.load_toml(path))
        return self.config

