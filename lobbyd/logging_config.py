from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .config import HubRuntimeConfig

_FALLBACK_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _parse_level(value: Any, default: int) -> int:
    """Accept a level name ("debug", "WARN"), a number, or a numeric string."""
    if isinstance(value, int):
        return value
    text = str(value or "").strip().upper()
    if not text:
        return default
    if text.isdigit():
        return int(text)
    if text == "WARN":
        return logging.WARNING
    level = logging.getLevelName(text)
    return level if isinstance(level, int) else default


def _blank_to_none(value: Any) -> str | None:
    if value is None or not str(value).strip():
        return None
    return str(value)


def _file_handler(path: str) -> logging.Handler:
    p = Path(os.path.expanduser(path))
    p.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(p, encoding="utf-8")
    try:
        os.chmod(p, 0o600)
    except OSError:
        pass
    return handler


def configure_logging(
    cfg: HubRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Install lobbyd's root handlers from config.

    ``override_file`` wins over ``cfg.log_file`` when given; an empty string
    disables file logging. Calling again replaces the previous handlers.
    """
    if override_file is not None:
        log_file = _blank_to_none(override_file)
    else:
        log_file = _blank_to_none(cfg.log_file)

    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())
    if log_file:
        handlers.append(_file_handler(log_file))

    formatter = logging.Formatter(
        fmt=str(cfg.log_format).strip() or _FALLBACK_FORMAT,
        datefmt=_blank_to_none(cfg.log_datefmt),
    )

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)
    root.setLevel(_parse_level(override_level or cfg.log_level, logging.INFO))

    logging.getLogger("RNS").setLevel(_parse_level(cfg.log_rns_level, logging.WARNING))

    # [logging.levels] "lobbyd.router" = "DEBUG"
    for name, level in (cfg.log_levels or {}).items():
        logging.getLogger(str(name)).setLevel(_parse_level(level, logging.NOTSET))

    logging.captureWarnings(True)
