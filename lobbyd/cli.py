from __future__ import annotations

import argparse
import os
import sys
import time
from dataclasses import replace
from pathlib import Path

import RNS

from .config import ConfigManager, HubRuntimeConfig
from .constants import DEFAULT_ROLES
from .errors import PersistenceFailure
from .logging_config import configure_logging
from .moderation import ModerationResult
from .paths import (
    default_block_store_path,
    default_config_path,
    default_identity_path,
    default_principals_path,
    ensure_private_dir,
)
from .service import HubService
from .store import BlockRecord


def _write_private(path: str, content: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        ensure_private_dir(Path(parent))
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    try:
        os.chmod(path, 0o600)
    except Exception:
        pass


def _write_default_config(
    config_path: str, identity_path: str, block_store_path: str, principals_path: str
) -> None:
    content = f"""# lobbyd configuration (TOML)
#
# This file was created on first run.
# Edit it, then start lobbyd again.

[hub]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where lobbyd stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# Durable block list. Leave empty to keep blocks in memory only.
block_store_path = {block_store_path!r}

# Roles, capabilities and moderator identities.
principals_path = {principals_path!r}

# Destination name to host the hub on.
dest_name = "lobby.hub"

# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

hub_name = "lobby"

# Frame encoding on the wire: "cbor" or "json".
frame_encoding = "cbor"

# Limits.
#
# A chat echo must fit one Reticulum packet (link MDU, about 431 bytes) once
# the client id, username and timestamp are added. Longer messages are
# refused with a notice.
nick_max_chars = 32
client_id_max_chars = 128
max_message_chars = 280
rate_limit_msgs_per_minute = 240

# Moderation.
#
# Moderators are matched by the verified Reticulum identity of their link.
# trust_display_names = true additionally lets an unverified connection act
# as the principal named by its registered display name. Only enable this on
# closed networks.
trust_display_names = false

# Seconds to wait for the block store before reporting a failure.
store_timeout_s = 5.0

# Inactive block records older than this are deleted.
block_retention_s = {30 * 24 * 3600}
block_prune_interval_s = 3600.0

# Reload the block list from disk periodically (0 disables), so edits made
# with `lobbyd --unblock` reach a running hub.
block_resync_interval_s = 300.0

[logging]

# Log level for lobbyd itself.
level = "INFO"

# Log level for Reticulum/RNS Python logging (if used by your install).
rns_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""

# Per-logger levels, e.g. to trace frame routing only.
# [logging.levels]
# "lobbyd.router" = "DEBUG"
"""
    _write_private(config_path, content)


def _default_principals() -> str:
    lines = [
        "# lobbyd principals (TOML)",
        "#",
        "# Roles map to capability lists. Principals are keyed by username and",
        "# carry a role plus the hex Reticulum identity hashes they connect with.",
        "# Changes take effect on the next moderation command.",
        "#",
        "# Example",
        "# -------",
        "#",
        "# [principals.alice]",
        '# role = "moderator"',
        '# display_name = "alice"',
        '# identities = ["0123abcd..."]',
        "",
    ]
    for role, caps in DEFAULT_ROLES.items():
        lines.append(f"[roles.{role}]")
        lines.append("capabilities = [" + ", ".join(f'"{c}"' for c in caps) + "]")
        lines.append("")
    lines.append("[principals]")
    lines.append("")
    return "\n".join(lines)


def _ensure_first_run_files(
    config_path: str,
    identity_path: str,
    block_store_path: str,
    principals_path: str,
) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(
            config_path, identity_path, block_store_path, principals_path
        )
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except Exception:
            pass
        created_any = True

    if principals_path and not os.path.exists(principals_path):
        _write_private(principals_path, _default_principals())
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="lobbyd", description="Run a single-room lobby chat hub"
    )

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument(
        "--block-store",
        default=None,
        help="Path to the block list TOML (default comes from config)",
    )
    p.add_argument(
        "--principals",
        default=None,
        help="Path to the principals TOML (default comes from config)",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: lobby.hub)"
    )
    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )
    p.add_argument("--hub-name", default=None, help="Hub name announced to peers")
    p.add_argument(
        "--frame-encoding",
        choices=("cbor", "json"),
        default=None,
        help="Frame encoding on the wire",
    )
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-connection frame rate limit",
    )
    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    admin = p.add_argument_group(
        "administration", "Operate on the block list and exit without starting the hub"
    )
    admin.add_argument(
        "--list-blocks", action="store_true", help="List active blocks"
    )
    admin.add_argument(
        "--block-history",
        type=int,
        metavar="N",
        default=None,
        help="Show the N most recent block records",
    )
    admin.add_argument(
        "--unblock", metavar="CLIENT_ID", default=None, help="Force-unblock a client id"
    )
    admin.add_argument(
        "--actor", default=None, help="Actor recorded for --unblock (default: $USER)"
    )
    admin.add_argument(
        "--prune-blocks",
        action="store_true",
        help="Delete inactive block records older than block_retention_s",
    )

    return p


def _fmt_ts(ts: float | None) -> str:
    if not ts:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(float(ts)))


def _fmt_record(r: BlockRecord) -> str:
    state = "active" if r.active else "inactive"
    return (
        f"{r.client_id}\t{state}\tby={r.blocked_by or '-'}\tat={_fmt_ts(r.blocked_at)}"
        f"\tunblocked={_fmt_ts(r.unblocked_at)}"
        f"\tunblocked_by={r.unblocked_by or '-'}\treason={r.reason or '-'}"
    )


def _run_admin(args: argparse.Namespace, cfg: HubRuntimeConfig) -> int:
    svc = HubService(cfg)
    gate = svc.gate
    try:
        if args.list_blocks:
            for r in gate.list_active_records():
                print(_fmt_record(r))
        if args.block_history is not None:
            for r in gate.history(args.block_history):
                print(_fmt_record(r))
        if args.unblock is not None:
            actor = args.actor or os.environ.get("USER") or "admin"
            result = svc.force_unblock(args.unblock, actor)
            if result is ModerationResult.APPLIED:
                print(f"unblocked {args.unblock}")
            else:
                print(f"{args.unblock} was not blocked")
        if args.prune_blocks:
            removed = gate.prune_inactive(float(cfg.block_retention_s))
            print(f"pruned {removed} inactive record(s)")
    except PersistenceFailure as e:
        print(f"block store error: {e}", file=sys.stderr)
        return 1
    return 0


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)
    block_store_path = str(args.block_store or default_block_store_path())
    principals_path = str(args.principals or default_principals_path())

    if _ensure_first_run_files(
        config_path, identity_path, block_store_path, principals_path
    ):
        print(
            "Created default lobbyd files. Edit the configuration before starting:\n"
            f"- Config:     {config_path}\n"
            f"- Identity:   {identity_path}\n"
            f"- Principals: {principals_path}\n"
            "\nThen re-run lobbyd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = HubRuntimeConfig(
        config_path=config_path,
        configdir=args.configdir,
        identity_path=identity_path,
    )
    cfg = ConfigManager(cfg).load(config_path)

    if args.block_store is not None:
        cfg = replace(cfg, block_store_path=str(args.block_store) or None)
    if args.principals is not None:
        cfg = replace(cfg, principals_path=str(args.principals) or None)
    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)

    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))

    if args.hub_name is not None:
        cfg = replace(cfg, hub_name=args.hub_name)
    if args.frame_encoding is not None:
        cfg = replace(cfg, frame_encoding=args.frame_encoding)
    if args.rate_limit_msgs_per_minute is not None:
        cfg = replace(
            cfg, rate_limit_msgs_per_minute=int(args.rate_limit_msgs_per_minute)
        )

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    if (
        args.list_blocks
        or args.block_history is not None
        or args.unblock is not None
        or args.prune_blocks
    ):
        raise SystemExit(_run_admin(args, cfg))

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
