"""CLI entrypoint for pairflow."""

from __future__ import annotations

import argparse
from collections.abc import Sequence
from importlib import metadata
import json
import logging
from pathlib import Path
import sys

from .config import load_config
from .events.codec import decode_event, encode_session
from .exceptions import FlowChatError
from .logging_utils import configure_logging
from .session_manager import SessionManager

LOGGER = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pairflow",
        description="pairflow - conversation core for AI pair-programming sessions",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a config.toml (defaults to ~/.config/pairflow/config.toml)",
    )
    subcommands = parser.add_subparsers(dest="command")
    replay = subcommands.add_parser(
        "replay", help="Apply a recorded JSON Lines event log and print the sessions"
    )
    replay.add_argument("events", type=Path, help="Event log, one JSON object per line")
    return parser


def replay_events(path: Path) -> tuple[SessionManager, int, int]:
    """Apply every event in ``path`` to a fresh manager.

    Sessions named by events are created on first sight. Returns the manager
    with the number of applied and skipped lines.
    """
    manager = SessionManager()
    applied = skipped = 0
    with path.open(encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                event = decode_event(json.loads(line))
                if not manager.has_session(event.session_id):
                    manager.create_session(event.session_id, activate=False)
                manager.apply_event(event)
            except (json.JSONDecodeError, FlowChatError) as exc:
                skipped += 1
                LOGGER.warning(
                    "replay.line_skipped",
                    extra={
                        "event": "replay.line_skipped",
                        "line": line_number,
                        "reason": str(exc),
                    },
                )
                continue
            applied += 1
    return manager, applied, skipped


def main(argv: Sequence[str] | None = None) -> int:
    """Handle CLI flags and run the requested subcommand."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("pairflow")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"pairflow {version}")
        return 0

    if args.command != "replay":
        parser.print_help()
        return 2

    config = load_config(args.config)
    configure_logging(config["logging"])

    if not args.events.exists():
        print(f"pairflow: no such event log: {args.events}", file=sys.stderr)
        return 1

    manager, applied, skipped = replay_events(args.events)
    output = {
        "applied": applied,
        "skipped": skipped,
        "sessions": [encode_session(session) for session in manager.list_sessions()],
    }
    print(json.dumps(output, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
