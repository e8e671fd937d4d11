"""Helix Router command-line interface.

Commands::

    helix-router start [--host H] [--port P]   - Run the HTTP router
    helix-router stats [--log-file F] [--json] - Aggregate the routing log
    helix-router config                        - Show resolved tiers and thresholds

All settings come from HELIX_* environment variables (see helix_router.config).
"""

from __future__ import annotations

import argparse
import json
import sys
import textwrap
from pathlib import Path

import uvicorn
from pydantic import ValidationError

from helix_router import __version__
from helix_router.config import Settings, get_settings
from helix_router.routing.providers import RouteTier
from helix_router.routing.stats import RoutingStats, format_stats, read_log_entries

# ------------------------------------------------------------------ #
# Formatting helpers
# ------------------------------------------------------------------ #

_RESET = "\033[0m"
_RED = "\033[31m"
_BOLD = "\033[1m"


def _err(msg: str) -> None:
    print(f"{_RED}[ERROR]{_RESET} {msg}", file=sys.stderr)


def _header(msg: str) -> None:
    print(f"\n{_BOLD}{msg}{_RESET}")


def _mask(secret: str) -> str:
    if not secret:
        return "(none)"
    if len(secret) <= 8:
        return "****"
    return f"{secret[:4]}...{secret[-4:]}"


# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #


def cmd_start(args: argparse.Namespace, settings: Settings) -> int:
    host = args.host or settings.host
    port = args.port or settings.port

    _header(f"Helix Router v{__version__}")
    print(f"  Listening on http://{host}:{port}")
    print(f"  Routing log: {settings.routing_log_path}")

    uvicorn.run(
        "helix_router.main:create_app",
        factory=True,
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
    )
    return 0


def cmd_stats(args: argparse.Namespace, settings: Settings) -> int:
    """Replay the routing log through RoutingStats and print the aggregate."""
    log_file = Path(args.log_file) if args.log_file else settings.routing_log_path

    if not log_file.exists():
        _err(f"No routing log at {log_file}")
        return 1

    stats = RoutingStats()
    for entry in read_log_entries(log_file):
        stats.record(entry)

    snapshot = stats.snapshot()
    if args.json:
        print(json.dumps(snapshot, indent=2))
    else:
        print(format_stats(snapshot))
    return 0


def cmd_config(args: argparse.Namespace, settings: Settings) -> int:  # noqa: ARG001
    _header("Providers")
    for tier in RouteTier:
        url = getattr(settings, f"{tier.value}_url")
        model = getattr(settings, f"{tier.value}_model")
        key = getattr(settings, f"{tier.value}_key").get_secret_value()
        print(f"  {tier.value.upper():<4} {model}")
        print(f"       url: {url}")
        print(f"       key: {_mask(key)}")

    _header("Routing")
    print(f"  PRO threshold: {settings.pro_threshold}")
    print(f"  MID threshold: {settings.mid_threshold}")

    _header("Cache")
    print(f"  enabled: {settings.cache_enabled}")
    print(f"  ttl:     {settings.cache_ttl_seconds:g}s")
    print(f"  entries: {settings.cache_max_entries}")

    _header("Telemetry")
    print(f"  enabled: {settings.telemetry_enabled}")
    print(f"  log:     {settings.routing_log_path}")
    return 0


# ------------------------------------------------------------------ #
# Argument parser
# ------------------------------------------------------------------ #


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser tree."""
    parser = argparse.ArgumentParser(
        prog="helix-router",
        description="Complexity-based router for OpenAI-compatible chat backends",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent(
            """\
            Examples:
              helix-router start --port 8403
              helix-router stats
              helix-router stats --json
              helix-router config
            """
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    start_parser = subparsers.add_parser("start", help="Start the router HTTP server")
    start_parser.add_argument("--host", default=None, help="Bind address (default: HELIX_HOST)")
    start_parser.add_argument("--port", type=int, default=None, help="Port (default: HELIX_PORT)")

    stats_parser = subparsers.add_parser("stats", help="Show statistics from the routing log")
    stats_parser.add_argument(
        "--log-file",
        default=None,
        help="Routing log to read (default: <HELIX_LOG_DIR>/routing.log)",
    )
    stats_parser.add_argument("--json", action="store_true", help="Print raw JSON")

    subparsers.add_parser("config", help="Show resolved provider and routing configuration")

    return parser


# ------------------------------------------------------------------ #
# Dispatch
# ------------------------------------------------------------------ #

_COMMANDS = {
    "start": cmd_start,
    "stats": cmd_stats,
    "config": cmd_config,
}


def main(argv: list[str] | None = None) -> int:
    """Entry point for the helix-router CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 0

    try:
        settings = get_settings()
    except ValidationError as exc:
        _err(f"Invalid configuration:\n{exc}")
        return 2

    return handler(args, settings)


if __name__ == "__main__":
    sys.exit(main())
