"""CLI entry point for binsql."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

from binsql.cli.formatter import FORMATS
from binsql.config.defaults import VERSION


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="binsql",
        description="SQL queries over a binary-analysis database",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("--config", default=None, help="Config file path (default: ./binsql.yaml if present)")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")

    sub = parser.add_subparsers(dest="command", help="Available commands")

    # init
    init_p = sub.add_parser("init", help="Write a binsql.yaml config file")
    init_p.add_argument("--force", action="store_true", help="Overwrite an existing file")

    # open
    open_p = sub.add_parser("open", help="Open a database and query it")
    open_p.add_argument("database", help="Analysis database (snapshot file)")
    open_p.add_argument("-c", dest="commands", action="append", metavar="SQL", help="Run SQL (repeatable)")
    open_p.add_argument("-i", "--interactive", action="store_true", help="Start the interactive shell")
    open_p.add_argument(
        "--http", nargs="?", type=int, const=0, default=None, metavar="PORT",
        help="Serve HTTP (no PORT or 0 picks a free port)",
    )
    open_p.add_argument("--bind", default=None, metavar="ADDR", help="Listener address")
    open_p.add_argument("--token", default=None, metavar="SECRET", help="Require this bearer token")
    open_p.add_argument("--server", type=int, default=None, metavar="PORT", help="Serve the TCP protocol")
    open_p.add_argument("--format", choices=FORMATS, default=None, help="Output format")

    # remote
    remote_p = sub.add_parser("remote", help="Query a binsql TCP server")
    remote_p.add_argument("target", metavar="HOST:PORT", help="Server address")
    remote_p.add_argument("-c", dest="commands", action="append", metavar="SQL", help="Run SQL (repeatable)")
    remote_p.add_argument("-i", "--interactive", action="store_true", help="Start the interactive shell")
    remote_p.add_argument("--token", default=None, metavar="SECRET", help="Bearer token")
    remote_p.add_argument("--format", choices=FORMATS, default=None, help="Output format")

    return parser


def configure_logging(level_name: str, verbose: int) -> None:
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = getattr(logging, str(level_name).upper(), logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "server.bind": getattr(args, "bind", None),
        "server.token": args.token,
        "output.format": args.format,
    }


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "init":
        from binsql.cli.cmd_init import cmd_init
        return cmd_init(args)

    from binsql.config.loader import load_config

    try:
        config = load_config(Path(args.config) if args.config else None, cli_overrides=_overrides(args))
    except (OSError, ValueError) as exc:
        print(f"binsql: {exc}", file=sys.stderr)
        return 1
    configure_logging(config.logging.level, args.verbose)

    if args.command == "open":
        from binsql.cli.cmd_open import cmd_open
        return cmd_open(args, config)

    if args.command == "remote":
        from binsql.cli.cmd_remote import cmd_remote
        return cmd_remote(args, config)

    parser.print_help()
    return 1
