"""binsql remote command: talk to a TCP server."""
from __future__ import annotations

import argparse
import sys

from binsql.cli.formatter import format_envelope
from binsql.cli.repl import RemoteTarget, Repl
from binsql.config.schema import BinsqlConfig
from binsql.core.errors import TransportError
from binsql.server.tcp import TcpClient


def parse_target(text: str) -> tuple[str, int]:
    """Split ``host:port`` (``[v6]:port`` allowed)."""
    host, sep, port = text.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"expected host:port, got {text!r}")
    host = host.strip("[]") or "127.0.0.1"
    return host, int(port)


def cmd_remote(args: argparse.Namespace, config: BinsqlConfig) -> int:
    try:
        host, port = parse_target(args.target)
        client = TcpClient(
            host,
            port,
            token=config.server.token,
            timeout=config.server.read_timeout_s,
            max_frame_bytes=config.server.max_frame_bytes,
        )
    except (ValueError, TransportError) as exc:
        print(f"binsql: {exc}", file=sys.stderr)
        return 1

    fmt = config.output.format
    exit_code = 0
    with client:
        try:
            for sql in args.commands or []:
                envelope = client.query(sql)
                print(format_envelope(envelope, fmt))
                if not envelope.get("success"):
                    exit_code = 1
            if args.interactive or not args.commands:
                if Repl(RemoteTarget(client), fmt).loop() and not args.interactive:
                    exit_code = 1
        except TransportError as exc:
            print(f"binsql: {exc}", file=sys.stderr)
            return 1
    return exit_code
