"""binsql open command: one-shot, interactive and server modes."""
from __future__ import annotations

import argparse
import sys

from binsql.backend.registry import create_backend
from binsql.cli.formatter import format_envelope
from binsql.cli.repl import LocalTarget, Repl
from binsql.config.schema import BinsqlConfig
from binsql.core.errors import BinsqlError
from binsql.core.session import QuerySession
from binsql.server.runner import QueryServer


def cmd_open(args: argparse.Namespace, config: BinsqlConfig) -> int:
    try:
        backend = create_backend(config.backend, args.database)
        session = QuerySession(backend, config.engine, name=str(args.database)).open()
    except (OSError, ValueError, BinsqlError) as exc:
        print(f"binsql: cannot open {args.database}: {exc}", file=sys.stderr)
        return 1

    fmt = config.output.format
    server = QueryServer(session, config.server)
    exit_code = 0
    try:
        listening = False
        try:
            if args.http is not None:
                port = server.start_http(args.http)
                print(f"HTTP server listening on http://{config.server.bind}:{port}", flush=True)
                listening = True
            if args.server is not None:
                port = server.start_tcp(args.server)
                print(f"TCP server listening on {config.server.bind}:{port}", flush=True)
                listening = True
        except OSError as exc:
            print(f"binsql: cannot start listener: {exc}", file=sys.stderr)
            return 1

        for sql in args.commands or []:
            envelope = server.worker.run(sql)
            if not envelope["success"]:
                exit_code = 1
            out = sys.stdout if envelope["success"] or fmt == "json" else sys.stderr
            print(format_envelope(envelope, fmt), file=out)

        if args.interactive or (not args.commands and not listening):
            if Repl(LocalTarget(server), fmt).loop() and not args.interactive:
                exit_code = 1
        elif listening:
            server.serve_forever()
    finally:
        server.shutdown()
    return exit_code
