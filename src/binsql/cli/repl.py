"""Interactive shell with sqlite-style dot-commands."""
from __future__ import annotations

import logging
import sqlite3
import sys
from collections.abc import Callable
from typing import Any, TextIO

from binsql.cli.formatter import format_envelope, format_mapping, format_table
from binsql.core.errors import BinsqlError
from binsql.server.runner import QueryServer
from binsql.server.tcp import TcpClient

logger = logging.getLogger(__name__)

PROMPT = "binsql> "
CONTINUATION = "   ...> "

HELP = """\
.tables                 List relations
.schema [table]         Show CREATE statements
.info                   Database facts
.status                 Session counters
.http start [port]      Start the HTTP listener (random port if omitted)
.http stop              Stop the HTTP listener
.http status            Show the HTTP listener
.help                   This text
.quit / .exit           Leave the shell
SQL statements end with ';'.
"""


class LocalTarget:
    """Shell target running on the local session worker."""

    remote = False

    def __init__(self, server: QueryServer) -> None:
        self.server = server
        self.session = server.worker.session

    def run(self, sql: str) -> dict[str, Any]:
        return self.server.worker.run(sql)

    def status(self) -> dict[str, Any]:
        return self.server.worker.status()

    def tables(self) -> list[dict[str, Any]]:
        return self.server.worker.call(self.session.tables)

    def schema(self, table: str | None) -> list[str]:
        return self.server.worker.call(self.session.schema, table)

    def info(self) -> dict[str, Any]:
        return self.server.worker.call(self.session.info)


class RemoteTarget:
    """Shell target forwarding to a TCP server."""

    remote = True

    def __init__(self, client: TcpClient) -> None:
        self.client = client

    def run(self, sql: str) -> dict[str, Any]:
        return self.client.query(sql)

    def status(self) -> dict[str, Any]:
        return self.client.command("status")

    def _rows(self, sql: str) -> list[list[Any]]:
        envelope = self.client.query(sql)
        if not envelope.get("success"):
            # Keep the server's "Kind: message" text as is.
            kind, _, message = str(envelope.get("error", "Error: remote error")).partition(": ")
            error = BinsqlError(message or kind)
            error.kind = kind if message else error.kind
            raise error
        return envelope["rows"]

    def tables(self) -> list[dict[str, Any]]:
        rows = self._rows("SELECT name FROM sqlite_temp_master WHERE type = 'table' ORDER BY name")
        return [{"name": row[0], "cost": "", "required_filter": None, "description": ""} for row in rows]

    def schema(self, table: str | None) -> list[str]:
        sql = "SELECT sql FROM sqlite_temp_master WHERE type = 'table'"
        if table:
            sql += " AND name = '" + table.replace("'", "''") + "'"
        return [row[0] for row in self._rows(sql + " ORDER BY name")]

    def info(self) -> dict[str, Any]:
        return {row[0]: row[1] for row in self._rows("SELECT key, value FROM db_info")}


class Repl:
    """Read statements, run them on *target*, print the results."""

    def __init__(
        self,
        target: LocalTarget | RemoteTarget,
        fmt: str = "table",
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
    ) -> None:
        self.target = target
        self.fmt = fmt
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self.interactive = self.stdin.isatty()
        self.failures = 0
        self._commands: dict[str, Callable[[list[str]], bool]] = {
            ".tables": self._tables,
            ".schema": self._schema,
            ".info": self._info,
            ".status": self._status,
            ".http": self._http,
            ".help": self._help,
            ".quit": self._quit,
            ".exit": self._quit,
        }

    def write(self, text: str) -> None:
        print(text, file=self.stdout, flush=True)

    def _read(self, prompt: str) -> str | None:
        if self.interactive:
            try:
                return input(prompt)
            except EOFError:
                return None
        line = self.stdin.readline()
        return line.rstrip("\n") if line else None

    def loop(self) -> int:
        """Run until EOF or ``.quit``; return the number of failed statements."""
        if self.interactive:
            self.write('Enter ".help" for usage hints.')
        buffer: list[str] = []
        while True:
            line = self._read(CONTINUATION if buffer else PROMPT)
            if line is None:
                break
            if not buffer and line.strip().startswith("."):
                try:
                    if not self.dot_command(line.strip()):
                        break
                except BinsqlError as exc:
                    self.write(f"Error: {exc}")
                continue
            buffer.append(line)
            sql = "\n".join(buffer)
            if not sql.strip():
                buffer.clear()
                continue
            if sqlite3.complete_statement(sql):
                buffer.clear()
                self.execute(sql)
        if buffer and "\n".join(buffer).strip():
            self.execute("\n".join(buffer))
        return self.failures

    def execute(self, sql: str) -> None:
        try:
            envelope = self.target.run(sql)
        except BinsqlError as exc:
            envelope = {"success": False, "error": str(exc)}
        if not envelope.get("success"):
            self.failures += 1
        self.write(format_envelope(envelope, self.fmt))

    def dot_command(self, line: str) -> bool:
        """Handle one dot-command; return False to leave the shell."""
        name, *args = line.split()
        handler = self._commands.get(name.lower())
        if handler is None:
            self.write(f'Unknown command {name}. Enter ".help" for usage hints.')
            return True
        return handler(args)

    # -- commands -------------------------------------------------------------

    def _tables(self, args: list[str]) -> bool:
        tables = self.target.tables()
        if self.target.remote:
            self.write("  ".join(t["name"] for t in tables))
            return True
        rows = [[t["name"], t["cost"], t["required_filter"] or "", t["description"]] for t in tables]
        self.write(format_table(["name", "cost", "requires", "description"], rows, null=""))
        return True

    def _schema(self, args: list[str]) -> bool:
        for statement in self.target.schema(args[0] if args else None):
            self.write(statement + ";")
        return True

    def _info(self, args: list[str]) -> bool:
        self.write(format_mapping(self.target.info(), self.fmt))
        return True

    def _status(self, args: list[str]) -> bool:
        self.write(format_mapping(self.target.status(), self.fmt))
        return True

    def _http(self, args: list[str]) -> bool:
        if not isinstance(self.target, LocalTarget):
            self.write(".http is only available for a local database")
            return True
        server = self.target.server
        action = args[0].lower() if args else "status"
        if action == "start":
            try:
                port = int(args[1]) if len(args) > 1 else 0
                bound = server.start_http(port)
            except (ValueError, OSError, RuntimeError) as exc:
                self.write(f"Error: {exc}")
                return True
            self.write(f"HTTP server listening on http://{server.http.bind}:{bound}")  # type: ignore[union-attr]
        elif action == "stop":
            self.write("HTTP server stopped" if server.stop_http() else "HTTP server is not running")
        elif action == "status":
            state = server.http_status()
            if state["running"]:
                self.write(f"HTTP server running on http://{state['bind']}:{state['port']}")
            else:
                self.write("HTTP server is not running")
        else:
            self.write("Usage: .http start [port] | stop | status")
        return True

    def _help(self, args: list[str]) -> bool:
        self.write(HELP.rstrip())
        return True

    def _quit(self, args: list[str]) -> bool:
        return False
