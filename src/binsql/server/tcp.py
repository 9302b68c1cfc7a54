"""Legacy length-prefixed TCP transport and its client."""
from __future__ import annotations

import logging
import socket
import socketserver
import threading
from collections.abc import Callable
from typing import Any

from binsql.core.errors import AuthenticationFailure, BinsqlError, QueryError, TransportError
from binsql.server.wire import DEFAULT_MAX_FRAME, check_token, encode_frame, failure_envelope, read_frame
from binsql.server.worker import SessionWorker

logger = logging.getLogger(__name__)


class _Handler(socketserver.StreamRequestHandler):
    server: TcpServer

    def setup(self) -> None:
        self.timeout = self.server.read_timeout_s
        super().setup()

    def handle(self) -> None:
        peer = "%s:%s" % self.client_address[:2]
        while True:
            try:
                request = read_frame(self.rfile, self.server.max_frame_bytes)
            except TransportError as exc:
                logger.warning("Dropping connection from %s: %s", peer, exc.message)
                return
            except OSError as exc:
                logger.warning("Dropping connection from %s: %s", peer, exc)
                return
            if request is None:
                return
            response = self.server.dispatch(request)
            try:
                self.wfile.write(encode_frame(response))
                self.wfile.flush()
            except OSError as exc:
                logger.warning("Dropping connection from %s: %s", peer, exc)
                return


class TcpServer(socketserver.ThreadingTCPServer):
    """Threaded listener that forwards every frame to the session worker.

    Connections are accepted concurrently; their queries still execute one
    at a time on the worker.
    """

    daemon_threads = True
    allow_reuse_address = True

    def __init__(
        self,
        worker: SessionWorker,
        bind: str = "127.0.0.1",
        port: int = 0,
        token: str | None = None,
        max_frame_bytes: int = DEFAULT_MAX_FRAME,
        read_timeout_s: float | None = 300.0,
        on_shutdown: Callable[[], None] | None = None,
    ) -> None:
        if ":" in bind:
            self.address_family = socket.AF_INET6
        super().__init__((bind, port), _Handler)
        self.worker = worker
        self.token = token
        self.max_frame_bytes = max_frame_bytes
        self.read_timeout_s = read_timeout_s
        self.on_shutdown = on_shutdown
        self._thread: threading.Thread | None = None

    @property
    def port(self) -> int:
        return self.server_address[1]

    def dispatch(self, request: dict[str, Any]) -> dict[str, Any]:
        try:
            check_token(self.token, request.get("token"))
        except AuthenticationFailure as exc:
            logger.warning("Rejected TCP request: %s", exc.message)
            return failure_envelope(exc)

        command = request.get("command")
        try:
            if "sql" in request:
                if not isinstance(request["sql"], str):
                    return failure_envelope(QueryError("'sql' must be a string"))
                return self.worker.run(request["sql"])
            if command == "status":
                return {"success": True, **self.worker.status()}
            if command == "shutdown":
                logger.info("Shutdown requested over TCP")
                threading.Thread(
                    target=self.on_shutdown or self.worker.stop, name="binsql-shutdown", daemon=True
                ).start()
                return {"success": True, "message": "shutting down"}
        except BinsqlError as exc:
            return failure_envelope(exc)
        except Exception as exc:
            logger.exception("TCP request failed")
            return failure_envelope(QueryError(f"{type(exc).__name__}: {exc}"))
        if command is not None:
            return failure_envelope(QueryError(f"unknown command {command!r}"))
        return failure_envelope(QueryError("request must contain 'sql' or 'command'"))

    def start(self) -> int:
        self._thread = threading.Thread(target=self.serve_forever, name="binsql-tcp", daemon=True)
        self._thread.start()
        logger.info("TCP listening on %s:%d", self.server_address[0], self.port)
        return self.port

    def stop(self) -> None:
        if self._thread is None:
            return
        self.shutdown()
        self.server_close()
        self._thread = None
        logger.info("TCP listener stopped")


class TcpClient:
    """Client for the TCP transport; keeps one connection open."""

    def __init__(
        self,
        host: str,
        port: int,
        token: str | None = None,
        timeout: float | None = 300.0,
        max_frame_bytes: int = DEFAULT_MAX_FRAME,
    ) -> None:
        self.host = host
        self.port = port
        self.token = token
        self.max_frame_bytes = max_frame_bytes
        try:
            self._sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as exc:
            raise TransportError(f"cannot connect to {host}:{port}: {exc}") from None
        self._rfile = self._sock.makefile("rb")

    def request(self, payload: dict[str, Any]) -> dict[str, Any]:
        if self.token is not None:
            payload = {**payload, "token": self.token}
        try:
            self._sock.sendall(encode_frame(payload))
            response = read_frame(self._rfile, self.max_frame_bytes)
        except OSError as exc:
            raise TransportError(str(exc)) from None
        if response is None:
            raise TransportError("server closed the connection")
        return response

    def query(self, sql: str) -> dict[str, Any]:
        return self.request({"sql": sql})

    def command(self, name: str) -> dict[str, Any]:
        return self.request({"command": name})

    def close(self) -> None:
        self._rfile.close()
        self._sock.close()

    def __enter__(self) -> TcpClient:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
