"""Owns the session worker and the optional HTTP and TCP listeners."""
from __future__ import annotations

import logging
import threading
from typing import Any

from binsql.config.schema import ServerConfig
from binsql.core.session import QuerySession, SessionState
from binsql.server.http import HttpServer, create_app
from binsql.server.tcp import TcpServer
from binsql.server.worker import SessionWorker

logger = logging.getLogger(__name__)


class QueryServer:
    """Lifecycle of one served session.

    Every listener and the local REPL share :attr:`worker`, so queries from
    all of them run serially against the single session.
    """

    def __init__(self, session: QuerySession, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig()
        if session.state is not SessionState.OPEN:
            session.open()
        self.worker = SessionWorker(session)
        self.http: HttpServer | None = None
        self.tcp: TcpServer | None = None
        self._stopped = threading.Event()
        self._lock = threading.Lock()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def start_http(self, port: int | None = None, bind: str | None = None) -> int:
        if self.http is not None and self.http.running:
            raise RuntimeError(f"HTTP server already running on port {self.http.port}")
        app = create_app(self.worker, token=self.config.token, on_shutdown=self._shutdown_from_request)
        self.http = HttpServer(
            app,
            bind=bind or self.config.bind,
            port=port or 0,
            log_level=self.config.log_level,
        )
        return self.http.start()

    def stop_http(self) -> bool:
        if self.http is None or not self.http.running:
            return False
        self.http.stop()
        self.http = None
        return True

    def start_tcp(self, port: int | None = None, bind: str | None = None) -> int:
        if self.tcp is not None:
            raise RuntimeError(f"TCP server already running on port {self.tcp.port}")
        self.tcp = TcpServer(
            self.worker,
            bind=bind or self.config.bind,
            port=port or 0,
            token=self.config.token,
            max_frame_bytes=self.config.max_frame_bytes,
            read_timeout_s=self.config.read_timeout_s,
            on_shutdown=self._shutdown_from_request,
        )
        return self.tcp.start()

    def http_status(self) -> dict[str, Any]:
        if self.http is None or not self.http.running:
            return {"running": False}
        return {"running": True, "bind": self.http.bind, "port": self.http.port}

    def _shutdown_from_request(self) -> None:
        # Runs on a listener thread; uvicorn finishes its own exit.
        self.shutdown(wait_http=False)

    def shutdown(self, wait_http: bool = True) -> None:
        """Drain the worker, close the session and stop every listener.

        Safe to call more than once and from any thread.
        """
        with self._lock:
            if self._stopped.is_set():
                return
            self.worker.stop()
            if self.tcp is not None:
                self.tcp.stop()
                self.tcp = None
            if self.http is not None:
                self.http.stop(wait=wait_http)
            self._stopped.set()
        logger.info("Server shut down")

    def serve_forever(self) -> None:
        """Block until :meth:`shutdown` has run."""
        try:
            while not self._stopped.wait(0.5):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted")
            self.shutdown()
        if self.http is not None:
            self.http.wait()
