"""HTTP transport (FastAPI served by uvicorn)."""
from __future__ import annotations

import logging
import socket
import threading
import time
from collections.abc import Callable
from typing import Any

import uvicorn
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse

from binsql.config.defaults import VERSION
from binsql.core.errors import AuthenticationFailure, SessionClosed, SqlSyntaxError
from binsql.server.wire import check_token, failure_envelope, parse_bearer
from binsql.server.worker import SessionWorker

logger = logging.getLogger(__name__)

WELCOME = (
    "binsql {version}\n"
    "POST SQL text to /query. GET /help lists every route.\n"
)

ROUTES: list[dict[str, Any]] = [
    {"method": "GET", "path": "/", "auth": False, "description": "Welcome text"},
    {"method": "GET", "path": "/help", "auth": False, "description": "This route list"},
    {
        "method": "POST",
        "path": "/query",
        "auth": True,
        "description": "Execute the raw SQL request body; returns the result envelope",
    },
    {"method": "GET", "path": "/status", "auth": True, "description": "Session state and counters"},
    {
        "method": "POST",
        "path": "/shutdown",
        "auth": True,
        "description": "Finish queued queries, close the session and stop the listeners",
    },
]


def create_app(
    worker: SessionWorker,
    token: str | None = None,
    on_shutdown: Callable[[], None] | None = None,
) -> FastAPI:
    """Build the HTTP application around *worker*.

    Args:
        worker: Executes every query against the session.
        token: Bearer token required on protected routes; ``None`` disables auth.
        on_shutdown: Called after the ``/shutdown`` response is sent.
            Defaults to stopping the worker.
    """
    app = FastAPI(title="binsql", version=VERSION, docs_url=None, redoc_url=None)
    app.state.stopping = False

    def _authorize(request: Request) -> JSONResponse | None:
        try:
            check_token(token, parse_bearer(request.headers.get("authorization")))
        except AuthenticationFailure as exc:
            logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc.message)
            return JSONResponse(status_code=401, content=failure_envelope(exc))
        if app.state.stopping or not worker.running:
            return JSONResponse(
                status_code=503, content=failure_envelope(SessionClosed("server is shutting down"))
            )
        return None

    @app.get("/", response_class=PlainTextResponse)
    def index() -> str:
        return WELCOME.format(version=VERSION)

    @app.get("/help")
    def help_() -> dict[str, Any]:
        return {"name": "binsql", "version": VERSION, "routes": ROUTES}

    @app.post("/query")
    async def query(request: Request) -> JSONResponse:
        denied = _authorize(request)
        if denied is not None:
            return denied
        try:
            sql = (await request.body()).decode("utf-8")
        except UnicodeDecodeError as exc:
            error = SqlSyntaxError(f"request body is not valid UTF-8 ({exc.reason} at byte {exc.start})")
            return JSONResponse(status_code=400, content=failure_envelope(error))
        try:
            envelope = await run_in_threadpool(worker.run, sql)
        except SessionClosed as exc:
            return JSONResponse(status_code=503, content=failure_envelope(exc))
        return JSONResponse(status_code=200 if envelope["success"] else 400, content=envelope)

    @app.get("/status")
    async def status(request: Request) -> JSONResponse:
        denied = _authorize(request)
        if denied is not None:
            return denied
        try:
            counters = await run_in_threadpool(worker.status)
        except SessionClosed as exc:
            return JSONResponse(status_code=503, content=failure_envelope(exc))
        return JSONResponse(content={"success": True, **counters})

    @app.post("/shutdown")
    async def shutdown(request: Request, background: BackgroundTasks) -> JSONResponse:
        denied = _authorize(request)
        if denied is not None:
            return denied
        app.state.stopping = True
        background.add_task(on_shutdown or worker.stop)
        logger.info("Shutdown requested over HTTP")
        return JSONResponse(content={"success": True, "message": "shutting down"})

    return app


class HttpServer:
    """Runs a uvicorn server on a background thread.

    The socket is bound before uvicorn starts so that port 0 resolves to a
    concrete port the caller can print.
    """

    def __init__(self, app: FastAPI, bind: str = "127.0.0.1", port: int = 0, log_level: str = "warning") -> None:
        self.app = app
        self.bind = bind
        self.requested_port = port
        self.log_level = log_level
        self.port: int | None = None
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, timeout: float = 10.0) -> int:
        family = socket.AF_INET6 if ":" in self.bind else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((self.bind, self.requested_port))
        self.port = sock.getsockname()[1]

        config = uvicorn.Config(self.app, log_level=self.log_level, lifespan="off")
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._server.run, kwargs={"sockets": [sock]}, name="binsql-http", daemon=True
        )
        self._thread.start()

        deadline = time.monotonic() + timeout
        while not self._server.started:
            if not self._thread.is_alive() or time.monotonic() > deadline:
                sock.close()
                raise OSError(f"HTTP server failed to start on {self.bind}:{self.port}")
            time.sleep(0.02)
        logger.info("HTTP listening on http://%s:%d", self.bind, self.port)
        return self.port

    def stop(self, wait: bool = True, timeout: float = 10.0) -> None:
        if self._server is None:
            return
        self._server.should_exit = True
        if wait and self._thread is not None and threading.current_thread() is not self._thread:
            self._thread.join(timeout)
        logger.info("HTTP listener on port %s stopped", self.port)

    def wait(self) -> None:
        if self._thread is not None:
            self._thread.join()
