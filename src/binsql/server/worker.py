"""Single-thread executor that owns a query session."""
from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any, TypeVar

from binsql.core.errors import SessionClosed
from binsql.core.session import QuerySession

logger = logging.getLogger(__name__)

T = TypeVar("T")

_STOP = object()


class SessionWorker:
    """Serializes every access to one :class:`QuerySession`.

    The backend is not re-entrant, so HTTP handlers, TCP handlers and the
    local REPL all submit work here instead of touching the session. Work
    runs in submission order on a single thread.
    """

    def __init__(self, session: QuerySession) -> None:
        self.session = session
        self._queue: queue.Queue[Any] = queue.Queue()
        self._accepting = True
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._loop, name="binsql-session", daemon=True)
        self._thread.start()

    @property
    def running(self) -> bool:
        return self._accepting and self._thread.is_alive()

    def submit(self, fn: Callable[..., T], *args: Any) -> Future[T]:
        """Queue ``fn(*args)`` and return a future for its result.

        Raises:
            SessionClosed: If :meth:`stop` has been called.
        """
        future: Future[T] = Future()
        with self._lock:
            if not self._accepting:
                raise SessionClosed("session worker is shutting down")
            self._queue.put((future, fn, args))
        return future

    def call(self, fn: Callable[..., T], *args: Any) -> T:
        return self.submit(fn, *args).result()

    def run(self, sql: str) -> dict[str, Any]:
        """Execute *sql* on the worker and return its envelope."""
        return self.call(self.session.run, sql)

    def status(self) -> dict[str, Any]:
        return self.call(self.session.status)

    def stop(self, wait: bool = True) -> None:
        """Stop accepting work, drain the queue and close the session."""
        with self._lock:
            if not self._accepting:
                if wait and threading.current_thread() is not self._thread:
                    self._thread.join()
                return
            self._accepting = False
            self._queue.put(_STOP)
        if wait and threading.current_thread() is not self._thread:
            self._thread.join()

    def _loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            future, fn, args = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn(*args))
            except BaseException as exc:
                future.set_exception(exc)
        self.session.close()
        logger.info("Session worker stopped")
