"""Tests for the HTTP transport."""
from __future__ import annotations

import time
from collections.abc import Iterator

import httpx
import pytest
from fastapi.testclient import TestClient

from binsql.backend.memory import MemoryBackend
from binsql.config.schema import ServerConfig
from binsql.core.session import QuerySession
from binsql.server.http import create_app
from binsql.server.runner import QueryServer
from binsql.server.worker import SessionWorker

AUTH = {"Authorization": "Bearer s3cret"}


@pytest.fixture
def worker(backend: MemoryBackend) -> Iterator[SessionWorker]:
    w = SessionWorker(QuerySession(backend, name="sample.exe").open())
    yield w
    w.stop()


@pytest.fixture
def client(worker: SessionWorker) -> TestClient:
    return TestClient(create_app(worker, token="s3cret"))


def test_welcome_and_help_need_no_token(client: TestClient) -> None:
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.text.startswith("binsql ")
    routes = client.get("/help").json()["routes"]
    assert {(r["method"], r["path"]) for r in routes} == {
        ("GET", "/"), ("GET", "/help"), ("POST", "/query"), ("GET", "/status"), ("POST", "/shutdown"),
    }


def test_query_requires_token(client: TestClient, worker: SessionWorker) -> None:
    resp = client.post("/query", content="SELECT 1")
    assert resp.status_code == 401
    assert resp.json() == {"success": False, "error": "AuthenticationFailure: missing bearer token"}

    resp = client.post("/query", content="SELECT 1", headers={"Authorization": "Bearer guess"})
    assert resp.status_code == 401
    assert resp.json()["error"] == "AuthenticationFailure: invalid token"

    # Rejected requests never reach the session.
    assert worker.session.queries == 0


def test_query(client: TestClient) -> None:
    resp = client.post("/query", content="SELECT COUNT(*) FROM funcs", headers=AUTH)
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "columns": ["COUNT(*)"], "rows": [["88"]], "row_count": 1}


def test_query_failure_is_400(client: TestClient) -> None:
    resp = client.post("/query", content="SELECT * FROM pseudocode", headers=AUTH)
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["error"].startswith("MissingRequiredFilter:")


def test_status_is_read_only(client: TestClient) -> None:
    client.post("/query", content="SELECT 1", headers=AUTH)
    first = client.get("/status", headers=AUTH).json()
    second = client.get("/status", headers=AUTH).json()
    assert first == second
    assert first["success"] is True
    assert first["queries"] == 1
    assert first["database"] == "sample.exe"
    assert client.get("/status").status_code == 401


def test_shutdown(client: TestClient, worker: SessionWorker) -> None:
    assert client.post("/shutdown").status_code == 401
    resp = client.post("/shutdown", headers=AUTH)
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "message": "shutting down"}
    assert not worker.running

    resp = client.post("/query", content="SELECT 1", headers=AUTH)
    assert resp.status_code == 503
    assert resp.json()["error"].startswith("SessionClosed:")


def test_no_token_configured(worker: SessionWorker) -> None:
    client = TestClient(create_app(worker))
    assert client.post("/query", content="SELECT 1").json()["rows"] == [["1"]]


def test_served_over_a_real_socket(backend: MemoryBackend) -> None:
    server = QueryServer(QuerySession(backend), ServerConfig(token="s3cret"))
    try:
        port = server.start_http()
        assert port > 0
        base = f"http://127.0.0.1:{port}"
        resp = httpx.post(f"{base}/query", content="SELECT name FROM funcs WHERE address = 0x401000", headers=AUTH)
        assert resp.json()["rows"] == [["main"]]

        resp = httpx.post(f"{base}/shutdown", headers=AUTH)
        assert resp.status_code == 200
        deadline = time.monotonic() + 10
        while not server.stopped and time.monotonic() < deadline:
            time.sleep(0.05)
        assert server.stopped
    finally:
        server.shutdown()


def test_invalid_utf8_body_is_rejected(client: TestClient, worker: SessionWorker) -> None:
    resp = client.post("/query", content=b"SELECT '\xff'", headers=AUTH)
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["error"].startswith("SyntaxError: request body is not valid UTF-8")
    assert worker.session.queries == 0
