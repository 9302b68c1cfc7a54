"""Tests for the query session: envelopes, error kinds and mutations."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from binsql.backend.memory import MemoryBackend
from binsql.core.errors import (
    MissingRequiredFilter,
    MutationFailure,
    ReadOnlyRelation,
    SessionClosed,
    SqlSyntaxError,
    UnknownRelationOrColumn,
)
from binsql.core.session import QuerySession, SessionState
from conftest import DISPATCH, FUNCTION_COUNT, INIT_CONFIG, MAIN, make_snapshot


def test_count_envelope(session: QuerySession) -> None:
    assert session.run("SELECT COUNT(*) FROM funcs") == {
        "success": True,
        "columns": ["COUNT(*)"],
        "rows": [["88"]],
        "row_count": 1,
    }


def test_values_are_text(session: QuerySession) -> None:
    envelope = session.run(f"SELECT address, name, NULL, 1.5, x'ff00' FROM funcs WHERE address = {MAIN}")
    assert envelope["rows"] == [[str(MAIN), "main", None, "1.5", "ff00"]]


def test_empty_result(session: QuerySession) -> None:
    envelope = session.run("SELECT name FROM funcs WHERE address = 1")
    assert envelope == {"success": True, "columns": ["name"], "rows": [], "row_count": 0}


def test_byte_search_envelope(image_backend: MemoryBackend, make_session: Callable[..., QuerySession]) -> None:
    session = make_session(image_backend)
    envelope = session.run("SELECT search_bytes('CC ?? 90')")
    assert envelope["success"] is True
    assert "16" in envelope["rows"][0][0]
    assert session.run("SELECT search_first('CC ?? 90')")["rows"] == [["16"]]


# ---------------------------------------------------------------------------
# Error kinds
# ---------------------------------------------------------------------------

def test_missing_required_filter_envelope(session: QuerySession, backend: MemoryBackend) -> None:
    envelope = session.run("SELECT * FROM pseudocode")
    assert envelope["success"] is False
    assert envelope["error"].startswith("MissingRequiredFilter:")
    assert "func_addr" in envelope["error"]
    assert backend.call_counts["decompile"] == 0


@pytest.mark.parametrize(
    ("sql", "kind"),
    [
        ("SELEC 1", "SyntaxError"),
        ("SELECT * FROM", "SyntaxError"),
        ("SELECT * FROM nosuch", "UnknownRelationOrColumn"),
        ("SELECT nosuch FROM funcs", "UnknownRelationOrColumn"),
        ("SELECT nosuch_fn(1)", "UnknownRelationOrColumn"),
        ("SELECT disasm(0x999)", "BackendLookupFailure"),
        ("DELETE FROM funcs", "ReadOnlyRelation"),
        ("INSERT INTO xrefs VALUES (1, 2, 3, 'call', 1)", "ReadOnlyRelation"),
        ("UPDATE names SET name = 'x'", "ReadOnlyRelation"),
        ("DROP TABLE funcs", "ReadOnlyRelation"),
    ],
)
def test_error_kinds(session: QuerySession, sql: str, kind: str) -> None:
    envelope = session.run(sql)
    assert envelope["success"] is False
    assert envelope["error"].split(":", 1)[0] == kind


def test_empty_input(session: QuerySession) -> None:
    with pytest.raises(SqlSyntaxError, match="empty query"):
        session.execute("   ;  ")


def test_read_only_message(session: QuerySession) -> None:
    with pytest.raises(ReadOnlyRelation, match="set_name"):
        session.execute("DELETE FROM funcs")
    assert session.run("SELECT COUNT(*) FROM funcs")["rows"] == [["88"]]


def test_exceptions_carry_kind(session: QuerySession) -> None:
    with pytest.raises(UnknownRelationOrColumn):
        session.execute("SELECT * FROM nosuch")
    with pytest.raises(MissingRequiredFilter):
        session.execute("SELECT * FROM hlil_calls")


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

def test_multi_statement_returns_last_result(session: QuerySession) -> None:
    result = session.execute(
        "CREATE TABLE notes AS SELECT address, name FROM funcs; SELECT COUNT(*) FROM notes"
    )
    assert result.rows == [[str(FUNCTION_COUNT)]]


def test_user_tables_persist_between_queries(session: QuerySession) -> None:
    session.execute("CREATE TABLE notes (address INTEGER, text TEXT)")
    session.execute(f"INSERT INTO notes VALUES ({MAIN}, 'start here')")
    rows = session.execute(
        "SELECT f.name, n.text FROM notes n JOIN funcs f ON f.address = n.address"
    ).rows
    assert rows == [["main", "start here"]]


def test_failed_statement_keeps_earlier_effects(session: QuerySession) -> None:
    with pytest.raises(UnknownRelationOrColumn):
        session.execute("CREATE TABLE t (x INTEGER); SELECT * FROM nosuch")
    assert session.execute("SELECT COUNT(*) FROM t").rows == [["0"]]


def test_materialization_is_reused(session: QuerySession, backend: MemoryBackend) -> None:
    session.execute("SELECT COUNT(*) FROM funcs")
    calls = backend.call_counts["functions"]
    session.execute("SELECT name FROM funcs")
    assert backend.call_counts["functions"] == calls
    # A range filter changes the plan.
    session.execute("SELECT name FROM funcs WHERE size > 0")
    assert backend.call_counts["functions"] == calls + 1


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

def test_rename_is_visible_everywhere(session: QuerySession) -> None:
    session.execute(f"SELECT * FROM callers WHERE func_addr = {INIT_CONFIG}")
    session.execute("SELECT COUNT(*) FROM funcs")

    envelope = session.run(f"SELECT set_name({DISPATCH}, 'handle_request')")
    assert envelope["rows"] == [["1"]]

    assert session.execute(f"SELECT name FROM funcs WHERE address = {DISPATCH}").rows == [["handle_request"]]
    callers = session.execute(
        f"SELECT caller_name FROM callers WHERE func_addr = {INIT_CONFIG} ORDER BY caller_addr"
    ).rows
    assert callers == [["main"], ["handle_request"]]
    assert session.execute(f"SELECT func_at({DISPATCH + 4})").rows == [["handle_request"]]
    assert session.mutations == 1


def test_rename_rejected(session: QuerySession) -> None:
    envelope = session.run(f"SELECT set_name({DISPATCH}, '1 bad name')")
    assert envelope["success"] is False
    assert envelope["error"].startswith("MutationFailure:")
    assert session.mutations == 0


def test_save_failure_lists_applied_effects(session: QuerySession) -> None:
    session.rename(DISPATCH, "handle_request")
    with pytest.raises(MutationFailure) as excinfo:
        session.save()
    assert "already applied: set_name 0x401300" in str(excinfo.value)
    assert excinfo.value.applied == ["set_name 0x401300"]
    # The rename is not rolled back.
    assert session.execute(f"SELECT name FROM funcs WHERE address = {DISPATCH}").rows == [["handle_request"]]


def test_save_persists(snapshot_file: Path, make_session: Callable[..., QuerySession]) -> None:
    session = make_session(MemoryBackend.from_file(snapshot_file))
    session.execute(f"SELECT set_comment({MAIN}, 'checked'), set_name({DISPATCH}, 'handle_request')")
    assert session.run("SELECT save()")["rows"] == [["1"]]

    reopened = make_session(MemoryBackend.from_file(snapshot_file))
    rows = reopened.execute(f"SELECT name, comment_at(address) FROM funcs WHERE address IN ({MAIN}, {DISPATCH})").rows
    assert sorted(rows, key=lambda r: r[0]) == [["handle_request", None], ["main", "checked"]]


def test_comment_change_visible_in_comments(session: QuerySession) -> None:
    session.execute("SELECT COUNT(*) FROM comments")
    session.set_comment(DISPATCH, "request loop")
    rows = session.execute("SELECT address, text FROM comments ORDER BY address").rows
    assert rows == [[str(MAIN), "program entry"], [str(DISPATCH), "request loop"]]


# ---------------------------------------------------------------------------
# Introspection and lifecycle
# ---------------------------------------------------------------------------

def test_status_counters(session: QuerySession) -> None:
    session.run("SELECT name FROM funcs WHERE address IN (4198400, 4198656)")
    session.run("SELECT * FROM nosuch")
    status = session.status()
    assert status["state"] == "open"
    assert status["database"] == "sample.exe"
    assert status["queries"] == 2
    assert status["errors"] == 1
    assert status["rows_returned"] == 2
    assert status["mutations"] == 0


def test_tables_listing(session: QuerySession) -> None:
    tables = {t["name"]: t for t in session.tables()}
    assert {"funcs", "xrefs", "pseudocode", "callers", "callees", "string_refs", "db_info"} <= tables.keys()
    assert tables["pseudocode"]["cost"] == "expensive-per-row"
    assert tables["pseudocode"]["required_filter"] == "func_addr"
    assert tables["funcs"]["cost"] == "cheap-scan"
    assert tables["blocks"]["cost"] == "native-lookup"


def test_schema(session: QuerySession) -> None:
    (funcs,) = session.schema("FUNCS")
    assert funcs == 'CREATE TABLE "funcs" ("address" INTEGER, "name" TEXT, "size" INTEGER, "end_ea" INTEGER)'
    assert len(session.schema()) == len(session.tables())
    with pytest.raises(UnknownRelationOrColumn):
        session.schema("nosuch")


def test_schema_visible_to_sql(session: QuerySession) -> None:
    rows = session.execute("SELECT name FROM sqlite_temp_master WHERE type = 'table' AND name = 'xrefs'").rows
    assert rows == [["xrefs"]]


def test_info(session: QuerySession) -> None:
    assert session.info()["file"] == "sample.exe"


def test_closed_session(backend: MemoryBackend) -> None:
    session = QuerySession(backend)
    with pytest.raises(SessionClosed):
        session.execute("SELECT 1")
    with session:
        assert session.state is SessionState.OPEN
        assert session.run("SELECT 1")["rows"] == [["1"]]
    assert session.state is SessionState.CLOSED
    assert session.run("SELECT 1") == {"success": False, "error": "SessionClosed: session is not open"}


class _PartialBackend(MemoryBackend):
    """A backend without a CFG and with a broken comment store."""

    def basic_blocks(self, func_addr: int) -> list:
        raise NotImplementedError("no CFG")

    def comments(self) -> list:
        raise RuntimeError("comment store offline")

    def disassemble(self, ea: int) -> str | None:
        raise NotImplementedError


@pytest.fixture
def partial_session(make_session: Callable[..., QuerySession]) -> QuerySession:
    return make_session(_PartialBackend(make_snapshot()))


def test_unsupported_backend_operation_is_a_lookup_failure(partial_session: QuerySession) -> None:
    envelope = partial_session.run(f"SELECT * FROM blocks WHERE func_addr = {MAIN}")
    assert envelope == {"success": False, "error": "BackendLookupFailure: blocks: no CFG"}
    assert partial_session.run(f"SELECT disasm({MAIN})")["error"] == (
        "BackendLookupFailure: disasm(): not supported by this backend"
    )
    assert partial_session.errors == 2


def test_unexpected_backend_error_is_a_query_error(partial_session: QuerySession) -> None:
    envelope = partial_session.run("SELECT COUNT(*) FROM comments")
    assert envelope["error"] == "QueryError: comments: RuntimeError: comment store offline"
    # The session keeps serving other relations.
    assert partial_session.run("SELECT COUNT(*) FROM funcs")["rows"] == [[str(FUNCTION_COUNT)]]
