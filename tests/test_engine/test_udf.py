"""Tests for the SQL function registry and the built-in functions."""
from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable

import pytest

from binsql.backend.memory import MemoryBackend
from binsql.core.errors import BackendLookupFailure, BinsqlError, UnboundedExpensiveQuery
from binsql.core.session import QuerySession
from binsql.engine.udf import CostTag, UdfRegistry
from conftest import DISPATCH, INIT_CONFIG, MAIN, PRINTF, USAGE_STR


def _scalar(session: QuerySession, sql: str) -> str | None:
    return session.execute(sql).rows[0][0]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def test_register_decorator() -> None:
    registry = UdfRegistry()

    @registry.register("Twice", 1, cost=CostTag.PURE, deterministic=True)
    def twice(x: int) -> int:
        """Double a number.

        Longer description that is not kept.
        """
        return x * 2

    udf = registry.get("twice")
    assert udf is not None
    assert udf.doc == "Double a number."
    assert udf.signature == "Twice/1"
    assert "TWICE" in registry
    assert len(registry) == 1


def test_variadic_signature() -> None:
    registry = UdfRegistry()
    registry.register("f", 1, 2, 3)(lambda *args: None)
    assert registry.get("f").signature == "f/1-3"  # type: ignore[union-attr]


def test_install_reports_typed_errors() -> None:
    registry = UdfRegistry()

    @registry.register("boom", 0)
    def boom() -> None:
        raise BackendLookupFailure("nothing here")

    seen: list[BinsqlError] = []
    conn = sqlite3.connect(":memory:")
    registry.install(conn, seen.append)
    with pytest.raises(sqlite3.OperationalError):
        conn.execute("SELECT boom()").fetchall()
    conn.close()
    assert [str(e) for e in seen] == ["BackendLookupFailure: nothing here"]


def test_install_classifies_untyped_errors() -> None:
    registry = UdfRegistry()

    @registry.register("no_cfg", 0)
    def no_cfg() -> None:
        raise NotImplementedError("no CFG")

    @registry.register("broken", 0)
    def broken() -> None:
        raise KeyError("x")

    seen: list[BinsqlError] = []
    conn = sqlite3.connect(":memory:")
    registry.install(conn, seen.append)
    for name in ("no_cfg", "broken"):
        with pytest.raises(sqlite3.OperationalError):
            conn.execute(f"SELECT {name}()").fetchall()
    conn.close()
    assert [str(e) for e in seen] == [
        "BackendLookupFailure: no_cfg(): no CFG",
        "QueryError: broken(): KeyError: 'x'",
    ]


def test_builtin_cost_tags(session: QuerySession) -> None:
    tags = {udf.name: udf.cost for udf in session.udfs}
    assert tags["hexaddr"] is CostTag.PURE
    assert tags["name_at"] is CostTag.NATIVE_O1
    assert tags["func_at"] is CostTag.NATIVE_PER_ROW
    assert tags["decompile"] is CostTag.NATIVE_PER_ROW
    assert session.udfs.get("decompile").expensive  # type: ignore[union-attr]
    assert session.udfs.get("set_name").mutating  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# Built-in functions
# ---------------------------------------------------------------------------

def test_hexaddr(session: QuerySession) -> None:
    assert _scalar(session, f"SELECT hexaddr({MAIN})") == "0x401000"
    assert _scalar(session, "SELECT hexaddr(-1)") == "0xffffffffffffffff"
    assert _scalar(session, "SELECT hexaddr(NULL)") is None


def test_func_lookups(session: QuerySession) -> None:
    assert _scalar(session, f"SELECT func_at({INIT_CONFIG + 0x10})") == "init_config"
    assert _scalar(session, f"SELECT func_start({INIT_CONFIG + 0x10})") == str(INIT_CONFIG)
    assert _scalar(session, f"SELECT func_end({INIT_CONFIG})") == str(INIT_CONFIG + 0x80)
    assert _scalar(session, "SELECT func_at(16)") is None


def test_address_as_hex_text(session: QuerySession) -> None:
    assert _scalar(session, "SELECT func_at('0x401100')") == "init_config"


def test_bad_address_text(session: QuerySession) -> None:
    with pytest.raises(BackendLookupFailure, match="not an address"):
        session.execute("SELECT func_at('nowhere')")


def test_name_and_comment_at(session: QuerySession) -> None:
    assert _scalar(session, f"SELECT name_at({USAGE_STR})") == "aUsage"
    assert _scalar(session, f"SELECT name_at({PRINTF})") == "printf"
    assert _scalar(session, f"SELECT comment_at({MAIN})") == "program entry"
    assert _scalar(session, f"SELECT comment_at({DISPATCH})") is None


def test_disasm(session: QuerySession) -> None:
    assert _scalar(session, f"SELECT disasm({MAIN + 1})") == "mov rbp, rsp"
    with pytest.raises(BackendLookupFailure, match="no instruction at 0x999"):
        session.execute("SELECT disasm(0x999)")


def test_decompile_one_function(session: QuerySession) -> None:
    text = _scalar(session, "SELECT decompile(0x401000)")
    assert text is not None
    assert text.splitlines()[0] == "int main(int argc, char **argv)"


def test_decompile_resolves_containing_function(session: QuerySession) -> None:
    text = _scalar(session, f"SELECT decompile({DISPATCH + 0x10})")
    assert text == "void dispatch()\n{\n}"


def test_decompile_outside_functions(session: QuerySession) -> None:
    with pytest.raises(BackendLookupFailure, match="not inside a function"):
        session.execute("SELECT decompile(16)")


def test_decompile_over_funcs_is_refused_before_any_call(session: QuerySession, backend: MemoryBackend) -> None:
    with pytest.raises(UnboundedExpensiveQuery):
        session.execute("SELECT decompile(address) FROM funcs")
    assert backend.call_counts["decompile"] == 0


def test_decompile_over_filtered_funcs(session: QuerySession) -> None:
    rows = session.execute(f"SELECT name, decompile(address) FROM funcs WHERE address IN ({MAIN}, {DISPATCH})").rows
    assert len(rows) == 2


def test_per_row_limit(backend: MemoryBackend, make_session: Callable[..., QuerySession]) -> None:
    session = make_session(backend, per_row_udf_limit=10)
    with pytest.raises(UnboundedExpensiveQuery, match="func_at"):
        session.execute("SELECT func_at(address) FROM funcs")
    assert backend.call_counts["function_at"] == 0
    rows = session.execute(f"SELECT func_at(address) FROM funcs WHERE address = {MAIN}").rows
    assert rows == [["main"]]


def test_aggregate_warning_is_attached(backend: MemoryBackend, make_session: Callable[..., QuerySession]) -> None:
    session = make_session(backend, udf_warn_rows=10)
    result = session.execute("SELECT COUNT(func_at(address)) FROM funcs")
    assert result.rows == [["88"]]
    assert len(result.warnings) == 1
    assert "warnings" not in result.to_envelope()


def test_search_functions(image_backend: MemoryBackend, make_session: Callable[..., QuerySession]) -> None:
    session = make_session(image_backend)
    assert json.loads(_scalar(session, "SELECT search_bytes('CC ?? 90')") or "") == [0x10, 0x15]
    assert _scalar(session, "SELECT search_first('CC ?? 90')") == "16"
    assert _scalar(session, "SELECT search_first('CC ?? 90', 0x11)") == "21"
    assert _scalar(session, "SELECT search_first('CC 03')") is None
    assert json.loads(_scalar(session, "SELECT search_bytes('CC', 0, 0x12)") or "") == [0x10]


def test_search_bad_pattern(image_backend: MemoryBackend, make_session: Callable[..., QuerySession]) -> None:
    session = make_session(image_backend)
    envelope = session.run("SELECT search_bytes('ZZ')")
    assert envelope["success"] is False
    assert envelope["error"].startswith("SyntaxError:")


def test_mutating_functions(session: QuerySession, backend: MemoryBackend) -> None:
    assert _scalar(session, f"SELECT set_name({DISPATCH}, 'handle_request')") == "1"
    assert _scalar(session, f"SELECT set_comment({DISPATCH}, 'entry for requests')") == "1"
    assert backend.name_at(DISPATCH) == "handle_request"
    assert backend.comment_at(DISPATCH) == "entry for requests"
    assert session.mutations == 2
