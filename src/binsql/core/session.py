"""The query session: one open backend, one SQLite connection."""
from __future__ import annotations

import logging
import sqlite3
from enum import Enum
from typing import Any

import sqlparse.exceptions

from binsql.backend.protocol import AnalysisBackend
from binsql.config.schema import EngineConfig
from binsql.core.errors import (
    BinsqlError,
    MutationFailure,
    QueryError,
    ReadOnlyRelation,
    SessionClosed,
    SqlSyntaxError,
    UnknownRelationOrColumn,
    classify_backend_error,
)
from binsql.core.models import QueryResult
from binsql.engine.catalog import Catalog
from binsql.engine.functions import register_builtins
from binsql.engine.planner import Planner, TablePlan
from binsql.engine.sqlscan import analyze, split_statements
from binsql.engine.tables import VirtualTable, build_tables
from binsql.engine.udf import UdfRegistry
from binsql.utils.address import format_address

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"


_SYNTAX_MARKERS = ("syntax error", "incomplete input", "unrecognized token")
_UNKNOWN_MARKERS = ("no such table", "no such column", "no such function", "ambiguous column")


def _translate(exc: Exception) -> BinsqlError:
    message = str(exc) or type(exc).__name__
    lowered = message.lower()
    if any(m in lowered for m in _SYNTAX_MARKERS):
        return SqlSyntaxError(message)
    if any(m in lowered for m in _UNKNOWN_MARKERS):
        return UnknownRelationOrColumn(message)
    return QueryError(message)


def _stringify(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.hex()
    return str(value)


class QuerySession:
    """Binds one analysis backend to an in-memory SQLite connection.

    Every relation is a TEMP table that is refilled on demand: before a
    statement runs, the planner decides how each referenced relation is
    produced (native lookup or full scan) and only the rows that can
    satisfy the pushed-down predicates are inserted. SQLite then evaluates
    the statement as written. Materialized tables are reused while the
    catalog generation and the plan are unchanged.

    Mutations (:meth:`rename`, :meth:`set_comment`, :meth:`save`) write
    through to the backend immediately. They are independent: a failed
    save does not undo earlier renames, and the error says which effects
    remain applied.
    """

    def __init__(
        self,
        backend: AnalysisBackend,
        engine_config: EngineConfig | None = None,
        name: str = "",
    ) -> None:
        self.backend = backend
        self.config = engine_config or EngineConfig()
        self.name = name
        self.state = SessionState.CLOSED

        self.catalog: Catalog | None = None
        self.relations: dict[str, VirtualTable] = {}
        self.udfs = UdfRegistry()
        self.planner: Planner | None = None
        self._conn: sqlite3.Connection | None = None
        self._materialized: dict[str, tuple[Any, ...]] = {}
        self._udf_error: BinsqlError | None = None
        self._unsaved: list[str] = []

        self.queries = 0
        self.errors = 0
        self.rows_returned = 0
        self.mutations = 0

    # -- lifecycle ------------------------------------------------------------

    def open(self) -> QuerySession:
        if self.state is SessionState.OPEN:
            return self
        self.catalog = Catalog(self.backend, self.config.decompile_cache_size).load()
        self.relations = build_tables(self.catalog)
        self.udfs = register_builtins(UdfRegistry(), self)
        self.planner = Planner(self.relations, self.udfs, self.config)

        conn = sqlite3.connect(":memory:", check_same_thread=False, isolation_level=None)
        for table in self.relations.values():
            conn.execute(table.create_sql())
        self.udfs.install(conn, self._stash_udf_error)
        self._conn = conn
        self._materialized.clear()
        self.state = SessionState.OPEN
        logger.info(
            "Session %s opened: %d relations, %d functions",
            self.name or "<memory>", len(self.relations), len(self.udfs),
        )
        return self

    def close(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        if self._conn is not None:
            self._conn.close()
        self._conn = None
        self._materialized.clear()
        self.state = SessionState.CLOSED
        logger.info("Session %s closed", self.name or "<memory>")

    def __enter__(self) -> QuerySession:
        return self.open()

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _require_open(self) -> sqlite3.Connection:
        if self.state is not SessionState.OPEN or self._conn is None:
            raise SessionClosed("session is not open")
        return self._conn

    # -- query dispatch -------------------------------------------------------

    def execute(self, sql: str) -> QueryResult:
        """Run every statement in *sql* and return the last one's result.

        Raises:
            BinsqlError: On any query-level failure; earlier statements of a
                multi-statement text keep their effects.
        """
        self._require_open()
        self.queries += 1
        try:
            statements = split_statements(sql)
            if not statements:
                raise SqlSyntaxError("empty query")
            result = QueryResult()
            warnings: list[str] = []
            for statement in statements:
                result = self._execute_one(statement)
                warnings.extend(result.warnings)
            result.warnings = warnings
        except BinsqlError:
            self.errors += 1
            raise
        self.rows_returned += result.row_count
        return result

    def run(self, sql: str) -> dict[str, Any]:
        """Like :meth:`execute`, but always returns a response envelope."""
        try:
            return self.execute(sql).to_envelope()
        except BinsqlError as exc:
            logger.info("Query failed: %s", exc)
            return {"success": False, "error": str(exc)}

    def _execute_one(self, statement: str) -> QueryResult:
        conn = self._require_open()
        assert self.planner is not None
        try:
            analysis = analyze(statement, {n: t.column_names for n, t in self.relations.items()})
        except sqlparse.exceptions.SQLParseError as exc:
            raise SqlSyntaxError(str(exc)) from None

        targets = sorted(analysis.write_targets & self.relations.keys())
        if targets:
            raise ReadOnlyRelation(
                f"{', '.join(targets)} cannot be modified with SQL; "
                f"use set_name(), set_comment() and save()"
            )

        plans = self.planner.plan(analysis)
        warnings = self.planner.check_udf_costs(analysis, plans)
        for message in warnings:
            logger.warning("%s", message)
        for plan in plans.values():
            try:
                self._materialize(conn, plan)
            except BinsqlError:
                raise
            except sqlite3.Error as exc:
                raise _translate(exc) from None
            except Exception as exc:
                logger.debug("Backend failed while producing %s", plan.table.name, exc_info=True)
                raise classify_backend_error(exc, plan.table.name) from None

        self._udf_error = None
        try:
            cursor = conn.execute(statement)
            columns = [d[0] for d in cursor.description or ()]
            rows = [[_stringify(v) for v in row] for row in cursor.fetchall()]
        except (sqlite3.Error, sqlite3.Warning) as exc:
            stashed, self._udf_error = self._udf_error, None
            if stashed is not None:
                raise stashed from None
            raise _translate(exc) from None
        return QueryResult(columns=columns, rows=rows, warnings=warnings)

    def _stash_udf_error(self, exc: BinsqlError) -> None:
        self._udf_error = exc

    def _materialize(self, conn: sqlite3.Connection, plan: TablePlan) -> None:
        assert self.catalog is not None
        name = plan.table.name
        key = (self.catalog.generation, plan.signature)
        if self._materialized.get(name) == key:
            return
        rows = list(plan.rows())
        marks = ", ".join("?" for _ in plan.table.columns)
        conn.execute("SAVEPOINT materialize")
        try:
            conn.execute(f'DELETE FROM temp."{name}"')
            conn.executemany(f'INSERT INTO temp."{name}" VALUES ({marks})', rows)
        except sqlite3.Error:
            conn.execute("ROLLBACK TO materialize")
            conn.execute("RELEASE materialize")
            self._materialized.pop(name, None)
            raise
        conn.execute("RELEASE materialize")
        self._materialized[name] = key
        logger.debug("Materialized %s: %d rows (%s)", name, len(rows), plan.strategy.value)

    # -- introspection --------------------------------------------------------

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "database": self.name,
            "queries": self.queries,
            "errors": self.errors,
            "rows_returned": self.rows_returned,
            "mutations": self.mutations,
            "tables": len(self.relations),
        }

    def info(self) -> dict[str, Any]:
        self._require_open()
        return dict(self.backend.db_info())

    def tables(self) -> list[dict[str, Any]]:
        return [
            {
                "name": t.name,
                "cost": t.cost.value,
                "required_filter": t.required_filter,
                "description": t.description,
            }
            for t in sorted(self.relations.values(), key=lambda t: t.name)
        ]

    def schema(self, table: str | None = None) -> list[str]:
        if table is None:
            return [t.create_sql(schema=None) for t in sorted(self.relations.values(), key=lambda t: t.name)]
        relation = self.relations.get(table.lower())
        if relation is None:
            raise UnknownRelationOrColumn(f"no such relation: {table}")
        return [relation.create_sql(schema=None)]

    # -- mutations ------------------------------------------------------------

    def _check_writable(self, operation: str) -> None:
        if not self.backend.capabilities.writable:
            raise MutationFailure(f"{operation} rejected: backend is read-only", applied=self._unsaved)

    def _record(self, effect: str, ea: int | None) -> None:
        self.mutations += 1
        self._unsaved.append(effect)
        assert self.catalog is not None
        self.catalog.invalidate(ea)
        logger.info("Applied %s", effect)

    def rename(self, ea: int, name: str) -> None:
        self._require_open()
        self._check_writable("set_name")
        if not self.backend.set_name(ea, name):
            raise MutationFailure(
                f"set_name({format_address(ea)}, {name!r}) rejected by backend", applied=self._unsaved
            )
        self._record(f"set_name {format_address(ea)}", ea)

    def set_comment(self, ea: int, text: str) -> None:
        self._require_open()
        self._check_writable("set_comment")
        if not self.backend.set_comment(ea, text):
            raise MutationFailure(f"set_comment({format_address(ea)}) rejected by backend", applied=self._unsaved)
        self._record(f"set_comment {format_address(ea)}", ea)

    def save(self) -> None:
        self._require_open()
        self._check_writable("save")
        if not self.backend.save():
            raise MutationFailure("save failed", applied=self._unsaved)
        self.mutations += 1
        self._unsaved.clear()
        logger.info("Database saved")
