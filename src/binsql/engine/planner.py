"""Constraint pushdown planning and the UDF cost check."""
from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from binsql.config.schema import EngineConfig
from binsql.core.errors import MissingRequiredFilter, UnboundedExpensiveQuery
from binsql.engine.constraints import Conjunction, backend_key, row_matches
from binsql.engine.sqlscan import Scope, StatementAnalysis, TableRef
from binsql.engine.tables import CostClass, Row, VirtualTable
from binsql.engine.udf import CostTag, UdfRegistry
from binsql.utils.address import to_sqlite_int

logger = logging.getLogger(__name__)


class Strategy(str, Enum):
    NATIVE_LOOKUP = "native-lookup"
    FULL_SCAN = "full-scan"


def _to_sqlite(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return to_sqlite_int(value)
    return value


@dataclass(frozen=True)
class TablePlan:
    """How one relation is produced for one statement.

    ``filters`` is an OR of per-occurrence conjunctions; ``None`` means at
    least one occurrence is unconstrained and every row is kept.
    """

    table: VirtualTable
    strategy: Strategy
    column: str | None = None
    keys: tuple[Any, ...] = ()
    filters: tuple[Conjunction, ...] | None = None
    estimated_rows: int = 0

    @property
    def signature(self) -> tuple[Any, ...]:
        return (self.table.name, self.strategy.value, self.column, self.keys, self.filters)

    def rows(self) -> Iterator[Row]:
        """Produce the relation's rows in SQLite representation."""
        names = self.table.column_names
        if self.strategy is Strategy.NATIVE_LOOKUP:
            assert self.column is not None
            source = self._lookup_rows()
        else:
            source = self.table.scan()
        for raw in source:
            row = tuple(_to_sqlite(v) for v in raw)
            if self.filters is None or any(row_matches(conj, dict(zip(names, row))) for conj in self.filters):
                yield row

    def _lookup_rows(self) -> Iterator[Row]:
        assert self.column is not None
        ctype = self.table.column_type(self.column)
        seen: set[Any] = set()
        for literal in self.keys:
            key = backend_key(literal, ctype)
            if key is None or key in seen:
                continue
            seen.add(key)
            yield from self.table.lookup(self.column, key)

    def describe(self) -> str:
        if self.strategy is Strategy.NATIVE_LOOKUP:
            return f"{self.table.name}: native-lookup on {self.column} ({len(self.keys)} key(s))"
        return f"{self.table.name}: full-scan (~{self.estimated_rows} rows)"


def _equality_keys(ref: TableRef, column: str) -> list[Any] | None:
    """Keys an occurrence admits on *column*, or ``None`` if it is unconstrained there."""
    keys: list[Any] | None = None
    for c in ref.constraints:
        if c.column != column or not c.is_equality:
            continue
        values = list(dict.fromkeys(c.values()))
        keys = values if keys is None else [k for k in keys if k in values]
    return keys


class Planner:
    """Chooses an execution strategy per relation and enforces cost policy."""

    def __init__(self, tables: Mapping[str, VirtualTable], udfs: UdfRegistry, config: EngineConfig) -> None:
        self.tables = tables
        self.udfs = udfs
        self.config = config

    def plan(self, analysis: StatementAnalysis) -> dict[str, TablePlan]:
        plans = {}
        for name in analysis.tables(self.tables):
            plans[name] = self.plan_table(self.tables[name], analysis.references(name))
            logger.debug("Plan %s", plans[name].describe())
        return plans

    def plan_table(self, table: VirtualTable, refs: list[TableRef]) -> TablePlan:
        filters: tuple[Conjunction, ...] | None = tuple(tuple(r.constraints) for r in refs)
        if not refs or any(not conj for conj in filters or ()):
            filters = None

        for column in table.index_columns:
            per_ref = [_equality_keys(r, column) for r in refs]
            if refs and all(keys is not None for keys in per_ref):
                keys = tuple(dict.fromkeys(k for ks in per_ref for k in ks or ()))
                if table.cost is CostClass.EXPENSIVE_PER_ROW and column != table.required_filter:
                    continue
                return TablePlan(
                    table=table,
                    strategy=Strategy.NATIVE_LOOKUP,
                    column=column,
                    keys=keys,
                    filters=filters,
                    estimated_rows=table.estimate(len(keys)),
                )

        if table.cost is CostClass.EXPENSIVE_PER_ROW:
            raise MissingRequiredFilter(table.name, table.required_filter or "?")

        return TablePlan(
            table=table,
            strategy=Strategy.FULL_SCAN,
            filters=filters,
            estimated_rows=table.estimate(),
        )

    # -- cost model -----------------------------------------------------------

    @staticmethod
    def _widest(plans: Mapping[str, TablePlan]) -> int:
        return max((p.estimated_rows for p in plans.values()), default=1) or 1

    def _ref_rows(self, ref: TableRef, plans: Mapping[str, TablePlan], seen: frozenset[int]) -> int:
        if ref.table in plans:
            return max(plans[ref.table].estimated_rows, 1)
        if ref.sources:
            return max(sum(self._scope_rows(s, plans, seen) for s in ref.sources), 1)
        # User tables and unresolved names: assume the widest relation in play.
        return self._widest(plans)

    def _scope_rows(self, scope: Scope, plans: Mapping[str, TablePlan], seen: frozenset[int] = frozenset()) -> int:
        if id(scope) in seen:
            return self._widest(plans)
        seen = seen | {id(scope)}
        if not scope.refs:
            # A FROM-less scalar subquery runs once per row of the enclosing scope.
            if scope.parent is not None and not scope.derived:
                return self._scope_rows(scope.parent, plans, seen)
            return 1
        estimate = 1
        for ref in scope.refs:
            estimate *= self._ref_rows(ref, plans, seen)
        return estimate

    def check_udf_costs(self, analysis: StatementAnalysis, plans: Mapping[str, TablePlan]) -> list[str]:
        """Refuse per-row UDF calls over too many rows; return advisory warnings.

        Raises:
            UnboundedExpensiveQuery: If a ``native-per-row`` UDF would run
                over more rows than the configured limit.
        """
        warnings: list[str] = []
        for call in analysis.calls:
            udf = self.udfs.get(call.name)
            if udf is None or udf.cost is not CostTag.NATIVE_PER_ROW:
                continue
            estimate = self._scope_rows(call.scope, plans)
            limit = self.config.decompile_udf_limit if udf.expensive else self.config.per_row_udf_limit
            if estimate > limit:
                raise UnboundedExpensiveQuery(
                    f"{udf.name}() would call the backend once per row over ~{estimate} rows "
                    f"(limit {limit}); filter the relation first or use a pre-aggregated "
                    f"view such as callers, callees or string_refs"
                )
            if call.in_aggregate and estimate > self.config.udf_warn_rows:
                warnings.append(
                    f"{udf.name}() is evaluated per row inside an aggregate over ~{estimate} rows"
                )
        return warnings
