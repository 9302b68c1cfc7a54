"""Call-graph and string-reference views.

Each view is computed by a single pre-aggregation pass over the xref index
(grouping rows by key) joined to the function, name and string maps. No
view issues a backend call per row, and each one returns exactly what the
equivalent direct join over ``xrefs`` would.
"""
from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import Any, NamedTuple

from binsql.engine.catalog import Catalog
from binsql.engine.tables import Row, VirtualTable, _cols


class _Aggregate(NamedTuple):
    rows: list[Row]
    index: dict[str, dict[Any, list[Row]]]


def _group(rows: list[Row], positions: dict[str, int]) -> _Aggregate:
    index: dict[str, dict[Any, list[Row]]] = {col: {} for col in positions}
    for row in rows:
        for col, pos in positions.items():
            index[col].setdefault(row[pos], []).append(row)
    return _Aggregate(rows, index)


def _call_edges(catalog: Catalog) -> Iterator[Any]:
    for x in catalog.xref_rows:
        if x.is_code and x.from_func != 0:
            yield x


def callers_aggregate(catalog: Catalog) -> _Aggregate:
    def build() -> _Aggregate:
        names = catalog.function_names()
        rows = [(x.to_ea, x.from_ea, names.get(x.from_func), x.from_func) for x in _call_edges(catalog)]
        return _group(rows, {"func_addr": 0, "caller_func_addr": 3})

    return catalog.cached("view:callers", build)


def callees_aggregate(catalog: Catalog) -> _Aggregate:
    def build() -> _Aggregate:
        func_names = catalog.function_names()
        names = catalog.name_map()
        rows = [
            (x.from_func, func_names.get(x.from_func), x.to_ea, names.get(x.to_ea))
            for x in _call_edges(catalog)
        ]
        return _group(rows, {"func_addr": 0, "callee_addr": 2})

    return catalog.cached("view:callees", build)


def string_refs_aggregate(catalog: Catalog) -> _Aggregate:
    def build() -> _Aggregate:
        strings = catalog.string_map()
        func_names = catalog.function_names()
        rows = []
        for x in catalog.xref_rows:
            s = strings.get(x.to_ea)
            if s is None:
                continue
            rows.append((s.address, s.content, s.length, x.from_ea, x.from_func, func_names.get(x.from_func)))
        return _group(rows, {"string_addr": 0, "func_addr": 4})

    return catalog.cached("view:string_refs", build)


class _AggregateView(VirtualTable):
    def aggregate(self) -> _Aggregate:
        raise NotImplementedError

    def scan(self) -> Iterator[Row]:
        return iter(self.aggregate().rows)

    def lookup(self, column: str, key: Any) -> Iterable[Row]:
        return list(self.aggregate().index[column].get(key, ()))

    def count(self) -> int:
        return len(self.aggregate().rows)


class CallersView(_AggregateView):
    name = "callers"
    description = "Who calls func_addr: one row per code xref from inside a function"
    columns = _cols("func_addr INTEGER, caller_addr INTEGER, caller_name TEXT, caller_func_addr INTEGER")
    index_columns = ("func_addr", "caller_func_addr")
    rows_per_key = 4

    def aggregate(self) -> _Aggregate:
        return callers_aggregate(self.catalog)


class CalleesView(_AggregateView):
    name = "callees"
    description = "What func_addr calls: one row per code xref leaving the function"
    columns = _cols("func_addr INTEGER, func_name TEXT, callee_addr INTEGER, callee_name TEXT")
    index_columns = ("func_addr", "callee_addr")
    rows_per_key = 8

    def aggregate(self) -> _Aggregate:
        return callees_aggregate(self.catalog)


class StringRefsView(_AggregateView):
    name = "string_refs"
    description = "String literals joined with the xrefs that point at them"
    columns = _cols(
        "string_addr INTEGER, string_value TEXT, string_length INTEGER, "
        "ref_addr INTEGER, func_addr INTEGER, func_name TEXT"
    )
    index_columns = ("string_addr", "func_addr")
    rows_per_key = 2

    def aggregate(self) -> _Aggregate:
        return string_refs_aggregate(self.catalog)


VIEWS: tuple[type[VirtualTable], ...] = (CallersView, CalleesView, StringRefsView)
