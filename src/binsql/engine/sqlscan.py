"""Predicate and relation extraction from SQL text.

The scanner tokenizes a statement with :mod:`sqlparse`, rebuilds the
parenthesis tree and walks every SELECT scope (subqueries, CTE bodies and
compound parts included). For each scope it records the virtual relations
in ``FROM``/``JOIN`` position, the conjuncts that can be pushed down to
them, and the UDF calls made in that scope.

Only conjuncts that hold for every output row are pushed: top-level ``AND``
terms of a ``WHERE`` without a top-level ``OR``, and ``ON`` terms of inner
or left joins applied to the joined relation only. SQLite still evaluates
the whole statement afterwards, so a missed conjunct costs a wider scan,
never a wrong answer.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Union

import sqlparse
from sqlparse import tokens as T

from binsql.engine.constraints import FLIPPED, Constraint
from binsql.utils.address import to_sqlite_int

_STRUCTURAL = frozenset({
    "SELECT", "FROM", "WHERE", "GROUP BY", "ORDER BY", "HAVING", "LIMIT", "OFFSET",
    "UNION", "UNION ALL", "INTERSECT", "EXCEPT", "ON", "USING", "AS", "AND", "OR",
    "NOT", "IN", "NOT IN", "IS", "IS NOT", "NULL", "LIKE", "NOT LIKE", "GLOB", "REGEXP",
    "MATCH", "BETWEEN", "EXISTS", "NOT EXISTS", "CASE", "WHEN", "THEN", "ELSE", "END",
    "WITH", "RECURSIVE", "VALUES", "DISTINCT", "ALL", "WINDOW", "OVER", "PARTITION BY",
    "FILTER", "NATURAL", "CROSS", "LEFT", "RIGHT", "FULL", "INNER", "OUTER", "INSERT",
    "UPDATE", "DELETE", "REPLACE", "SET", "INTO", "COLLATE", "ESCAPE", "ASC", "DESC",
    "TABLE", "IF", "IF EXISTS", "IF NOT EXISTS", "DROP", "CREATE", "ALTER",
})

_COMPOUND = frozenset({"UNION", "UNION ALL", "INTERSECT", "EXCEPT"})

_TAIL_CLAUSES = frozenset({"GROUP BY", "ORDER BY", "HAVING", "LIMIT", "OFFSET", "WINDOW"})

AGGREGATES = frozenset({"count", "sum", "total", "avg", "min", "max", "group_concat", "string_agg"})

_OPS = {"=": "=", "==": "=", "<": "<", "<=": "<=", ">": ">", ">=": ">="}


@dataclass
class _Tok:
    ttype: Any
    value: str
    norm: str


class _Group(list):
    """Items between a pair of parentheses."""


_Item = Union[_Tok, _Group]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class TableRef:
    """One occurrence of a relation in FROM/JOIN position."""

    table: str | None  # None for derived tables
    alias: str | None = None
    join_kind: str | None = None
    constraints: list[Constraint] = field(default_factory=list)
    # SELECT cores that produce a derived table or CTE reference.
    sources: list[Scope] = field(default_factory=list)

    @property
    def label(self) -> str | None:
        return self.alias or self.table


@dataclass
class UdfCall:
    name: str
    in_aggregate: bool
    scope: Scope


@dataclass(eq=False)
class Scope:
    """A single SELECT core.

    ``derived`` marks the body of a FROM subquery or CTE, which runs once
    rather than once per row of *parent*.
    """

    refs: list[TableRef] = field(default_factory=list)
    calls: list[UdfCall] = field(default_factory=list)
    parent: Scope | None = None
    derived: bool = False


@dataclass
class StatementAnalysis:
    statement_type: str
    scopes: list[Scope] = field(default_factory=list)
    write_targets: set[str] = field(default_factory=set)
    unplaced: set[str] = field(default_factory=set)

    def references(self, table: str) -> list[TableRef]:
        """Every occurrence of *table*; unplaced mentions count as unconstrained."""
        refs = [r for s in self.scopes for r in s.refs if r.table == table]
        if table in self.unplaced:
            refs.append(TableRef(table=table))
        return refs

    def tables(self, schema: Iterable[str]) -> list[str]:
        known = set(schema)
        found = {r.table for s in self.scopes for r in s.refs if r.table in known}
        return sorted(found | (self.unplaced & known))

    @property
    def calls(self) -> list[UdfCall]:
        return [c for s in self.scopes for c in s.calls]


# ---------------------------------------------------------------------------
# Token helpers
# ---------------------------------------------------------------------------

def _tokens(statement: sqlparse.sql.Statement) -> list[_Tok]:
    out = []
    for tok in statement.flatten():
        if tok.is_whitespace or tok.ttype in T.Comment:
            continue
        if tok.ttype in T.Keyword or tok.ttype in T.Operator.Comparison:
            norm = " ".join(tok.value.upper().split())
        else:
            norm = tok.value
        out.append(_Tok(tok.ttype, tok.value, norm))
    return out


def _tree(tokens: list[_Tok]) -> _Group:
    root = _Group()
    stack = [root]
    for tok in tokens:
        if tok.ttype in T.Punctuation and tok.value == "(":
            group = _Group()
            stack[-1].append(group)
            stack.append(group)
        elif tok.ttype in T.Punctuation and tok.value == ")":
            if len(stack) > 1:
                stack.pop()
        else:
            stack[-1].append(tok)
    return root


def _is_tok(item: _Item, norm: str) -> bool:
    return isinstance(item, _Tok) and item.norm.upper() == norm


def _is_punct(item: _Item, value: str) -> bool:
    return isinstance(item, _Tok) and item.ttype in T.Punctuation and item.value == value


def _is_keyword(item: _Item) -> bool:
    return isinstance(item, _Tok) and item.ttype in T.Keyword


def _is_ident(item: _Item) -> bool:
    if not isinstance(item, _Tok):
        return False
    if item.ttype in T.Name or item.ttype in T.String.Symbol:
        return True
    if item.ttype in T.Keyword:
        if item.ttype in T.Keyword.DML or item.ttype in T.Keyword.DDL or item.ttype in T.Keyword.CTE:
            return False
        return item.norm not in _STRUCTURAL and not item.norm.endswith("JOIN")
    return False


def _ident_name(item: _Tok) -> str:
    value = item.value
    if len(value) >= 2 and value[0] in "\"`[" and value[-1] in "\"`]":
        value = value[1:-1]
    return value.lower()


def _is_query(items: list[_Item]) -> bool:
    return any(
        isinstance(it, _Tok) and (it.ttype in T.Keyword.DML and it.norm == "SELECT" or it.ttype in T.Keyword.CTE)
        for it in items
    )


def _literal(items: list[_Item], i: int) -> tuple[Any, int] | None:
    if i >= len(items) or not isinstance(items[i], _Tok):
        return None
    tok = items[i]
    sign = 1
    if tok.ttype in T.Operator and tok.value == "-" and i + 1 < len(items):
        sign = -1
        i += 1
        tok = items[i]
        if not isinstance(tok, _Tok):
            return None
    if tok.ttype in T.Number.Hexadecimal or tok.ttype in T.Number.Integer:
        text = tok.value.lower()
        if text.startswith("-"):
            sign, text = -sign, text[1:]
        try:
            value = to_sqlite_int(int(text[2:], 16)) if text.startswith("0x") else int(text)
        except ValueError:
            return None
        return sign * value, i + 1
    if tok.ttype in T.String.Single and sign == 1:
        return tok.value[1:-1].replace("''", "'"), i + 1
    return None


def _colref(items: list[_Item], i: int) -> tuple[str | None, str, int] | None:
    if i >= len(items) or not _is_ident(items[i]):
        return None
    if i + 2 < len(items) and _is_punct(items[i + 1], ".") and _is_ident(items[i + 2]):
        j = i + 3
        qual, col = _ident_name(items[i]), _ident_name(items[i + 2])  # type: ignore[arg-type]
    else:
        j = i + 1
        qual, col = None, _ident_name(items[i])  # type: ignore[arg-type]
    if j < len(items) and isinstance(items[j], _Group):
        return None  # function call, not a column
    return qual, col, j


# ---------------------------------------------------------------------------
# Conjuncts
# ---------------------------------------------------------------------------

def _conjuncts(items: list[_Item]) -> list[list[_Item]]:
    """Split *items* on top-level AND; any top-level OR makes nothing pushable."""
    if any(_is_tok(it, "OR") for it in items):
        return []
    parts: list[list[_Item]] = [[]]
    in_between = False
    for it in items:
        if _is_tok(it, "BETWEEN"):
            in_between = True
        elif _is_tok(it, "AND"):
            if in_between:
                in_between = False
            else:
                parts.append([])
                continue
        parts[-1].append(it)

    out: list[list[_Item]] = []
    for part in parts:
        if len(part) == 1 and isinstance(part[0], _Group) and not _is_query(part[0]):
            out.extend(_conjuncts(part[0]))
        elif part:
            out.append(part)
    return out


def _match(conj: list[_Item]) -> list[tuple[str | None, Constraint]]:
    """Match a conjunct against the pushable shapes."""
    ref = _colref(conj, 0)
    if ref is not None:
        qual, col, j = ref
        if j < len(conj) and isinstance(conj[j], _Tok):
            op_tok = conj[j]
            if op_tok.ttype in T.Operator.Comparison and op_tok.value in _OPS:
                lit = _literal(conj, j + 1)
                if lit is not None and lit[1] == len(conj):
                    return [(qual, Constraint(col, _OPS[op_tok.value], lit[0]))]
            if op_tok.norm.upper() == "IN" and j + 2 == len(conj) and isinstance(conj[j + 1], _Group):
                values = _literal_list(conj[j + 1])
                if values:
                    return [(qual, Constraint(col, "IN", tuple(values)))]
            if op_tok.norm.upper() == "BETWEEN":
                lo = _literal(conj, j + 1)
                if lo is not None and lo[1] < len(conj) and _is_tok(conj[lo[1]], "AND"):
                    hi = _literal(conj, lo[1] + 1)
                    if hi is not None and hi[1] == len(conj):
                        return [
                            (qual, Constraint(col, ">=", lo[0])),
                            (qual, Constraint(col, "<=", hi[0])),
                        ]
        return []

    lit = _literal(conj, 0)
    if lit is not None and lit[1] < len(conj):
        op_tok = conj[lit[1]]
        if isinstance(op_tok, _Tok) and op_tok.ttype in T.Operator.Comparison and op_tok.value in _OPS:
            ref = _colref(conj, lit[1] + 1)
            if ref is not None and ref[2] == len(conj):
                return [(ref[0], Constraint(ref[1], FLIPPED[_OPS[op_tok.value]], lit[0]))]
    return []


def _literal_list(group: _Group) -> list[Any]:
    values = []
    i = 0
    while i < len(group):
        lit = _literal(group, i)
        if lit is None:
            return []
        values.append(lit[0])
        i = lit[1]
        if i < len(group):
            if not _is_punct(group[i], ","):
                return []
            i += 1
    return values


def _cte_name(items: list[_Item], i: int) -> str | None:
    """Name bound by ``name [(cols)] AS (query)`` when ``items[i]`` is that query."""
    if i < 2 or not _is_query(items[i]) or not _is_tok(items[i - 1], "AS"):  # type: ignore[arg-type]
        return None
    j = i - 2
    if isinstance(items[j], _Group) and j > 0:
        j -= 1
    if _is_ident(items[j]):
        return _ident_name(items[j])  # type: ignore[arg-type]
    return None


# ---------------------------------------------------------------------------
# Scope walk
# ---------------------------------------------------------------------------

class _Walker:
    def __init__(self, schema: Mapping[str, Iterable[str]]) -> None:
        self.schema = {name: {c.lower() for c in cols} for name, cols in schema.items()}
        self.scopes: list[Scope] = []
        self.ctes: dict[str, list[Scope]] = {}

    def query(self, items: list[_Item], parent: Scope | None, derived: bool = False) -> list[Scope]:
        """Walk a (possibly compound) query; return its SELECT cores."""
        cores: list[Scope] = []
        part: list[_Item] = []
        for it in items:
            if isinstance(it, _Tok) and it.norm in _COMPOUND:
                cores.append(self._select(part, parent, derived))
                part = []
            else:
                part.append(it)
        cores.append(self._select(part, parent, derived))
        return cores

    def _group(self, group: _Group, scope: Scope, in_agg: bool) -> None:
        if _is_query(group):
            self.query(group, scope)
        else:
            self._expr(group, scope, in_agg)

    def _expr(self, items: list[_Item], scope: Scope, in_agg: bool) -> None:
        for i, it in enumerate(items):
            if not isinstance(it, _Group):
                continue
            prev = items[i - 1] if i > 0 else None
            cte = _cte_name(items, i)
            if cte is not None:
                self.ctes[cte] = self.query(it, scope, derived=True)
                continue
            call = _ident_name(prev) if prev is not None and _is_ident(prev) else None  # type: ignore[arg-type]
            if call is not None:
                scope.calls.append(UdfCall(call, in_agg, scope))
            self._group(it, scope, in_agg or call in AGGREGATES)

    def _select(self, items: list[_Item], parent: Scope | None, derived: bool = False) -> Scope:
        scope = Scope(parent=parent, derived=derived)
        self.scopes.append(scope)
        where: list[_Item] = []
        ons: list[tuple[TableRef | None, str | None, list[_Item]]] = []
        clause: list[_Item] | None = None
        in_from = False
        expect_table = False
        join_kind: str | None = None
        expr_items: list[_Item] = []

        i = 0
        n = len(items)
        while i < n:
            it = items[i]
            if expect_table:
                expect_table = False
                if isinstance(it, _Group):
                    sources: list[Scope] = []
                    if _is_query(it):
                        sources = self.query(it, scope, derived=True)
                    else:
                        self._expr(it, scope, False)
                    j = i + 1
                    if j < n and _is_tok(items[j], "AS"):
                        j += 1
                    alias = None
                    if j < n and _is_ident(items[j]):
                        alias = _ident_name(items[j])  # type: ignore[arg-type]
                        j += 1
                    scope.refs.append(TableRef(table=None, alias=alias, join_kind=join_kind, sources=sources))
                    i = j
                    continue
                if _is_ident(it):
                    name = _ident_name(it)  # type: ignore[arg-type]
                    j = i + 1
                    if j + 1 < n and _is_punct(items[j], ".") and _is_ident(items[j + 1]):
                        name = _ident_name(items[j + 1])  # type: ignore[arg-type]
                        j += 2
                    if j < n and isinstance(items[j], _Group):
                        self._expr([items[j]], scope, False)
                        j += 1
                    if j < n and _is_tok(items[j], "AS"):
                        j += 1
                    alias = None
                    if j < n and _is_ident(items[j]):
                        alias = _ident_name(items[j])  # type: ignore[arg-type]
                        j += 1
                    scope.refs.append(TableRef(table=name, alias=alias, join_kind=join_kind))
                    i = j
                    continue

            if _is_keyword(it):
                norm = it.norm  # type: ignore[union-attr]
                if norm == "FROM":
                    in_from, expect_table, join_kind, clause = True, True, None, None
                    i += 1
                    continue
                if norm.endswith("JOIN"):
                    in_from, expect_table, join_kind, clause = True, True, norm, None
                    i += 1
                    continue
                if norm == "ON" and in_from:
                    clause = []
                    ons.append((scope.refs[-1] if scope.refs else None, join_kind, clause))
                    i += 1
                    continue
                if norm == "WHERE":
                    in_from, clause = False, where
                    i += 1
                    continue
                if norm in _TAIL_CLAUSES or norm == "SELECT":
                    in_from, clause = False, None
            if in_from and _is_punct(it, ","):
                expect_table, join_kind, clause = True, None, None
                i += 1
                continue

            if clause is not None:
                clause.append(it)
            expr_items.append(it)
            i += 1

        self._expr(expr_items, scope, False)

        for conj in _conjuncts(where):
            for qual, constraint in _match(conj):
                ref = self._bind(scope, qual, constraint.column)
                if ref is not None:
                    ref.constraints.append(constraint)

        for join_ref, kind, on_items in ons:
            if join_ref is None or (kind and ("RIGHT" in kind or "FULL" in kind)):
                continue
            for conj in _conjuncts(on_items):
                for qual, constraint in _match(conj):
                    if self._bind(scope, qual, constraint.column) is join_ref:
                        join_ref.constraints.append(constraint)
        return scope

    def _bind(self, scope: Scope, qual: str | None, column: str) -> TableRef | None:
        if qual is not None:
            candidates = [r for r in scope.refs if r.label == qual]
        else:
            candidates = [r for r in scope.refs if r.table in self.schema and column in self.schema[r.table]]
        if len(candidates) != 1:
            return None
        ref = candidates[0]
        if ref.table not in self.schema or column not in self.schema[ref.table]:
            return None
        return ref


def _write_targets(items: list[_Item]) -> set[str]:
    targets: set[str] = set()
    for i, it in enumerate(items):
        if not isinstance(it, _Tok):
            continue
        norm = it.norm.upper()
        if norm in ("INTO", "UPDATE", "TABLE") or (norm == "FROM" and i > 0 and _is_tok(items[i - 1], "DELETE")):
            j = i + 1
            while j < len(items) and isinstance(items[j], _Tok) and items[j].norm.upper() in (
                "OR", "ROLLBACK", "ABORT", "REPLACE", "FAIL", "IGNORE", "IF", "NOT", "EXISTS",
                "IF EXISTS", "IF NOT EXISTS",
            ):
                j += 1
            if j < len(items) and _is_ident(items[j]):
                name = _ident_name(items[j])  # type: ignore[arg-type]
                if j + 2 < len(items) and _is_punct(items[j + 1], ".") and _is_ident(items[j + 2]):
                    name = _ident_name(items[j + 2])  # type: ignore[arg-type]
                targets.add(name)
    return targets


def split_statements(sql: str) -> list[str]:
    """Split SQL text into individual statements, dropping empty ones."""
    return [s.strip() for s in sqlparse.split(sql) if s.strip().strip(";").strip()]


def analyze(sql: str, schema: Mapping[str, Iterable[str]]) -> StatementAnalysis:
    """Analyze one SQL statement against the virtual relation *schema*.

    Args:
        sql: A single statement.
        schema: Mapping of relation name to its column names.

    Returns:
        The scopes found, with constraints bound to their relation
        occurrences.
    """
    parsed = sqlparse.parse(sql)
    if not parsed:
        return StatementAnalysis(statement_type="UNKNOWN")
    statement = parsed[0]
    tokens = _tokens(statement)
    root = _tree(tokens)

    walker = _Walker(schema)
    walker.query(root, None)

    analysis = StatementAnalysis(
        statement_type=statement.get_type(),
        scopes=walker.scopes,
        write_targets=_write_targets(root),
    )

    for scope in walker.scopes:
        for ref in scope.refs:
            if ref.table in walker.ctes:
                ref.sources = walker.ctes[ref.table]

    placed = {r.table for s in walker.scopes for r in s.refs}
    for tok in tokens:
        if _is_ident(tok):
            name = _ident_name(tok)
            if name in walker.schema and name not in placed:
                analysis.unplaced.add(name)
    return analysis
