"""Pushed-down predicate representation."""
from __future__ import annotations

import operator
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from binsql.utils.address import from_sqlite_int

_COMPARE: dict[str, Callable[[Any, Any], bool]] = {
    "=": operator.eq,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

FLIPPED = {"=": "=", "<": ">", "<=": ">=", ">": "<", ">=": "<="}


def _comparable(a: Any, b: Any) -> bool:
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return True
    return isinstance(a, str) and isinstance(b, str)


@dataclass(frozen=True)
class Constraint:
    """A single ``column OP literal`` conjunct.

    Values are kept in SQLite's representation (signed 64-bit integers,
    text). ``IN`` constraints carry a tuple of values.
    """

    column: str
    op: str
    value: Any

    @property
    def is_equality(self) -> bool:
        return self.op in ("=", "IN")

    def values(self) -> tuple[Any, ...]:
        if self.op == "IN":
            return tuple(self.value)
        return (self.value,)

    def matches(self, actual: Any) -> bool:
        """Return False only when SQLite would certainly reject *actual*.

        Mixed-type comparisons follow SQLite affinity rules that are not
        worth replicating here, so they keep the row and leave the decision
        to SQLite.
        """
        if actual is None:
            return False
        if self.op == "IN":
            return any(Constraint(self.column, "=", v).matches(actual) for v in self.value)
        if not _comparable(actual, self.value):
            return True
        return _COMPARE[self.op](actual, self.value)

    def __str__(self) -> str:
        if self.op == "IN":
            return f"{self.column} IN ({', '.join(repr(v) for v in self.value)})"
        return f"{self.column} {self.op} {self.value!r}"


Conjunction = tuple[Constraint, ...]


def row_matches(conjunction: Sequence[Constraint], row: dict[str, Any]) -> bool:
    return all(c.matches(row.get(c.column)) for c in conjunction)


def backend_key(value: Any, sqlite_type: str) -> Any:
    """Convert a literal into the key the backend expects, or ``None``.

    ``None`` means no row of that column can ever equal the literal under
    SQLite's comparison rules, so the key is dropped.
    """
    if sqlite_type == "INTEGER":
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int):
            return from_sqlite_int(value)
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            return from_sqlite_int(int(value))
        return None
    if isinstance(value, str):
        return value
    return str(value)
