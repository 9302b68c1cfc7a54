"""Scalar SQL functions and their cost tags."""
from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from binsql.core.errors import BinsqlError, classify_backend_error

logger = logging.getLogger(__name__)


class CostTag(str, Enum):
    """What a single call of a function costs."""

    PURE = "pure"
    NATIVE_O1 = "native-O(1)"
    NATIVE_PER_ROW = "native-per-row"


@dataclass(frozen=True)
class Udf:
    name: str
    func: Callable[..., Any]
    arities: tuple[int, ...]
    cost: CostTag = CostTag.PURE
    deterministic: bool = False
    expensive: bool = False
    mutating: bool = False
    doc: str = ""

    @property
    def signature(self) -> str:
        if len(self.arities) == 1:
            return f"{self.name}/{self.arities[0]}"
        return f"{self.name}/{min(self.arities)}-{max(self.arities)}"


@dataclass
class UdfRegistry:
    """Name to :class:`Udf` mapping, installed on a SQLite connection."""

    _udfs: dict[str, Udf] = field(default_factory=dict)

    def add(self, udf: Udf) -> Udf:
        self._udfs[udf.name.lower()] = udf
        return udf

    def register(
        self,
        name: str,
        *arities: int,
        cost: CostTag = CostTag.PURE,
        deterministic: bool = False,
        expensive: bool = False,
        mutating: bool = False,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of :meth:`add`."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            doc = (func.__doc__ or "").strip().splitlines()
            self.add(Udf(
                name=name,
                func=func,
                arities=arities or (1,),
                cost=cost,
                deterministic=deterministic,
                expensive=expensive,
                mutating=mutating,
                doc=doc[0] if doc else "",
            ))
            return func

        return decorator

    def get(self, name: str) -> Udf | None:
        return self._udfs.get(name.lower())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._udfs

    def __iter__(self) -> Iterator[Udf]:
        return iter(sorted(self._udfs.values(), key=lambda u: u.name))

    def __len__(self) -> int:
        return len(self._udfs)

    def install(self, conn: sqlite3.Connection, on_error: Callable[[BinsqlError], None]) -> None:
        """Create every function on *conn*.

        SQLite turns exceptions raised inside a function into a generic
        ``OperationalError``; typed errors are handed to *on_error* first so
        the caller can re-raise the original.
        """
        for udf in self._udfs.values():
            wrapper = _wrap(udf, on_error)
            for arity in udf.arities:
                conn.create_function(udf.name, arity, wrapper, deterministic=udf.deterministic)
        logger.debug("Installed %d SQL functions", len(self._udfs))


def _wrap(udf: Udf, on_error: Callable[[BinsqlError], None]) -> Callable[..., Any]:
    def call(*args: Any) -> Any:
        try:
            return udf.func(*args)
        except BinsqlError as exc:
            on_error(exc)
            raise
        except Exception as exc:
            on_error(classify_backend_error(exc, f"{udf.name}()"))
            raise

    call.__name__ = udf.name
    return call
