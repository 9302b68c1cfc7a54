"""Precomputed indices shared by the virtual relations of one session."""
from __future__ import annotations

import bisect
import logging
from collections import OrderedDict
from typing import Any, NamedTuple

from binsql.backend.protocol import AnalysisBackend
from binsql.core.models import Decompilation, Function, StringLiteral
from binsql.utils.address import format_address

logger = logging.getLogger(__name__)


class XrefRow(NamedTuple):
    from_ea: int
    to_ea: int
    from_func: int
    type: str
    is_code: bool


class Catalog:
    """Indices derived once from the backend's bulk enumerations.

    Function ranges and the cross-reference index (including each xref's
    containing function, ``from_func``) are built once when the session
    opens. Name maps, view aggregates and decompilations are cached per
    *generation*; every mutation bumps the generation.
    """

    def __init__(self, backend: AnalysisBackend, decompile_cache_size: int = 256) -> None:
        self.backend = backend
        self.generation = 0
        self._decompile_cache_size = max(0, decompile_cache_size)
        self._decompiled: OrderedDict[int, Decompilation | None] = OrderedDict()
        self._cache: dict[str, Any] = {}

        self._starts: list[int] = []
        self._ends: list[int] = []
        self.xref_rows: list[XrefRow] = []
        self.xrefs_by_from_func: dict[int, list[XrefRow]] = {}

    def load(self) -> Catalog:
        funcs = sorted(self.backend.functions(), key=lambda f: f.address)
        self._starts = [f.address for f in funcs]
        self._ends = [f.end_ea if f.size > 0 else f.address + 1 for f in funcs]

        rows = []
        by_from_func: dict[int, list[XrefRow]] = {}
        for x in self.backend.xrefs():
            row = self.xref_row(x.from_ea, x.to_ea, x.type, x.is_code)
            rows.append(row)
            by_from_func.setdefault(row.from_func, []).append(row)
        self.xref_rows = rows
        self.xrefs_by_from_func = by_from_func
        logger.debug("Catalog loaded: %d functions, %d xrefs", len(funcs), len(rows))
        return self

    # -- function ranges ------------------------------------------------------

    @property
    def function_count(self) -> int:
        return len(self._starts)

    @property
    def function_starts(self) -> list[int]:
        return list(self._starts)

    def containing_function(self, ea: int) -> int:
        """Start of the function containing *ea*, or 0. No backend call."""
        idx = bisect.bisect_right(self._starts, ea) - 1
        if idx >= 0 and ea < self._ends[idx]:
            return self._starts[idx]
        return 0

    def xref_row(self, from_ea: int, to_ea: int, xtype: str, is_code: bool) -> XrefRow:
        return XrefRow(from_ea, to_ea, self.containing_function(from_ea), xtype, bool(is_code))

    # -- generation-scoped caches ---------------------------------------------

    def invalidate(self, ea: int | None = None) -> None:
        """Drop every cached aggregate that may depend on the changed address."""
        self.generation += 1
        self._cache.clear()
        # A rename also changes the pseudocode of every caller.
        self._decompiled.clear()
        logger.debug(
            "Catalog invalidated (generation %d, address %s)",
            self.generation, format_address(ea) if ea is not None else "*",
        )

    def cached(self, key: str, build: Any) -> Any:
        if key not in self._cache:
            self._cache[key] = build()
        return self._cache[key]

    def functions(self) -> dict[int, Function]:
        return self.cached("functions", lambda: {f.address: f for f in self.backend.functions()})

    def function_names(self) -> dict[int, str]:
        return self.cached("function_names", lambda: {ea: f.name for ea, f in self.functions().items()})

    def name_map(self) -> dict[int, str]:
        return self.cached("name_map", lambda: {n.address: n.name for n in self.backend.names()})

    def string_map(self) -> dict[int, StringLiteral]:
        return self.cached("string_map", lambda: {s.address: s for s in self.backend.strings()})

    def count(self, key: str, build: Any) -> int:
        return self.cached(f"count:{key}", build)

    def decompile(self, func_addr: int) -> Decompilation | None:
        if func_addr in self._decompiled:
            self._decompiled.move_to_end(func_addr)
            return self._decompiled[func_addr]
        result = self.backend.decompile(func_addr)
        if self._decompile_cache_size:
            self._decompiled[func_addr] = result
            while len(self._decompiled) > self._decompile_cache_size:
                self._decompiled.popitem(last=False)
        return result
