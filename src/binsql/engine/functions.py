"""Built-in SQL functions backed by the analysis session."""
from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from binsql.core.errors import BackendLookupFailure
from binsql.engine.udf import CostTag, UdfRegistry
from binsql.search.pattern import search
from binsql.utils.address import format_address, from_sqlite_int, parse_address, to_sqlite_int

if TYPE_CHECKING:
    from binsql.core.session import QuerySession


def _ea(value: Any) -> int | None:
    """Accept an SQLite integer or a hex string; ``None`` passes through."""
    if value is None:
        return None
    if isinstance(value, int):
        return from_sqlite_int(value)
    if isinstance(value, float):
        return from_sqlite_int(int(value))
    try:
        return parse_address(str(value))
    except ValueError:
        raise BackendLookupFailure(f"not an address: {value!r}") from None


def register_builtins(registry: UdfRegistry, session: QuerySession) -> UdfRegistry:
    """Register every built-in function on *registry*, bound to *session*."""
    backend = session.backend
    caps = backend.capabilities

    @registry.register("hexaddr", 1, cost=CostTag.PURE, deterministic=True)
    def hexaddr(ea: Any) -> str | None:
        """Format an address as 0x hex."""
        addr = _ea(ea)
        return None if addr is None else format_address(addr)

    @registry.register("func_at", 1, cost=CostTag.NATIVE_PER_ROW)
    def func_at(ea: Any) -> str | None:
        """Name of the function containing ea, or NULL."""
        addr = _ea(ea)
        func = backend.function_at(addr) if addr is not None else None
        return func.name if func is not None else None

    @registry.register("func_start", 1, cost=CostTag.NATIVE_PER_ROW)
    def func_start(ea: Any) -> int | None:
        """Start address of the function containing ea, or NULL."""
        addr = _ea(ea)
        func = backend.function_at(addr) if addr is not None else None
        return to_sqlite_int(func.address) if func is not None else None

    @registry.register("func_end", 1, cost=CostTag.NATIVE_PER_ROW)
    def func_end(ea: Any) -> int | None:
        """End address (exclusive) of the function containing ea, or NULL."""
        addr = _ea(ea)
        func = backend.function_at(addr) if addr is not None else None
        return to_sqlite_int(func.end_ea) if func is not None else None

    @registry.register("name_at", 1, cost=CostTag.NATIVE_O1)
    def name_at(ea: Any) -> str | None:
        """Name at ea, or NULL."""
        addr = _ea(ea)
        return backend.name_at(addr) if addr is not None else None

    @registry.register("comment_at", 1, cost=CostTag.NATIVE_O1)
    def comment_at(ea: Any) -> str | None:
        """Comment at ea, or NULL."""
        addr = _ea(ea)
        return backend.comment_at(addr) if addr is not None else None

    if caps.has_disassembly:
        @registry.register("disasm", 1, cost=CostTag.NATIVE_PER_ROW)
        def disasm(ea: Any) -> str | None:
            """Disassembly text of the instruction at ea."""
            addr = _ea(ea)
            if addr is None:
                return None
            text = backend.disassemble(addr)
            if text is None:
                raise BackendLookupFailure(f"no instruction at {format_address(addr)}")
            return text

    if caps.has_decompiler:
        @registry.register("decompile", 1, cost=CostTag.NATIVE_PER_ROW, expensive=True)
        def decompile(ea: Any) -> str | None:
            """Pseudocode of the function containing ea."""
            addr = _ea(ea)
            if addr is None:
                return None
            func = backend.function_at(addr)
            if func is None:
                raise BackendLookupFailure(f"address {format_address(addr)} is not inside a function")
            result = session.catalog.decompile(func.address)
            if result is None:
                raise BackendLookupFailure(f"cannot decompile {format_address(func.address)}")
            return result.text

    if caps.has_byte_search:
        def _bounds(start: Any, end: Any) -> tuple[int | None, int | None]:
            return _ea(start), _ea(end)

        @registry.register("search_bytes", 1, 2, 3, cost=CostTag.NATIVE_PER_ROW)
        def search_bytes(pattern: str, start: Any = None, end: Any = None) -> str:
            """JSON array of every address matching a byte pattern."""
            lo, hi = _bounds(start, end)
            return json.dumps(search(backend, pattern, lo, hi))

        @registry.register("search_first", 1, 2, 3, cost=CostTag.NATIVE_PER_ROW)
        def search_first(pattern: str, start: Any = None, end: Any = None) -> int | None:
            """First address matching a byte pattern, or NULL."""
            lo, hi = _bounds(start, end)
            hits = search(backend, pattern, lo, hi, first=True)
            return to_sqlite_int(hits[0]) if hits else None

    if caps.writable:
        @registry.register("set_name", 2, cost=CostTag.NATIVE_O1, mutating=True)
        def set_name(ea: Any, name: Any) -> int:
            """Rename the address; an empty name removes it."""
            session.rename(_require(ea), "" if name is None else str(name))
            return 1

        @registry.register("set_comment", 2, cost=CostTag.NATIVE_O1, mutating=True)
        def set_comment(ea: Any, text: Any) -> int:
            """Set or clear the comment at ea."""
            session.set_comment(_require(ea), "" if text is None else str(text))
            return 1

        @registry.register("save", 0, cost=CostTag.NATIVE_O1, mutating=True)
        def save() -> int:
            """Persist the database."""
            session.save()
            return 1

    return registry


def _require(value: Any) -> int:
    addr = _ea(value)
    if addr is None:
        raise BackendLookupFailure("address must not be NULL")
    return addr
