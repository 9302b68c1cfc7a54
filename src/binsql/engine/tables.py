"""Virtual relations over the analysis backend."""
from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

from binsql.core.errors import MissingRequiredFilter
from binsql.engine.catalog import Catalog


class CostClass(str, Enum):
    """How expensive it is to produce a relation's rows."""

    CHEAP_SCAN = "cheap-scan"
    NATIVE_LOOKUP = "native-lookup"
    EXPENSIVE_PER_ROW = "expensive-per-row"


@dataclass(frozen=True)
class Column:
    name: str
    type: str = "INTEGER"


def _cols(decl: str) -> tuple[Column, ...]:
    """Parse ``"name TYPE, name TYPE"`` into columns."""
    out = []
    for part in decl.split(","):
        name, _, ctype = part.strip().partition(" ")
        out.append(Column(name, ctype.strip() or "INTEGER"))
    return tuple(out)


Row = tuple[Any, ...]


class VirtualTable:
    """Base class for a relation computed on demand from the backend.

    Subclasses declare their columns, the columns the backend can look up
    natively (``index_columns``, in order of preference) and a cost class.
    ``expensive-per-row`` relations also name the column that must carry an
    equality filter; :meth:`scan` on them refuses to produce rows at all.
    """

    name: str = ""
    description: str = ""
    columns: tuple[Column, ...] = ()
    index_columns: tuple[str, ...] = ()
    cost: CostClass = CostClass.CHEAP_SCAN
    required_filter: str | None = None
    rows_per_key: int = 1

    def __init__(self, catalog: Catalog) -> None:
        self.catalog = catalog
        self.backend = catalog.backend

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def column_type(self, name: str) -> str:
        for c in self.columns:
            if c.name == name:
                return c.type
        raise KeyError(name)

    def create_sql(self, schema: str | None = "temp") -> str:
        cols = ", ".join(f'"{c.name}" {c.type}' for c in self.columns)
        prefix = f"{schema}." if schema else ""
        return f'CREATE TABLE {prefix}"{self.name}" ({cols})'

    def scan(self) -> Iterator[Row]:
        if self.cost is CostClass.EXPENSIVE_PER_ROW:
            raise MissingRequiredFilter(self.name, self.required_filter or "?")
        raise NotImplementedError

    def lookup(self, column: str, key: Any) -> Iterable[Row]:
        raise NotImplementedError(f"{self.name} has no index on {column}")

    def count(self) -> int:
        """Number of rows a full scan would produce."""
        return self.catalog.count(self.name, lambda: sum(1 for _ in self.scan()))

    def estimate(self, keys: int | None = None) -> int:
        if keys is None:
            return self.count()
        return keys * self.rows_per_key


# ---------------------------------------------------------------------------
# Bulk relations
# ---------------------------------------------------------------------------

class FuncsTable(VirtualTable):
    name = "funcs"
    description = "Functions: start address, name, size in bytes, end address"
    columns = _cols("address INTEGER, name TEXT, size INTEGER, end_ea INTEGER")
    index_columns = ("address",)

    def scan(self) -> Iterator[Row]:
        for f in self.backend.functions():
            yield (f.address, f.name, f.size, f.end_ea)

    def lookup(self, column: str, key: Any) -> Iterable[Row]:
        f = self.backend.function_at(key)
        if f is not None and f.address == key:
            yield (f.address, f.name, f.size, f.end_ea)

    def count(self) -> int:
        return self.catalog.function_count


class SegmentsTable(VirtualTable):
    name = "segments"
    description = "Segments: address range, name, permission bits (r=4 w=2 x=1), class"
    columns = _cols("start_ea INTEGER, end_ea INTEGER, name TEXT, perm INTEGER, seg_class TEXT")

    def scan(self) -> Iterator[Row]:
        for s in self.backend.segments():
            yield (s.start, s.end, s.name, s.perm, s.seg_class)


class NamesTable(VirtualTable):
    name = "names"
    description = "Every named address, functions included"
    columns = _cols("address INTEGER, name TEXT")
    index_columns = ("address",)

    def scan(self) -> Iterator[Row]:
        for n in self.backend.names():
            yield (n.address, n.name)

    def lookup(self, column: str, key: Any) -> Iterable[Row]:
        name = self.backend.name_at(key)
        if name is not None:
            yield (key, name)


class EntriesTable(VirtualTable):
    name = "entries"
    description = "Entry points and exports"
    columns = _cols("ordinal INTEGER, address INTEGER, name TEXT")

    def scan(self) -> Iterator[Row]:
        for e in self.backend.entries():
            yield (e.ordinal, e.address, e.name)


class ImportsTable(VirtualTable):
    name = "imports"
    description = "Imported symbols with their module and optional ordinal"
    columns = _cols("address INTEGER, name TEXT, module TEXT, ordinal INTEGER")

    def scan(self) -> Iterator[Row]:
        for i in self.backend.imports():
            yield (i.address, i.name, i.module, i.ordinal)


class StringsTable(VirtualTable):
    name = "strings"
    description = "String literals: address, length in source encoding, content"
    columns = _cols("address INTEGER, length INTEGER, content TEXT, encoding TEXT")
    index_columns = ("address",)

    def scan(self) -> Iterator[Row]:
        for s in self.backend.strings():
            yield (s.address, s.length, s.content, s.encoding)

    def lookup(self, column: str, key: Any) -> Iterable[Row]:
        s = self.catalog.string_map().get(key)
        if s is not None:
            yield (s.address, s.length, s.content, s.encoding)


class XrefsTable(VirtualTable):
    name = "xrefs"
    description = "Cross-references; from_func is the function containing from_ea (0 if none)"
    columns = _cols("from_ea INTEGER, to_ea INTEGER, from_func INTEGER, type TEXT, is_code INTEGER")
    index_columns = ("to_ea", "from_ea", "from_func")
    rows_per_key = 4

    def scan(self) -> Iterator[Row]:
        return iter(self.catalog.xref_rows)

    def lookup(self, column: str, key: Any) -> Iterable[Row]:
        if column == "from_func":
            return list(self.catalog.xrefs_by_from_func.get(key, ()))
        refs = self.backend.xrefs_to(key) if column == "to_ea" else self.backend.xrefs_from(key)
        return [self.catalog.xref_row(x.from_ea, x.to_ea, x.type, x.is_code) for x in refs]

    def count(self) -> int:
        return len(self.catalog.xref_rows)


class CommentsTable(VirtualTable):
    name = "comments"
    description = "Comments, at most one per address"
    columns = _cols("address INTEGER, text TEXT")
    index_columns = ("address",)

    def scan(self) -> Iterator[Row]:
        for c in self.backend.comments():
            yield (c.address, c.text)

    def lookup(self, column: str, key: Any) -> Iterable[Row]:
        text = self.backend.comment_at(key)
        if text is not None:
            yield (key, text)


class DbInfoTable(VirtualTable):
    name = "db_info"
    description = "Static facts about the open database"
    columns = _cols("key TEXT, value TEXT")

    def scan(self) -> Iterator[Row]:
        for key, value in self.backend.db_info().items():
            yield (str(key), None if value is None else str(value))


# ---------------------------------------------------------------------------
# Per-function relations
# ---------------------------------------------------------------------------

class BlocksTable(VirtualTable):
    name = "blocks"
    description = "Basic blocks per function"
    columns = _cols("func_addr INTEGER, start_ea INTEGER, end_ea INTEGER, size INTEGER")
    index_columns = ("func_addr",)
    cost = CostClass.NATIVE_LOOKUP
    rows_per_key = 8

    def scan(self) -> Iterator[Row]:
        for ea in self.catalog.function_starts:
            yield from self.lookup("func_addr", ea)

    def lookup(self, column: str, key: Any) -> Iterable[Row]:
        for b in self.backend.basic_blocks(key):
            yield (b.func_addr, b.start, b.end, b.size)

    def count(self) -> int:
        return self.catalog.function_count * self.rows_per_key


class InstructionsTable(VirtualTable):
    name = "instructions"
    description = "Disassembled instructions; requires func_addr = ..."
    columns = _cols("address INTEGER, func_addr INTEGER, mnemonic TEXT, size INTEGER, disasm TEXT")
    index_columns = ("func_addr",)
    cost = CostClass.EXPENSIVE_PER_ROW
    required_filter = "func_addr"
    rows_per_key = 64

    def lookup(self, column: str, key: Any) -> Iterable[Row]:
        for i in self.backend.instructions(key):
            yield (i.address, i.func_addr, i.mnemonic, i.size, i.disasm)


class _DecompilerTable(VirtualTable):
    index_columns = ("func_addr",)
    cost = CostClass.EXPENSIVE_PER_ROW
    required_filter = "func_addr"

    def lookup(self, column: str, key: Any) -> Iterable[Row]:
        result = self.catalog.decompile(key)
        if result is None:
            return []
        return self.rows(result)

    def rows(self, result: Any) -> Iterable[Row]:
        raise NotImplementedError


class PseudocodeTable(_DecompilerTable):
    name = "pseudocode"
    description = "Decompiled pseudocode lines; requires func_addr = ..."
    columns = _cols("func_addr INTEGER, line_num INTEGER, text TEXT, indent INTEGER")
    rows_per_key = 40

    def rows(self, result: Any) -> Iterable[Row]:
        return [(ln.func_addr, ln.line_num, ln.text, ln.indent) for ln in result.lines]


class HlilVarsTable(_DecompilerTable):
    name = "hlil_vars"
    description = "Decompiler variables and arguments; requires func_addr = ..."
    columns = _cols(
        "func_addr INTEGER, var_index INTEGER, name TEXT, type TEXT, size INTEGER, "
        "is_argument INTEGER, storage TEXT, stack_offset INTEGER"
    )
    rows_per_key = 12

    def rows(self, result: Any) -> Iterable[Row]:
        return [
            (v.func_addr, v.var_index, v.name, v.type, v.size, v.is_argument, v.storage, v.stack_offset)
            for v in result.variables
        ]


class HlilCallsTable(_DecompilerTable):
    name = "hlil_calls"
    description = "Call sites and their arguments in decompiled IL; requires func_addr = ..."
    columns = _cols(
        "func_addr INTEGER, call_addr INTEGER, callee_addr INTEGER, callee_name TEXT, "
        "arg_index INTEGER, arg_text TEXT"
    )
    rows_per_key = 16

    def rows(self, result: Any) -> Iterable[Row]:
        return [
            (c.func_addr, c.call_addr, c.callee_addr, c.callee_name, c.arg_index, c.arg_text)
            for c in result.calls
        ]


class AstNodesTable(_DecompilerTable):
    name = "ast_nodes"
    description = "Low-level decompiler syntax tree; requires func_addr = ..."
    columns = _cols(
        "func_addr INTEGER, node_id INTEGER, parent_id INTEGER, depth INTEGER, "
        "op TEXT, address INTEGER, text TEXT"
    )
    rows_per_key = 200

    def rows(self, result: Any) -> Iterable[Row]:
        return [(n.func_addr, n.node_id, n.parent_id, n.depth, n.op, n.address, n.text) for n in result.ast]


BASE_TABLES: tuple[type[VirtualTable], ...] = (
    FuncsTable,
    SegmentsTable,
    NamesTable,
    EntriesTable,
    ImportsTable,
    StringsTable,
    XrefsTable,
    BlocksTable,
    InstructionsTable,
    CommentsTable,
    DbInfoTable,
)

DECOMPILER_TABLES: tuple[type[VirtualTable], ...] = (
    PseudocodeTable,
    HlilVarsTable,
    HlilCallsTable,
    AstNodesTable,
)


def build_tables(catalog: Catalog) -> dict[str, VirtualTable]:
    """Instantiate every relation the backend can serve, views included."""
    from binsql.engine.views import VIEWS

    caps = catalog.backend.capabilities
    classes: list[type[VirtualTable]] = [
        cls for cls in BASE_TABLES if caps.has_disassembly or cls is not InstructionsTable
    ]
    if caps.has_decompiler:
        classes.extend(DECOMPILER_TABLES)
    classes.extend(VIEWS)
    return {cls.name: cls(catalog) for cls in classes}
