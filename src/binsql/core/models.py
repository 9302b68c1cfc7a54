"""Core data models for binsql."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# ---------------------------------------------------------------------------
# Program entities
# ---------------------------------------------------------------------------

@dataclass
class Function:
    """A function known to the analysis session."""

    address: int
    name: str
    size: int = 0

    @property
    def end_ea(self) -> int:
        return self.address + self.size

    def contains(self, ea: int) -> bool:
        return self.address <= ea < self.address + self.size


@dataclass
class Segment:
    """A mapped memory segment and its raw bytes."""

    start: int
    end: int
    name: str
    perm: int = 0  # r=4, w=2, x=1
    seg_class: str = ""
    data: bytes = b""


@dataclass
class XRef:
    """A single cross-reference entry."""

    from_ea: int
    to_ea: int
    type: str
    is_code: bool


@dataclass
class StringLiteral:
    """A string literal found in the image."""

    address: int
    content: str
    length: int = -1
    encoding: str = "ascii"

    def __post_init__(self) -> None:
        if self.length < 0:
            self.length = len(self.content)


@dataclass
class Import:
    """An imported symbol."""

    address: int
    name: str
    module: str = ""
    ordinal: int | None = None


@dataclass
class Entry:
    """An entry point or export."""

    ordinal: int
    address: int
    name: str


@dataclass
class Name:
    """A named address."""

    address: int
    name: str


@dataclass
class BasicBlock:
    """A basic block of a function's control-flow graph."""

    func_addr: int
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass
class Instruction:
    """A single disassembled instruction."""

    address: int
    func_addr: int
    mnemonic: str
    size: int
    disasm: str


@dataclass
class Comment:
    """A comment attached to an address."""

    address: int
    text: str


# ---------------------------------------------------------------------------
# Decompiler output
# ---------------------------------------------------------------------------

@dataclass
class DecompiledLine:
    """One line of decompiled pseudocode."""

    func_addr: int
    line_num: int
    text: str
    indent: int = 0


@dataclass
class HlilVar:
    """A local variable or argument recovered by the decompiler."""

    func_addr: int
    var_index: int
    name: str
    type: str = ""
    size: int = 0
    is_argument: bool = False
    storage: str = "stack"  # "stack", "register" or "unknown"
    stack_offset: int | None = None


@dataclass
class HlilCall:
    """One argument of a call site in decompiled IL.

    A call without arguments is represented by a single entry with
    ``arg_index`` set to ``None``.
    """

    func_addr: int
    call_addr: int
    callee_addr: int | None
    callee_name: str
    arg_index: int | None = None
    arg_text: str | None = None


@dataclass
class AstNode:
    """A node of the decompiler's low-level syntax tree."""

    func_addr: int
    node_id: int
    parent_id: int | None
    depth: int
    op: str
    address: int | None = None
    text: str = ""


@dataclass
class Decompilation:
    """Everything produced by a single decompile call."""

    func_addr: int
    lines: list[DecompiledLine] = field(default_factory=list)
    variables: list[HlilVar] = field(default_factory=list)
    calls: list[HlilCall] = field(default_factory=list)
    ast: list[AstNode] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(line.text for line in self.lines)


# ---------------------------------------------------------------------------
# Query results
# ---------------------------------------------------------------------------

@dataclass
class QueryResult:
    """Result of executing one SQL text against a session."""

    columns: list[str] = field(default_factory=list)
    rows: list[list[Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def to_envelope(self) -> dict[str, Any]:
        return {
            "success": True,
            "columns": list(self.columns),
            "rows": [list(r) for r in self.rows],
            "row_count": self.row_count,
        }
