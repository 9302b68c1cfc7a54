"""Analysis backend protocol definition."""
from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from binsql.core.models import (
    BasicBlock,
    Comment,
    Decompilation,
    Entry,
    Function,
    Import,
    Instruction,
    Name,
    Segment,
    StringLiteral,
    XRef,
)


@dataclass
class BackendCapabilities:
    """Declares which operations a backend supports.

    The query layer inspects this before registering relations and UDFs
    that would otherwise fail on every call.
    """

    has_decompiler: bool = True
    has_disassembly: bool = True
    has_byte_search: bool = True
    writable: bool = True


@runtime_checkable
class AnalysisBackend(Protocol):
    """Narrow contract over an external disassembler/decompiler session.

    Every other part of binsql talks to the analysis engine only through
    these methods. Bulk enumerations (functions, segments, names, entries,
    imports, strings, xrefs, comments) are assumed cheap; per-function
    operations (instructions, decompile) are assumed expensive.
    Implementations that do not support an operation should raise
    :class:`NotImplementedError`.
    """

    @property
    def capabilities(self) -> BackendCapabilities:
        ...

    def db_info(self) -> dict[str, Any]:
        """Static facts about the open database (file name, arch, ...)."""
        ...

    def functions(self) -> Iterable[Function]:
        ...

    def function_at(self, ea: int) -> Function | None:
        """Return the function containing *ea*, or ``None``."""
        ...

    def segments(self) -> Iterable[Segment]:
        ...

    def names(self) -> Iterable[Name]:
        ...

    def name_at(self, ea: int) -> str | None:
        ...

    def entries(self) -> Iterable[Entry]:
        ...

    def imports(self) -> Iterable[Import]:
        ...

    def strings(self) -> Iterable[StringLiteral]:
        ...

    def xrefs(self) -> Iterable[XRef]:
        ...

    def xrefs_to(self, ea: int) -> list[XRef]:
        """Return cross-references *to* the given address."""
        ...

    def xrefs_from(self, ea: int) -> list[XRef]:
        """Return cross-references *from* the given address."""
        ...

    def basic_blocks(self, func_addr: int) -> list[BasicBlock]:
        ...

    def instructions(self, func_addr: int) -> list[Instruction]:
        """Disassemble every instruction of the function at *func_addr*."""
        ...

    def disassemble(self, ea: int) -> str | None:
        """Return the disassembly text of the instruction at *ea*."""
        ...

    def decompile(self, func_addr: int) -> Decompilation | None:
        """Decompile a function, or return ``None`` if *func_addr* is not one.

        This is the most expensive operation of the interface: it produces
        pseudocode, variables, calls and the syntax tree in one go.
        """
        ...

    def comments(self) -> Iterable[Comment]:
        ...

    def comment_at(self, ea: int) -> str | None:
        ...

    def search_bytes(
        self, pattern: re.Pattern[bytes], start: int | None = None, end: int | None = None
    ) -> Iterator[int]:
        """Yield every address in ``[start, end)`` where *pattern* matches.

        Args:
            pattern: Compiled byte regex; group 1 (if any) is the match.
            start: Lower bound, or ``None`` for the start of the image.
            end: Upper bound (exclusive), or ``None`` for the end of the image.
        """
        ...

    def set_name(self, ea: int, name: str) -> bool:
        ...

    def set_comment(self, ea: int, text: str) -> bool:
        ...

    def save(self) -> bool:
        """Persist the session to the backend's native database format."""
        ...
