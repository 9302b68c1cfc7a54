"""In-memory backend over an exported analysis snapshot."""
from __future__ import annotations

import bisect
import json
import logging
import re
from collections import Counter
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from binsql.backend.protocol import BackendCapabilities
from binsql.core.models import (
    AstNode,
    BasicBlock,
    Comment,
    Decompilation,
    DecompiledLine,
    Entry,
    Function,
    HlilCall,
    HlilVar,
    Import,
    Instruction,
    Name,
    Segment,
    StringLiteral,
    XRef,
)
from binsql.utils.address import format_address, parse_address

logger = logging.getLogger(__name__)

_VALID_NAME = re.compile(r"^[A-Za-z_$?@.][\w$?@.:<>~]*$")

_CODE_XREF_TYPES = frozenset({"call", "jump", "flow", "code"})


def _addr(value: Any) -> int:
    return parse_address(value)


def _opt_addr(value: Any) -> int | None:
    if value is None:
        return None
    return parse_address(value)


def _load_snapshot_file(path: Path) -> dict[str, Any]:
    """Load a JSON or YAML snapshot and return its top-level mapping."""
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in (".yaml", ".yml"):
        import yaml  # type: ignore[import-untyped]

        data = yaml.safe_load(text)
    else:
        data = json.loads(text)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a mapping at top level in {path}, got {type(data).__name__}")
    return data


def _name_entries(raw: Any) -> list[tuple[int, str]]:
    if isinstance(raw, dict):
        return [(_addr(k), str(v)) for k, v in raw.items()]
    return [(_addr(n["address"]), str(n["name"])) for n in raw or []]


def _comment_entries(raw: Any) -> list[tuple[int, str]]:
    if isinstance(raw, dict):
        return [(_addr(k), str(v)) for k, v in raw.items()]
    return [(_addr(c["address"]), str(c["text"])) for c in raw or []]


class MemoryBackend:
    """Backend serving a snapshot held entirely in memory.

    A snapshot is a mapping with the keys ``info``, ``segments``,
    ``functions``, ``names``, ``entries``, ``imports``, ``strings``,
    ``xrefs`` and ``comments``. Per-function keys (``blocks``,
    ``instructions``, ``pseudocode``, ``variables``, ``calls``, ``ast``)
    carry the data a real engine would produce on demand. Addresses may be
    integers or hex strings.

    ``call_counts`` records how often each operation was invoked, so callers
    can check that lookups stay native instead of scanning.

    Args:
        snapshot: The snapshot mapping.
        path: File the snapshot came from; :meth:`save` writes back to it.
    """

    def __init__(self, snapshot: dict[str, Any] | None = None, path: str | Path | None = None) -> None:
        self._raw: dict[str, Any] = dict(snapshot or {})
        self.path = Path(path) if path is not None else None
        self.call_counts: Counter[str] = Counter()
        self._caps = BackendCapabilities(
            has_decompiler=True,
            has_disassembly=True,
            has_byte_search=True,
            writable=True,
        )
        self._load(self._raw)

    @classmethod
    def from_file(cls, path: str | Path) -> MemoryBackend:
        p = Path(path)
        if not p.is_file():
            raise FileNotFoundError(f"Database not found: {p}")
        return cls(_load_snapshot_file(p), path=p)

    # -- loading --------------------------------------------------------------

    def _load(self, raw: dict[str, Any]) -> None:
        self._info: dict[str, Any] = dict(raw.get("info") or {})

        self._segments = sorted(
            (
                Segment(
                    start=_addr(s["start"]),
                    end=_addr(s["end"]),
                    name=str(s.get("name", "")),
                    perm=int(s.get("perm", 0)),
                    seg_class=str(s.get("class", "")),
                    data=bytes.fromhex(s.get("bytes", "")),
                )
                for s in raw.get("segments") or []
            ),
            key=lambda seg: seg.start,
        )

        self._functions: dict[int, Function] = {}
        self._func_raw: dict[int, dict[str, Any]] = {}
        for f in raw.get("functions") or []:
            ea = _addr(f["address"])
            self._functions[ea] = Function(
                address=ea,
                name=str(f.get("name") or f"sub_{ea:X}"),
                size=int(f.get("size", 0)),
            )
            self._func_raw[ea] = f
        self._func_starts = sorted(self._functions)

        self._names: dict[int, str] = dict(_name_entries(raw.get("names")))
        self._comments: dict[int, str] = dict(_comment_entries(raw.get("comments")))

        self._entries = [
            Entry(ordinal=int(e.get("ordinal", i)), address=_addr(e["address"]), name=str(e.get("name", "")))
            for i, e in enumerate(raw.get("entries") or [])
        ]
        self._imports = [
            Import(
                address=_addr(i["address"]),
                name=str(i.get("name", "")),
                module=str(i.get("module", "")),
                ordinal=i.get("ordinal"),
            )
            for i in raw.get("imports") or []
        ]
        self._strings = [
            StringLiteral(
                address=_addr(s["address"]),
                content=str(s.get("content", "")),
                length=int(s.get("length", -1)),
                encoding=str(s.get("encoding", "ascii")),
            )
            for s in raw.get("strings") or []
        ]

        self._xrefs: list[XRef] = []
        self._xrefs_to: dict[int, list[XRef]] = {}
        self._xrefs_from: dict[int, list[XRef]] = {}
        for x in raw.get("xrefs") or []:
            xtype = str(x.get("type", "call"))
            xref = XRef(
                from_ea=_addr(x["from"]),
                to_ea=_addr(x["to"]),
                type=xtype,
                is_code=bool(x.get("is_code", xtype in _CODE_XREF_TYPES)),
            )
            self._xrefs.append(xref)
            self._xrefs_to.setdefault(xref.to_ea, []).append(xref)
            self._xrefs_from.setdefault(xref.from_ea, []).append(xref)

        self._insn_at: dict[int, Instruction] = {}
        for ea in self._func_starts:
            for insn in self._build_instructions(ea):
                self._insn_at[insn.address] = insn

    def _build_instructions(self, func_addr: int) -> list[Instruction]:
        return [
            Instruction(
                address=_addr(i["address"]),
                func_addr=func_addr,
                mnemonic=str(i.get("mnemonic", "")),
                size=int(i.get("size", 0)),
                disasm=str(i.get("disasm", i.get("mnemonic", ""))),
            )
            for i in self._func_raw[func_addr].get("instructions") or []
        ]

    # -- capabilities ---------------------------------------------------------

    @property
    def capabilities(self) -> BackendCapabilities:
        return self._caps

    # -- bulk enumeration -----------------------------------------------------

    def db_info(self) -> dict[str, Any]:
        self.call_counts["db_info"] += 1
        info = dict(self._info)
        info.setdefault("function_count", len(self._functions))
        info.setdefault("segment_count", len(self._segments))
        if self.path is not None:
            info.setdefault("path", str(self.path))
        return info

    def functions(self) -> list[Function]:
        self.call_counts["functions"] += 1
        return [self._functions[ea] for ea in self._func_starts]

    def segments(self) -> list[Segment]:
        self.call_counts["segments"] += 1
        return list(self._segments)

    def names(self) -> list[Name]:
        self.call_counts["names"] += 1
        merged = dict(self._names)
        for ea, func in self._functions.items():
            merged[ea] = func.name
        return [Name(address=ea, name=merged[ea]) for ea in sorted(merged)]

    def entries(self) -> list[Entry]:
        self.call_counts["entries"] += 1
        return list(self._entries)

    def imports(self) -> list[Import]:
        self.call_counts["imports"] += 1
        return list(self._imports)

    def strings(self) -> list[StringLiteral]:
        self.call_counts["strings"] += 1
        return list(self._strings)

    def xrefs(self) -> list[XRef]:
        self.call_counts["xrefs"] += 1
        return list(self._xrefs)

    def comments(self) -> list[Comment]:
        self.call_counts["comments"] += 1
        return [Comment(address=ea, text=self._comments[ea]) for ea in sorted(self._comments)]

    # -- indexed lookups ------------------------------------------------------

    def function_at(self, ea: int) -> Function | None:
        self.call_counts["function_at"] += 1
        idx = bisect.bisect_right(self._func_starts, ea) - 1
        if idx < 0:
            return None
        func = self._functions[self._func_starts[idx]]
        if func.contains(ea) or (func.size == 0 and func.address == ea):
            return func
        return None

    def name_at(self, ea: int) -> str | None:
        self.call_counts["name_at"] += 1
        func = self._functions.get(ea)
        if func is not None:
            return func.name
        return self._names.get(ea)

    def comment_at(self, ea: int) -> str | None:
        self.call_counts["comment_at"] += 1
        return self._comments.get(ea)

    def xrefs_to(self, ea: int) -> list[XRef]:
        self.call_counts["xrefs_to"] += 1
        return list(self._xrefs_to.get(ea, ()))

    def xrefs_from(self, ea: int) -> list[XRef]:
        self.call_counts["xrefs_from"] += 1
        return list(self._xrefs_from.get(ea, ()))

    # -- per-function operations ---------------------------------------------

    def basic_blocks(self, func_addr: int) -> list[BasicBlock]:
        self.call_counts["basic_blocks"] += 1
        raw = self._func_raw.get(func_addr)
        if raw is None:
            return []
        blocks = raw.get("blocks")
        if not blocks:
            func = self._functions[func_addr]
            return [BasicBlock(func_addr=func_addr, start=func.address, end=func.end_ea)]
        return [BasicBlock(func_addr=func_addr, start=_addr(s), end=_addr(e)) for s, e in blocks]

    def instructions(self, func_addr: int) -> list[Instruction]:
        self.call_counts["instructions"] += 1
        if func_addr not in self._func_raw:
            return []
        return self._build_instructions(func_addr)

    def disassemble(self, ea: int) -> str | None:
        self.call_counts["disassemble"] += 1
        insn = self._insn_at.get(ea)
        return insn.disasm if insn is not None else None

    def decompile(self, func_addr: int) -> Decompilation | None:
        self.call_counts["decompile"] += 1
        raw = self._func_raw.get(func_addr)
        if raw is None:
            return None
        func = self._functions[func_addr]
        source = raw.get("pseudocode")
        if source is None:
            source = [f"void {func.name}()", "{", "}"]
        elif isinstance(source, str):
            source = source.splitlines()

        lines = []
        for num, text in enumerate(source):
            stripped = text.lstrip(" ")
            lines.append(
                DecompiledLine(
                    func_addr=func_addr,
                    line_num=num,
                    text=text,
                    indent=(len(text) - len(stripped)) // 4,
                )
            )

        variables = [
            HlilVar(
                func_addr=func_addr,
                var_index=idx,
                name=str(v.get("name", f"var_{idx}")),
                type=str(v.get("type", "")),
                size=int(v.get("size", 0)),
                is_argument=bool(v.get("is_argument", False)),
                storage=str(v.get("storage", "stack")),
                stack_offset=v.get("stack_offset"),
            )
            for idx, v in enumerate(raw.get("variables") or [])
        ]

        calls: list[HlilCall] = []
        for c in raw.get("calls") or []:
            call_addr = _addr(c["address"])
            callee_addr = _opt_addr(c.get("callee"))
            callee_name = str(
                c.get("callee_name")
                or (self.name_at(callee_addr) if callee_addr is not None else None)
                or ""
            )
            args = c.get("args") or []
            if not args:
                calls.append(HlilCall(func_addr, call_addr, callee_addr, callee_name))
                continue
            for arg_index, arg in enumerate(args):
                calls.append(HlilCall(func_addr, call_addr, callee_addr, callee_name, arg_index, str(arg)))

        parents: dict[int, int | None] = {}
        ast: list[AstNode] = []
        for idx, n in enumerate(raw.get("ast") or []):
            node_id = int(n.get("id", idx))
            parent_id = n.get("parent")
            parents[node_id] = parent_id
            depth = 0
            cursor = parent_id
            while cursor is not None and depth <= len(parents):
                depth += 1
                cursor = parents.get(cursor)
            ast.append(
                AstNode(
                    func_addr=func_addr,
                    node_id=node_id,
                    parent_id=parent_id,
                    depth=depth,
                    op=str(n.get("op", "")),
                    address=_opt_addr(n.get("address")),
                    text=str(n.get("text", "")),
                )
            )

        return Decompilation(func_addr=func_addr, lines=lines, variables=variables, calls=calls, ast=ast)

    # -- search ---------------------------------------------------------------

    def _contiguous_runs(self) -> Iterator[tuple[int, bytes]]:
        """Mapped bytes with back-to-back segments joined into one run."""
        run_start: int | None = None
        chunks: list[bytes] = []
        run_end = 0
        for seg in self._segments:
            if run_start is not None and seg.start != run_end:
                yield run_start, b"".join(chunks)
                run_start = None
            if run_start is None:
                run_start, chunks, run_end = seg.start, [], seg.start
            chunks.append(seg.data)
            run_end += len(seg.data)
        if run_start is not None:
            yield run_start, b"".join(chunks)

    def search_bytes(
        self, pattern: re.Pattern[bytes], start: int | None = None, end: int | None = None
    ) -> Iterator[int]:
        self.call_counts["search_bytes"] += 1
        for base, data in self._contiguous_runs():
            lo = base if start is None else max(base, start)
            hi = base + len(data)
            if end is not None:
                hi = min(hi, end)
            if lo >= hi:
                continue
            for m in pattern.finditer(data, lo - base, hi - base):
                yield base + m.start()

    # -- mutation -------------------------------------------------------------

    def set_name(self, ea: int, name: str) -> bool:
        self.call_counts["set_name"] += 1
        if name and not _VALID_NAME.match(name):
            logger.debug("Rejected invalid name %r at %s", name, format_address(ea))
            return False
        func = self._functions.get(ea)
        if func is not None:
            func.name = name or f"sub_{ea:X}"
            return True
        if name:
            self._names[ea] = name
        else:
            self._names.pop(ea, None)
        return True

    def set_comment(self, ea: int, text: str) -> bool:
        self.call_counts["set_comment"] += 1
        if text:
            self._comments[ea] = text
        else:
            self._comments.pop(ea, None)
        return True

    def save(self) -> bool:
        self.call_counts["save"] += 1
        if self.path is None:
            return False
        raw = dict(self._raw)
        raw["names"] = [{"address": format_address(ea), "name": n} for ea, n in sorted(self._names.items())]
        raw["comments"] = [{"address": format_address(ea), "text": t} for ea, t in sorted(self._comments.items())]
        functions = []
        for f in raw.get("functions") or []:
            updated = dict(f)
            updated["name"] = self._functions[_addr(f["address"])].name
            functions.append(updated)
        raw["functions"] = functions
        try:
            if self.path.suffix.lower() in (".yaml", ".yml"):
                import yaml  # type: ignore[import-untyped]

                text = yaml.safe_dump(raw, sort_keys=False)
            else:
                text = json.dumps(raw, indent=2)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(text, encoding="utf-8")
            tmp.replace(self.path)
        except OSError as exc:
            logger.warning("Failed to save snapshot %s: %s", self.path, exc)
            return False
        self._raw = raw
        return True
