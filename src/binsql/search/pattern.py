"""Byte-pattern compilation and search.

Pattern grammar, tokens optionally separated by whitespace::

    CC          exact byte
    ?? or ?     any byte
    C? / ?C     nibble wildcard (high / low nibble fixed)
    [90 91]     byte class; ranges (A0-AF) and negation ([^00]) allowed
"""
from __future__ import annotations

import logging
import re
from collections.abc import Iterator

from binsql.backend.protocol import AnalysisBackend
from binsql.core.errors import PatternSyntaxError
from binsql.utils.address import format_address

logger = logging.getLogger(__name__)

_HEX = "0123456789abcdefABCDEF"


def _byte(value: int) -> bytes:
    return re.escape(bytes([value]))


def _nibble_class(high: str, low: str) -> bytes:
    if high == "?":
        lo = int(low, 16)
        return b"[" + b"".join(_byte((h << 4) | lo) for h in range(16)) + b"]"
    hi = int(high, 16) << 4
    return b"[" + _byte(hi) + b"-" + _byte(hi | 0x0F) + b"]"


def _class(body: str, text: str) -> bytes:
    negate = body.startswith("^")
    if negate:
        body = body[1:]
    items = body.replace(",", " ").split()
    if not items:
        raise PatternSyntaxError(f"empty byte class in pattern {text!r}")
    out = []
    for item in items:
        lo_text, sep, hi_text = item.partition("-")
        try:
            lo = _parse_byte(lo_text)
            hi = _parse_byte(hi_text) if sep else lo
        except ValueError:
            raise PatternSyntaxError(f"bad byte class item {item!r} in pattern {text!r}") from None
        if hi < lo:
            raise PatternSyntaxError(f"reversed range {item!r} in pattern {text!r}")
        out.append(_byte(lo) if lo == hi else _byte(lo) + b"-" + _byte(hi))
    return b"[" + (b"^" if negate else b"") + b"".join(out) + b"]"


def _parse_byte(text: str) -> int:
    if len(text) != 2 or any(ch not in _HEX for ch in text):
        raise ValueError(text)
    return int(text, 16)


def _tokens(text: str) -> list[bytes]:
    parts: list[bytes] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue
        if ch == "[":
            close = text.find("]", i)
            if close < 0:
                raise PatternSyntaxError(f"unterminated '[' in pattern {text!r}")
            parts.append(_class(text[i + 1:close], text))
            i = close + 1
            continue
        pair = text[i:i + 2]
        if len(pair) == 2 and all(c in _HEX or c == "?" for c in pair):
            if pair == "??":
                parts.append(b".")
            elif "?" in pair:
                parts.append(_nibble_class(pair[0], pair[1]))
            else:
                parts.append(_byte(int(pair, 16)))
            i += 2
            continue
        if ch == "?":
            parts.append(b".")
            i += 1
            continue
        raise PatternSyntaxError(f"unexpected {ch!r} at offset {i} in pattern {text!r}")
    return parts


def compile_pattern(text: str) -> re.Pattern[bytes]:
    """Compile a byte pattern into a regex that reports overlapping matches.

    Raises:
        PatternSyntaxError: If *text* is empty or contains anything outside
            the pattern grammar.

    Examples:
        >>> bool(compile_pattern("CC ?? 90").search(b"\\x00\\xcc\\x01\\x90"))
        True
    """
    if not isinstance(text, str):
        raise PatternSyntaxError(f"pattern must be text, got {type(text).__name__}")
    parts = _tokens(text)
    if not parts:
        raise PatternSyntaxError("empty byte pattern")
    return re.compile(b"(?=(" + b"".join(parts) + b"))", re.DOTALL)


def search(
    backend: AnalysisBackend,
    pattern: str,
    start: int | None = None,
    end: int | None = None,
    first: bool = False,
) -> list[int]:
    """Return the addresses where *pattern* matches within ``[start, end)``."""
    regex = compile_pattern(pattern)
    matches: Iterator[int] = iter(backend.search_bytes(regex, start, end))
    if first:
        hit = next(matches, None)
        return [] if hit is None else [hit]
    found = list(matches)
    logger.debug(
        "Pattern %r matched %d time(s) in [%s, %s)",
        pattern, len(found),
        format_address(start) if start is not None else "*",
        format_address(end) if end is not None else "*",
    )
    return found
