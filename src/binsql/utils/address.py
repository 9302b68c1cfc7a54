"""Address parsing and formatting utilities."""
from __future__ import annotations

_U64_MASK = (1 << 64) - 1
_I64_SIGN = 1 << 63


def parse_address(addr: str | int) -> int:
    """Parse an address given as an int, a ``0x`` hex string or a bare hex string.

    Examples:
        >>> parse_address("0x5E3E90")
        6176400
        >>> parse_address("5e3e90")
        6176400
        >>> parse_address(4096)
        4096
    """
    if isinstance(addr, bool):
        raise ValueError(f"Invalid address: {addr!r}")
    if isinstance(addr, int):
        return addr & _U64_MASK
    cleaned = addr.strip().lower()
    if cleaned.startswith("0x"):
        cleaned = cleaned[2:]
    if not cleaned:
        raise ValueError(f"Invalid address: {addr!r}")
    return int(cleaned, 16)


def format_address(addr: int) -> str:
    """Format an address as lowercase ``0x`` hex.

    Examples:
        >>> format_address(0x5E3E90)
        '0x5e3e90'
        >>> format_address(-1)
        '0xffffffffffffffff'
    """
    return hex(addr & _U64_MASK)


def to_sqlite_int(value: int) -> int:
    """Map an unsigned 64-bit value onto SQLite's signed INTEGER range.

    SQLite reads ``0x...`` literals as two's complement, so storing addresses
    the same way keeps hex literals and stored values comparable.
    """
    value &= _U64_MASK
    if value & _I64_SIGN:
        return value - (1 << 64)
    return value


def from_sqlite_int(value: int) -> int:
    """Inverse of :func:`to_sqlite_int`."""
    return value & _U64_MASK
