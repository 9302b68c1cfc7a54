"""Terminal rendering of response envelopes."""
from __future__ import annotations

import json
from typing import Any

FORMATS = ("table", "json")


def format_table(columns: list[str], rows: list[list[Any]], null: str = "NULL") -> str:
    """Render rows as an aligned text table with a row-count footer."""
    cells = [[null if v is None else str(v) for v in row] for row in rows]
    widths = [len(c) for c in columns]
    for row in cells:
        for i, value in enumerate(row):
            widths[i] = max(widths[i], len(value))

    def line(values: list[str]) -> str:
        return " | ".join(v.ljust(widths[i]) for i, v in enumerate(values)).rstrip()

    out = []
    if columns:
        out.append(line(list(columns)))
        out.append("-+-".join("-" * w for w in widths))
    out.extend(line(row) for row in cells)
    count = len(rows)
    out.append(f"({count} row{'' if count == 1 else 's'})")
    return "\n".join(out)


def format_envelope(envelope: dict[str, Any], fmt: str = "table") -> str:
    if fmt == "json":
        return json.dumps(envelope, ensure_ascii=False)
    if not envelope.get("success"):
        return f"Error: {envelope.get('error', 'unknown error')}"
    return format_table(envelope.get("columns") or [], envelope.get("rows") or [])


def format_mapping(data: dict[str, Any], fmt: str = "table") -> str:
    """Render a flat key/value mapping (status, db info)."""
    if fmt == "json":
        return json.dumps(data, ensure_ascii=False, indent=2)
    width = max((len(str(k)) for k in data), default=0)
    return "\n".join(f"{str(k).ljust(width)}  {v}" for k, v in data.items())
