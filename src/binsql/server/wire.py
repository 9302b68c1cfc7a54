"""Length-prefixed JSON framing and the shared response envelope."""
from __future__ import annotations

import hmac
import json
import struct
from typing import Any, BinaryIO

from binsql.core.errors import AuthenticationFailure, BinsqlError, TransportError

HEADER = struct.Struct(">I")
DEFAULT_MAX_FRAME = 16 * 1024 * 1024


def encode_frame(payload: dict[str, Any]) -> bytes:
    """Serialize *payload* as a 4-byte big-endian length followed by UTF-8 JSON."""
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    return HEADER.pack(len(body)) + body


def _read_exactly(stream: BinaryIO, n: int) -> bytes:
    data = b""
    while len(data) < n:
        chunk = stream.read(n - len(data))
        if not chunk:
            raise TransportError(f"connection closed after {len(data)} of {n} bytes")
        data += chunk
    return data


def read_frame(stream: BinaryIO, max_bytes: int = DEFAULT_MAX_FRAME) -> dict[str, Any] | None:
    """Read one frame from *stream*.

    Returns ``None`` on a clean end of stream between frames.

    Raises:
        TransportError: If the stream ends mid-frame, the declared length
            exceeds *max_bytes*, or the payload is not a UTF-8 JSON object.
    """
    first = stream.read(HEADER.size)
    if not first:
        return None
    header = first if len(first) == HEADER.size else first + _read_exactly(stream, HEADER.size - len(first))
    (length,) = HEADER.unpack(header)
    if length > max_bytes:
        raise TransportError(f"frame of {length} bytes exceeds the {max_bytes}-byte limit")
    body = _read_exactly(stream, length)
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TransportError(f"malformed frame payload: {exc}") from None
    if not isinstance(payload, dict):
        raise TransportError(f"frame payload must be a JSON object, got {type(payload).__name__}")
    return payload


def failure_envelope(error: BinsqlError | str) -> dict[str, Any]:
    return {"success": False, "error": str(error)}


def parse_bearer(header: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None


def check_token(expected: str | None, supplied: str | None) -> None:
    """Raise :class:`AuthenticationFailure` unless *supplied* matches.

    No token configured means every request is accepted.
    """
    if not expected:
        return
    if supplied is None:
        raise AuthenticationFailure("missing bearer token")
    if not hmac.compare_digest(expected.encode("utf-8"), str(supplied).encode("utf-8")):
        raise AuthenticationFailure("invalid token")
