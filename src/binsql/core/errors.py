"""Error kinds surfaced by the query engine and server."""
from __future__ import annotations


class BinsqlError(Exception):
    """Base class for every error reported through a response envelope."""

    kind: str = "Error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = " ".join(str(message).split())

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class SqlSyntaxError(BinsqlError):
    """Malformed SQL text."""

    kind = "SyntaxError"


class PatternSyntaxError(BinsqlError):
    """Malformed byte-search pattern."""

    kind = "SyntaxError"


class UnknownRelationOrColumn(BinsqlError):
    kind = "UnknownRelationOrColumn"


class MissingRequiredFilter(BinsqlError):
    """An expensive relation was queried without its mandatory equality filter."""

    kind = "MissingRequiredFilter"

    def __init__(self, table: str, column: str) -> None:
        super().__init__(
            f"relation '{table}' requires an equality filter on {column} "
            f"(e.g. WHERE {column} = 0x401000)"
        )
        self.table = table
        self.column = column


class UnboundedExpensiveQuery(BinsqlError):
    """The cost model refused a per-row UDF over too many rows."""

    kind = "UnboundedExpensiveQuery"


class AuthenticationFailure(BinsqlError):
    kind = "AuthenticationFailure"


class BackendLookupFailure(BinsqlError):
    """The backend could not resolve an address or serve an operation."""

    kind = "BackendLookupFailure"


class TransportError(BinsqlError):
    """Connection-level failure: reset, truncated or malformed frame."""

    kind = "TransportError"


class MutationFailure(BinsqlError):
    """A write-through to the backend was rejected.

    ``applied`` lists the side effects that already took place and were not
    rolled back.
    """

    kind = "MutationFailure"

    def __init__(self, message: str, applied: list[str] | None = None) -> None:
        self.applied = list(applied or [])
        if self.applied:
            message = f"{message} (already applied: {', '.join(self.applied)})"
        super().__init__(message)


class ReadOnlyRelation(BinsqlError):
    kind = "ReadOnlyRelation"


class QueryError(BinsqlError):
    """Any other failure raised while executing a statement."""

    kind = "QueryError"


class SessionClosed(BinsqlError):
    kind = "SessionClosed"


def classify_backend_error(exc: Exception, context: str) -> BinsqlError:
    """Map an exception escaping backend code onto an envelope error kind.

    ``NotImplementedError`` means the backend lacks the capability and
    becomes :class:`BackendLookupFailure`; anything else unexpected becomes
    :class:`QueryError`.
    """
    if isinstance(exc, BinsqlError):
        return exc
    if isinstance(exc, NotImplementedError):
        return BackendLookupFailure(f"{context}: {str(exc) or 'not supported by this backend'}")
    return QueryError(f"{context}: {type(exc).__name__}: {exc}")
