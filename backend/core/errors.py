"""
Engine error kinds.

Every expected failure at the engine boundary is an ``EngineError`` carrying
an ``ErrorKind`` so callers can map it onto whatever transport they expose.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """User-visible failure enumeration."""

    INVALID_ENTRY = "invalid_entry"
    INVALID_POLICY = "invalid_policy"
    UNKNOWN_ITEM = "unknown_item"
    INSUFFICIENT_STOCK = "insufficient_stock"
    CONCURRENT_APPEND = "concurrent_append"
    DUPLICATE_IDEMPOTENCY_KEY = "duplicate_idempotency_key"
    PROJECTION_TIMEOUT = "projection_timeout"
    ALERT_NOT_OPEN = "alert_not_open"
    ALERT_NOT_FOUND = "alert_not_found"
    ALERT_CONFLICT = "alert_conflict"
    INSUFFICIENT_HISTORY = "insufficient_history"


# Kinds a caller may retry without changing the request
RETRYABLE_KINDS = frozenset({ErrorKind.CONCURRENT_APPEND, ErrorKind.PROJECTION_TIMEOUT, ErrorKind.ALERT_CONFLICT})


class EngineError(Exception):
    """Typed engine failure."""

    def __init__(self, kind: ErrorKind, message: str, **context: Any):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.context = context

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind.value, "message": self.message, **self.context}

    def __repr__(self) -> str:
        return f"EngineError({self.kind.value!r}, {self.message!r})"
