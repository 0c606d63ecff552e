"""
Error taxonomy for sparkle.

ValidationError and InvalidTransition are raised before any write and
leave the store unchanged.  NotFound is kept apart from validation so
callers can tell "no such item" from "bad request".
"""

from __future__ import annotations

from typing import Optional


class SparkleError(Exception):
    """Base class for all sparkle errors."""

    pass


class ValidationError(SparkleError, ValueError):
    """Raised when a field value is malformed (bad date, unknown kind, ...)."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class InvalidTransition(ValidationError):
    """Raised when the resolved status is not valid for the resolved kind."""

    def __init__(self, kind: str, status: str):
        self.kind = kind
        self.status = status
        super().__init__(
            f"Status {status!r} is not valid for kind {kind!r}", field="status",
        )


class NotFound(SparkleError, LookupError):
    """Raised when an item id does not exist."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Item not found: {item_id}")
