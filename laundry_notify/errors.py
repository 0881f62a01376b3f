"""
Laundry-notify error taxonomy.

Every error carries a short machine-readable code so callers (HTTP handler,
bus processor) can decide how to surface it without isinstance ladders.
"""

from __future__ import annotations


class LaundryNotifyError(Exception):
    """Base class for all application errors."""

    code = "internal"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(LaundryNotifyError):
    """Malformed input to a store or intake operation."""

    code = "invalid"


class NotFoundError(LaundryNotifyError):
    """Referenced entity does not exist."""

    code = "not_found"


class ParseError(LaundryNotifyError):
    """Malformed bus topic, payload or timestamp."""

    code = "parse"


class TransportError(LaundryNotifyError):
    """A push notification could not be delivered."""

    code = "transport"


class StoreError(LaundryNotifyError):
    """Transaction or connectivity failure in the database layer."""

    code = "store"


class ConflictError(StoreError):
    """A uniqueness rule rejected a write."""

    code = "conflict"
