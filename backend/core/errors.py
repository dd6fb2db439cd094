"""
Typed engine errors.

Every expected rejection carries a stable ``code`` so callers can branch
on it (routers map codes to HTTP statuses, workers log them). Only
``StorageError`` is non-recoverable: it wraps a persistence failure and
is surfaced unchanged, never retried here.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy.exc import SQLAlchemyError


class EngineError(Exception):
    """Base class for policy/capacity engine errors."""

    code = "ENGINE_ERROR"
    recoverable = True

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class OverlappingPolicyError(EngineError):
    code = "OVERLAPPING_POLICY"


class InvalidScheduleDateError(EngineError):
    code = "INVALID_SCHEDULE_DATE"


class CapacityExceededError(EngineError):
    code = "CAPACITY_EXCEEDED"


class InvalidStateTransitionError(EngineError):
    code = "INVALID_STATE_TRANSITION"


class UnknownScopeError(EngineError):
    code = "UNKNOWN_SCOPE"


class PolicyPayloadError(EngineError):
    code = "INVALID_PAYLOAD"


class CapacityConflictError(EngineError):
    """Publishing a capacity profile would strand existing bookings."""

    code = "CAPACITY_CONFLICT"


class BlackoutRuleError(EngineError):
    code = "INVALID_BLACKOUT_RULE"


class ReservationNotFoundError(EngineError):
    code = "RESERVATION_NOT_FOUND"


class StorageError(EngineError):
    code = "STORAGE_ERROR"
    recoverable = False


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Wrap raw SQLAlchemy failures raised inside an engine operation."""
    try:
        yield
    except SQLAlchemyError as exc:
        raise StorageError(f"{operation} failed: {exc.__class__.__name__}", operation=operation) from exc
