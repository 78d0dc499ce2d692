"""
Domain-specific exception hierarchy for the scheduling core.

Every error carries a machine-readable ``code`` so callers can map it to
their transport without parsing messages.
"""

from __future__ import annotations

from typing import Dict, List, Sequence


class SchedulingError(Exception):
    """Base class for all caller-visible scheduling errors."""

    code = "SCHEDULING_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, object]:
        return {"code": self.code, "message": self.message}


class ValidationError(SchedulingError):
    """Raised when a rule specification is malformed or out of range."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field_errors: Dict[str, str] | None = None):
        super().__init__(message)
        self.field_errors = dict(field_errors or {})

    def to_dict(self) -> Dict[str, object]:
        payload = super().to_dict()
        payload["fields"] = dict(self.field_errors)
        return payload


class ConflictError(SchedulingError):
    """Raised when a rule overlaps another active rule of the same provider."""

    code = "SCHEDULE_CONFLICT"

    def __init__(self, message: str, conflicting_rule_ids: Sequence[str] = ()):
        super().__init__(message)
        self.conflicting_rule_ids: List[str] = list(conflicting_rule_ids)

    def to_dict(self) -> Dict[str, object]:
        payload = super().to_dict()
        payload["conflicts"] = list(self.conflicting_rule_ids)
        return payload


class SlotUnavailable(SchedulingError):
    """The slot was already claimed, or a concurrent caller won the race."""

    code = "SLOT_UNAVAILABLE"


class BookingWindowViolation(SchedulingError):
    """Booking attempted too soon before, or too far ahead of, the slot."""

    code = "BOOKING_WINDOW_VIOLATION"


class OnlineBookingDisabled(SchedulingError):
    """The owning rule does not accept patient self-booking."""

    code = "ONLINE_BOOKING_DISABLED"


class InvalidTransition(SchedulingError):
    """A lifecycle guard rejected the requested transition."""

    code = "INVALID_TRANSITION"


class NotFound(SchedulingError):
    """Unknown rule or slot id."""

    code = "NOT_FOUND"


class AccessDenied(SchedulingError):
    """The acting identity does not own the rule or slot."""

    code = "ACCESS_DENIED"


class StorageError(SchedulingError):
    """Unexpected storage fault. No partial state is left behind."""

    code = "INTERNAL_ERROR"
