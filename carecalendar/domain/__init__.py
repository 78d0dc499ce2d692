"""
Domain layer - Pure scheduling logic without storage or I/O.
"""

from .exceptions import (
    AccessDenied,
    BookingWindowViolation,
    ConflictError,
    InvalidTransition,
    NotFound,
    OnlineBookingDisabled,
    SchedulingError,
    SlotUnavailable,
    StorageError,
    ValidationError,
)
from .models import (
    AppointmentKind,
    AvailabilityRule,
    LocationKind,
    Occurrence,
    RecurrenceKind,
    Slot,
    SlotStatus,
)
from .rule_spec import RuleSpec, parse_rule_spec

__all__ = [
    "AccessDenied",
    "AppointmentKind",
    "AvailabilityRule",
    "BookingWindowViolation",
    "ConflictError",
    "InvalidTransition",
    "LocationKind",
    "NotFound",
    "Occurrence",
    "OnlineBookingDisabled",
    "RecurrenceKind",
    "RuleSpec",
    "SchedulingError",
    "Slot",
    "SlotStatus",
    "SlotUnavailable",
    "StorageError",
    "ValidationError",
    "parse_rule_spec",
]
