"""
Domain models for availability rules, occurrences and slots.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, time
from enum import Enum
from typing import FrozenSet, Optional, Tuple, Union

import pendulum
from pendulum import DateTime


class RecurrenceKind(str, Enum):
    ONE_TIME = "ONE_TIME"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    CUSTOM = "CUSTOM"


class LocationKind(str, Enum):
    IN_PERSON = "IN_PERSON"
    VIRTUAL = "VIRTUAL"


class AppointmentKind(str, Enum):
    CONSULTATION = "CONSULTATION"
    FOLLOW_UP = "FOLLOW_UP"
    PROCEDURE = "PROCEDURE"
    THERAPY = "THERAPY"
    ROUTINE_CHECKUP = "ROUTINE_CHECKUP"
    EMERGENCY = "EMERGENCY"

    @property
    def max_min_advance_hours(self) -> int:
        """Upper bound for the minimum booking notice of this kind."""
        return _MIN_ADVANCE_CEILINGS[self]


_MIN_ADVANCE_CEILINGS = {
    AppointmentKind.EMERGENCY: 4,
    AppointmentKind.CONSULTATION: 48,
    AppointmentKind.FOLLOW_UP: 48,
    AppointmentKind.THERAPY: 72,
    AppointmentKind.PROCEDURE: 168,
    AppointmentKind.ROUTINE_CHECKUP: 168,
}


class SlotStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    BOOKED = "BOOKED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def occupies_time(self) -> bool:
        """True when the slot's time is claimed by a patient (now or in the past)."""
        return self in OCCUPYING_STATUSES


TERMINAL_STATUSES = frozenset({SlotStatus.COMPLETED, SlotStatus.NO_SHOW, SlotStatus.CANCELLED})
OCCUPYING_STATUSES = frozenset(
    {
        SlotStatus.PENDING_CONFIRMATION,
        SlotStatus.BOOKED,
        SlotStatus.COMPLETED,
        SlotStatus.NO_SHOW,
    }
)
# Statuses from which a patient may claim the slot.
BOOKABLE_STATUSES = frozenset({SlotStatus.AVAILABLE, SlotStatus.CANCELLED})


# Recurrence variants. ``Recurrence`` is closed: every consumer matches all four.


@dataclass(frozen=True)
class OneTime:
    kind = RecurrenceKind.ONE_TIME


@dataclass(frozen=True)
class Daily:
    kind = RecurrenceKind.DAILY


@dataclass(frozen=True)
class Weekly:
    day_of_week: int  # ISO: 1=Monday, 7=Sunday
    kind = RecurrenceKind.WEEKLY


@dataclass(frozen=True)
class Custom:
    dates: Tuple[date, ...]
    kind = RecurrenceKind.CUSTOM


Recurrence = Union[OneTime, Daily, Weekly, Custom]


def minutes_of_day(value: time) -> int:
    return value.hour * 60 + value.minute


def time_from_minutes(minutes: int) -> time:
    return time(hour=minutes // 60, minute=minutes % 60)


@dataclass(frozen=True)
class TimeWindow:
    """
    Half-open time-of-day range ``[start, end)``.

    Invariant: start must be before end.
    """
    start: time
    end: time

    def __post_init__(self):
        if self.start >= self.end:
            raise ValueError(f"Start time {self.start} must be before end time {self.end}")

    def duration_minutes(self) -> int:
        return minutes_of_day(self.end) - minutes_of_day(self.start)

    def overlaps(self, other: "TimeWindow") -> bool:
        """Check if this window overlaps another (touching edges do not overlap)."""
        return not (self.end <= other.start or self.start >= other.end)

    def __str__(self) -> str:
        return f"{self.start.strftime('%H:%M')} - {self.end.strftime('%H:%M')}"


@dataclass(frozen=True)
class Occurrence:
    """One concrete calendar instance of a rule."""
    date: date
    start_time: time
    end_time: time


@dataclass(frozen=True)
class AvailabilityRule:
    """A provider's recurring or one-time declaration of bookable time."""
    id: str
    provider_id: str
    title: str
    recurrence: Recurrence
    start_date: date
    start_time: time
    end_time: time
    slot_duration_minutes: int
    buffer_minutes: int
    time_zone: str
    location_kind: LocationKind
    appointment_kind: AppointmentKind
    max_advance_booking_days: int
    min_advance_booking_hours: int
    end_date: Optional[date] = None
    description: Optional[str] = None
    location_details: Optional[str] = None
    allow_online_booking: bool = True
    requires_approval: bool = False
    excluded_dates: FrozenSet[date] = frozenset()
    is_active: bool = True
    created_at: Optional[DateTime] = None
    updated_at: Optional[DateTime] = None

    @property
    def recurrence_kind(self) -> RecurrenceKind:
        return self.recurrence.kind

    @property
    def day_of_week(self) -> Optional[int]:
        if isinstance(self.recurrence, Weekly):
            return self.recurrence.day_of_week
        return None

    @property
    def total_slot_minutes(self) -> int:
        return self.slot_duration_minutes + self.buffer_minutes

    def time_window(self) -> TimeWindow:
        return TimeWindow(start=self.start_time, end=self.end_time)

    def time_range_string(self) -> str:
        return f"{self.time_window()} ({self.time_zone})"


@dataclass
class Slot:
    """The smallest bookable unit within an occurrence."""
    id: str
    rule_id: str
    provider_id: str
    date: date
    start_time: time
    end_time: time
    status: SlotStatus = SlotStatus.AVAILABLE
    patient_id: Optional[str] = None
    requested_at: Optional[DateTime] = None
    confirmed_at: Optional[DateTime] = None
    cancelled_at: Optional[DateTime] = None
    completed_at: Optional[DateTime] = None
    cancellation_reason: Optional[str] = None
    cancelled_by_provider: bool = False
    checked_in: bool = False
    checked_in_at: Optional[DateTime] = None
    no_show: bool = False
    reminder_sent: bool = False
    reminder_sent_at: Optional[DateTime] = None
    provider_notes: Optional[str] = None
    actual_duration_minutes: Optional[int] = None
    disabled: bool = False
    version: int = 0
    created_at: Optional[DateTime] = None

    @property
    def duration_minutes(self) -> int:
        return minutes_of_day(self.end_time) - minutes_of_day(self.start_time)

    @property
    def is_available(self) -> bool:
        if self.disabled:
            return False
        return self.status in (SlotStatus.AVAILABLE, SlotStatus.CANCELLED, SlotStatus.NO_SHOW)

    @property
    def is_bookable(self) -> bool:
        return not self.disabled and self.status in BOOKABLE_STATUSES

    @property
    def key(self) -> Tuple[str, date, time]:
        return (self.provider_id, self.date, self.start_time)

    def time_window(self) -> TimeWindow:
        return TimeWindow(start=self.start_time, end=self.end_time)

    def starts_at(self, tz: str) -> DateTime:
        return pendulum.datetime(
            self.date.year, self.date.month, self.date.day,
            self.start_time.hour, self.start_time.minute,
            tz=tz,
        )

    def ends_at(self, tz: str) -> DateTime:
        return pendulum.datetime(
            self.date.year, self.date.month, self.date.day,
            self.end_time.hour, self.end_time.minute,
            tz=tz,
        )

    def summary(self) -> str:
        occupant = self.patient_id or "open"
        return f"{self.date.isoformat()} {self.time_window()} {self.status.value} ({occupant})"


@dataclass(frozen=True)
class BookingConfirmation:
    slot_id: str
    provider_id: str
    patient_id: str
    status: SlotStatus
    starts_at: DateTime
    ends_at: DateTime
    requires_approval: bool


@dataclass(frozen=True)
class ProviderStatistics:
    total: int = 0
    available: int = 0
    pending: int = 0
    booked: int = 0
    completed: int = 0
    cancelled: int = 0
    no_show: int = 0
    disabled: int = 0

    @property
    def utilization_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return (self.booked + self.completed) / self.total

    def as_dict(self) -> dict:
        return {
            "total": self.total,
            "available": self.available,
            "pending": self.pending,
            "booked": self.booked,
            "completed": self.completed,
            "cancelled": self.cancelled,
            "noShow": self.no_show,
            "disabled": self.disabled,
            "utilizationRate": round(self.utilization_rate, 4),
        }


@dataclass(frozen=True)
class RuleStatistics:
    total_rules: int = 0
    active_rules: int = 0
    bookable_rules: int = 0
    average_slot_duration: float = 0.0


@dataclass
class MaterializationReport:
    rule_id: str
    created: int = 0
    skipped: int = 0
    disabled: int = 0
    deleted: int = 0
    enabled: int = 0
    resized: int = 0
    window: Optional[Tuple[date, date]] = field(default=None)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.disabled or self.deleted or self.enabled or self.resized)
