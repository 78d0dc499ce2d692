"""
Slot lifecycle rules.

Each ``plan_*`` function checks the guard for one transition against the
slot as read from storage and returns the field changes to apply. The
caller applies them with a conditional write keyed on the status it read,
so a plan computed from a stale read can never be committed.

    AVAILABLE ──request──> PENDING_CONFIRMATION ──confirm──> BOOKED
        └──────request (no approval)──────────────────────────┘
    BOOKED ──> COMPLETED | NO_SHOW | CANCELLED
    PENDING_CONFIRMATION ──> CANCELLED
    CANCELLED ──request──> (re-booked)
"""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, Optional

from pendulum import DateTime

from .exceptions import InvalidTransition, SlotUnavailable, ValidationError
from .models import SlotStatus, Slot

Changes = Dict[str, Any]

ALLOWED_TRANSITIONS: Dict[SlotStatus, FrozenSet[SlotStatus]] = {
    SlotStatus.AVAILABLE: frozenset({SlotStatus.PENDING_CONFIRMATION, SlotStatus.BOOKED}),
    SlotStatus.PENDING_CONFIRMATION: frozenset({SlotStatus.BOOKED, SlotStatus.CANCELLED}),
    SlotStatus.BOOKED: frozenset(
        {SlotStatus.COMPLETED, SlotStatus.NO_SHOW, SlotStatus.CANCELLED}
    ),
    SlotStatus.CANCELLED: frozenset({SlotStatus.PENDING_CONFIRMATION, SlotStatus.BOOKED}),
    SlotStatus.COMPLETED: frozenset(),
    SlotStatus.NO_SHOW: frozenset(),
}

MAX_ACTUAL_DURATION_MINUTES = 24 * 60


def can_transition(current: SlotStatus, target: SlotStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def _reject(slot: Slot, action: str) -> InvalidTransition:
    return InvalidTransition(
        f"Cannot {action} slot {slot.id} in status {slot.status.value}"
    )


def plan_request(slot: Slot, patient_id: str, requires_approval: bool, now: DateTime) -> Changes:
    if not slot.is_bookable:
        raise SlotUnavailable(f"Slot {slot.id} is not available for booking")

    target = SlotStatus.PENDING_CONFIRMATION if requires_approval else SlotStatus.BOOKED
    return {
        "status": target,
        "patient_id": patient_id,
        "requested_at": now,
        "confirmed_at": None if requires_approval else now,
        "cancelled_at": None,
        "cancellation_reason": None,
        "cancelled_by_provider": False,
        "checked_in": False,
        "checked_in_at": None,
        "reminder_sent": False,
        "reminder_sent_at": None,
    }


def plan_confirm(slot: Slot, now: DateTime) -> Changes:
    if slot.status != SlotStatus.PENDING_CONFIRMATION:
        raise _reject(slot, "confirm")
    return {"status": SlotStatus.BOOKED, "confirmed_at": now}


def plan_cancel(slot: Slot, reason: Optional[str], by_provider: bool, now: DateTime) -> Changes:
    if slot.status not in (SlotStatus.PENDING_CONFIRMATION, SlotStatus.BOOKED):
        raise _reject(slot, "cancel")
    return {
        "status": SlotStatus.CANCELLED,
        "cancelled_at": now,
        "cancellation_reason": reason,
        "cancelled_by_provider": by_provider,
        "patient_id": None,
        "checked_in": False,
        "checked_in_at": None,
    }


def plan_check_in(slot: Slot, now: DateTime, time_zone: str) -> Changes:
    if slot.status != SlotStatus.BOOKED:
        raise _reject(slot, "check in")
    if slot.checked_in:
        raise InvalidTransition(f"Slot {slot.id} is already checked in")
    if now < slot.starts_at(time_zone):
        raise InvalidTransition(f"Slot {slot.id} cannot be checked in before its start time")
    return {"checked_in": True, "checked_in_at": now}


def plan_complete(
    slot: Slot,
    notes: Optional[str],
    duration_minutes: Optional[int],
    now: DateTime,
) -> Changes:
    if slot.status != SlotStatus.BOOKED:
        raise _reject(slot, "complete")
    if duration_minutes is not None and not 0 < duration_minutes <= MAX_ACTUAL_DURATION_MINUTES:
        raise ValidationError(
            "Actual duration must be a positive number of minutes",
            {"duration_minutes": f"must be between 1 and {MAX_ACTUAL_DURATION_MINUTES}"},
        )
    return {
        "status": SlotStatus.COMPLETED,
        "completed_at": now,
        "provider_notes": notes,
        "actual_duration_minutes": duration_minutes,
    }


def plan_no_show(slot: Slot) -> Changes:
    if slot.status != SlotStatus.BOOKED:
        raise _reject(slot, "mark as no-show")
    return {"status": SlotStatus.NO_SHOW, "no_show": True}


def plan_reminder(slot: Slot, now: DateTime) -> Changes:
    """Empty changes mean the reminder flag is already set."""
    if slot.status not in (SlotStatus.PENDING_CONFIRMATION, SlotStatus.BOOKED):
        raise _reject(slot, "send a reminder for")
    if slot.reminder_sent:
        return {}
    return {"reminder_sent": True, "reminder_sent_at": now}
