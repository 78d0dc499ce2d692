"""
Patient and provider booking operations.

Validates booking eligibility (rule state, online booking, advance window,
provider exclusivity) and delegates the state change itself to the slot
state machine, whose conditional write makes concurrent requests for the
same slot resolve to exactly one winner.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Callable, List, Optional

import pendulum
from pendulum import DateTime

from ..domain.conflicts import overlapping_slots
from ..domain.events import EventType
from ..domain.exceptions import (
    AccessDenied,
    BookingWindowViolation,
    OnlineBookingDisabled,
    SlotUnavailable,
    ValidationError,
)
from ..domain.models import (
    AvailabilityRule,
    BookingConfirmation,
    Slot,
    SlotStatus,
)
from .slot_state_machine import SlotStateMachine
from .store import SchedulingStore

logger = logging.getLogger(__name__)


class BookingCoordinator:
    """Booking, cancellation and visit bookkeeping for individual slots."""

    def __init__(
        self,
        store: SchedulingStore,
        state_machine: SlotStateMachine,
        reminder_lead_hours: int = 24,
        clock: Callable[[], DateTime] = pendulum.now,
    ) -> None:
        self._store = store
        self._slots = state_machine
        self.reminder_lead_hours = reminder_lead_hours
        self._clock = clock

    def book_slot(self, slot_id: str, patient_id: str, now: Optional[DateTime] = None) -> BookingConfirmation:
        """
        Claim a slot for a patient.

        Raises:
            NotFound: Unknown slot.
            SlotUnavailable: The slot is taken, disabled, its rule is
                inactive, or the provider is already busy at that time.
            OnlineBookingDisabled: The rule does not take online bookings.
            BookingWindowViolation: Too early or too late to book.
        """
        if not patient_id:
            raise ValidationError("Patient id is required", {"patient_id": "required"})
        now = now or self._clock()

        slot = self._slots.get(slot_id)
        rule = self._slots.rule_for(slot)
        self._check_rule(rule, slot)
        self._check_window(rule, slot, now)
        if not slot.is_bookable:
            raise SlotUnavailable(f"Slot {slot_id} is not available for booking")
        self._check_exclusive(slot)

        booked = self._slots.request(slot_id, patient_id, now=now)
        logger.info("Patient %s booked slot %s (%s)", patient_id, slot_id, booked.status.value)
        return BookingConfirmation(
            slot_id=booked.id,
            provider_id=booked.provider_id,
            patient_id=patient_id,
            status=booked.status,
            starts_at=booked.starts_at(rule.time_zone),
            ends_at=booked.ends_at(rule.time_zone),
            requires_approval=rule.requires_approval,
        )

    def cancel_booking(
        self,
        slot_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        now: Optional[DateTime] = None,
    ) -> Slot:
        """
        Cancel a pending or booked slot on behalf of its patient or provider.

        Whether the cancellation counts as provider-initiated follows from
        who the actor is, not from a caller-supplied flag.
        """
        slot = self._slots.get(slot_id)
        if actor_id == slot.provider_id:
            by_provider = True
        elif slot.patient_id is not None and actor_id == slot.patient_id:
            by_provider = False
        else:
            raise AccessDenied(f"{actor_id} may not cancel slot {slot_id}")

        cancelled = self._slots.cancel(slot_id, reason=reason, by_provider=by_provider, now=now)
        logger.info(
            "Slot %s cancelled by %s (%s)", slot_id, "provider" if by_provider else "patient", reason or "no reason"
        )
        return cancelled

    def confirm_booking(self, slot_id: str, provider_id: str, now: Optional[DateTime] = None) -> Slot:
        self._owned_by(slot_id, provider_id)
        return self._slots.confirm(slot_id, now=now)

    def check_in(self, slot_id: str, provider_id: str, now: Optional[DateTime] = None) -> Slot:
        self._owned_by(slot_id, provider_id)
        return self._slots.check_in(slot_id, now=now)

    def complete(
        self,
        slot_id: str,
        provider_id: str,
        notes: Optional[str] = None,
        duration_minutes: Optional[int] = None,
        now: Optional[DateTime] = None,
    ) -> Slot:
        self._owned_by(slot_id, provider_id)
        return self._slots.complete(slot_id, notes=notes, duration_minutes=duration_minutes, now=now)

    def mark_no_show(self, slot_id: str, provider_id: str, now: Optional[DateTime] = None) -> Slot:
        self._owned_by(slot_id, provider_id)
        return self._slots.mark_no_show(slot_id, now=now)

    def send_reminder(self, slot_id: str, provider_id: str, now: Optional[DateTime] = None) -> Slot:
        self._owned_by(slot_id, provider_id)
        return self._slots.send_reminder(slot_id, now=now)

    def due_reminders(self, now: Optional[DateTime] = None) -> List[Slot]:
        """
        Publish ``ReminderDue`` for booked slots starting within the reminder
        lead time, then mark them as reminded. Returns the slots handled.
        """
        now = now or self._clock()
        horizon = now.add(hours=self.reminder_lead_hours)
        candidates = self._store.list_slots(
            date_from=now.subtract(days=1).date(),
            date_to=horizon.add(days=1).date(),
            statuses=(SlotStatus.BOOKED,),
        )

        handled: List[Slot] = []
        for slot in candidates:
            if slot.reminder_sent:
                continue
            rule = self._store.get_rule(slot.rule_id)
            if rule is None:
                continue
            starts_at = slot.starts_at(rule.time_zone)
            if not now <= starts_at <= horizon:
                continue
            reminded = self._slots.send_reminder(slot.id, now=now)
            if not reminded.reminder_sent:
                continue
            self._slots.publish(EventType.REMINDER_DUE, reminded, now)
            handled.append(reminded)

        if handled:
            logger.info("Queued %d appointment reminders", len(handled))
        return handled

    def overdue_check_ins(self, provider_id: str, now: Optional[DateTime] = None) -> List[Slot]:
        """Booked slots that have started but whose patient has not checked in."""
        now = now or self._clock()
        overdue = []
        for slot in self._store.list_slots(
            provider_id=provider_id,
            date_from=now.subtract(days=1).date(),
            date_to=now.add(days=1).date(),
            statuses=(SlotStatus.BOOKED,),
        ):
            rule = self._store.get_rule(slot.rule_id)
            if rule is not None and not slot.checked_in and slot.starts_at(rule.time_zone) <= now:
                overdue.append(slot)
        return overdue

    def patient_appointments(
        self,
        patient_id: str,
        date_from: Optional[date] = None,
        include_past: bool = False,
    ) -> List[Slot]:
        """Pending and booked slots of a patient, soonest first."""
        if date_from is None and not include_past:
            date_from = self._clock().date()
        return self._store.list_slots(
            patient_id=patient_id,
            date_from=date_from,
            statuses=(SlotStatus.PENDING_CONFIRMATION, SlotStatus.BOOKED),
        )

    # Guards

    def _check_rule(self, rule: AvailabilityRule, slot: Slot) -> None:
        if not rule.is_active:
            raise SlotUnavailable(f"Slot {slot.id} belongs to an inactive availability rule")
        if not rule.allow_online_booking:
            raise OnlineBookingDisabled(f"Online booking is not allowed for slot {slot.id}")

    def _check_window(self, rule: AvailabilityRule, slot: Slot, now: DateTime) -> None:
        starts_at = slot.starts_at(rule.time_zone)
        earliest = now.add(hours=rule.min_advance_booking_hours)
        latest = now.add(days=rule.max_advance_booking_days)
        if starts_at < earliest:
            raise BookingWindowViolation(
                f"Slot {slot.id} must be booked at least {rule.min_advance_booking_hours} hours in advance"
            )
        if starts_at > latest:
            raise BookingWindowViolation(
                f"Slot {slot.id} cannot be booked more than {rule.max_advance_booking_days} days in advance"
            )

    def _check_exclusive(self, slot: Slot) -> None:
        same_day = self._store.list_slots(
            provider_id=slot.provider_id,
            date_from=slot.date,
            date_to=slot.date,
        )
        clashes = overlapping_slots(slot, same_day)
        if clashes:
            raise SlotUnavailable(
                f"Provider already has an appointment overlapping slot {slot.id}"
            )

    def _owned_by(self, slot_id: str, provider_id: str) -> Slot:
        slot = self._slots.get(slot_id)
        if slot.provider_id != provider_id:
            raise AccessDenied(f"Slot {slot_id} belongs to another provider")
        return slot
