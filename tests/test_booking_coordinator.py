"""
Tests for booking, cancellation and visit bookkeeping.
"""

import threading
from datetime import date

import pytest

from carecalendar.domain.events import EventType
from carecalendar.domain.exceptions import (
    AccessDenied,
    BookingWindowViolation,
    InvalidTransition,
    NotFound,
    OnlineBookingDisabled,
    SlotUnavailable,
)
from carecalendar.domain.models import SlotStatus
from carecalendar.services.scheduling import SchedulingService

from conftest import NOW, PATIENT, PROVIDER, TZ

JANUARY = (date(2025, 1, 1), date(2025, 1, 31))


def _first_slot(service):
    return service.list_slots(PROVIDER, *JANUARY)[0]


class TestBookSlot:
    """Tests for patient bookings."""

    def test_book_available_slot(self, service, first_slot, events):
        confirmation = service.book_slot(first_slot.id, PATIENT)

        assert confirmation.status == SlotStatus.BOOKED
        assert confirmation.patient_id == PATIENT
        assert confirmation.provider_id == PROVIDER
        assert not confirmation.requires_approval
        assert confirmation.starts_at == first_slot.starts_at(TZ)
        assert confirmation.ends_at.diff(confirmation.starts_at).in_minutes() == 30
        assert service.store.get_slot(first_slot.id).patient_id == PATIENT
        assert len(events.of_type(EventType.SLOT_BOOKED)) == 1

    def test_approval_required_goes_pending(self, service, rule_spec):
        service.create_availability_rule(PROVIDER, rule_spec(requires_approval=True))
        slot = _first_slot(service)

        confirmation = service.book_slot(slot.id, PATIENT)
        assert confirmation.status == SlotStatus.PENDING_CONFIRMATION
        assert confirmation.requires_approval

        confirmed = service.confirm_booking(slot.id, PROVIDER)
        assert confirmed.status == SlotStatus.BOOKED
        assert confirmed.confirmed_at == NOW

    def test_book_twice_is_unavailable(self, service, first_slot):
        service.book_slot(first_slot.id, PATIENT)

        with pytest.raises(SlotUnavailable):
            service.book_slot(first_slot.id, "patient-2")

    def test_unknown_slot(self, service):
        with pytest.raises(NotFound):
            service.book_slot("missing", PATIENT)

    def test_too_close_to_start(self, service, rule_spec):
        """min_advance_booking_hours=48 rejects a booking 30 minutes before start."""
        service.create_availability_rule(PROVIDER, rule_spec(min_advance_booking_hours=48))
        slot = _first_slot(service)

        with pytest.raises(BookingWindowViolation, match="at least 48 hours"):
            service.book_slot(slot.id, PATIENT, now=slot.starts_at(TZ).subtract(minutes=30))

        assert service.store.get_slot(slot.id).status == SlotStatus.AVAILABLE

    def test_too_far_ahead(self, service, rule_spec):
        rule_id = service.create_availability_rule(PROVIDER, rule_spec())
        service.update_availability_rule(rule_id, rule_spec(max_advance_booking_days=3))
        slot = _first_slot(service)

        with pytest.raises(BookingWindowViolation, match="more than 3 days"):
            service.book_slot(slot.id, PATIENT)

    def test_online_booking_disabled(self, service, rule_spec):
        service.create_availability_rule(PROVIDER, rule_spec(allow_online_booking=False))

        with pytest.raises(OnlineBookingDisabled):
            service.book_slot(_first_slot(service).id, PATIENT)

    def test_disabled_slot_cannot_be_booked(self, service, rule_spec):
        rule_id = service.create_availability_rule(PROVIDER, rule_spec())
        service.update_availability_rule(rule_id, rule_spec(end_time="11:00"))
        disabled = next(s for s in service.list_slots(PROVIDER, *JANUARY) if s.disabled)

        with pytest.raises(SlotUnavailable):
            service.book_slot(disabled.id, PATIENT)

    def test_provider_exclusivity_across_rules(self, service, rule_spec):
        old_rule = service.create_availability_rule(PROVIDER, rule_spec())
        booked = _first_slot(service)
        service.book_slot(booked.id, PATIENT)
        service.deactivate_availability_rule(old_rule)
        service.create_availability_rule(
            PROVIDER, rule_spec(title="Shifted clinic", start_time="09:15", end_time="10:15")
        )
        shifted = next(
            s for s in service.list_slots(PROVIDER, *JANUARY)
            if s.rule_id != old_rule and s.date == booked.date
        )

        with pytest.raises(SlotUnavailable, match="overlapping"):
            service.book_slot(shifted.id, "patient-2")

    def test_concurrent_requests_have_one_winner(self, service, first_slot):
        patients = [f"patient-{i}" for i in range(8)]
        barrier = threading.Barrier(len(patients))
        winners, losers, errors = [], [], []

        def attempt(patient_id):
            barrier.wait()
            try:
                service.book_slot(first_slot.id, patient_id)
                winners.append(patient_id)
            except SlotUnavailable:
                losers.append(patient_id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=attempt, args=(p,)) for p in patients]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(winners) == 1
        assert len(losers) == len(patients) - 1
        assert service.store.get_slot(first_slot.id).patient_id == winners[0]


class TestCancelBooking:
    """Tests for cancellation by patient or provider."""

    def test_patient_cancellation(self, service, first_slot):
        service.book_slot(first_slot.id, PATIENT)

        slot = service.cancel_booking(first_slot.id, PATIENT, reason="feeling better")

        assert slot.status == SlotStatus.CANCELLED
        assert not slot.cancelled_by_provider
        assert slot.cancellation_reason == "feeling better"

    def test_provider_cancellation(self, service, first_slot):
        service.book_slot(first_slot.id, PATIENT)

        slot = service.cancel_booking(first_slot.id, PROVIDER)

        assert slot.cancelled_by_provider

    def test_stranger_cannot_cancel(self, service, first_slot):
        service.book_slot(first_slot.id, PATIENT)

        with pytest.raises(AccessDenied):
            service.cancel_booking(first_slot.id, "someone-else")

        assert service.store.get_slot(first_slot.id).status == SlotStatus.BOOKED

    def test_cancel_open_slot_is_invalid(self, service, first_slot):
        with pytest.raises(InvalidTransition):
            service.cancel_booking(first_slot.id, PROVIDER)

    def test_book_cancel_rebook(self, service, first_slot):
        service.book_slot(first_slot.id, PATIENT)
        service.cancel_booking(first_slot.id, PATIENT)

        confirmation = service.book_slot(first_slot.id, "patient-2")

        slot = service.store.get_slot(first_slot.id)
        assert confirmation.status == SlotStatus.BOOKED
        assert slot.patient_id == "patient-2"
        assert slot.cancelled_at is None
        assert slot.cancellation_reason is None


class TestProviderOperations:
    def test_operations_check_ownership(self, service, first_slot):
        service.book_slot(first_slot.id, PATIENT)

        with pytest.raises(AccessDenied):
            service.complete(first_slot.id, "dr-house")
        with pytest.raises(AccessDenied):
            service.mark_no_show(first_slot.id, "dr-house")
        with pytest.raises(AccessDenied):
            service.send_reminder(first_slot.id, "dr-house")

    def test_visit_flow(self, service, first_slot):
        service.book_slot(first_slot.id, PATIENT)
        start = first_slot.starts_at(TZ)

        service.check_in(first_slot.id, PROVIDER, now=start.add(minutes=2))
        slot = service.complete(first_slot.id, PROVIDER, notes="ok", duration_minutes=28, now=start.add(minutes=30))

        assert slot.status == SlotStatus.COMPLETED
        assert slot.checked_in
        assert slot.completed_at == start.add(minutes=30)

    def test_mark_no_show(self, service, first_slot):
        service.book_slot(first_slot.id, PATIENT)

        slot = service.mark_no_show(first_slot.id, PROVIDER)

        assert slot.status == SlotStatus.NO_SHOW
        assert service.get_provider_statistics(PROVIDER, *JANUARY).no_show == 1


class TestReminders:
    def test_due_reminders_within_lead_time(self, service, first_slot, events):
        service.book_slot(first_slot.id, PATIENT)
        start = first_slot.starts_at(TZ)

        assert service.collect_due_reminders(now=start.subtract(hours=30)) == []

        due = service.collect_due_reminders(now=start.subtract(hours=23))
        assert [s.id for s in due] == [first_slot.id]
        assert due[0].reminder_sent
        reminders = events.of_type(EventType.REMINDER_DUE)
        assert [(e.slot_id, e.patient_id) for e in reminders] == [(first_slot.id, PATIENT)]

        assert service.collect_due_reminders(now=start.subtract(hours=22)) == []

    def test_broken_sink_does_not_stop_the_batch(self, store, config, clock, rule_spec, caplog):
        class BrokenSink:
            def publish(self, event):
                raise RuntimeError("notification service down")

        service = SchedulingService(store, config=config, events=BrokenSink(), clock=clock)
        service.create_availability_rule(PROVIDER, rule_spec())
        first, second = service.list_slots(PROVIDER, *JANUARY)[:2]
        service.book_slot(first.id, PATIENT)
        service.book_slot(second.id, "patient-2")

        due = service.collect_due_reminders(now=first.starts_at(TZ).subtract(hours=23))

        assert [s.id for s in due] == [first.id, second.id]
        assert all(store.get_slot(s.id).reminder_sent for s in due)
        assert "Failed to publish ReminderDue" in caplog.text

    def test_open_slots_get_no_reminder(self, service, first_slot):
        assert service.collect_due_reminders(now=first_slot.starts_at(TZ).subtract(hours=1)) == []


class TestQueries:
    def test_patient_appointments(self, service, first_slot):
        service.book_slot(first_slot.id, PATIENT)
        other = service.list_slots(PROVIDER, *JANUARY)[6]
        service.book_slot(other.id, PATIENT)
        service.cancel_booking(other.id, PATIENT)

        appointments = service.patient_appointments(PATIENT)

        assert [s.id for s in appointments] == [first_slot.id]

    def test_overdue_check_ins(self, service, first_slot):
        service.book_slot(first_slot.id, PATIENT)
        start = first_slot.starts_at(TZ)

        assert service.overdue_check_ins(PROVIDER, now=start.subtract(minutes=1)) == []
        assert [s.id for s in service.overdue_check_ins(PROVIDER, now=start.add(minutes=10))] == [first_slot.id]

        service.check_in(first_slot.id, PROVIDER, now=start.add(minutes=11))
        assert service.overdue_check_ins(PROVIDER, now=start.add(minutes=12)) == []
