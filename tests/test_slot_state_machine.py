"""
Tests for slot lifecycle transitions.
"""

from dataclasses import replace
from datetime import date

import pendulum
import pytest

from carecalendar.domain import lifecycle
from carecalendar.domain.events import EventType
from carecalendar.domain.exceptions import (
    InvalidTransition,
    NotFound,
    SlotUnavailable,
    StorageError,
    ValidationError,
)
from carecalendar.domain.models import SlotStatus

from conftest import NOW, PATIENT, PROVIDER, TZ

JANUARY = (date(2025, 1, 1), date(2025, 1, 31))


class TestAllowedTransitions:
    def test_transition_table(self):
        assert lifecycle.can_transition(SlotStatus.AVAILABLE, SlotStatus.BOOKED)
        assert lifecycle.can_transition(SlotStatus.PENDING_CONFIRMATION, SlotStatus.BOOKED)
        assert lifecycle.can_transition(SlotStatus.BOOKED, SlotStatus.NO_SHOW)
        assert not lifecycle.can_transition(SlotStatus.AVAILABLE, SlotStatus.CANCELLED)
        assert not lifecycle.can_transition(SlotStatus.COMPLETED, SlotStatus.CANCELLED)
        assert not lifecycle.can_transition(SlotStatus.NO_SHOW, SlotStatus.BOOKED)


class TestSlotStateMachine:
    """Transitions executed through the service's state machine."""

    def test_request_books_and_bumps_version(self, service, first_slot, events):
        booked = service.slots.request(first_slot.id, PATIENT)

        assert booked.status == SlotStatus.BOOKED
        assert booked.patient_id == PATIENT
        assert booked.confirmed_at == NOW
        assert booked.version == first_slot.version + 1
        assert [e.slot_id for e in events.of_type(EventType.SLOT_BOOKED)] == [first_slot.id]

    def test_request_on_booked_slot_is_unavailable(self, service, first_slot):
        service.slots.request(first_slot.id, PATIENT)

        with pytest.raises(SlotUnavailable):
            service.slots.request(first_slot.id, "patient-2")

    def test_confirm_requires_pending(self, service, first_slot):
        with pytest.raises(InvalidTransition, match="Cannot confirm slot"):
            service.slots.confirm(first_slot.id)

    @pytest.mark.parametrize("final", ["cancel", "complete"])
    def test_cancel_after_terminal_state(self, service, first_slot, final):
        service.slots.request(first_slot.id, PATIENT)
        if final == "cancel":
            service.slots.cancel(first_slot.id, reason="sick")
        else:
            service.slots.complete(first_slot.id)

        with pytest.raises(InvalidTransition):
            service.slots.cancel(first_slot.id)

    def test_cancel_open_slot_is_rejected(self, service, first_slot):
        with pytest.raises(InvalidTransition):
            service.slots.cancel(first_slot.id)

        assert service.store.get_slot(first_slot.id).status == SlotStatus.AVAILABLE

    def test_cancel_clears_patient_and_reports_it(self, service, first_slot, events):
        service.slots.request(first_slot.id, PATIENT)

        cancelled = service.slots.cancel(first_slot.id, reason="conflict", by_provider=True)

        assert cancelled.status == SlotStatus.CANCELLED
        assert cancelled.patient_id is None
        assert cancelled.cancelled_by_provider
        assert cancelled.is_available
        assert events.of_type(EventType.SLOT_CANCELLED)[0].patient_id == PATIENT

    def test_no_show_requires_booked(self, service, rule_spec, first_slot):
        rule_id = first_slot.rule_id
        service.update_availability_rule(rule_id, rule_spec(requires_approval=True))
        pending = service.slots.request(first_slot.id, PATIENT)
        assert pending.status == SlotStatus.PENDING_CONFIRMATION

        with pytest.raises(InvalidTransition):
            service.slots.mark_no_show(first_slot.id)

        assert service.store.get_slot(first_slot.id).status == SlotStatus.PENDING_CONFIRMATION

    def test_no_show_frees_slot(self, service, first_slot, events):
        service.slots.request(first_slot.id, PATIENT)

        slot = service.slots.mark_no_show(first_slot.id)

        assert slot.status == SlotStatus.NO_SHOW
        assert slot.no_show
        assert slot.is_available
        assert len(events.of_type(EventType.SLOT_NO_SHOW)) == 1

    def test_check_in_not_before_start(self, service, first_slot):
        service.slots.request(first_slot.id, PATIENT)
        start = first_slot.starts_at(TZ)

        with pytest.raises(InvalidTransition, match="before its start time"):
            service.slots.check_in(first_slot.id, now=start.subtract(hours=1))

        slot = service.slots.check_in(first_slot.id, now=start.add(minutes=5))
        assert slot.checked_in
        assert slot.status == SlotStatus.BOOKED

        with pytest.raises(InvalidTransition, match="already checked in"):
            service.slots.check_in(first_slot.id, now=start.add(minutes=6))

    def test_complete_records_visit(self, service, first_slot, events):
        service.slots.request(first_slot.id, PATIENT)

        slot = service.slots.complete(first_slot.id, notes="Follow up in 2 weeks", duration_minutes=25)

        assert slot.status == SlotStatus.COMPLETED
        assert slot.provider_notes == "Follow up in 2 weeks"
        assert slot.actual_duration_minutes == 25
        assert len(events.of_type(EventType.SLOT_COMPLETED)) == 1

    def test_complete_rejects_bad_duration(self, service, first_slot):
        service.slots.request(first_slot.id, PATIENT)

        with pytest.raises(ValidationError):
            service.slots.complete(first_slot.id, duration_minutes=0)

    def test_reminder_is_idempotent(self, service, first_slot):
        service.slots.request(first_slot.id, PATIENT)

        first = service.slots.send_reminder(first_slot.id)
        later = pendulum.datetime(2025, 1, 2, tz=TZ)
        second = service.slots.send_reminder(first_slot.id, now=later)

        assert first.reminder_sent
        assert second.reminder_sent_at == first.reminder_sent_at
        assert second.version == first.version

    def test_unknown_slot(self, service):
        with pytest.raises(NotFound):
            service.slots.confirm("missing")


class TestCompareAndSet:
    def test_stale_version_is_rejected(self, store, first_slot):
        ok = store.transition(first_slot.id, first_slot.status, first_slot.version, {"reminder_sent": False})
        assert ok is not None

        stale = store.transition(first_slot.id, first_slot.status, first_slot.version, {"disabled": True})

        assert stale is None
        assert not store.get_slot(first_slot.id).disabled

    def test_replans_after_unrelated_write(self, service, store, first_slot):
        """A lost race against a flag update is re-evaluated on fresh state."""
        original_get = store.get_slot
        calls = {"n": 0}

        def racing_get(slot_id):
            slot = original_get(slot_id)
            calls["n"] += 1
            if calls["n"] == 2:
                # Another writer bumps the version between read and write.
                store.transition(slot.id, slot.status, slot.version, {"provider_notes": "note"})
            return slot

        store.get_slot = racing_get
        booked = service.slots.request(first_slot.id, PATIENT)

        assert booked.status == SlotStatus.BOOKED
        assert booked.provider_notes == "note"

    def test_endless_contention_on_request_is_unavailable(self, service, store, first_slot, monkeypatch):
        monkeypatch.setattr(store, "transition", lambda *args: None)

        with pytest.raises(SlotUnavailable):
            service.slots.request(first_slot.id, PATIENT)

    def test_endless_contention_elsewhere_is_storage_error(self, service, store, first_slot, monkeypatch):
        service.book_slot(first_slot.id, PATIENT)
        monkeypatch.setattr(store, "transition", lambda *args: None)

        with pytest.raises(StorageError):
            service.slots.cancel(first_slot.id, reason="sick")
        with pytest.raises(StorageError):
            service.slots.mark_no_show(first_slot.id)


class TestSlotKeyOwnership:
    """A cancelled slot cannot come back while another slot holds its time."""

    def _cancelled(self, service, slot_id):
        service.book_slot(slot_id, PATIENT)
        return service.cancel_booking(slot_id, PATIENT)

    def test_revive_over_live_slot_is_refused(self, service, store, first_slot):
        cancelled = self._cancelled(service, first_slot.id)
        newcomer = replace(
            first_slot, id="newcomer", rule_id="rule-2", status=SlotStatus.AVAILABLE, version=0
        )
        assert store.add_slots([newcomer]) == [newcomer]

        with pytest.raises(SlotUnavailable):
            store.transition(
                cancelled.id, SlotStatus.CANCELLED, cancelled.version,
                {"status": SlotStatus.BOOKED, "patient_id": "patient-2"},
            )

        assert store.get_slot(cancelled.id).status == SlotStatus.CANCELLED

    def test_reactivated_rule_keeps_its_cancelled_slot(self, service, store, rule_spec):
        first_rule = service.create_availability_rule(PROVIDER, rule_spec())
        slot = service.list_slots(PROVIDER, *JANUARY)[0]
        cancelled = self._cancelled(service, slot.id)

        service.deactivate_availability_rule(first_rule)
        second_rule = service.create_availability_rule(PROVIDER, rule_spec(title="Cover clinic"))
        service.deactivate_availability_rule(second_rule)
        service.activate_availability_rule(first_rule)

        service.book_slot(cancelled.id, "patient-2")

        at_key = [
            s for s in service.list_slots(PROVIDER, *JANUARY)
            if s.key == cancelled.key and s.status != SlotStatus.CANCELLED
        ]
        assert [(s.id, s.status) for s in at_key] == [(cancelled.id, SlotStatus.BOOKED)]
        live = [s for s in service.list_slots(PROVIDER, *JANUARY) if s.status != SlotStatus.CANCELLED]
        assert len(live) == 12
        assert {s.rule_id for s in live} == {first_rule}
