"""
Executes slot lifecycle transitions against storage.

Guards live in ``domain.lifecycle``; this class loads the slot, asks the
guard for the changes and commits them with the store's conditional update.
If the slot moved on between read and write, the guard is evaluated again
on the fresh state, so the outcome is always the one the guard gives for
the state that actually won.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

import pendulum
from pendulum import DateTime

from ..adapters.event_sinks import EventSink, LoggingEventSink
from ..domain import lifecycle
from ..domain.events import EventType, SlotEvent
from ..domain.exceptions import NotFound, SchedulingError, SlotUnavailable, StorageError
from ..domain.models import AvailabilityRule, Slot
from .store import SchedulingStore

logger = logging.getLogger(__name__)

Planner = Callable[[Slot], lifecycle.Changes]

# Re-reads after a lost compare-and-set before giving up.
MAX_ATTEMPTS = 5


class SlotStateMachine:
    """Lifecycle operations on one slot at a time."""

    def __init__(
        self,
        store: SchedulingStore,
        events: Optional[EventSink] = None,
        clock: Callable[[], DateTime] = pendulum.now,
    ) -> None:
        self._store = store
        self._events = events or LoggingEventSink()
        self._clock = clock

    def get(self, slot_id: str) -> Slot:
        slot = self._store.get_slot(slot_id)
        if slot is None:
            raise NotFound(f"Slot {slot_id} not found")
        return slot

    def rule_for(self, slot: Slot) -> AvailabilityRule:
        rule = self._store.get_rule(slot.rule_id)
        if rule is None:
            raise NotFound(f"Rule {slot.rule_id} for slot {slot.id} not found")
        return rule

    def _run(
        self,
        slot_id: str,
        action: str,
        planner: Planner,
        contended: type[SchedulingError] = StorageError,
    ) -> tuple[Slot, Slot]:
        """
        Plan and commit one transition. Returns ``(before, after)``.

        Guard failures propagate from the planner unchanged. If every attempt
        loses the conditional write, ``contended`` is raised.
        """
        for _ in range(MAX_ATTEMPTS):
            before = self.get(slot_id)
            changes = planner(before)
            if not changes:
                return before, before
            after = self._store.transition(before.id, before.status, before.version, changes)
            if after is not None:
                logger.debug(
                    "Slot %s %s: %s -> %s", slot_id, action, before.status.value, after.status.value
                )
                return before, after
            logger.debug("Slot %s changed while trying to %s; re-reading", slot_id, action)
        raise contended(f"Slot {slot_id} kept changing while trying to {action}; try again")

    def publish(self, event_type: EventType, slot: Slot, now: DateTime, patient_id: Optional[str] = None) -> None:
        """Hand an event to the sink. Sink failures are logged, never raised."""
        try:
            self._events.publish(SlotEvent.for_slot(event_type, slot, now, patient_id=patient_id))
        except Exception:
            logger.exception("Failed to publish %s for slot %s", event_type.value, slot.id)

    def request(self, slot_id: str, patient_id: str, now: Optional[DateTime] = None) -> Slot:
        """AVAILABLE (or cancelled) -> BOOKED, or PENDING_CONFIRMATION when the rule requires approval."""
        now = now or self._clock()
        rule = self.rule_for(self.get(slot_id))

        def planner(slot: Slot) -> lifecycle.Changes:
            return lifecycle.plan_request(slot, patient_id, rule.requires_approval, now)

        _, after = self._run(slot_id, "request", planner, contended=SlotUnavailable)
        self.publish(EventType.SLOT_BOOKED, after, now)
        return after

    def confirm(self, slot_id: str, now: Optional[DateTime] = None) -> Slot:
        now = now or self._clock()
        _, after = self._run(slot_id, "confirm", lambda slot: lifecycle.plan_confirm(slot, now))
        self.publish(EventType.SLOT_CONFIRMED, after, now)
        return after

    def cancel(
        self,
        slot_id: str,
        reason: Optional[str] = None,
        by_provider: bool = False,
        now: Optional[DateTime] = None,
    ) -> Slot:
        now = now or self._clock()
        before, after = self._run(
            slot_id, "cancel", lambda slot: lifecycle.plan_cancel(slot, reason, by_provider, now)
        )
        self.publish(EventType.SLOT_CANCELLED, after, now, patient_id=before.patient_id)
        return after

    def check_in(self, slot_id: str, now: Optional[DateTime] = None) -> Slot:
        now = now or self._clock()
        rule = self.rule_for(self.get(slot_id))
        _, after = self._run(
            slot_id, "check in", lambda slot: lifecycle.plan_check_in(slot, now, rule.time_zone)
        )
        return after

    def complete(
        self,
        slot_id: str,
        notes: Optional[str] = None,
        duration_minutes: Optional[int] = None,
        now: Optional[DateTime] = None,
    ) -> Slot:
        now = now or self._clock()
        _, after = self._run(
            slot_id, "complete", lambda slot: lifecycle.plan_complete(slot, notes, duration_minutes, now)
        )
        self.publish(EventType.SLOT_COMPLETED, after, now)
        return after

    def mark_no_show(self, slot_id: str, now: Optional[DateTime] = None) -> Slot:
        now = now or self._clock()
        _, after = self._run(slot_id, "mark no-show", lifecycle.plan_no_show)
        self.publish(EventType.SLOT_NO_SHOW, after, now)
        return after

    def send_reminder(self, slot_id: str, now: Optional[DateTime] = None) -> Slot:
        """Set the reminder flag. Calling it again is a no-op."""
        now = now or self._clock()
        _, after = self._run(slot_id, "send reminder", lambda slot: lifecycle.plan_reminder(slot, now))
        return after
