"""
Slot materialization.

Expands rule occurrences into persisted AVAILABLE slots. Runs are
idempotent and additive: a (provider, date, start time) already held is
never written again, and booked or finished slots are never touched. After
a rule edit, open slots the rule no longer implies are soft-disabled or
deleted according to the configured policy. Never-booked slots of a
deactivated rule give up their key to the active rule being materialized.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, time
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import pendulum
from pendulum import DateTime

from ..config import OrphanedSlotPolicy
from ..domain.models import (
    BOOKABLE_STATUSES,
    AvailabilityRule,
    MaterializationReport,
    Slot,
    SlotStatus,
)
from ..domain.recurrence import applies_on, resolve_occurrences, slot_windows
from .store import SchedulingStore

logger = logging.getLogger(__name__)


def _new_slot_id() -> str:
    return str(uuid.uuid4())


class SlotMaterializer:
    """
    Turns availability rules into slot records.

    The forward window for a rule starts today (in the rule's zone) and spans
    the smaller of the configured materialization window and the rule's
    ``max_advance_booking_days``, clipped to the rule's end date.
    """

    def __init__(
        self,
        store: SchedulingStore,
        window_days: int = 90,
        orphan_policy: OrphanedSlotPolicy = OrphanedSlotPolicy.DISABLE,
        clock: Callable[[], DateTime] = pendulum.now,
        id_factory: Callable[[], str] = _new_slot_id,
    ) -> None:
        self._store = store
        self.window_days = window_days
        self.orphan_policy = orphan_policy
        self._clock = clock
        self._id_factory = id_factory

    def today_for(self, rule: AvailabilityRule) -> date:
        return self._clock().in_timezone(rule.time_zone).date()

    def window_for(self, rule: AvailabilityRule, today: date) -> Optional[Tuple[date, date]]:
        """Return the closed materialization window, or None if it is empty."""
        horizon = min(self.window_days, rule.max_advance_booking_days)
        start = max(today, rule.start_date)
        end = pendulum.date(today.year, today.month, today.day).add(days=horizon)
        if rule.end_date is not None:
            end = min(end, rule.end_date)
        if start > end:
            return None
        return start, date(end.year, end.month, end.day)

    def plan_slots(self, rule: AvailabilityRule, start: date, end: date) -> List[Slot]:
        """Build (but do not persist) the slots a rule implies in ``[start, end]``."""
        now = self._clock()
        windows = slot_windows(rule)
        return [
            Slot(
                id=self._id_factory(),
                rule_id=rule.id,
                provider_id=rule.provider_id,
                date=occurrence.date,
                start_time=window.start,
                end_time=window.end,
                created_at=now,
            )
            for occurrence in resolve_occurrences(rule, start, end)
            for window in windows
        ]

    def materialize(
        self,
        rule: AvailabilityRule,
        today: Optional[date] = None,
        reconcile: bool = False,
    ) -> MaterializationReport:
        """
        Persist the slots implied by ``rule`` over its forward window.

        Args:
            rule: The rule to expand; inactive rules produce nothing.
            today: Override for the window start (defaults to the clock).
            reconcile: Also disable/delete/resize open slots after a rule edit.
        """
        report = MaterializationReport(rule_id=rule.id)
        if not rule.is_active:
            return report

        today = today or self.today_for(rule)
        window = self.window_for(rule, today)

        if window is not None:
            report.window = window
            self._materialize_window(rule, window, reconcile, report)

        if reconcile:
            self._reconcile_orphans(rule, today, report)

        if report.changed:
            logger.info(
                "Materialized rule %s: created=%d skipped=%d disabled=%d deleted=%d enabled=%d resized=%d",
                rule.id, report.created, report.skipped, report.disabled,
                report.deleted, report.enabled, report.resized,
            )
        return report

    def _materialize_window(
        self,
        rule: AvailabilityRule,
        window: Tuple[date, date],
        reconcile: bool,
        report: MaterializationReport,
    ) -> None:
        start, end = window
        planned = self.plan_slots(rule, start, end)
        held, cancelled = self._held_keys(rule, start, end)
        retired = self._inactive_rule_ids(rule, held.values())

        fresh: List[Slot] = []
        reclaim: List[str] = []
        for slot in planned:
            key = (slot.date, slot.start_time)
            existing = held.get(key)
            if existing is not None and existing.rule_id in retired and existing.status == SlotStatus.AVAILABLE:
                # Never-booked slot of a deactivated rule; its time goes to this rule.
                reclaim.append(existing.id)
                existing = None
            if existing is None:
                # This rule's cancelled slot stays re-bookable at that time.
                existing = cancelled.get(key)
            if existing is None:
                fresh.append(slot)
                continue
            report.skipped += 1
            if reconcile and existing.rule_id == rule.id:
                self._refresh_existing(existing, slot, report)

        if reclaim:
            report.deleted += self._store.delete_slots(reclaim, SlotStatus.AVAILABLE)
        inserted = self._store.add_slots(fresh)
        report.created += len(inserted)
        report.skipped += len(fresh) - len(inserted)

    def _held_keys(
        self, rule: AvailabilityRule, start: date, end: date
    ) -> Tuple[Dict[Tuple[date, time], Slot], Dict[Tuple[date, time], Slot]]:
        """
        Return two maps from (date, start time) to a slot: the live
        (non-cancelled) slot holding each key, and this rule's own cancelled
        slot at each key.

        Cancelled slots of other rules are ignored.
        """
        held: Dict[Tuple[date, time], Slot] = {}
        cancelled: Dict[Tuple[date, time], Slot] = {}
        for slot in self._store.list_slots(provider_id=rule.provider_id, date_from=start, date_to=end):
            key = (slot.date, slot.start_time)
            if slot.status != SlotStatus.CANCELLED:
                held[key] = slot
            elif slot.rule_id == rule.id:
                cancelled.setdefault(key, slot)
        return held, cancelled

    def _inactive_rule_ids(self, rule: AvailabilityRule, slots: Iterable[Slot]) -> Set[str]:
        """Ids of other rules, among the owners of ``slots``, that are gone or deactivated."""
        inactive: Set[str] = set()
        for rule_id in {slot.rule_id for slot in slots if slot.rule_id != rule.id}:
            owner = self._store.get_rule(rule_id)
            if owner is None or not owner.is_active:
                inactive.add(rule_id)
        return inactive

    def _refresh_existing(self, existing: Slot, planned: Slot, report: MaterializationReport) -> None:
        if existing.status not in BOOKABLE_STATUSES:
            return

        changes = {}
        if existing.disabled:
            changes["disabled"] = False
        if existing.end_time != planned.end_time:
            changes["end_time"] = planned.end_time
        if not changes:
            return

        updated = self._store.transition(existing.id, existing.status, existing.version, changes)
        if updated is None:
            logger.debug("Slot %s changed during reconciliation; leaving it alone", existing.id)
            return
        if "end_time" in changes:
            report.resized += 1
        if "disabled" in changes:
            report.enabled += 1

    def _implied(self, rule: AvailabilityRule, slot: Slot, shapes: Set[Tuple[time, time]]) -> bool:
        return applies_on(rule, slot.date) and (slot.start_time, slot.end_time) in shapes

    def _reconcile_orphans(self, rule: AvailabilityRule, today: date, report: MaterializationReport) -> None:
        shapes = {(w.start, w.end) for w in slot_windows(rule)}
        candidates = self._store.list_slots(
            rule_id=rule.id,
            date_from=today,
            statuses=BOOKABLE_STATUSES,
        )
        orphans = [slot for slot in candidates if not self._implied(rule, slot, shapes)]
        if not orphans:
            return

        deletable: List[str] = []
        for slot in orphans:
            # Cancelled slots keep their audit trail even under the delete policy.
            if self.orphan_policy == OrphanedSlotPolicy.DELETE and slot.status == SlotStatus.AVAILABLE:
                deletable.append(slot.id)
                continue
            if slot.disabled:
                continue
            if self._store.transition(slot.id, slot.status, slot.version, {"disabled": True}) is not None:
                report.disabled += 1

        if deletable:
            report.deleted += self._store.delete_slots(deletable, SlotStatus.AVAILABLE)
