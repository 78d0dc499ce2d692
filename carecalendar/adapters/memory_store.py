"""
In-memory scheduling store.

Backs the test-suite and single-process use without a database. A single
lock guards every read and write so that ``transition`` behaves like a
database conditional update: of several racing callers holding the same
version, exactly one succeeds.
"""

from __future__ import annotations

import threading
from dataclasses import fields, replace
from datetime import date
from typing import Any, Collection, Dict, List, Optional, Sequence

from pendulum import DateTime

from ..domain.exceptions import SlotUnavailable
from ..domain.models import AvailabilityRule, Slot, SlotStatus

_SLOT_FIELDS = frozenset(f.name for f in fields(Slot))


class InMemorySchedulingStore:
    """Dictionary-backed implementation of ``SchedulingStore``."""

    def __init__(self):
        self._lock = threading.RLock()
        self._rules: Dict[str, AvailabilityRule] = {}
        self._slots: Dict[str, Slot] = {}

    # Rules

    def add_rule(self, rule: AvailabilityRule) -> None:
        with self._lock:
            if rule.id in self._rules:
                raise KeyError(f"Rule {rule.id} already exists")
            self._rules[rule.id] = rule

    def save_rule(self, rule: AvailabilityRule) -> None:
        with self._lock:
            if rule.id not in self._rules:
                raise KeyError(f"Rule {rule.id} does not exist")
            self._rules[rule.id] = rule

    def get_rule(self, rule_id: str) -> Optional[AvailabilityRule]:
        with self._lock:
            return self._rules.get(rule_id)

    def list_rules(
        self,
        provider_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[AvailabilityRule]:
        with self._lock:
            rules = [
                rule for rule in self._rules.values()
                if (provider_id is None or rule.provider_id == provider_id)
                and (not active_only or rule.is_active)
            ]
        return sorted(rules, key=lambda r: (r.start_date, r.start_time, r.id))

    def delete_rule(self, rule_id: str) -> int:
        with self._lock:
            self._rules.pop(rule_id, None)
            doomed = [slot_id for slot_id, slot in self._slots.items() if slot.rule_id == rule_id]
            for slot_id in doomed:
                del self._slots[slot_id]
            return len(doomed)

    # Slots

    def _key_taken(self, slot: Slot) -> bool:
        return any(
            existing.key == slot.key and existing.status != SlotStatus.CANCELLED
            for existing in self._slots.values()
        )

    def add_slots(self, slots: Sequence[Slot]) -> List[Slot]:
        inserted: List[Slot] = []
        with self._lock:
            for slot in slots:
                if slot.id in self._slots or self._key_taken(slot):
                    continue
                self._slots[slot.id] = slot
                inserted.append(slot)
        return inserted

    def get_slot(self, slot_id: str) -> Optional[Slot]:
        with self._lock:
            slot = self._slots.get(slot_id)
            # Hand out copies so callers cannot mutate stored state.
            return replace(slot) if slot is not None else None

    def list_slots(
        self,
        provider_id: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        statuses: Optional[Collection[SlotStatus]] = None,
        rule_id: Optional[str] = None,
        patient_id: Optional[str] = None,
    ) -> List[Slot]:
        with self._lock:
            matches = [
                replace(slot) for slot in self._slots.values()
                if (provider_id is None or slot.provider_id == provider_id)
                and (date_from is None or slot.date >= date_from)
                and (date_to is None or slot.date <= date_to)
                and (statuses is None or slot.status in statuses)
                and (rule_id is None or slot.rule_id == rule_id)
                and (patient_id is None or slot.patient_id == patient_id)
            ]
        return sorted(matches, key=lambda s: (s.date, s.start_time, s.provider_id))

    def transition(
        self,
        slot_id: str,
        expected_status: SlotStatus,
        expected_version: int,
        changes: Dict[str, Any],
    ) -> Optional[Slot]:
        unknown = set(changes) - _SLOT_FIELDS
        if unknown:
            raise ValueError(f"Unknown slot fields: {sorted(unknown)}")

        with self._lock:
            current = self._slots.get(slot_id)
            if current is None:
                return None
            if current.status != expected_status or current.version != expected_version:
                return None
            updated = replace(current, **changes, version=current.version + 1)
            if (
                current.status == SlotStatus.CANCELLED
                and updated.status != SlotStatus.CANCELLED
                and self._key_taken(updated)
            ):
                raise SlotUnavailable(f"Slot {slot_id} time is held by another slot")
            self._slots[slot_id] = updated
            return replace(updated)

    def delete_slots(self, slot_ids: Sequence[str], expected_status: SlotStatus) -> int:
        removed = 0
        with self._lock:
            for slot_id in slot_ids:
                slot = self._slots.get(slot_id)
                if slot is not None and slot.status == expected_status:
                    del self._slots[slot_id]
                    removed += 1
        return removed

    def purge_cancelled_before(self, cutoff: DateTime) -> int:
        with self._lock:
            doomed = [
                slot_id for slot_id, slot in self._slots.items()
                if slot.status == SlotStatus.CANCELLED
                and slot.cancelled_at is not None
                and slot.cancelled_at < cutoff
            ]
            for slot_id in doomed:
                del self._slots[slot_id]
        return len(doomed)
