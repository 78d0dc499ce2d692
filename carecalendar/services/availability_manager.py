"""
Availability rule catalogue.

Creates, edits and deactivates a provider's rules, validating each change
against the provider's other active rules before it is persisted, and
keeps the materialized slots in step. Edits to one provider's rules are
serialized; different providers proceed independently.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import Counter
from dataclasses import replace
from datetime import date
from typing import Any, Callable, Collection, Dict, List, Mapping, Optional

import pendulum
from pendulum import DateTime

from ..config import RetentionConfig, SchedulingConfig
from ..domain.conflicts import find_conflicts
from ..domain.exceptions import (
    AccessDenied,
    ConflictError,
    NotFound,
    SchedulingError,
    StorageError,
    ValidationError,
)
from ..domain.models import (
    AvailabilityRule,
    MaterializationReport,
    ProviderStatistics,
    RuleStatistics,
    Slot,
    SlotStatus,
)
from ..domain.rule_spec import RuleSpec, parse_rule_spec
from .materializer import SlotMaterializer
from .store import SchedulingStore

logger = logging.getLogger(__name__)

# A rule with slots in these states is still in use and is never purged.
IN_FLIGHT_STATUSES = (SlotStatus.PENDING_CONFIRMATION, SlotStatus.BOOKED)


class ProviderLocks:
    """One re-entrant lock per provider, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def for_provider(self, provider_id: str) -> threading.RLock:
        with self._guard:
            return self._locks.setdefault(provider_id, threading.RLock())


class AvailabilityManager:
    """Owns providers' availability rules and their statistics."""

    def __init__(
        self,
        store: SchedulingStore,
        materializer: SlotMaterializer,
        scheduling: Optional[SchedulingConfig] = None,
        retention: Optional[RetentionConfig] = None,
        default_timezone: str = "America/New_York",
        clock: Callable[[], DateTime] = pendulum.now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._store = store
        self._materializer = materializer
        self.scheduling = scheduling or SchedulingConfig()
        self.retention = retention or RetentionConfig()
        self.default_timezone = default_timezone
        self._clock = clock
        self._id_factory = id_factory
        self._locks = ProviderLocks()

    # Lookup

    def get_rule(self, rule_id: str, provider_id: Optional[str] = None) -> AvailabilityRule:
        rule = self._store.get_rule(rule_id)
        if rule is None:
            raise NotFound(f"Availability rule {rule_id} not found")
        if provider_id is not None and rule.provider_id != provider_id:
            raise AccessDenied(f"Availability rule {rule_id} belongs to another provider")
        return rule

    def list_rules(self, provider_id: str, active_only: bool = False) -> List[AvailabilityRule]:
        return self._store.list_rules(provider_id=provider_id, active_only=active_only)

    def search_rules(self, provider_id: str, term: str) -> List[AvailabilityRule]:
        """Case-insensitive match on title or description."""
        needle = term.strip().lower()
        if not needle:
            return []
        return [
            rule for rule in self.list_rules(provider_id)
            if needle in rule.title.lower() or needle in (rule.description or "").lower()
        ]

    def list_slots(
        self,
        provider_id: str,
        date_from: date,
        date_to: date,
        status_filter: Optional[Collection[SlotStatus]] = None,
    ) -> List[Slot]:
        if date_to < date_from:
            raise ValidationError("date_to must not be before date_from", {"date_to": "before date_from"})
        return self._store.list_slots(
            provider_id=provider_id,
            date_from=date_from,
            date_to=date_to,
            statuses=status_filter,
        )

    # Mutations

    def create(self, provider_id: str, spec: RuleSpec | Mapping[str, Any]) -> AvailabilityRule:
        """
        Validate, conflict-check, persist and materialize a new rule.

        Raises:
            ValidationError: Malformed rule specification.
            ConflictError: Overlap with another active rule of the provider.
            StorageError: Persisting or materializing failed; nothing is kept.
        """
        if not provider_id:
            raise ValidationError("Provider id is required", {"provider_id": "required"})
        spec = parse_rule_spec(spec)
        now = self._clock()

        with self._locks.for_provider(provider_id):
            rule = self._build_rule(self._id_factory(), provider_id, spec, created_at=now)
            self._ensure_no_conflicts(rule)
            self._guarded(self._store.add_rule, rule)
            try:
                self._materializer.materialize(rule)
            except Exception as exc:
                logger.exception("Materializing new rule %s failed; rolling back", rule.id)
                self._store.delete_rule(rule.id)
                raise StorageError(f"Could not materialize availability rule: {exc}") from exc

        logger.info("Created availability rule %s for provider %s: %s", rule.id, provider_id, rule.title)
        return rule

    def update(
        self,
        rule_id: str,
        spec: RuleSpec | Mapping[str, Any],
        provider_id: Optional[str] = None,
    ) -> AvailabilityRule:
        """
        Replace a rule's definition and reconcile its slots.

        Booked and finished slots are left as they are; open slots the new
        definition no longer implies follow the orphaned-slot policy.
        """
        spec = parse_rule_spec(spec)
        owner = self.get_rule(rule_id, provider_id).provider_id

        with self._locks.for_provider(owner):
            existing = self.get_rule(rule_id)
            rule = self._build_rule(
                existing.id,
                existing.provider_id,
                spec,
                created_at=existing.created_at,
                is_active=existing.is_active,
                fallback=existing,
            )
            if rule.is_active:
                self._ensure_no_conflicts(rule)
            self._guarded(self._store.save_rule, rule)
            try:
                self._materializer.materialize(rule, reconcile=True)
            except Exception as exc:
                logger.exception("Reconciling updated rule %s failed; restoring previous definition", rule_id)
                self._store.save_rule(existing)
                self._materializer.materialize(existing, reconcile=True)
                raise StorageError(f"Could not reconcile availability rule: {exc}") from exc

        logger.info("Updated availability rule %s for provider %s", rule_id, owner)
        return rule

    def deactivate(self, rule_id: str, provider_id: Optional[str] = None) -> AvailabilityRule:
        """
        Stop a rule from producing or offering slots.

        Already materialized slots are not touched; in-flight bookings must be
        honoured or cancelled explicitly.
        """
        owner = self.get_rule(rule_id, provider_id).provider_id
        with self._locks.for_provider(owner):
            existing = self.get_rule(rule_id)
            if not existing.is_active:
                return existing
            rule = replace(existing, is_active=False, updated_at=self._clock())
            self._guarded(self._store.save_rule, rule)

        in_flight = self._store.list_slots(rule_id=rule_id, statuses=IN_FLIGHT_STATUSES)
        if in_flight:
            logger.warning("Deactivated rule %s still has %d in-flight bookings", rule_id, len(in_flight))
        else:
            logger.info("Deactivated availability rule %s", rule_id)
        return rule

    def activate(self, rule_id: str, provider_id: Optional[str] = None) -> AvailabilityRule:
        """Re-activate a rule after checking it against the provider's active rules."""
        owner = self.get_rule(rule_id, provider_id).provider_id
        with self._locks.for_provider(owner):
            existing = self.get_rule(rule_id)
            if existing.is_active:
                return existing
            rule = replace(existing, is_active=True, updated_at=self._clock())
            self._ensure_no_conflicts(rule)
            self._guarded(self._store.save_rule, rule)
            try:
                self._materializer.materialize(rule, reconcile=True)
            except Exception as exc:
                logger.exception("Materializing re-activated rule %s failed", rule_id)
                self._store.save_rule(existing)
                raise StorageError(f"Could not materialize availability rule: {exc}") from exc
        logger.info("Activated availability rule %s", rule_id)
        return rule

    def materialize_all(self, today: Optional[date] = None) -> List[MaterializationReport]:
        """Extend the rolling window of every active rule. Safe to run concurrently."""
        reports = []
        for rule in self._store.list_rules(active_only=True):
            with self._locks.for_provider(rule.provider_id):
                current = self._store.get_rule(rule.id)
                if current is None or not current.is_active:
                    continue
                reports.append(self._materializer.materialize(current, today=today))
        return reports

    # Retention

    def purge_cancelled_slots(self, now: Optional[DateTime] = None) -> int:
        now = now or self._clock()
        cutoff = now.subtract(days=self.retention.cancelled_slot_retention_days)
        removed = self._guarded(self._store.purge_cancelled_before, cutoff)
        if removed:
            logger.info("Purged %d cancelled slots older than %s", removed, cutoff.to_date_string())
        return removed

    def purge_expired_rules(self, today: Optional[date] = None) -> List[str]:
        """
        Delete rules past their end date (or deactivated) plus the retention
        window, together with their slots, unless a booking is still in flight.
        """
        today = today or self._clock().date()
        purged: List[str] = []
        for rule in self._store.list_rules():
            if not self._expired(rule, today):
                continue
            with self._locks.for_provider(rule.provider_id):
                if self._store.list_slots(rule_id=rule.id, statuses=IN_FLIGHT_STATUSES):
                    logger.info("Keeping expired rule %s: bookings still in flight", rule.id)
                    continue
                removed = self._guarded(self._store.delete_rule, rule.id)
            logger.info("Purged expired rule %s with %d slots", rule.id, removed)
            purged.append(rule.id)
        return purged

    def _expired(self, rule: AvailabilityRule, today: date) -> bool:
        keep_days = self.retention.rule_retention_days
        if rule.end_date is not None:
            last = pendulum.date(rule.end_date.year, rule.end_date.month, rule.end_date.day)
            if last.add(days=keep_days) < today:
                return True
        if not rule.is_active and rule.updated_at is not None:
            return rule.updated_at.date().add(days=keep_days) < today
        return False

    # Statistics

    def statistics(self, provider_id: str, date_from: date, date_to: date) -> ProviderStatistics:
        """Slot counts by status and utilization over a date window."""
        slots = self.list_slots(provider_id, date_from, date_to)
        counts = Counter(slot.status for slot in slots)
        return ProviderStatistics(
            total=len(slots),
            available=sum(1 for s in slots if s.status == SlotStatus.AVAILABLE and not s.disabled),
            pending=counts[SlotStatus.PENDING_CONFIRMATION],
            booked=counts[SlotStatus.BOOKED] + counts[SlotStatus.PENDING_CONFIRMATION],
            completed=counts[SlotStatus.COMPLETED],
            cancelled=counts[SlotStatus.CANCELLED],
            no_show=counts[SlotStatus.NO_SHOW],
            disabled=sum(1 for s in slots if s.disabled),
        )

    def rule_statistics(self, provider_id: str) -> RuleStatistics:
        rules = self.list_rules(provider_id)
        if not rules:
            return RuleStatistics()
        active = [r for r in rules if r.is_active]
        return RuleStatistics(
            total_rules=len(rules),
            active_rules=len(active),
            bookable_rules=sum(1 for r in active if r.allow_online_booking),
            average_slot_duration=sum(r.slot_duration_minutes for r in rules) / len(rules),
        )

    # Helpers

    def _build_rule(
        self,
        rule_id: str,
        provider_id: str,
        spec: RuleSpec,
        created_at: Optional[DateTime],
        is_active: bool = True,
        fallback: Optional[AvailabilityRule] = None,
    ) -> AvailabilityRule:
        """Combine a spec with defaults (configuration, or the rule being replaced)."""
        if fallback is not None:
            time_zone = fallback.time_zone
            max_days = fallback.max_advance_booking_days
            min_hours = fallback.min_advance_booking_hours
        else:
            time_zone = self.default_timezone
            max_days = self.scheduling.default_max_advance_booking_days
            min_hours = self.scheduling.default_min_advance_booking_hours

        rule = AvailabilityRule(
            id=rule_id,
            provider_id=provider_id,
            title=spec.title,
            description=spec.description,
            recurrence=spec.recurrence(),
            start_date=spec.start_date,
            end_date=spec.end_date,
            start_time=spec.start_time,
            end_time=spec.end_time,
            slot_duration_minutes=spec.slot_duration_minutes,
            buffer_minutes=spec.buffer_minutes,
            time_zone=spec.time_zone or time_zone,
            location_kind=spec.location_kind,
            location_details=spec.location_details,
            appointment_kind=spec.appointment_kind,
            max_advance_booking_days=spec.max_advance_booking_days or max_days,
            min_advance_booking_hours=(
                spec.min_advance_booking_hours
                if spec.min_advance_booking_hours is not None
                else min_hours
            ),
            allow_online_booking=spec.allow_online_booking,
            requires_approval=spec.requires_approval,
            excluded_dates=frozenset(spec.excluded_dates),
            is_active=is_active,
            created_at=created_at,
            updated_at=self._clock(),
        )

        ceiling = rule.appointment_kind.max_min_advance_hours
        if rule.min_advance_booking_hours > ceiling:
            raise ValidationError(
                f"Minimum advance booking for {rule.appointment_kind.value} cannot exceed {ceiling} hours",
                {"min_advance_booking_hours": f"must be at most {ceiling}"},
            )
        return rule

    def _ensure_no_conflicts(self, rule: AvailabilityRule) -> None:
        others = self._store.list_rules(provider_id=rule.provider_id, active_only=True)
        conflicts = find_conflicts(rule, others)
        if conflicts:
            details = ", ".join(f"{c.title} ({c.time_range_string()})" for c in conflicts)
            raise ConflictError(
                f"Schedule conflicts detected with: {details}",
                [c.id for c in conflicts],
            )

    @staticmethod
    def _guarded(operation: Callable[..., Any], *args: Any) -> Any:
        """Run a storage call, surfacing unexpected faults as ``StorageError``."""
        try:
            return operation(*args)
        except SchedulingError:
            raise
        except Exception as exc:
            logger.exception("Storage operation %s failed", getattr(operation, "__name__", operation))
            raise StorageError(f"Storage failure: {exc}") from exc
