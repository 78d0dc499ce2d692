"""
Scheduling service facade.

The single entry point used by the CLI, the background jobs and any
transport layer. It wires the store, materializer, state machine, rule
catalogue and booking coordinator together and exposes their operations
under stable names.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable, Collection, List, Mapping, Optional

import pendulum
from pendulum import DateTime

from ..adapters.event_sinks import EventSink, LoggingEventSink
from ..config import AppConfig
from ..domain.models import (
    AvailabilityRule,
    BookingConfirmation,
    MaterializationReport,
    ProviderStatistics,
    RuleStatistics,
    Slot,
    SlotStatus,
)
from ..domain.rule_spec import RuleSpec
from .availability_manager import AvailabilityManager
from .booking_coordinator import BookingCoordinator
from .materializer import SlotMaterializer
from .slot_state_machine import SlotStateMachine
from .store import SchedulingStore

logger = logging.getLogger(__name__)

RuleInput = RuleSpec | Mapping[str, Any]


class SchedulingService:
    """Availability rules and slot bookings for many providers."""

    def __init__(
        self,
        store: SchedulingStore,
        config: Optional[AppConfig] = None,
        events: Optional[EventSink] = None,
        clock: Callable[[], DateTime] = pendulum.now,
    ) -> None:
        self.config = config or AppConfig()
        self.store = store
        self.events = events or LoggingEventSink()
        self._clock = clock

        self.materializer = SlotMaterializer(
            store,
            window_days=self.config.scheduling.materialization_window_days,
            orphan_policy=self.config.retention.orphaned_slot_policy,
            clock=clock,
        )
        self.slots = SlotStateMachine(store, events=self.events, clock=clock)
        self.rules = AvailabilityManager(
            store,
            self.materializer,
            scheduling=self.config.scheduling,
            retention=self.config.retention,
            default_timezone=self.config.default_timezone,
            clock=clock,
        )
        self.bookings = BookingCoordinator(
            store,
            self.slots,
            reminder_lead_hours=self.config.scheduling.reminder_lead_hours,
            clock=clock,
        )

    # Availability rules

    def create_availability_rule(self, provider_id: str, rule_spec: RuleInput) -> str:
        return self.rules.create(provider_id, rule_spec).id

    def update_availability_rule(
        self,
        rule_id: str,
        rule_spec: RuleInput,
        provider_id: Optional[str] = None,
    ) -> AvailabilityRule:
        return self.rules.update(rule_id, rule_spec, provider_id=provider_id)

    def deactivate_availability_rule(self, rule_id: str, provider_id: Optional[str] = None) -> AvailabilityRule:
        return self.rules.deactivate(rule_id, provider_id=provider_id)

    def activate_availability_rule(self, rule_id: str, provider_id: Optional[str] = None) -> AvailabilityRule:
        return self.rules.activate(rule_id, provider_id=provider_id)

    def get_rule(self, rule_id: str, provider_id: Optional[str] = None) -> AvailabilityRule:
        return self.rules.get_rule(rule_id, provider_id=provider_id)

    def list_rules(self, provider_id: str, active_only: bool = False) -> List[AvailabilityRule]:
        return self.rules.list_rules(provider_id, active_only=active_only)

    def search_rules(self, provider_id: str, term: str) -> List[AvailabilityRule]:
        return self.rules.search_rules(provider_id, term)

    def get_rule_statistics(self, provider_id: str) -> RuleStatistics:
        return self.rules.rule_statistics(provider_id)

    # Slots

    def list_slots(
        self,
        provider_id: str,
        date_from: date,
        date_to: date,
        status_filter: Optional[Collection[SlotStatus]] = None,
    ) -> List[Slot]:
        return self.rules.list_slots(provider_id, date_from, date_to, status_filter)

    def book_slot(self, slot_id: str, patient_id: str, now: Optional[DateTime] = None) -> BookingConfirmation:
        return self.bookings.book_slot(slot_id, patient_id, now=now)

    def cancel_booking(
        self,
        slot_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        now: Optional[DateTime] = None,
    ) -> Slot:
        return self.bookings.cancel_booking(slot_id, actor_id, reason=reason, now=now)

    def confirm_booking(self, slot_id: str, provider_id: str, now: Optional[DateTime] = None) -> Slot:
        return self.bookings.confirm_booking(slot_id, provider_id, now=now)

    def check_in(self, slot_id: str, provider_id: str, now: Optional[DateTime] = None) -> Slot:
        return self.bookings.check_in(slot_id, provider_id, now=now)

    def complete(
        self,
        slot_id: str,
        provider_id: str,
        notes: Optional[str] = None,
        duration_minutes: Optional[int] = None,
        now: Optional[DateTime] = None,
    ) -> Slot:
        return self.bookings.complete(
            slot_id, provider_id, notes=notes, duration_minutes=duration_minutes, now=now
        )

    def mark_no_show(self, slot_id: str, provider_id: str, now: Optional[DateTime] = None) -> Slot:
        return self.bookings.mark_no_show(slot_id, provider_id, now=now)

    def send_reminder(self, slot_id: str, provider_id: str, now: Optional[DateTime] = None) -> Slot:
        return self.bookings.send_reminder(slot_id, provider_id, now=now)

    def patient_appointments(self, patient_id: str, include_past: bool = False) -> List[Slot]:
        return self.bookings.patient_appointments(patient_id, include_past=include_past)

    def overdue_check_ins(self, provider_id: str, now: Optional[DateTime] = None) -> List[Slot]:
        return self.bookings.overdue_check_ins(provider_id, now=now)

    # Reporting

    def get_provider_statistics(self, provider_id: str, date_from: date, date_to: date) -> ProviderStatistics:
        return self.rules.statistics(provider_id, date_from, date_to)

    # Maintenance

    def run_materialization(self, today: Optional[date] = None) -> List[MaterializationReport]:
        return self.rules.materialize_all(today=today)

    def collect_due_reminders(self, now: Optional[DateTime] = None) -> List[Slot]:
        return self.bookings.due_reminders(now=now)

    def purge_cancelled_slots(self, now: Optional[DateTime] = None) -> int:
        return self.rules.purge_cancelled_slots(now=now)

    def purge_expired_rules(self, today: Optional[date] = None) -> List[str]:
        return self.rules.purge_expired_rules(today=today)


def build_service(
    config: Optional[AppConfig] = None,
    store: Optional[SchedulingStore] = None,
    events: Optional[EventSink] = None,
    clock: Callable[[], DateTime] = pendulum.now,
) -> SchedulingService:
    """
    Create a service for the given configuration.

    Without an explicit store, the SQL store at ``config.database_url`` is
    opened and its schema created if missing.
    """
    config = config or AppConfig()
    if store is None:
        from ..adapters.sql_store import SqlSchedulingStore

        store = SqlSchedulingStore.from_url(config.database_url)
        logger.debug("Using SQL store at %s", config.database_url)
    return SchedulingService(store, config=config, events=events, clock=clock)
