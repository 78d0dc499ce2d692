"""
Shared fixtures: a controllable clock, stores and a wired service.
"""

from datetime import date, time

import pendulum
import pytest

from carecalendar.adapters.event_sinks import QueueEventSink
from carecalendar.adapters.memory_store import InMemorySchedulingStore
from carecalendar.config import AppConfig
from carecalendar.domain.models import (
    AppointmentKind,
    AvailabilityRule,
    LocationKind,
    Weekly,
)
from carecalendar.services.scheduling import SchedulingService

TZ = "America/New_York"
PROVIDER = "dr-grey"
PATIENT = "patient-1"

# Wednesday morning, five days before the first Monday clinic.
NOW = pendulum.datetime(2025, 1, 1, 8, 0, tz=TZ)


class FakeClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now.add(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def store():
    return InMemorySchedulingStore()


@pytest.fixture
def events():
    return QueueEventSink()


@pytest.fixture
def config():
    return AppConfig(default_timezone=TZ)


@pytest.fixture
def service(store, events, clock, config):
    return SchedulingService(store, config=config, events=events, clock=clock)


@pytest.fixture
def rule_spec():
    """Factory for a valid rule spec: Mondays 09:00-12:00, 30 minute slots, two weeks."""

    def _make(**overrides):
        spec = {
            "title": "Monday clinic",
            "recurrence_kind": "WEEKLY",
            "day_of_week": 1,
            "start_date": "2025-01-06",
            "end_date": "2025-01-19",
            "start_time": "09:00",
            "end_time": "12:00",
            "slot_duration_minutes": 30,
            "location_kind": "VIRTUAL",
            "appointment_kind": "CONSULTATION",
        }
        spec.update(overrides)
        return spec

    return _make


@pytest.fixture
def make_rule():
    """Factory for AvailabilityRule values used by the pure domain tests."""

    def _make(**overrides):
        values = dict(
            id="rule-1",
            provider_id=PROVIDER,
            title="Monday clinic",
            recurrence=Weekly(day_of_week=1),
            start_date=date(2025, 1, 6),
            end_date=date(2025, 1, 19),
            start_time=time(9, 0),
            end_time=time(12, 0),
            slot_duration_minutes=30,
            buffer_minutes=0,
            time_zone=TZ,
            location_kind=LocationKind.VIRTUAL,
            appointment_kind=AppointmentKind.CONSULTATION,
            max_advance_booking_days=90,
            min_advance_booking_hours=2,
        )
        values.update(overrides)
        return AvailabilityRule(**values)

    return _make


@pytest.fixture
def first_slot(service, rule_spec):
    """Create the default rule and return its earliest slot."""
    service.create_availability_rule(PROVIDER, rule_spec())
    return service.list_slots(PROVIDER, date(2025, 1, 1), date(2025, 1, 31))[0]
