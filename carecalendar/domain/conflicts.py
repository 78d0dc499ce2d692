"""
Conflict detection between availability rules, and between slots.

Two rules conflict when their active date ranges intersect, their
time-of-day windows overlap (half-open), and at least one date in the
intersection is produced by both recurrences. Whenever the comparison is
ambiguous the detector reports a conflict.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Iterable, Iterator, List, Optional, Tuple

import pendulum

from .models import AvailabilityRule, Custom, Slot
from .recurrence import applies_on, resolve_occurrences

logger = logging.getLogger(__name__)


def intersect_date_ranges(
    a: AvailabilityRule,
    b: AvailabilityRule,
) -> Optional[Tuple[date, Optional[date]]]:
    """
    Intersect the active ranges of two rules.

    Returns ``(start, end)`` with ``end`` None when both are open-ended, or
    None when the ranges are disjoint.
    """
    start = max(a.start_date, b.start_date)
    ends = [d for d in (a.end_date, b.end_date) if d is not None]
    end = min(ends) if ends else None
    if end is not None and start > end:
        return None
    return start, end


def _probe_horizon(a: AvailabilityRule, b: AvailabilityRule, start: date) -> date:
    """
    Last date that needs checking for an open-ended intersection.

    Past every explicit date (start dates, exclusions, custom dates) both
    recurrences repeat with a period of at most one week, so one extra week
    covers every pattern.
    """
    marks = [start, a.start_date, b.start_date]
    for rule in (a, b):
        marks.extend(rule.excluded_dates)
        if isinstance(rule.recurrence, Custom):
            marks.extend(rule.recurrence.dates)
    last = max(marks)
    return pendulum.date(last.year, last.month, last.day).add(days=7)


def shared_dates(a: AvailabilityRule, b: AvailabilityRule) -> Iterator[date]:
    """Yield dates on which both rules produce an occurrence."""
    bounds = intersect_date_ranges(a, b)
    if bounds is None:
        return
    start, end = bounds
    if end is None:
        end = _probe_horizon(a, b, start)

    for occurrence in resolve_occurrences(a, start, end):
        if applies_on(b, occurrence.date):
            yield occurrence.date


def rules_conflict(a: AvailabilityRule, b: AvailabilityRule) -> bool:
    """Check whether two rules of one provider claim overlapping time."""
    if a.provider_id != b.provider_id or a.id == b.id:
        return False

    if intersect_date_ranges(a, b) is None:
        return False

    if a.time_zone != b.time_zone:
        # Wall-clock windows in different zones cannot be compared reliably.
        logger.debug("Rules %s and %s use different time zones; treating as conflict", a.id, b.id)
        return True

    if not a.time_window().overlaps(b.time_window()):
        return False

    return next(shared_dates(a, b), None) is not None


def find_conflicts(
    candidate: AvailabilityRule,
    existing: Iterable[AvailabilityRule],
) -> List[AvailabilityRule]:
    """Return the active rules that conflict with ``candidate``."""
    return [
        rule for rule in existing
        if rule.is_active and rules_conflict(candidate, rule)
    ]


def overlapping_slots(slot: Slot, others: Iterable[Slot]) -> List[Slot]:
    """
    Find slots that occupy time overlapping ``slot`` on the same provider/date.

    Only slots whose status claims the time (pending, booked, completed,
    no-show) count; open and cancelled slots never block a booking.
    """
    window = slot.time_window()
    return [
        other for other in others
        if other.id != slot.id
        and other.provider_id == slot.provider_id
        and other.date == slot.date
        and other.status.occupies_time
        and window.overlaps(other.time_window())
    ]


def slot_is_exclusive(slot: Slot, others: Iterable[Slot]) -> bool:
    return not overlapping_slots(slot, others)
