"""
Time & recurrence resolution.

Pure functions that turn an availability rule and a closed date window into
concrete occurrences. Nothing here touches storage or the clock, so resolving
the same rule and window always yields the same sequence.
"""

from __future__ import annotations

from datetime import date
from typing import Iterable, Iterator, List, Optional, Tuple, assert_never

import pendulum

from .models import (
    AvailabilityRule,
    Custom,
    Daily,
    Occurrence,
    OneTime,
    TimeWindow,
    Weekly,
    minutes_of_day,
    time_from_minutes,
)


def _as_pendulum_date(value: date) -> pendulum.Date:
    return pendulum.date(value.year, value.month, value.day)


def iter_dates(start: date, end: date) -> Iterator[pendulum.Date]:
    """Yield every date in ``[start, end]``."""
    current = _as_pendulum_date(start)
    last = _as_pendulum_date(end)
    while current <= last:
        yield current
        current = current.add(days=1)


def clip_to_active_range(
    rule: AvailabilityRule,
    window_start: date,
    window_end: date,
) -> Optional[Tuple[date, date]]:
    """
    Intersect a closed window with the rule's active range.
    Returns None if there is no overlap.
    """
    start = max(window_start, rule.start_date)
    end = window_end if rule.end_date is None else min(window_end, rule.end_date)
    if start > end:
        return None
    return start, end


def applies_on(rule: AvailabilityRule, day: date) -> bool:
    """Check whether the rule's recurrence produces an occurrence on ``day``."""
    if day < rule.start_date:
        return False
    if rule.end_date is not None and day > rule.end_date:
        return False
    if day in rule.excluded_dates:
        return False

    recurrence = rule.recurrence
    match recurrence:
        case OneTime():
            return day == rule.start_date
        case Daily():
            return True
        case Weekly(day_of_week=weekday):
            return day.isoweekday() == weekday
        case Custom(dates=dates):
            return day in dates
        case _:
            assert_never(recurrence)


def _candidate_dates(rule: AvailabilityRule, start: date, end: date) -> Iterable[date]:
    recurrence = rule.recurrence
    match recurrence:
        case OneTime():
            return [rule.start_date] if start <= rule.start_date <= end else []
        case Daily():
            return iter_dates(start, end)
        case Weekly(day_of_week=weekday):
            first = _as_pendulum_date(start)
            offset = (weekday - first.isoweekday()) % 7
            return _step_dates(first.add(days=offset), end, step_days=7)
        case Custom(dates=dates):
            return [d for d in dates if start <= d <= end]
        case _:
            assert_never(recurrence)


def _step_dates(first: pendulum.Date, end: date, step_days: int) -> Iterator[pendulum.Date]:
    current = first
    while current <= end:
        yield current
        current = current.add(days=step_days)


def resolve_occurrences(
    rule: AvailabilityRule,
    window_start: date,
    window_end: date,
) -> Iterator[Occurrence]:
    """
    Resolve a rule into concrete occurrences within ``[window_start, window_end]``.

    The result is lazy and ordered by date; excluded dates and dates outside
    the rule's active range are skipped. Each call returns a fresh iterator.
    """
    bounds = clip_to_active_range(rule, window_start, window_end)
    if bounds is None:
        return iter(())
    return _generate(rule, *bounds)


def _generate(rule: AvailabilityRule, start: date, end: date) -> Iterator[Occurrence]:
    seen = set()
    for candidate in _candidate_dates(rule, start, end):
        day = date(candidate.year, candidate.month, candidate.day)
        if day in seen or not applies_on(rule, day):
            continue
        seen.add(day)
        yield Occurrence(date=day, start_time=rule.start_time, end_time=rule.end_time)


def slots_per_occurrence(rule: AvailabilityRule) -> int:
    """floor(occurrence length / (slot duration + buffer))."""
    span = minutes_of_day(rule.end_time) - minutes_of_day(rule.start_time)
    return span // rule.total_slot_minutes


def slot_windows(rule: AvailabilityRule) -> List[TimeWindow]:
    """
    Subdivide one occurrence into slot-wide windows separated by the buffer.

    Example:
    09:00 - 10:00, slot 20, buffer 10
    Result: [09:00-09:20, 09:30-09:50]
    """
    windows: List[TimeWindow] = []
    cursor = minutes_of_day(rule.start_time)
    for _ in range(slots_per_occurrence(rule)):
        windows.append(
            TimeWindow(
                start=time_from_minutes(cursor),
                end=time_from_minutes(cursor + rule.slot_duration_minutes),
            )
        )
        cursor += rule.total_slot_minutes
    return windows
