"""Raceday status, live window and past list relative to a reference date.

All comparisons are whole calendar days.  Dates are built from explicit
year/month/day components; nothing here reads the wall clock, callers pass
the reference date in.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from typing import Iterable, List, Mapping, NamedTuple, Sequence, Union

from .models import DatedEvent, Status

DayLike = Union[str, date]


class WindowSpec(NamedTuple):
    """Inclusive bounds on ``days_between(event, reference)``."""

    earliest_offset: int
    latest_offset: int


# Yesterday through three days ahead.
LIVE_WINDOW = WindowSpec(earliest_offset=-3, latest_offset=1)


def parse_day(value: DayLike) -> date:
    """Parse ``YYYY-MM-DD`` into a :class:`datetime.date`.

    Raises ValueError for anything that is not three numeric components
    forming a real calendar day.
    """
    if isinstance(value, datetime):
        raise ValueError(f"expected a calendar day, got a timestamp: {value!r}")
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValueError(f"expected a YYYY-MM-DD string, got {value!r}")
    parts = value.strip().split("-")
    if len(parts) != 3 or not all(p.isascii() and p.isdigit() for p in parts):
        raise ValueError(f"malformed date {value!r}; expected YYYY-MM-DD")
    year, month, day = (int(p) for p in parts)
    if not 1 <= month <= 12:
        raise ValueError(f"month out of range in {value!r}")
    try:
        return date(year, month, day)
    except ValueError as exc:
        raise ValueError(f"day out of range in {value!r}") from exc


def days_between(event_day: DayLike, reference_day: DayLike) -> int:
    """Whole days from ``event_day`` to ``reference_day`` (positive = past)."""
    return (parse_day(reference_day) - parse_day(event_day)).days


def classify(event_day: DayLike, reference_day: DayLike) -> Status:
    offset = days_between(event_day, reference_day)
    if offset == 0:
        return Status.TODAY
    if offset == 1:
        return Status.YESTERDAY
    if offset > 1:
        return Status.PAST
    return Status.UPCOMING


def _check_events(events) -> List[DatedEvent]:
    if events is None or not isinstance(events, (list, tuple)):
        raise TypeError(f"events must be a list, got {type(events).__name__}")
    return list(events)


def with_status(events: Sequence[DatedEvent], reference_day: DayLike) -> List[DatedEvent]:
    ref = parse_day(reference_day)
    return [replace(ev, status=classify(ev.date_key, ref)) for ev in _check_events(events)]


def in_window(event_day: DayLike, reference_day: DayLike, window: WindowSpec = LIVE_WINDOW) -> bool:
    return window.earliest_offset <= days_between(event_day, reference_day) <= window.latest_offset


def filter_window(events: Sequence[DatedEvent], reference_day: DayLike, window: WindowSpec = LIVE_WINDOW) -> List[DatedEvent]:
    """Events inside ``window``, in input order, annotated with their status."""
    ref = parse_day(reference_day)
    return [ev for ev in with_status(events, ref) if in_window(ev.date_key, ref, window)]


def filter_and_sort_past(events: Sequence[DatedEvent], reference_day: DayLike) -> List[DatedEvent]:
    """Events before yesterday, most recent first.

    The sort is stable, so events sharing a date keep their input order.
    """
    ref = parse_day(reference_day)
    past = [ev for ev in with_status(events, ref) if days_between(ev.date_key, ref) > 1]
    past.sort(key=lambda ev: ev.date_key, reverse=True)
    return past


def live_badge_active(live_events: Sequence[DatedEvent]) -> bool:
    return len(live_events) > 0


def next_to_jump_index(races: Iterable[Mapping]) -> int:
    """Index of the first race without results, or -1 when all have run.

    ``races`` must already be in race-number order.
    """
    for idx, race in enumerate(races):
        if not race.get("results"):
            return idx
    return -1


__all__ = [
    "WindowSpec",
    "LIVE_WINDOW",
    "parse_day",
    "days_between",
    "classify",
    "with_status",
    "in_window",
    "filter_window",
    "filter_and_sort_past",
    "live_badge_active",
    "next_to_jump_index",
]
