"""
When is a session running.

A session is scheduled either once (a concrete start instant) or weekly (a day
of week plus a local time of day). For weekly sessions the recurrence fields
are the only source of truth; the occurrence used for activity checks is the
latest one starting at or before ``now``.
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Union
from zoneinfo import ZoneInfo

from backend.config import TIMEZONE

# 0 = Sunday ... 6 = Saturday
DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


def local_zone() -> tzinfo:
    return ZoneInfo(TIMEZONE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_aware(value: datetime, name: str) -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{name} must be timezone-aware.")


@dataclass(frozen=True)
class OneOffSchedule:
    scheduled_at: datetime
    duration_minutes: int

    def __post_init__(self):
        _require_aware(self.scheduled_at, "scheduled_at")
        if self.duration_minutes <= 0:
            raise ValueError("duration_minutes must be positive.")


@dataclass(frozen=True)
class RecurringSchedule:
    day_of_week: int
    time_of_day: time
    duration_minutes: int

    def __post_init__(self):
        if not 0 <= self.day_of_week <= 6:
            raise ValueError("day_of_week must be 0 (Sunday) to 6 (Saturday).")
        if self.duration_minutes <= 0:
            raise ValueError("duration_minutes must be positive.")


Schedule = Union[OneOffSchedule, RecurringSchedule]


@dataclass(frozen=True)
class Session:
    id: str
    course_id: int
    title: str
    schedule: Schedule
    created_by: int | None = None
    created_at: str | None = None

    @property
    def is_recurring(self) -> bool:
        return isinstance(self.schedule, RecurringSchedule)


def _sunday_based_weekday(value: datetime) -> int:
    # datetime.weekday(): Monday=0 ... Sunday=6
    return (value.weekday() + 1) % 7


def _occurrence_on(day: datetime, schedule: RecurringSchedule) -> datetime:
    return datetime.combine(day.date(), schedule.time_of_day, tzinfo=day.tzinfo)


def latest_occurrence(schedule: RecurringSchedule, now: datetime, zone: tzinfo | None = None) -> datetime:
    """Most recent start of ``schedule`` at or before ``now``."""
    _require_aware(now, "now")
    local_now = now.astimezone(zone or local_zone())
    days_back = (_sunday_based_weekday(local_now) - schedule.day_of_week) % 7
    start = _occurrence_on(local_now - timedelta(days=days_back), schedule)
    if start > local_now:
        start = _occurrence_on(local_now - timedelta(days=days_back + 7), schedule)
    return start


def next_occurrence(schedule: RecurringSchedule, now: datetime, zone: tzinfo | None = None) -> datetime:
    """First start of ``schedule`` strictly after ``now``."""
    _require_aware(now, "now")
    local_now = now.astimezone(zone or local_zone())
    days_ahead = (schedule.day_of_week - _sunday_based_weekday(local_now)) % 7
    start = _occurrence_on(local_now + timedelta(days=days_ahead), schedule)
    if start <= local_now:
        start = _occurrence_on(local_now + timedelta(days=days_ahead + 7), schedule)
    return start


def active_window(session: Session, now: datetime, zone: tzinfo | None = None) -> tuple[datetime, datetime]:
    """(start, end) of the occurrence that decides whether ``session`` is active at ``now``."""
    schedule = session.schedule
    if isinstance(schedule, OneOffSchedule):
        start = schedule.scheduled_at
    elif isinstance(schedule, RecurringSchedule):
        start = latest_occurrence(schedule, now, zone)
    else:
        raise TypeError(f"Unsupported schedule: {schedule!r}")
    # elapsed time, not wall clock, across DST changes
    return start, start.astimezone(timezone.utc) + timedelta(minutes=schedule.duration_minutes)


def is_active(session: Session, now: datetime, zone: tzinfo | None = None) -> bool:
    _require_aware(now, "now")
    start, end = active_window(session, now, zone)
    return start <= now <= end


def upcoming_start(session: Session, now: datetime, zone: tzinfo | None = None) -> datetime | None:
    """Next start after ``now``; None for a one-off session that already started."""
    schedule = session.schedule
    if isinstance(schedule, RecurringSchedule):
        return next_occurrence(schedule, now, zone)
    if schedule.scheduled_at > now:
        return schedule.scheduled_at
    return None
