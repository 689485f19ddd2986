from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from backend.services.scheduler import (
    OneOffSchedule,
    RecurringSchedule,
    Session,
    active_window,
    is_active,
    latest_occurrence,
    next_occurrence,
    upcoming_start,
)

UTC = timezone.utc
BERLIN = ZoneInfo("Europe/Berlin")


def _session(schedule):
    return Session(id="s1", course_id=1, title="Exercise", schedule=schedule)


def test_one_off_window_is_inclusive():
    start = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
    session = _session(OneOffSchedule(scheduled_at=start, duration_minutes=60))

    assert active_window(session, start) == (start, start + timedelta(hours=1))
    assert is_active(session, start)
    assert is_active(session, start + timedelta(hours=1))
    assert not is_active(session, start - timedelta(milliseconds=1))
    assert not is_active(session, start + timedelta(hours=1, milliseconds=1))


def test_one_off_upcoming_start():
    start = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
    session = _session(OneOffSchedule(scheduled_at=start, duration_minutes=60))
    assert upcoming_start(session, start - timedelta(minutes=1)) == start
    assert upcoming_start(session, start) is None


def test_schedules_validate_their_fields():
    with pytest.raises(ValueError):
        OneOffSchedule(scheduled_at=datetime(2026, 3, 2, 9, 0), duration_minutes=60)
    with pytest.raises(ValueError):
        OneOffSchedule(scheduled_at=datetime(2026, 3, 2, 9, 0, tzinfo=UTC), duration_minutes=0)
    with pytest.raises(ValueError):
        RecurringSchedule(day_of_week=7, time_of_day=time(9, 0), duration_minutes=60)


def test_day_of_week_zero_is_sunday():
    schedule = RecurringSchedule(day_of_week=0, time_of_day=time(14, 0), duration_minutes=90)
    # Wednesday 2026-03-04
    now = datetime(2026, 3, 4, 12, 0, tzinfo=UTC)
    assert latest_occurrence(schedule, now, UTC) == datetime(2026, 3, 1, 14, 0, tzinfo=UTC)
    assert next_occurrence(schedule, now, UTC) == datetime(2026, 3, 8, 14, 0, tzinfo=UTC)


def test_recurring_active_during_todays_occurrence():
    # Monday 10:00 for 90 minutes
    schedule = RecurringSchedule(day_of_week=1, time_of_day=time(10, 0), duration_minutes=90)
    session = _session(schedule)

    assert is_active(session, datetime(2026, 3, 2, 10, 0, tzinfo=UTC), UTC)
    assert is_active(session, datetime(2026, 3, 2, 11, 30, tzinfo=UTC), UTC)
    assert not is_active(session, datetime(2026, 3, 2, 11, 31, tzinfo=UTC), UTC)


def test_recurring_before_todays_start_uses_last_week():
    schedule = RecurringSchedule(day_of_week=1, time_of_day=time(10, 0), duration_minutes=90)
    session = _session(schedule)
    now = datetime(2026, 3, 2, 9, 59, tzinfo=UTC)

    start, end = active_window(session, now, UTC)
    assert start == datetime(2026, 2, 23, 10, 0, tzinfo=UTC)
    assert not is_active(session, now, UTC)
    assert upcoming_start(session, now, UTC) == datetime(2026, 3, 2, 10, 0, tzinfo=UTC)


def test_recurring_time_is_local_wall_clock():
    schedule = RecurringSchedule(day_of_week=1, time_of_day=time(10, 0), duration_minutes=60)
    session = _session(schedule)

    # 10:00 in Berlin is 09:00 UTC in winter and 08:00 UTC in summer
    assert is_active(session, datetime(2026, 3, 2, 9, 30, tzinfo=UTC), BERLIN)
    assert is_active(session, datetime(2026, 6, 1, 8, 30, tzinfo=UTC), BERLIN)
    assert not is_active(session, datetime(2026, 6, 1, 9, 30, tzinfo=UTC), BERLIN)


def test_naive_now_is_rejected():
    schedule = RecurringSchedule(day_of_week=1, time_of_day=time(10, 0), duration_minutes=60)
    with pytest.raises(ValueError):
        latest_occurrence(schedule, datetime(2026, 3, 2, 10, 0))


def test_window_end_counts_elapsed_time_across_dst():
    # Berlin falls back 03:00 CEST -> 02:00 CET on Sunday 2026-10-25
    schedule = RecurringSchedule(day_of_week=0, time_of_day=time(1, 30), duration_minutes=120)
    session = _session(schedule)
    now = datetime(2026, 10, 25, 1, 0, tzinfo=UTC)

    start, end = active_window(session, now, BERLIN)
    assert start == datetime(2026, 10, 24, 23, 30, tzinfo=UTC)
    assert end == datetime(2026, 10, 25, 1, 30, tzinfo=UTC)
    assert is_active(session, datetime(2026, 10, 25, 1, 30, tzinfo=UTC), BERLIN)
    assert not is_active(session, datetime(2026, 10, 25, 1, 45, tzinfo=UTC), BERLIN)
