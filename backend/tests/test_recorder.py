import sqlite3
from datetime import datetime, timezone

import pytest

import backend.config as config
import database.db as db
from backend.services.errors import AlreadyCheckedIn, RecordingFailed
from backend.services.recorder import AttendanceRecorder
from backend.services.scheduler import OneOffSchedule

CHECKED_IN_AT = datetime(2026, 3, 2, 9, 30, 15, 250_000, tzinfo=timezone.utc)


@pytest.fixture()
def seeded(database):
    teacher_id = db.verify_user_credentials(config.DEFAULT_TEACHER_USERNAME, config.DEFAULT_TEACHER_PASSWORD)["id"]
    student_id = db.create_user("bob", "pw", "Bob", "student")
    course_id = db.add_course("CS102", "Algorithms", teacher_id)
    session = db.add_session(
        course_id,
        "Exercise 1",
        OneOffSchedule(scheduled_at=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc), duration_minutes=60),
        created_by=teacher_id,
    )
    return session, student_id


def test_records_once(seeded):
    session, student_id = seeded
    recorder = AttendanceRecorder()

    record = recorder.record(
        session.id,
        student_id,
        ["a:1", "a:2", "a:3"],
        liveness_confidence="high",
        checked_in_at=CHECKED_IN_AT,
    )
    assert record.checked_in_at == "2026-03-02T09:30:15.250+00:00"
    assert record.verification_token == "a:1,a:2,a:3"

    row = db.get_attendance_record(session.id, student_id)
    assert row[0] == record.id
    assert row[4] == "a:1,a:2,a:3"
    assert row[5] == "high"


def test_second_record_reports_original_time(seeded):
    session, student_id = seeded
    recorder = AttendanceRecorder()
    first = recorder.record(session.id, student_id, ["a:1"], checked_in_at=CHECKED_IN_AT)

    with pytest.raises(AlreadyCheckedIn) as err:
        recorder.record(session.id, student_id, ["a:9"], checked_in_at=datetime.now(timezone.utc))

    assert err.value.context["checked_in_at"] == first.checked_in_at
    assert db.count_attendance_records(session.id, student_id) == 1
    assert db.get_attendance_record(session.id, student_id)[4] == "a:1"


def test_missing_session_is_a_recording_failure(seeded):
    session, student_id = seeded
    db.delete_session(session.id)

    with pytest.raises(RecordingFailed) as err:
        AttendanceRecorder().record(session.id, student_id, ["a:1"])
    assert err.value.retryable


def test_database_errors_are_recording_failures(seeded, monkeypatch):
    session, student_id = seeded

    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr("backend.services.recorder.insert_attendance_record", broken)
    with pytest.raises(RecordingFailed):
        AttendanceRecorder().record(session.id, student_id, ["a:1"])
