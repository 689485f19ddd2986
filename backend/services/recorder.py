import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence

from backend.services.errors import AlreadyCheckedIn, RecordingFailed
from database.db import get_attendance_record, insert_attendance_record

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttendanceRecord:
    id: int
    session_id: str
    student_id: int
    checked_in_at: str
    verification_token: str
    liveness_confidence: str | None = None


class AttendanceRecorder:
    """
    Writes a verified check-in exactly once.

    The UNIQUE(session_id, student_id) constraint on ``session_attendance`` is
    what makes this exactly-once across devices and processes; a violation
    comes back as AlreadyCheckedIn rather than a write failure.
    """

    def record(
        self,
        session_id: str,
        student_id: int,
        verification_payload: Sequence[str],
        *,
        liveness_confidence: str | None = None,
        checked_in_at: datetime | None = None,
    ) -> AttendanceRecord:
        stamp = (checked_in_at or datetime.now(timezone.utc)).isoformat(timespec="milliseconds")
        token = ",".join(verification_payload)
        try:
            record_id = insert_attendance_record(
                session_id,
                student_id,
                stamp,
                token,
                liveness_confidence,
            )
        except sqlite3.IntegrityError as e:
            existing = get_attendance_record(session_id, student_id)
            if existing is None:
                # some other constraint (e.g. the session was deleted meanwhile)
                logger.warning("Attendance insert rejected for session %s: %s", session_id, e)
                raise RecordingFailed() from e
            logger.info("Student %s already checked in to session %s", student_id, session_id)
            raise AlreadyCheckedIn(checked_in_at=existing[3]) from e
        except sqlite3.Error as e:
            logger.error("Attendance insert failed for session %s: %s", session_id, e)
            raise RecordingFailed() from e

        logger.info("Recorded attendance of student %s for session %s", student_id, session_id)
        return AttendanceRecord(
            id=record_id,
            session_id=session_id,
            student_id=student_id,
            checked_in_at=stamp,
            verification_token=token,
            liveness_confidence=liveness_confidence,
        )
