import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

import cv2  # type: ignore
import numpy as np  # type: ignore

from backend.config import LIVENESS_MODE, SNAPSHOT_MAX_BYTES
from backend.services.classifier import LivenessClassifier, LivenessVerdict
from backend.services.errors import (
    ClassifierRejected,
    ClassifierUnavailable,
    InvalidSnapshot,
    NotEnrolled,
    SessionNotActive,
    SnapshotRequired,
    UnknownSession,
)
from backend.services.recorder import AttendanceRecord, AttendanceRecorder
from backend.services.scheduler import Session, active_window
from backend.services.validation import validate_tokens

logger = logging.getLogger(__name__)

ALLOWED_SNAPSHOT_TYPES = ("image/jpeg", "image/png")
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return (value - EPOCH) // timedelta(milliseconds=1)


@dataclass(frozen=True)
class CheckInResult:
    record: AttendanceRecord
    session: Session
    liveness: LivenessVerdict | None


def decode_snapshot(data_url: str):
    """Decode a ``data:image/...;base64,`` still frame into a BGR array."""
    header, sep, encoded = data_url.partition(",")
    if not sep or not header.startswith("data:") or ";base64" not in header:
        raise InvalidSnapshot()
    content_type = header[len("data:"):].split(";", 1)[0].strip().lower()
    if content_type not in ALLOWED_SNAPSHOT_TYPES:
        raise InvalidSnapshot("Upload JPG/PNG only.")
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidSnapshot()
    if not data or len(data) > SNAPSHOT_MAX_BYTES:
        raise InvalidSnapshot("Camera snapshot is empty or too large.")

    img_array = np.frombuffer(data, np.uint8)
    frame = cv2.imdecode(img_array, cv2.IMREAD_COLOR)
    if frame is None:
        raise InvalidSnapshot()
    return frame


async def check_in(
    tokens: Sequence[str],
    student_id: int,
    *,
    now: datetime,
    load_session: Callable[[str], Session | None],
    load_role: Callable[[int, int], str | None],
    recorder: AttendanceRecorder,
    classifier: LivenessClassifier | None = None,
    snapshot: str | None = None,
    liveness_mode: str = LIVENESS_MODE,
) -> CheckInResult:
    """
    Verify scanned tokens and record the check-in.

    Steps run strictly in order and the first failure ends the attempt:
    token validation, session lookup, enrollment, activity, liveness
    classification, then the exactly-once write. Identity, clock and course membership are
    supplied by the caller.
    """
    now_ms = to_epoch_ms(now)
    session_id = validate_tokens(list(tokens), now_ms)

    session = await asyncio.to_thread(load_session, session_id)
    if session is None:
        raise UnknownSession(session_id=session_id)
    role = await asyncio.to_thread(load_role, session.course_id, student_id)
    if role != "student":
        raise NotEnrolled(course_id=session.course_id)
    start, end = active_window(session, now)
    if not start <= now <= end:
        raise SessionNotActive(starts_at=start.isoformat(), ends_at=end.isoformat())

    verdict = None
    if liveness_mode != "off":
        if snapshot is None:
            if liveness_mode == "required":
                raise SnapshotRequired()
        elif classifier is not None:
            decode_snapshot(snapshot)
            verdict = await classifier.classify(snapshot)
            if not verdict.is_physical:
                logger.info(
                    "Screenshot suspected for student %s on session %s (%s)",
                    student_id,
                    session_id,
                    verdict.confidence,
                )
                raise ClassifierRejected(confidence=verdict.confidence)
        elif liveness_mode == "required":
            raise ClassifierUnavailable("Screenshot check is not configured.", reason="not_configured")

    record = await asyncio.to_thread(
        recorder.record,
        session_id,
        student_id,
        list(tokens),
        liveness_confidence=verdict.confidence if verdict else None,
        checked_in_at=now.astimezone(timezone.utc),
    )
    return CheckInResult(record=record, session=session, liveness=verdict)
