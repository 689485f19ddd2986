import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import backend.config as config
from backend.security import require_role
from backend.services.checkin import check_in
from backend.services.classifier import HttpLivenessClassifier, LivenessClassifier
from backend.services.errors import AlreadyCheckedIn, CheckInError
from backend.services.recorder import AttendanceRecorder
from backend.services.scheduler import utcnow
from database.db import get_course_role, get_session_by_id, get_student_attendance

logger = logging.getLogger(__name__)

router = APIRouter()


class CheckInRequest(BaseModel):
    tokens: list[str]
    snapshot: str | None = None  # data:image/jpeg;base64,...


def get_classifier() -> LivenessClassifier | None:
    # without a key there is nothing to ask; check_in then applies LIVENESS_MODE
    if not config.CLASSIFIER_API_KEY:
        return None
    return HttpLivenessClassifier(api_key=config.CLASSIFIER_API_KEY)


def get_recorder() -> AttendanceRecorder:
    return AttendanceRecorder()


@router.post("/attendance/check-in")
async def attendance_check_in(
    payload: CheckInRequest,
    session: dict = Depends(require_role("student")),
    classifier: LivenessClassifier | None = Depends(get_classifier),
    recorder: AttendanceRecorder = Depends(get_recorder),
):
    student_id = session["uid"]
    try:
        result = await check_in(
            payload.tokens,
            student_id,
            now=utcnow(),
            load_session=get_session_by_id,
            load_role=get_course_role,
            recorder=recorder,
            classifier=classifier,
            snapshot=payload.snapshot,
            liveness_mode=config.LIVENESS_MODE,
        )
    except AlreadyCheckedIn as e:
        return {
            "status": "already_checked_in",
            "message": e.message,
            "checked_in_at": e.context.get("checked_in_at"),
        }
    except CheckInError as e:
        logger.info("Check-in rejected for student %s: %s", student_id, e.code)
        raise HTTPException(status_code=e.http_status, detail=e.to_detail())

    record = result.record
    return JSONResponse(
        status_code=201,
        content={
            "status": "recorded",
            "message": "Attendance recorded successfully!",
            "session_id": record.session_id,
            "session_title": result.session.title,
            "student_id": record.student_id,
            "checked_in_at": record.checked_in_at,
            "liveness": (
                {"verdict": result.liveness.verdict, "confidence": result.liveness.confidence}
                if result.liveness
                else None
            ),
        },
    )


@router.get("/attendance/me")
def my_attendance(session: dict = Depends(require_role("student"))):
    return [
        {
            "id": r[0],
            "session_id": r[1],
            "session_title": r[2],
            "course_code": r[3],
            "checked_in_at": r[4],
        }
        for r in get_student_attendance(session["uid"])
    ]
