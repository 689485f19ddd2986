import asyncio
import logging
from datetime import datetime, time

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from backend.config import TOKEN_ROTATION_MS
from backend.routers.courses import require_course_access, require_course_staff
from backend.security import decode_session_token, require_role, require_session
from backend.services.checkin import to_epoch_ms
from backend.services.scheduler import (
    DAY_NAMES,
    OneOffSchedule,
    RecurringSchedule,
    Session,
    active_window,
    local_zone,
    upcoming_start,
    utcnow,
)
from backend.services.tokens import IssuedToken, TokenIssuer, encode_token, render_qr_data_url
from database.db import (
    add_session,
    delete_session,
    get_course_by_id,
    get_course_role,
    get_session_attendance,
    get_session_by_id,
    get_sessions_for_course,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# close codes for the QR stream
WS_POLICY_VIOLATION = 1008
WS_SESSION_NOT_ACTIVE = 4409
WS_SESSION_ENDED = 4000


class SessionCreate(BaseModel):
    title: str
    duration_minutes: int = 60
    is_recurring: bool = False
    scheduled_at: datetime | None = None
    day_of_week: int | None = None  # 0 = Sunday ... 6 = Saturday
    time_of_day: time | None = None


def _schedule_from_payload(payload: SessionCreate) -> OneOffSchedule | RecurringSchedule:
    if payload.duration_minutes <= 0:
        raise HTTPException(status_code=400, detail="Duration must be positive.")

    if payload.is_recurring:
        if payload.day_of_week is None or payload.time_of_day is None:
            raise HTTPException(status_code=400, detail="Recurring sessions need day_of_week and time_of_day.")
        if not 0 <= payload.day_of_week <= 6:
            raise HTTPException(status_code=400, detail="day_of_week must be 0 (Sunday) to 6 (Saturday).")
        return RecurringSchedule(
            day_of_week=payload.day_of_week,
            time_of_day=payload.time_of_day.replace(tzinfo=None),
            duration_minutes=payload.duration_minutes,
        )

    if payload.scheduled_at is None:
        raise HTTPException(status_code=400, detail="One-off sessions need scheduled_at.")
    scheduled_at = payload.scheduled_at
    if scheduled_at.tzinfo is None:
        scheduled_at = scheduled_at.replace(tzinfo=local_zone())
    return OneOffSchedule(scheduled_at=scheduled_at, duration_minutes=payload.duration_minutes)


def _session_dict(session: Session, now: datetime) -> dict:
    start, end = active_window(session, now)
    upcoming = upcoming_start(session, now)
    schedule = session.schedule
    body = {
        "id": session.id,
        "course_id": session.course_id,
        "title": session.title,
        "is_recurring": session.is_recurring,
        "duration_minutes": schedule.duration_minutes,
        "is_active": start <= now <= end,
        "current_start": start.isoformat(),
        "current_end": end.isoformat(),
        "next_start": upcoming.isoformat() if upcoming else None,
        "created_by": session.created_by,
        "created_at": session.created_at,
    }
    if isinstance(schedule, RecurringSchedule):
        body["day_of_week"] = schedule.day_of_week
        body["day_name"] = DAY_NAMES[schedule.day_of_week]
        body["time_of_day"] = schedule.time_of_day.strftime("%H:%M")
        body["scheduled_at"] = None
    else:
        body["scheduled_at"] = schedule.scheduled_at.isoformat()
    return body


def _issued_dict(issued: IssuedToken) -> dict:
    return {
        "type": "token",
        "session_id": issued.session_id,
        "token": issued.token,
        "issued_at_ms": issued.issued_at_ms,
        "rotation_ms": issued.rotation_ms,
        "sequence": issued.sequence,
        "image": issued.image_data_url,
    }


def _load_session_or_404(session_id: str) -> Session:
    session = get_session_by_id(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found.")
    return session


def _require_active(session: Session, now: datetime) -> tuple[datetime, datetime]:
    start, end = active_window(session, now)
    if not start <= now <= end:
        raise HTTPException(status_code=409, detail="Session is not active right now.")
    return start, end


@router.get("/courses/{course_id}/sessions")
def course_sessions(course_id: int, session: dict = Depends(require_session)):
    require_course_access(course_id, session)
    now = utcnow()
    return [_session_dict(s, now) for s in get_sessions_for_course(course_id)]


@router.post("/courses/{course_id}/sessions", status_code=201)
def create_session(
    course_id: int,
    payload: SessionCreate,
    session: dict = Depends(require_role("teacher")),
):
    row = get_course_by_id(course_id)
    if not row:
        raise HTTPException(status_code=404, detail="Course not found.")
    if int(row[3]) != session["uid"]:
        raise HTTPException(status_code=403, detail="Only the course teacher can create sessions.")

    title = payload.title.strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required.")

    schedule = _schedule_from_payload(payload)
    created = add_session(course_id, title, schedule, created_by=session["uid"])
    logger.info("Session %s created for course %s", created.id, course_id)
    return _session_dict(created, utcnow())


@router.get("/sessions/{session_id}")
def session_detail(session_id: str, session: dict = Depends(require_session)):
    found = _load_session_or_404(session_id)
    require_course_access(found.course_id, session)
    return _session_dict(found, utcnow())


@router.delete("/sessions/{session_id}")
def remove_session(session_id: str, session: dict = Depends(require_role("teacher"))):
    found = _load_session_or_404(session_id)
    if get_course_role(found.course_id, session["uid"]) != "owner":
        raise HTTPException(status_code=403, detail="Only the course teacher can delete sessions.")
    delete_session(session_id)
    logger.info("Session %s deleted", session_id)
    return {"ok": True}


@router.get("/sessions/{session_id}/attendance")
def session_attendance(session_id: str, session: dict = Depends(require_session)):
    found = _load_session_or_404(session_id)
    require_course_staff(found.course_id, session)
    return [
        {
            "id": r[0],
            "student_id": r[1],
            "username": r[2],
            "full_name": r[3],
            "checked_in_at": r[4],
            "liveness_confidence": r[5],
        }
        for r in get_session_attendance(session_id)
    ]


@router.get("/sessions/{session_id}/qr")
def session_qr(session_id: str, session: dict = Depends(require_session)):
    found = _load_session_or_404(session_id)
    require_course_staff(found.course_id, session)
    now = utcnow()
    _, end = _require_active(found, now)

    issued_at = to_epoch_ms(now)
    token = encode_token(found.id, issued_at)
    return {
        "session_id": found.id,
        "token": token,
        "issued_at_ms": issued_at,
        "rotation_ms": TOKEN_ROTATION_MS,
        "ends_at": end.isoformat(),
        "image": render_qr_data_url(token),
    }


async def _until_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


@router.websocket("/sessions/{session_id}/qr/stream")
async def session_qr_stream(websocket: WebSocket, session_id: str):
    """
    Push a freshly rendered QR code every rotation period while the display
    is open. Authenticate with ``?access_token=<bearer token>``.
    """
    claims = decode_session_token(websocket.query_params.get("access_token", ""))
    if not claims:
        await websocket.close(code=WS_POLICY_VIOLATION)
        return

    found = await asyncio.to_thread(get_session_by_id, session_id)
    if found is None:
        await websocket.close(code=WS_POLICY_VIOLATION)
        return
    role = await asyncio.to_thread(get_course_role, found.course_id, claims["uid"])
    if role not in ("owner", "ta"):
        await websocket.close(code=WS_POLICY_VIOLATION)
        return

    now = utcnow()
    start, end = active_window(found, now)
    if not start <= now <= end:
        await websocket.close(code=WS_SESSION_NOT_ACTIVE)
        return

    await websocket.accept()
    logger.info("QR display opened for session %s by %s", found.id, claims["sub"])

    async def publish(issued: IssuedToken) -> None:
        await websocket.send_json(_issued_dict(issued))

    issuer = TokenIssuer(
        found.id,
        publish,
        rotation_ms=TOKEN_ROTATION_MS,
        until_ms=to_epoch_ms(end),
        clock=lambda: to_epoch_ms(utcnow()),
    )
    listener = asyncio.create_task(_until_disconnect(websocket))
    try:
        async with issuer:
            await asyncio.wait({listener, issuer.task}, return_when=asyncio.FIRST_COMPLETED)
            rotation = issuer.task
            window_ended = (
                rotation.done()
                and not rotation.cancelled()
                and rotation.exception() is None
                and not listener.done()
            )
    finally:
        listener.cancel()
    logger.info("QR display closed for session %s", found.id)

    if window_ended:
        await websocket.send_json({"type": "closed", "session_id": found.id, "reason": "session_ended"})
        await websocket.close(code=WS_SESSION_ENDED)
