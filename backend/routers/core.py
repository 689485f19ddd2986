from fastapi import APIRouter

from backend.config import (
    LIVENESS_MODE,
    SEQUENCE_LENGTH,
    SEQUENCE_MIN_STEP_MS,
    SEQUENCE_WINDOW_MS,
    TIMEZONE,
    TOKEN_FRESHNESS_MS,
    TOKEN_ROTATION_MS,
)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/attendance")
def attendance_config():
    return {
        "token_rotation_ms": TOKEN_ROTATION_MS,
        "token_freshness_ms": TOKEN_FRESHNESS_MS,
        "sequence_length": SEQUENCE_LENGTH,
        "sequence_window_ms": SEQUENCE_WINDOW_MS,
        "sequence_min_step_ms": SEQUENCE_MIN_STEP_MS,
        "liveness_mode": LIVENESS_MODE,
        "timezone": TIMEZONE,
    }
