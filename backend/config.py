import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("CLASSCHECK_DB_PATH", BASE_DIR / "database" / "classcheck.db"))
LOG_LEVEL = (os.getenv("CLASSCHECK_LOG_LEVEL", "INFO").strip() or "INFO").upper()
TIMEZONE = os.getenv("CLASSCHECK_TIMEZONE", "UTC").strip() or "UTC"

DEFAULT_TEACHER_USERNAME = os.getenv("CLASSCHECK_TEACHER_USERNAME", "teacher").strip() or "teacher"
DEFAULT_TEACHER_PASSWORD = os.getenv("CLASSCHECK_TEACHER_PASSWORD", "teacher123").strip() or "teacher123"
SIGNING_KEY = os.getenv("CLASSCHECK_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("CLASSCHECK_AUTH_TOKEN_TTL_SECONDS", "43200"))


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_choice(value: str | None, choices: set[str], fallback: str) -> str:
    normalized = (value or "").strip().lower().replace("-", "_")
    if normalized in choices:
        return normalized
    return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("CLASSCHECK_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("CLASSCHECK_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("CLASSCHECK_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("CLASSCHECK_CORS_ALLOW_CREDENTIALS"), True)
ALLOW_SELF_REGISTRATION = _parse_bool(os.getenv("CLASSCHECK_ALLOW_SELF_REGISTRATION"), True)

# Rotating QR tokens
TOKEN_ROTATION_MS = max(100, int(os.getenv("CLASSCHECK_TOKEN_ROTATION_MS", "2000")))
TOKEN_FRESHNESS_MS = max(0, int(os.getenv("CLASSCHECK_TOKEN_FRESHNESS_MS", "10000")))
SEQUENCE_WINDOW_MS = max(0, int(os.getenv("CLASSCHECK_SEQUENCE_WINDOW_MS", "10000")))
SEQUENCE_LENGTH = max(1, int(os.getenv("CLASSCHECK_SEQUENCE_LENGTH", "3")))
SEQUENCE_MIN_STEP_MS = max(
    1,
    int(os.getenv("CLASSCHECK_SEQUENCE_MIN_STEP_MS", str(TOKEN_ROTATION_MS // 2))),
)
QR_BOX_SIZE = int(os.getenv("CLASSCHECK_QR_BOX_SIZE", "10"))
QR_BORDER = int(os.getenv("CLASSCHECK_QR_BORDER", "2"))

# Liveness classification (screenshot detection)
LIVENESS_MODE = _parse_choice(
    os.getenv("CLASSCHECK_LIVENESS_MODE"),
    {"off", "optional", "required"},
    "optional",
)
CLASSIFIER_URL = os.getenv(
    "CLASSCHECK_CLASSIFIER_URL",
    "https://ai.gateway.lovable.dev/v1/chat/completions",
).strip()
CLASSIFIER_MODEL = os.getenv("CLASSCHECK_CLASSIFIER_MODEL", "google/gemini-2.5-flash").strip()
CLASSIFIER_API_KEY = os.getenv("CLASSCHECK_CLASSIFIER_API_KEY", "").strip()
CLASSIFIER_TIMEOUT_SECONDS = float(os.getenv("CLASSCHECK_CLASSIFIER_TIMEOUT_SECONDS", "20"))
SNAPSHOT_MAX_BYTES = int(os.getenv("CLASSCHECK_SNAPSHOT_MAX_BYTES", str(4 * 1024 * 1024)))

# Capture client
CAPTURE_API_URL = os.getenv("CLASSCHECK_API_URL", "http://127.0.0.1:8000").strip()
CAPTURE_CAMERA_INDEX = int(os.getenv("CLASSCHECK_CAMERA_INDEX", "0"))
CAPTURE_SNAPSHOTS = _parse_bool(os.getenv("CLASSCHECK_CAPTURE_SNAPSHOTS"), True)
CAPTURE_JPEG_QUALITY = int(os.getenv("CLASSCHECK_CAPTURE_JPEG_QUALITY", "80"))
