"""
Outcomes of a check-in attempt that are not "recorded".

Every class carries a stable ``code`` (used on the wire), the HTTP status the
API answers with, and whether the caller may simply retry. Token problems are
never retryable as-is: the student has to scan the live display again.
"""

from typing import Any


class CheckInError(Exception):
    code = "check_in_error"
    http_status = 400
    retryable = False
    default_message = "Check-in failed."

    def __init__(self, message: str | None = None, **context: Any):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.context:
            detail["context"] = self.context
        return detail


class MalformedToken(CheckInError):
    code = "malformed_token"
    default_message = "QR code is not an attendance code."


class InvalidTokenSet(CheckInError):
    code = "invalid_token_set"
    default_message = "Invalid QR codes detected. Please scan again."


class Expired(CheckInError):
    code = "expired"
    http_status = 410
    default_message = "QR code has expired. Please scan the live display."


class Stale(CheckInError):
    code = "stale"
    http_status = 410
    default_message = "QR codes are too old. Please scan again."


class NonAdvancing(Stale):
    code = "non_advancing"
    default_message = "QR codes did not change while scanning. Please scan the live display."


class SessionMismatch(CheckInError):
    code = "session_mismatch"
    http_status = 409
    default_message = "QR codes belong to different sessions. Please scan one display."


class UnknownSession(CheckInError):
    code = "unknown_session"
    http_status = 404
    default_message = "Session not found."


class NotEnrolled(CheckInError):
    code = "not_enrolled"
    http_status = 403
    default_message = "You are not enrolled in this course."


class SessionNotActive(CheckInError):
    code = "session_not_active"
    http_status = 409
    default_message = "This session is not running right now."


class SnapshotRequired(CheckInError):
    code = "snapshot_required"
    default_message = "A camera snapshot is required to check in."


class InvalidSnapshot(CheckInError):
    code = "invalid_snapshot"
    default_message = "Camera snapshot is not a readable JPG/PNG image."


class ClassifierRejected(CheckInError):
    code = "screenshot_detected"
    http_status = 403
    default_message = "Possible screenshot detected - please scan from the actual display."


class ClassifierUnavailable(CheckInError):
    code = "classifier_unavailable"
    http_status = 503
    retryable = True
    default_message = "Screenshot check is temporarily unavailable. Please try again."

    def __init__(self, message: str | None = None, *, reason: str = "upstream_error", **context: Any):
        self.reason = reason
        super().__init__(message, reason=reason, **context)


class AlreadyCheckedIn(CheckInError):
    code = "already_checked_in"
    http_status = 200
    default_message = "You have already checked in to this session."


class RecordingFailed(CheckInError):
    code = "recording_failed"
    http_status = 503
    retryable = True
    default_message = "Could not record attendance. Please try again."


ERRORS_BY_CODE: dict[str, type[CheckInError]] = {
    cls.code: cls
    for cls in (
        MalformedToken,
        InvalidTokenSet,
        Expired,
        Stale,
        NonAdvancing,
        SessionMismatch,
        UnknownSession,
        NotEnrolled,
        SessionNotActive,
        SnapshotRequired,
        InvalidSnapshot,
        ClassifierRejected,
        ClassifierUnavailable,
        AlreadyCheckedIn,
        RecordingFailed,
    )
}


def error_from_detail(detail: dict[str, Any]) -> CheckInError:
    """Rebuild an error from the ``detail`` body the API sends back."""
    cls = ERRORS_BY_CODE.get(str(detail.get("code")), CheckInError)
    message = detail.get("message")
    context = dict(detail.get("context") or {})
    if cls is ClassifierUnavailable:
        reason = str(context.pop("reason", "upstream_error"))
        return ClassifierUnavailable(message, reason=reason, **context)
    return cls(message, **context)
