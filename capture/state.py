"""
Scan loop state machine.

The camera side of a check-in is driven by one pure reducer::

    state, effects = reduce(state, event)

The driver (``capture.scanner.ScanCapture``) feeds it camera and network
events and carries out the returned effects. Keeping every transition here
means "ignore decodes while verifying" and "drop results after cancel" are
plain state checks rather than flags spread across callbacks.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Union

from backend.config import SEQUENCE_LENGTH


class Phase(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    VERIFYING = "verifying"
    RECORDED = "recorded"
    FAILED = "failed"


@dataclass(frozen=True)
class ScanState:
    phase: Phase = Phase.IDLE
    window: tuple[str, ...] = ()
    capacity: int = SEQUENCE_LENGTH
    attempt: int = 0
    message: str | None = None
    error_code: str | None = None
    outcome: Any = None


# -----------------------------
# Events
# -----------------------------
@dataclass(frozen=True)
class StartRequested:
    pass


@dataclass(frozen=True)
class CodeDecoded:
    payload: str
    snapshot: str | None = None


@dataclass(frozen=True)
class VerificationSucceeded:
    attempt: int
    outcome: Any = None
    already_checked_in: bool = False
    message: str | None = None


@dataclass(frozen=True)
class VerificationFailed:
    attempt: int
    code: str
    message: str
    retryable: bool = False


@dataclass(frozen=True)
class CancelRequested:
    pass


Event = Union[StartRequested, CodeDecoded, VerificationSucceeded, VerificationFailed, CancelRequested]


# -----------------------------
# Effects
# -----------------------------
@dataclass(frozen=True)
class AcquireCamera:
    pass


@dataclass(frozen=True)
class ReleaseCamera:
    pass


@dataclass(frozen=True)
class SubmitVerification:
    attempt: int
    tokens: tuple[str, ...]
    snapshot: str | None = None


@dataclass(frozen=True)
class AbandonVerification:
    attempt: int


@dataclass(frozen=True)
class Notify:
    level: str  # info | success | error
    message: str
    code: str | None = None
    retryable: bool = False


Effect = Union[AcquireCamera, ReleaseCamera, SubmitVerification, AbandonVerification, Notify]


@dataclass(frozen=True)
class Progress:
    captured: int
    needed: int
    verifying: bool = field(default=False)


def progress(state: ScanState) -> Progress:
    return Progress(
        captured=len(state.window),
        needed=state.capacity,
        verifying=state.phase is Phase.VERIFYING,
    )


def _accumulate(state: ScanState, event: CodeDecoded) -> tuple[ScanState, list[Effect]]:
    # A live display is decoded many times per rotation; only a changed code counts.
    if state.window and state.window[-1] == event.payload:
        return state, []

    window = (state.window + (event.payload,))[-state.capacity:]
    if len(window) < state.capacity:
        return replace(state, phase=Phase.SCANNING, window=window), []

    attempt = state.attempt + 1
    verifying = replace(
        state,
        phase=Phase.VERIFYING,
        window=(),
        attempt=attempt,
        message="Verifying attendance...",
        error_code=None,
    )
    return verifying, [SubmitVerification(attempt=attempt, tokens=window, snapshot=event.snapshot)]


def reduce(state: ScanState, event: Event) -> tuple[ScanState, list[Effect]]:
    phase = state.phase

    if isinstance(event, StartRequested):
        if phase in (Phase.SCANNING, Phase.VERIFYING, Phase.FAILED):
            return state, []
        return (
            replace(state, phase=Phase.SCANNING, window=(), message=None, error_code=None, outcome=None),
            [AcquireCamera()],
        )

    if isinstance(event, CancelRequested):
        if phase in (Phase.IDLE, Phase.RECORDED):
            return state, []
        effects: list[Effect] = [ReleaseCamera()]
        if phase is Phase.VERIFYING:
            effects.append(AbandonVerification(attempt=state.attempt))
        return replace(state, phase=Phase.IDLE, window=(), message=None, error_code=None), effects

    if isinstance(event, CodeDecoded):
        if phase in (Phase.SCANNING, Phase.FAILED):
            return _accumulate(state, event)
        # idle / recorded: camera should be off; verifying: drop, never queue
        return state, []

    if isinstance(event, (VerificationSucceeded, VerificationFailed)):
        if phase is not Phase.VERIFYING or event.attempt != state.attempt:
            return state, []

        if isinstance(event, VerificationSucceeded):
            if event.already_checked_in:
                message = event.message or "You have already checked in to this session."
                notify = Notify("info", message, code="already_checked_in")
            else:
                message = event.message or "Attendance recorded successfully!"
                notify = Notify("success", message)
            done = replace(state, phase=Phase.RECORDED, window=(), message=message, outcome=event.outcome)
            return done, [ReleaseCamera(), notify]

        failed = replace(
            state,
            phase=Phase.FAILED,
            window=(),
            message=event.message,
            error_code=event.code,
        )
        return failed, [Notify("error", event.message, code=event.code, retryable=event.retryable)]

    raise TypeError(f"Unknown scan event: {event!r}")
