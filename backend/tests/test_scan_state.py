from dataclasses import replace

import pytest

from capture.state import (
    AbandonVerification,
    AcquireCamera,
    CancelRequested,
    CodeDecoded,
    Notify,
    Phase,
    ReleaseCamera,
    ScanState,
    StartRequested,
    SubmitVerification,
    VerificationFailed,
    VerificationSucceeded,
    progress,
    reduce,
)


def _feed(state, *payloads, snapshot=None):
    effects = []
    for payload in payloads:
        state, produced = reduce(state, CodeDecoded(payload, snapshot))
        effects.extend(produced)
    return state, effects


def _scanning():
    state, effects = reduce(ScanState(), StartRequested())
    assert effects == [AcquireCamera()]
    return state


def test_start_acquires_camera_once():
    state = _scanning()
    assert state.phase is Phase.SCANNING
    again, effects = reduce(state, StartRequested())
    assert again is state
    assert effects == []


def test_window_fills_then_submits():
    state = _scanning()
    state, effects = _feed(state, "s:1", "s:2")
    assert effects == []
    assert progress(state).captured == 2

    state, effects = _feed(state, "s:3", snapshot="data:image/jpeg;base64,AA")
    assert state.phase is Phase.VERIFYING
    assert state.window == ()
    assert effects == [
        SubmitVerification(attempt=1, tokens=("s:1", "s:2", "s:3"), snapshot="data:image/jpeg;base64,AA")
    ]
    assert progress(state).verifying


def test_repeated_payload_is_not_counted():
    state = _scanning()
    state, effects = _feed(state, "s:1", "s:1", "s:1", "s:2", "s:2")
    assert state.window == ("s:1", "s:2")
    assert effects == []


def test_decodes_while_verifying_are_dropped():
    state = _scanning()
    state, _ = _feed(state, "s:1", "s:2", "s:3")
    dropped, effects = _feed(state, "s:4", "s:5", "s:6")
    assert dropped == state
    assert effects == []


def test_success_releases_camera():
    state = _scanning()
    state, _ = _feed(state, "s:1", "s:2", "s:3")
    state, effects = reduce(state, VerificationSucceeded(attempt=1, outcome="receipt"))
    assert state.phase is Phase.RECORDED
    assert state.outcome == "receipt"
    assert effects == [ReleaseCamera(), Notify("success", "Attendance recorded successfully!")]


def test_already_checked_in_is_terminal_info():
    state = _scanning()
    state, _ = _feed(state, "s:1", "s:2", "s:3")
    state, effects = reduce(state, VerificationSucceeded(attempt=1, already_checked_in=True))
    assert state.phase is Phase.RECORDED
    assert effects[0] == ReleaseCamera()
    assert effects[1].level == "info"
    assert effects[1].code == "already_checked_in"


def test_failure_keeps_camera_and_allows_rescan():
    state = _scanning()
    state, _ = _feed(state, "s:1", "s:2", "s:3")
    state, effects = reduce(
        state,
        VerificationFailed(attempt=1, code="stale", message="QR codes are too old.", retryable=False),
    )
    assert state.phase is Phase.FAILED
    assert state.error_code == "stale"
    assert effects == [Notify("error", "QR codes are too old.", code="stale", retryable=False)]

    state, effects = _feed(state, "s:7", "s:9", "s:11")
    assert state.phase is Phase.VERIFYING
    assert effects == [SubmitVerification(attempt=2, tokens=("s:7", "s:9", "s:11"))]


def test_stale_attempt_results_are_ignored():
    state = _scanning()
    state, _ = _feed(state, "s:1", "s:2", "s:3")
    ignored, effects = reduce(state, VerificationSucceeded(attempt=0))
    assert ignored is state
    assert effects == []


def test_cancel_while_verifying_abandons_request():
    state = _scanning()
    state, _ = _feed(state, "s:1", "s:2", "s:3")
    state, effects = reduce(state, CancelRequested())
    assert state.phase is Phase.IDLE
    assert effects == [ReleaseCamera(), AbandonVerification(attempt=1)]

    # a late answer for the abandoned attempt changes nothing
    late, effects = reduce(state, VerificationSucceeded(attempt=1))
    assert late is state
    assert effects == []


@pytest.mark.parametrize("phase", [Phase.SCANNING, Phase.FAILED])
def test_cancel_releases_camera(phase):
    state = replace(ScanState(), phase=phase, window=("s:1",))
    state, effects = reduce(state, CancelRequested())
    assert state.phase is Phase.IDLE
    assert state.window == ()
    assert effects == [ReleaseCamera()]


@pytest.mark.parametrize("phase", [Phase.IDLE, Phase.RECORDED])
def test_cancel_is_noop_when_camera_is_off(phase):
    state = replace(ScanState(), phase=phase)
    assert reduce(state, CancelRequested()) == (state, [])


def test_decodes_when_idle_are_ignored():
    state = ScanState()
    assert reduce(state, CodeDecoded("s:1")) == (state, [])


def test_unknown_event():
    with pytest.raises(TypeError):
        reduce(ScanState(), object())
