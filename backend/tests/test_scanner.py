import asyncio
import itertools

import pytest

import capture.scanner as scanner
from backend.services.errors import AlreadyCheckedIn, Stale
from capture.scanner import CameraUnavailable, ScanCapture
from capture.state import Phase


class FakeCamera:
    """Every frame shows the next rotated token of session ``s``."""

    def __init__(self, opened=True, readable=True):
        self.opened = opened
        self.readable = readable
        self.released = False
        self._ticks = itertools.count(1)

    def isOpened(self):
        return self.opened

    def read(self):
        if not self.readable:
            return False, None
        return True, f"s:{next(self._ticks)}"

    def release(self):
        self.released = True


class FakeVerifier:
    def __init__(self, *outcomes, block=False):
        self.outcomes = list(outcomes)
        self.block = block
        self.calls = []
        self.cancelled = False

    async def __call__(self, tokens, snapshot):
        self.calls.append((tuple(tokens), snapshot))
        if self.block:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _capture(verify, camera, **kwargs):
    notes = []
    capture = ScanCapture(
        verify,
        camera_factory=lambda index: camera,
        decoder=lambda frame: frame,
        snapshot_encoder=lambda frame: f"snap:{frame}",
        on_notify=notes.append,
        **kwargs,
    )
    return capture, notes


def test_scan_records_and_releases_camera():
    camera = FakeCamera()
    verify = FakeVerifier("receipt")
    capture, notes = _capture(verify, camera)

    state = asyncio.run(capture.run())

    assert state.phase is Phase.RECORDED
    assert state.outcome == "receipt"
    assert verify.calls == [(("s:1", "s:2", "s:3"), "snap:s:3")]
    assert camera.released
    assert not capture.camera_open
    assert [n.level for n in notes] == ["success"]


def test_snapshots_can_be_disabled():
    verify = FakeVerifier("receipt")
    capture, _ = _capture(verify, FakeCamera(), capture_snapshots=False)
    asyncio.run(capture.run())
    assert verify.calls[0][1] is None


def test_failed_verification_rescans():
    camera = FakeCamera()
    verify = FakeVerifier(Stale(), "receipt")
    capture, notes = _capture(verify, camera)

    state = asyncio.run(capture.run())

    assert state.phase is Phase.RECORDED
    assert len(verify.calls) == 2
    assert verify.calls[0][0] == ("s:1", "s:2", "s:3")
    assert notes[0].level == "error"
    assert notes[0].code == "stale"
    assert notes[-1].level == "success"
    assert camera.released


def test_already_checked_in_ends_scan():
    verify = FakeVerifier(AlreadyCheckedIn(checked_in_at="2026-03-02T09:30:00.000+00:00"))
    capture, notes = _capture(verify, FakeCamera())

    state = asyncio.run(capture.run())

    assert state.phase is Phase.RECORDED
    assert notes[-1].code == "already_checked_in"
    assert len(verify.calls) == 1


def test_camera_that_does_not_open():
    camera = FakeCamera(opened=False)
    capture, _ = _capture(FakeVerifier(), camera)

    with pytest.raises(CameraUnavailable) as err:
        asyncio.run(capture.run())

    assert err.value.reason in CameraUnavailable.REMEDIES
    assert capture.state.phase is Phase.IDLE
    assert camera.released
    assert not capture.camera_open


def test_camera_that_stops_delivering_frames(monkeypatch):
    monkeypatch.setattr(scanner, "READ_RETRY_SECONDS", 0)
    camera = FakeCamera(readable=False)
    capture, _ = _capture(FakeVerifier(), camera)

    with pytest.raises(CameraUnavailable) as err:
        asyncio.run(capture.run())

    assert err.value.reason == "disconnected"
    assert capture.state.phase is Phase.IDLE
    assert camera.released


def test_stop_during_verification_cancels_request():
    camera = FakeCamera()
    verify = FakeVerifier(block=True)
    capture, notes = _capture(verify, camera)

    async def scenario():
        run = asyncio.create_task(capture.run())
        while capture.state.phase is not Phase.VERIFYING:
            await asyncio.sleep(0.01)
        # let the verification task start waiting
        await asyncio.sleep(0.01)
        capture.stop()
        assert not capture.camera_open
        state = await asyncio.wait_for(run, timeout=5)
        await asyncio.sleep(0)
        return state

    state = asyncio.run(scenario())

    assert state.phase is Phase.IDLE
    assert camera.released
    assert verify.cancelled
    assert notes == []
