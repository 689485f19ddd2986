import argparse
import asyncio
import base64
import logging
import os
import sys
import threading
from dataclasses import replace
from functools import partial
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

import cv2  # type: ignore

from backend.config import (
    CAPTURE_API_URL,
    CAPTURE_CAMERA_INDEX,
    CAPTURE_JPEG_QUALITY,
    CAPTURE_SNAPSHOTS,
    SEQUENCE_LENGTH,
)
from backend.services.errors import AlreadyCheckedIn, CheckInError
from capture.client import CheckInClient
from capture.state import (
    AbandonVerification,
    AcquireCamera,
    CancelRequested,
    CodeDecoded,
    Effect,
    Event,
    Notify,
    Phase,
    ReleaseCamera,
    ScanState,
    StartRequested,
    SubmitVerification,
    VerificationFailed,
    VerificationSucceeded,
    reduce,
)

logger = logging.getLogger(__name__)

Verifier = Callable[[Sequence[str], str | None], Awaitable[Any]]

MAX_CONSECUTIVE_READ_FAILURES = 50
READ_RETRY_SECONDS = 0.05


class CameraUnavailable(Exception):
    """The camera could not be opened (or was lost) when scanning started."""

    REMEDIES = {
        "permission_denied": "Grant this program access to the camera and try again.",
        "device_busy": "Close other applications using the camera and try again.",
        "not_found": "No camera was found. Connect one or pick another camera index.",
        "unsupported": "This OpenCV build cannot capture video on this device.",
        "disconnected": "The camera stopped delivering frames. Reconnect it and try again.",
    }

    def __init__(self, reason: str, detail: str | None = None):
        self.reason = reason
        self.remedy = self.REMEDIES.get(reason, "Camera unavailable.")
        super().__init__(detail or self.remedy)


def diagnose_camera(index: int) -> str:
    """Best guess at why ``cv2.VideoCapture(index)`` did not open."""
    registry = getattr(cv2, "videoio_registry", None)
    if registry is not None and not registry.getCameraBackends():
        return "unsupported"
    if sys.platform.startswith("linux"):
        device = Path(f"/dev/video{index}")
        if not device.exists():
            return "not_found"
        if not os.access(device, os.R_OK | os.W_OK):
            return "permission_denied"
    return "device_busy"


def decode_qr(detector, frame) -> str | None:
    try:
        data, _points, _ = detector.detectAndDecode(frame)
    except cv2.error:
        return None
    return data or None


def encode_snapshot(frame, quality: int = CAPTURE_JPEG_QUALITY) -> str | None:
    ok, buf = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        return None
    return "data:image/jpeg;base64," + base64.b64encode(buf.tobytes()).decode("ascii")


class ScanCapture:
    """
    Camera loop for one student check-in.

    Frames are read and decoded with OpenCV; every decoded payload goes
    through ``capture.state.reduce`` and the driver carries out the effects
    it returns. Only one verification runs at a time, and ``stop()`` releases
    the camera before returning, whatever state the scan is in.
    """

    def __init__(
        self,
        verify: Verifier,
        *,
        camera_index: int = CAPTURE_CAMERA_INDEX,
        capture_snapshots: bool = CAPTURE_SNAPSHOTS,
        capacity: int = SEQUENCE_LENGTH,
        camera_factory: Callable[[int], Any] = cv2.VideoCapture,
        decoder: Callable[[Any], str | None] | None = None,
        snapshot_encoder: Callable[[Any], str | None] = encode_snapshot,
        on_notify: Callable[[Notify], None] | None = None,
    ):
        self.state = ScanState(capacity=capacity)
        self.camera_index = camera_index
        self.capture_snapshots = capture_snapshots
        self._verify = verify
        self._camera_factory = camera_factory
        self._decode = decoder or partial(decode_qr, cv2.QRCodeDetector())
        self._encode_snapshot = snapshot_encoder
        self._on_notify = on_notify
        self._camera = None
        self._camera_lock = threading.Lock()
        self._verification: asyncio.Task | None = None

    # -----------------------------
    # State machine plumbing
    # -----------------------------
    def dispatch(self, event: Event) -> ScanState:
        self.state, effects = reduce(self.state, event)
        for effect in effects:
            self._apply(effect)
        return self.state

    def _apply(self, effect: Effect) -> None:
        if isinstance(effect, AcquireCamera):
            try:
                self._open_camera()
            except CameraUnavailable:
                self.state = replace(self.state, phase=Phase.IDLE)
                raise
        elif isinstance(effect, ReleaseCamera):
            self._release_camera()
        elif isinstance(effect, SubmitVerification):
            self._verification = asyncio.get_running_loop().create_task(self._run_verification(effect))
        elif isinstance(effect, AbandonVerification):
            self._abandon_verification()
        elif isinstance(effect, Notify):
            self._notify(effect)

    def _notify(self, note: Notify) -> None:
        if self._on_notify is not None:
            self._on_notify(note)
        elif note.level == "error":
            logger.warning("%s (%s)", note.message, note.code)
        else:
            logger.info("%s", note.message)

    async def _run_verification(self, effect: SubmitVerification) -> None:
        try:
            receipt = await self._verify(list(effect.tokens), effect.snapshot)
        except AlreadyCheckedIn as e:
            event: Event = VerificationSucceeded(
                attempt=effect.attempt,
                outcome=e,
                already_checked_in=True,
                message=e.message,
            )
        except CheckInError as e:
            event = VerificationFailed(
                attempt=effect.attempt,
                code=e.code,
                message=e.message,
                retryable=e.retryable,
            )
        except Exception as e:
            logger.exception("Verification attempt %s crashed", effect.attempt)
            event = VerificationFailed(
                attempt=effect.attempt,
                code="error",
                message=f"Failed to record attendance: {e}",
                retryable=True,
            )
        else:
            event = VerificationSucceeded(
                attempt=effect.attempt,
                outcome=receipt,
                message=getattr(receipt, "message", None),
            )
        self.dispatch(event)

    def _abandon_verification(self) -> None:
        task, self._verification = self._verification, None
        if task is not None and not task.done():
            task.cancel()

    # -----------------------------
    # Camera
    # -----------------------------
    def _open_camera(self) -> None:
        with self._camera_lock:
            if self._camera is not None:
                return
            camera = self._camera_factory(self.camera_index)
            if camera is None or not camera.isOpened():
                if camera is not None:
                    camera.release()
                reason = diagnose_camera(self.camera_index)
                logger.error("Camera %s unavailable: %s", self.camera_index, reason)
                raise CameraUnavailable(reason)
            self._camera = camera
        logger.info("Camera %s opened", self.camera_index)

    def _release_camera(self) -> None:
        # waits for an in-flight read to finish before releasing
        with self._camera_lock:
            camera, self._camera = self._camera, None
            if camera is not None:
                camera.release()
                logger.info("Camera %s released", self.camera_index)

    def _read_frame(self) -> tuple[bool, Any]:
        with self._camera_lock:
            if self._camera is None:
                return False, None
            return self._camera.read()

    @property
    def camera_open(self) -> bool:
        return self._camera is not None

    # -----------------------------
    # Public lifecycle
    # -----------------------------
    def start(self) -> ScanState:
        return self.dispatch(StartRequested())

    def stop(self) -> ScanState:
        """Cancel the scan; the camera is released before this returns."""
        self.dispatch(CancelRequested())
        self._abandon_verification()
        self._release_camera()
        return self.state

    def process_frame(self, frame) -> ScanState:
        payload = self._decode(frame)
        if not payload:
            # no code in view is the normal case
            return self.state
        if self.state.window and self.state.window[-1] == payload:
            return self.state
        snapshot = None
        if self.capture_snapshots and self.state.phase in (Phase.SCANNING, Phase.FAILED):
            snapshot = self._encode_snapshot(frame)
        return self.dispatch(CodeDecoded(payload=payload, snapshot=snapshot))

    async def run(self) -> ScanState:
        """Scan until attendance is recorded or the scan is cancelled."""
        self.start()
        failures = 0
        try:
            while self.state.phase in (Phase.SCANNING, Phase.VERIFYING, Phase.FAILED):
                ok, frame = await asyncio.to_thread(self._read_frame)
                if not ok:
                    if not self.camera_open:
                        break
                    failures += 1
                    if failures >= MAX_CONSECUTIVE_READ_FAILURES:
                        raise CameraUnavailable("disconnected")
                    await asyncio.sleep(READ_RETRY_SECONDS)
                    continue
                failures = 0
                self.process_frame(frame)
                # let a pending verification make progress between frames
                await asyncio.sleep(0)
        finally:
            if self.state.phase is not Phase.RECORDED:
                self.stop()
            else:
                self._release_camera()
        return self.state

    async def __aenter__(self) -> "ScanCapture":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.stop()


def _print_notification(note: Notify) -> None:
    prefix = {"success": "[ok]", "error": "[error]"}.get(note.level, "[info]")
    suffix = " (you can retry)" if note.retryable else ""
    print(f"{prefix} {note.message}{suffix}")


async def _scan(args: argparse.Namespace) -> int:
    client = CheckInClient(args.token, base_url=args.api)
    scanner = ScanCapture(
        client.check_in,
        camera_index=args.camera,
        capture_snapshots=not args.no_snapshots,
        on_notify=_print_notification,
    )
    async with scanner:
        try:
            state = await scanner.run()
        except CameraUnavailable as e:
            print(f"[error] {e.remedy}")
            return 2
    return 0 if state.phase is Phase.RECORDED else 1


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Scan the live attendance QR code with a webcam.")
    parser.add_argument("--token", default=os.getenv("CLASSCHECK_ACCESS_TOKEN", ""), help="student bearer token")
    parser.add_argument("--api", default=CAPTURE_API_URL, help="attendance API base URL")
    parser.add_argument("--camera", type=int, default=CAPTURE_CAMERA_INDEX, help="camera index")
    parser.add_argument("--no-snapshots", action="store_true", help="do not send a still frame for the screenshot check")
    args = parser.parse_args(argv)
    if not args.token:
        parser.error("a student access token is required (--token or CLASSCHECK_ACCESS_TOKEN)")

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    print("Point the camera at the attendance QR code. Press Ctrl+C to cancel.")
    try:
        return asyncio.run(_scan(args))
    except KeyboardInterrupt:
        print("Scan cancelled.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
