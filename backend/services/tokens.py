import asyncio
import base64
import io
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import qrcode
from qrcode.constants import ERROR_CORRECT_M

from backend.config import QR_BORDER, QR_BOX_SIZE, TOKEN_ROTATION_MS

logger = logging.getLogger(__name__)

SEPARATOR = ":"


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def encode_token(session_id: str, issued_at_ms: int) -> str:
    session_id = str(session_id)
    if not session_id:
        raise ValueError("Session id is required.")
    if SEPARATOR in session_id:
        raise ValueError(f"Session id must not contain {SEPARATOR!r}.")
    return f"{session_id}{SEPARATOR}{int(issued_at_ms)}"


def parse_token(payload: str) -> tuple[str, int] | None:
    """Split a scanned payload into (session_id, issued_at_ms), or None."""
    if not isinstance(payload, str):
        return None
    parts = payload.split(SEPARATOR)
    if len(parts) != 2:
        return None
    session_id, raw_ts = parts
    if not session_id or not (raw_ts.isascii() and raw_ts.isdigit()):
        return None
    return session_id, int(raw_ts)


def current_token(session_id: str, at_ms: int | None = None) -> str:
    return encode_token(session_id, now_ms() if at_ms is None else at_ms)


def render_qr_png(payload: str) -> bytes:
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=QR_BOX_SIZE, border=QR_BORDER)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def render_qr_data_url(payload: str) -> str:
    encoded = base64.b64encode(render_qr_png(payload)).decode("ascii")
    return f"data:image/png;base64,{encoded}"


@dataclass(frozen=True)
class IssuedToken:
    session_id: str
    token: str
    issued_at_ms: int
    image_data_url: str
    rotation_ms: int
    sequence: int


class TokenIssuer:
    """
    Rotates the attendance token for one session on a fixed cadence.

    Each tick builds a fresh token, renders its QR code in a worker thread and
    hands the result to ``on_token``. The next tick only starts once the
    previous one has been published, so a superseded token is never shown.

    Use it as an async context manager; leaving the block cancels the timer::

        async with TokenIssuer(session_id, on_token=websocket_send):
            await websocket.receive_text()
    """

    def __init__(
        self,
        session_id: str,
        on_token: Callable[[IssuedToken], Awaitable[None]],
        *,
        rotation_ms: int = TOKEN_ROTATION_MS,
        until_ms: int | None = None,
        clock: Callable[[], int] = now_ms,
        render: Callable[[str], str] = render_qr_data_url,
    ):
        encode_token(session_id, 0)  # reject ids that cannot be encoded
        if rotation_ms <= 0:
            raise ValueError("rotation_ms must be positive.")
        self.session_id = session_id
        self.rotation_ms = rotation_ms
        self.until_ms = until_ms
        self._on_token = on_token
        self._clock = clock
        self._render = render
        self._task: asyncio.Task | None = None
        self._sequence = 0
        self.current: IssuedToken | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> IssuedToken | None:
        """Issue, render and publish one token. Returns None once past ``until_ms``."""
        issued_at = self._clock()
        if self.until_ms is not None and issued_at > self.until_ms:
            return None
        token = encode_token(self.session_id, issued_at)
        image = await asyncio.to_thread(self._render, token)
        self._sequence += 1
        issued = IssuedToken(
            session_id=self.session_id,
            token=token,
            issued_at_ms=issued_at,
            image_data_url=image,
            rotation_ms=self.rotation_ms,
            sequence=self._sequence,
        )
        self.current = issued
        await self._on_token(issued)
        return issued

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        period = self.rotation_ms / 1000.0
        next_tick = loop.time()
        while True:
            if await self.tick() is None:
                logger.info("Token rotation for session %s reached end of window", self.session_id)
                return
            next_tick += period
            delay = next_tick - loop.time()
            if delay < 0:
                # rendering overran the period; realign instead of bursting
                next_tick = loop.time()
                delay = 0
            await asyncio.sleep(delay)

    def start(self) -> None:
        if self.running:
            return
        logger.debug("Starting token rotation for session %s every %sms", self.session_id, self.rotation_ms)
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Token rotation for session %s failed", self.session_id)
        logger.debug("Stopped token rotation for session %s", self.session_id)

    @property
    def task(self) -> asyncio.Task | None:
        """The rotation loop; done once the session window has ended."""
        return self._task

    async def __aenter__(self) -> "TokenIssuer":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
