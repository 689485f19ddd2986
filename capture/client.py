import logging
from dataclasses import dataclass
from typing import Sequence

import httpx

from backend.config import CAPTURE_API_URL
from backend.services.errors import (
    AlreadyCheckedIn,
    CheckInError,
    RecordingFailed,
    error_from_detail,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckInReceipt:
    session_id: str | None
    session_title: str | None
    checked_in_at: str | None
    message: str


class CheckInClient:
    """Submits scanned tokens to the attendance API on behalf of one student."""

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = CAPTURE_API_URL,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self._client = client

    async def _post(self, client: httpx.AsyncClient, body: dict) -> httpx.Response:
        return await client.post(
            f"{self.base_url}/attendance/check-in",
            json=body,
            headers={"Authorization": f"Bearer {self.access_token}"},
            timeout=self.timeout,
        )

    async def check_in(self, tokens: Sequence[str], snapshot: str | None = None) -> CheckInReceipt:
        """Returns a receipt, or raises the CheckInError the API answered with."""
        body = {"tokens": list(tokens), "snapshot": snapshot}
        try:
            if self._client is not None:
                response = await self._post(self._client, body)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, body)
        except httpx.HTTPError as e:
            logger.warning("Check-in request failed: %s", e)
            raise RecordingFailed("Could not reach the attendance service. Please try again.") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code in (200, 201) and isinstance(data, dict):
            if data.get("status") == "already_checked_in":
                raise AlreadyCheckedIn(data.get("message"), checked_in_at=data.get("checked_in_at"))
            if data.get("status") == "recorded":
                return CheckInReceipt(
                    session_id=data.get("session_id"),
                    session_title=data.get("session_title"),
                    checked_in_at=data.get("checked_in_at"),
                    message=data.get("message") or "Attendance recorded successfully!",
                )

        detail = data.get("detail") if isinstance(data, dict) else None
        if isinstance(detail, dict) and detail.get("code"):
            raise error_from_detail(detail)
        if response.status_code in (401, 403):
            raise CheckInError(str(detail or "Not signed in as a student."))
        logger.error("Unexpected check-in response %s: %s", response.status_code, response.text[:500])
        raise RecordingFailed()
