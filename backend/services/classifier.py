import logging
from dataclasses import dataclass
from typing import Literal, Protocol

import httpx

from backend.config import (
    CLASSIFIER_API_KEY,
    CLASSIFIER_MODEL,
    CLASSIFIER_TIMEOUT_SECONDS,
    CLASSIFIER_URL,
)
from backend.services.errors import ClassifierUnavailable

logger = logging.getLogger(__name__)

Verdict = Literal["physical", "screenshot"]

SYSTEM_PROMPT = (
    "You are an expert at detecting whether a QR code in an image is being displayed on a "
    "physical screen/paper or if it's a screenshot/photo being held up to the camera. Analyze "
    "the image for: 1) Screen glare, reflections, and viewing angles that indicate a real "
    "physical display 2) Depth and perspective cues 3) Lighting variations across the surface "
    "4) Moire patterns that appear when photographing screens 5) Edge characteristics that "
    "differentiate physical displays from printed screenshots. Respond ONLY with 'PHYSICAL' if "
    "it appears to be scanned from a real screen/paper, or 'SCREENSHOT' if it appears to be a "
    "photo/screenshot of a QR code."
)
USER_PROMPT = (
    "Analyze this QR code image and determine if it's being scanned from a physical "
    "display/paper or if it's a screenshot/photo. Respond with only 'PHYSICAL' or 'SCREENSHOT'."
)


@dataclass(frozen=True)
class LivenessVerdict:
    verdict: Verdict
    confidence: str

    @property
    def is_physical(self) -> bool:
        return self.verdict == "physical"


class LivenessClassifier(Protocol):
    async def classify(self, image_data_url: str) -> LivenessVerdict:
        """Raise ClassifierUnavailable when the check itself could not run."""
        ...


def _verdict_from_answer(answer: str) -> LivenessVerdict:
    normalized = answer.strip().strip(".'\"").upper()
    if normalized == "PHYSICAL":
        return LivenessVerdict("physical", "high")
    if normalized == "SCREENSHOT":
        return LivenessVerdict("screenshot", "high")
    # Anything else is treated as a rejection, but flagged as uncertain.
    return LivenessVerdict("screenshot", "low")


class HttpLivenessClassifier:
    """Asks a chat-completion endpoint whether a frame shows a live display."""

    def __init__(
        self,
        *,
        url: str = CLASSIFIER_URL,
        model: str = CLASSIFIER_MODEL,
        api_key: str = CLASSIFIER_API_KEY,
        timeout: float = CLASSIFIER_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    def _request_body(self, image_data_url: str) -> dict:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": USER_PROMPT},
                        {"type": "image_url", "image_url": {"url": image_data_url}},
                    ],
                },
            ],
        }

    async def _post(self, client: httpx.AsyncClient, image_data_url: str) -> httpx.Response:
        return await client.post(
            self.url,
            json=self._request_body(image_data_url),
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
        )

    async def classify(self, image_data_url: str) -> LivenessVerdict:
        if not self.api_key:
            raise ClassifierUnavailable("Screenshot check is not configured.", reason="not_configured")

        try:
            if self._client is not None:
                response = await self._post(self._client, image_data_url)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, image_data_url)
        except httpx.HTTPError as e:
            logger.warning("Liveness classifier unreachable: %s", e)
            raise ClassifierUnavailable(reason="network") from e

        if response.status_code == 429:
            raise ClassifierUnavailable(
                "Rate limit exceeded. Please try again later.",
                reason="rate_limited",
            )
        if response.status_code == 402:
            raise ClassifierUnavailable(
                "Screenshot check quota exhausted. Please contact the administrator.",
                reason="quota_exceeded",
            )
        if response.is_error:
            logger.error("Liveness classifier error %s: %s", response.status_code, response.text[:500])
            raise ClassifierUnavailable(reason="upstream_error", status=response.status_code)

        try:
            answer = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error("Liveness classifier returned an unreadable body: %s", response.text[:500])
            raise ClassifierUnavailable(reason="upstream_error") from e
        if not isinstance(answer, str):
            raise ClassifierUnavailable(reason="upstream_error")

        verdict = _verdict_from_answer(answer)
        logger.info("Liveness classifier result: %s (%s)", verdict.verdict, verdict.confidence)
        return verdict
