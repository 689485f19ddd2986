from typing import Sequence

from backend.config import (
    SEQUENCE_LENGTH,
    SEQUENCE_MIN_STEP_MS,
    SEQUENCE_WINDOW_MS,
    TOKEN_FRESHNESS_MS,
)
from backend.services.errors import (
    Expired,
    InvalidTokenSet,
    MalformedToken,
    NonAdvancing,
    SessionMismatch,
    Stale,
)
from backend.services.tokens import parse_token


def validate_single(
    payload: str,
    now_ms: int,
    *,
    freshness_ms: int = TOKEN_FRESHNESS_MS,
) -> str:
    """Check one scanned token and return the session id it was issued for."""
    parsed = parse_token(payload)
    if parsed is None:
        raise MalformedToken(payload=payload)

    session_id, issued_at = parsed
    age = now_ms - issued_at
    if age > freshness_ms:
        raise Expired(age_ms=age)
    return session_id


def validate_sequence(
    payloads: Sequence[str],
    now_ms: int,
    *,
    length: int = SEQUENCE_LENGTH,
    window_ms: int = SEQUENCE_WINDOW_MS,
    min_step_ms: int = SEQUENCE_MIN_STEP_MS,
    freshness_ms: int = TOKEN_FRESHNESS_MS,
) -> str:
    """
    Check consecutively captured tokens (oldest first) from one scan.

    A live display rotates its token every couple of seconds, so the captures
    must name one session, span no more than ``window_ms`` and strictly
    advance by at least ``min_step_ms`` each. A frozen image yields the same
    token over and over and fails the advance rule. The newest capture must
    also still be fresh at ``now_ms``.
    """
    if len(payloads) != length:
        raise InvalidTokenSet(f"Expected {length} QR codes, got {len(payloads)}.")

    parsed = [parse_token(p) for p in payloads]
    if any(p is None for p in parsed):
        raise InvalidTokenSet()

    session_ids = {session_id for session_id, _ in parsed}
    if len(session_ids) != 1:
        raise SessionMismatch()

    timestamps = [ts for _, ts in parsed]
    spread = max(timestamps) - min(timestamps)
    if spread > window_ms:
        raise Stale(spread_ms=spread)

    for earlier, later in zip(timestamps, timestamps[1:]):
        if later - earlier < min_step_ms:
            raise NonAdvancing()

    age = now_ms - timestamps[-1]
    if age > freshness_ms:
        raise Stale(age_ms=age)

    return parsed[0][0]


def validate_tokens(payloads: Sequence[str], now_ms: int) -> str:
    """Single-token path for one payload, sequence path otherwise."""
    if len(payloads) == 1:
        return validate_single(payloads[0], now_ms)
    return validate_sequence(payloads, now_ms)
