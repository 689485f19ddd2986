import pytest

from backend.services.errors import (
    Expired,
    InvalidTokenSet,
    MalformedToken,
    NonAdvancing,
    SessionMismatch,
    Stale,
)
from backend.services.validation import validate_sequence, validate_single, validate_tokens

NOW_MS = 1_760_000_010_000


def _seq(session_id, *offsets):
    return [f"{session_id}:{NOW_MS - o}" for o in offsets]


def test_single_token_within_freshness():
    assert validate_single(f"s1:{NOW_MS - 9_000}", NOW_MS) == "s1"
    assert validate_single(f"s1:{NOW_MS - 10_000}", NOW_MS) == "s1"


def test_single_token_expired():
    with pytest.raises(Expired) as err:
        validate_single(f"s1:{NOW_MS - 10_001}", NOW_MS)
    assert err.value.context["age_ms"] == 10_001
    assert err.value.http_status == 410


def test_single_token_malformed():
    with pytest.raises(MalformedToken):
        validate_single("https://example.com", NOW_MS)


def test_sequence_of_live_tokens():
    assert validate_sequence(_seq("s1", 4_000, 2_000, 0), NOW_MS) == "s1"


def test_sequence_wrong_length():
    with pytest.raises(InvalidTokenSet):
        validate_sequence(_seq("s1", 2_000, 0), NOW_MS)


def test_sequence_with_unparsable_member():
    with pytest.raises(InvalidTokenSet):
        validate_sequence([f"s1:{NOW_MS - 4000}", "garbage", f"s1:{NOW_MS}"], NOW_MS)


def test_sequence_mixing_sessions():
    tokens = _seq("s1", 4_000, 2_000) + _seq("s2", 0)
    with pytest.raises(SessionMismatch):
        validate_sequence(tokens, NOW_MS)


def test_sequence_spread_too_wide():
    with pytest.raises(Stale) as err:
        validate_sequence(_seq("s1", 10_001, 2_000, 0), NOW_MS)
    assert err.value.context == {"spread_ms": 10_001}


def test_sequence_spread_at_window_edge():
    assert validate_sequence(_seq("s1", 10_000, 5_000, 0), NOW_MS) == "s1"


def test_identical_tokens_are_rejected():
    frozen = _seq("s1", 500, 500, 500)
    with pytest.raises(NonAdvancing) as err:
        validate_sequence(frozen, NOW_MS)
    # still a stale-family error on the wire
    assert isinstance(err.value, Stale)
    assert err.value.code == "non_advancing"


def test_out_of_order_tokens_are_rejected():
    with pytest.raises(NonAdvancing):
        validate_sequence(_seq("s1", 0, 2_000, 4_000), NOW_MS)


def test_newest_token_must_still_be_fresh():
    with pytest.raises(Stale) as err:
        validate_sequence(_seq("s1", 15_000, 13_000, 11_000), NOW_MS)
    assert err.value.context == {"age_ms": 11_000}


def test_sequence_respects_custom_settings():
    tokens = _seq("s1", 400, 200, 0)
    assert validate_sequence(tokens, NOW_MS, min_step_ms=100) == "s1"
    with pytest.raises(NonAdvancing):
        validate_sequence(tokens, NOW_MS, min_step_ms=1_000)


def test_validate_tokens_dispatch():
    assert validate_tokens([f"s1:{NOW_MS}"], NOW_MS) == "s1"
    assert validate_tokens(_seq("s1", 4_000, 2_000, 0), NOW_MS) == "s1"
    with pytest.raises(InvalidTokenSet):
        validate_tokens([], NOW_MS)
