from datetime import UTC, datetime, timedelta

import pytest

from app.application.services import retry_policy


@pytest.mark.parametrize(
    ("retry_count", "expected_delay"),
    [(0, 5), (1, 10), (2, 20), (3, 40), (6, 320)],
)
def test_delay_doubles_from_five_minutes(retry_count: int, expected_delay: int):
    decision = retry_policy.decide(retry_count, 10)
    assert decision.retry is True
    assert decision.delay_minutes == expected_delay


def test_retry_stops_when_retry_count_reaches_max():
    assert retry_policy.decide(2, 3).retry is True
    assert retry_policy.decide(3, 3).retry is False
    assert retry_policy.decide(4, 3).retry is False


def test_zero_max_retries_never_retries():
    assert retry_policy.decide(0, 0).retry is False


def test_next_retry_at_offsets_now_only_when_retrying():
    now = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
    assert retry_policy.decide(1, 3).next_retry_at(now) == now + timedelta(minutes=10)
    assert retry_policy.decide(3, 3).next_retry_at(now) is None


def test_custom_base_delay():
    assert retry_policy.decide(2, 5, base_delay_minutes=1).delay_minutes == 4


def test_negative_retry_count_is_rejected():
    with pytest.raises(ValueError):
        retry_policy.decide(-1, 3)
