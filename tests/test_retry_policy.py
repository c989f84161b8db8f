from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from file_insight.queue.retry import RetryDecision, RetryPolicy

pytestmark = [
    allure.epic("Analysis Queue"),
    allure.feature("Retry & Backoff"),
]


def test_default_backoff_doubles_from_two_seconds() -> None:
    policy = RetryPolicy()

    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [2.0, 4.0, 8.0]


def test_backoff_is_capped_at_max_delay() -> None:
    policy = RetryPolicy(base_delay_seconds=2.0, max_delay_seconds=5.0)

    assert policy.delay_for(2) == 4.0
    assert policy.delay_for(3) == 5.0
    assert policy.delay_for(40) == 5.0


def test_decide_retries_until_attempts_are_exhausted() -> None:
    policy = RetryPolicy(max_attempts=3)

    assert policy.decide(attempts=1) == RetryDecision(retry=True, delay_seconds=2.0)
    assert policy.decide(attempts=2) == RetryDecision(retry=True, delay_seconds=4.0)
    assert policy.decide(attempts=3).retry is False
    assert policy.decide(attempts=1, max_attempts=1).retry is False


def test_eligible_at_adds_delay_to_reference_time() -> None:
    now = datetime(2026, 1, 1, tzinfo=UTC)

    assert RetryDecision(retry=True, delay_seconds=8.0).eligible_at(now) == now + timedelta(
        seconds=8,
    )


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"base_delay_seconds": -1.0}, "base_delay_seconds"),
        ({"base_delay_seconds": 10.0, "max_delay_seconds": 5.0}, "max_delay_seconds"),
        ({"max_attempts": 0}, "max_attempts"),
    ],
)
def test_policy_rejects_invalid_configuration(kwargs: dict[str, float], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        RetryPolicy(**kwargs)


def test_delay_for_rejects_attempt_zero() -> None:
    with pytest.raises(ValueError, match="attempt must be >= 1"):
        RetryPolicy().delay_for(0)
