from __future__ import annotations

import allure
import pytest

from taskplan.engine.backoff import RetryPolicy, backoff

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Retry & Recovery"),
]


def test_backoff_grows_exponentially() -> None:
    assert [backoff(attempt, 1.5, 2.0) for attempt in (1, 2, 3, 4)] == [1.5, 3.0, 6.0, 12.0]


def test_backoff_rejects_zero_attempt() -> None:
    with pytest.raises(ValueError, match="attempt must be >= 1"):
        backoff(0, 1.0, 2.0)


def test_policy_caps_delay() -> None:
    policy = RetryPolicy(base_seconds=1.0, multiplier=10.0, max_seconds=30.0)
    assert policy.delay_for(1) == 1.0
    assert policy.delay_for(2) == 10.0
    assert policy.delay_for(3) == 30.0


def test_strategy_parameters_override_policy() -> None:
    policy = RetryPolicy()
    assert policy.delay_for(2, {"base_seconds": 0.5, "multiplier": 3}) == 1.5


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"base_seconds": 0}, "base_seconds"),
        ({"multiplier": 0.5}, "multiplier"),
        ({"base_seconds": 5, "max_seconds": 1}, "max_seconds"),
    ],
)
def test_policy_validates_settings(kwargs: dict[str, float], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        RetryPolicy(**kwargs)


@pytest.mark.parametrize(
    "overrides",
    [
        {"base_seconds": 0},
        {"base_seconds": -2.5},
        {"base_seconds": "soon"},
        {"base_seconds": float("nan")},
        {"multiplier": 0.5},
        {"multiplier": None},
    ],
)
def test_invalid_strategy_overrides_fall_back_to_policy(overrides: dict[str, object]) -> None:
    policy = RetryPolicy(base_seconds=1.0, multiplier=2.0)

    delays = [policy.delay_for(attempt, overrides) for attempt in (1, 2, 3)]

    assert delays == [1.0, 2.0, 4.0]
    assert all(delay > 0 for delay in delays)
