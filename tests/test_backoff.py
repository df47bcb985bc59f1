import asyncio

import pytest
from aiohttp import ClientConnectionError

import utils
from errors import FeedParseError, FeedStatusError
from utils import BackoffPolicy, is_transient_error, normalize_feed_name, stringify_param


def test_default_schedule_matches_configured_growth():
    policy = BackoffPolicy(max_retries=3, factor=1.5, min_delay=2.0, max_delay=5.0)

    assert policy.delays() == [2.0, 3.0, 4.5]


def test_schedule_is_non_decreasing_and_capped():
    policy = BackoffPolicy(max_retries=6, factor=2, min_delay=1, max_delay=5)
    delays = policy.delays()

    assert delays == [1, 2, 4, 5, 5, 5]
    assert all(a <= b for a, b in zip(delays, delays[1:]))
    assert max(delays) == 5


def test_delay_for_attempt_is_one_based_and_clamped():
    policy = BackoffPolicy(max_retries=3, factor=1.5, min_delay=2.0, max_delay=5.0)

    assert policy.delay_for_attempt(1) == 2.0
    assert policy.delay_for_attempt(3) == 4.5
    assert policy.delay_for_attempt(7) == 4.5


def test_should_retry_until_last_attempt():
    policy = BackoffPolicy(max_retries=3)
    error = ClientConnectionError("reset")

    assert policy.should_retry(1, error)
    assert policy.should_retry(2, error)
    assert not policy.should_retry(3, error)


def test_should_not_retry_non_transient_errors():
    policy = BackoffPolicy(max_retries=3)

    assert not policy.should_retry(1, ValueError("bug"))
    assert not policy.should_retry(1, FeedParseError("categories", "bad"))


@pytest.mark.parametrize(
    "error, expected",
    [
        (ClientConnectionError("refused"), True),
        (asyncio.TimeoutError(), True),
        (FeedStatusError("channels", 503), True),
        (FeedStatusError("channels", 404), True),
        (ValueError("x"), False),
        (KeyError("x"), False),
    ],
)
def test_transient_error_classification(error, expected):
    assert is_transient_error(error) is expected


def test_rejects_zero_retries():
    with pytest.raises(ValueError):
        BackoffPolicy(max_retries=0)


@pytest.mark.asyncio
async def test_sleep_for_attempt_uses_schedule(monkeypatch):
    slept = []

    async def fake_sleep(delay):
        slept.append(delay)

    monkeypatch.setattr(utils, "sleep", fake_sleep)
    policy = BackoffPolicy(max_retries=3, factor=1.5, min_delay=2.0, max_delay=5.0)

    await policy.sleep_for_attempt(1)
    await policy.sleep_for_attempt(2)

    assert slept == [2.0, 3.0]


def test_normalize_feed_name():
    assert normalize_feed_name(" /categories//c1/highlights/ ") == "categories/c1/highlights"
    with pytest.raises(ValueError):
        normalize_feed_name("//")


def test_stringify_param_lowercases_booleans():
    assert stringify_param(True) == "true"
    assert stringify_param(False) == "false"
    assert stringify_param(3) == "3"
