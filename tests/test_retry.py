"""Retry policy and retry decision tests."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from castor.errors import (
    ConfigurationError,
    ProtocolError,
    RateLimitError,
    TransportError,
    UpstreamError,
)
from castor.retry import RetryPolicy, _compute_backoff_delay, retry_async, should_retry_turn
from tests.conftest import make_provider

pytestmark = pytest.mark.unit


@pytest.fixture
def sleeps(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    recorded: list[float] = []

    async def fake_sleep(delay: float) -> None:
        recorded.append(delay)

    monkeypatch.setattr("castor.retry.asyncio.sleep", fake_sleep)
    return recorded


# =============================================================================
# Policy
# =============================================================================


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0},
        {"initial_delay_s": -1},
        {"backoff_multiplier": 0},
        {"max_delay_s": -0.1},
        {"max_elapsed_s": -1},
    ],
)
def test_policy_rejects_invalid_values(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


def test_policy_from_provider_uses_request_retries() -> None:
    provider = make_provider("chat", request_max_retries=3)
    policy = RetryPolicy.from_provider(provider, jitter=False)
    assert policy.max_attempts == 4
    assert policy.jitter is False


def test_backoff_is_exponential_and_capped_without_jitter() -> None:
    policy = RetryPolicy(initial_delay_s=1.0, backoff_multiplier=2.0, max_delay_s=5.0, jitter=False)
    delays = [_compute_backoff_delay(policy, retry_index=i) for i in range(1, 5)]
    assert delays == [1.0, 2.0, 4.0, 5.0]


def test_full_jitter_stays_within_base() -> None:
    policy = RetryPolicy(initial_delay_s=1.0, jitter=True)
    for _ in range(50):
        assert 0.0 <= _compute_backoff_delay(policy, retry_index=1) <= 1.0


# =============================================================================
# Decisions
# =============================================================================


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (RateLimitError("slow", retryable=True, status_code=429), True),
        (UpstreamError("bad", retryable=False, status_code=400), False),
        (UpstreamError("flaky", status_code=503), True),
        (UpstreamError("odd", status_code=418), False),
        (UpstreamError("unimplemented", status_code=501), True),
        (TransportError("reset", retryable=True), True),
        (TransportError("tls", retryable=False), False),
        (ProtocolError("bad frame"), False),
        (ConfigurationError("no key"), False),
        (httpx.ConnectTimeout("slow connect"), True),
        (ValueError("nope"), False),
        (asyncio.CancelledError(), False),
    ],
)
def test_should_retry_turn(exc: BaseException, expected: bool) -> None:
    assert should_retry_turn(exc) is expected


def test_should_retry_follows_exception_chain() -> None:
    try:
        try:
            raise httpx.ReadError("reset")
        except httpx.ReadError as inner:
            raise RuntimeError("wrapped") from inner
    except RuntimeError as outer:
        assert should_retry_turn(outer) is True


# =============================================================================
# retry_async
# =============================================================================


@pytest.mark.asyncio
async def test_retry_async_retries_until_success(sleeps: list[float]) -> None:
    calls = 0

    async def factory() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise UpstreamError("overloaded", status_code=503)
        return "ok"

    policy = RetryPolicy(max_attempts=3, initial_delay_s=0.1, jitter=False)
    assert await retry_async(factory, policy=policy) == "ok"
    assert calls == 3
    assert sleeps == [0.1, 0.2]


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_permanent_errors(sleeps: list[float]) -> None:
    calls = 0

    async def factory() -> str:
        nonlocal calls
        calls += 1
        raise UpstreamError("bad request", retryable=False, status_code=400)

    with pytest.raises(UpstreamError):
        await retry_async(factory, policy=RetryPolicy(max_attempts=5))
    assert calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_retry_async_raises_last_error_when_exhausted(sleeps: list[float]) -> None:
    async def factory() -> str:
        raise TransportError("reset")

    with pytest.raises(TransportError):
        await retry_async(factory, policy=RetryPolicy(max_attempts=2, jitter=False))
    assert len(sleeps) == 1


@pytest.mark.asyncio
async def test_retry_after_raises_delay_but_respects_max_elapsed(sleeps: list[float]) -> None:
    attempts = 0

    async def factory() -> str:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise RateLimitError("slow", retryable=True, status_code=429, retry_after_s=60.0)
        return "ok"

    policy = RetryPolicy(max_attempts=2, initial_delay_s=0.1, jitter=False, max_elapsed_s=3.0)
    assert await retry_async(factory, policy=policy) == "ok"
    assert len(sleeps) == 1
    assert 0 < sleeps[0] <= 3.0


@pytest.mark.asyncio
async def test_retry_async_custom_predicate(sleeps: list[float]) -> None:
    calls = 0

    async def factory() -> str:
        nonlocal calls
        calls += 1
        raise ProtocolError("bad frame")

    with pytest.raises(ProtocolError):
        await retry_async(
            factory,
            policy=RetryPolicy(max_attempts=3, jitter=False),
            should_retry=lambda exc: isinstance(exc, ProtocolError),
        )
    assert calls == 3
