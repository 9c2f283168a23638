"""Bounded async retry for opening a turn.

The dispatcher never retries on its own. Orchestrators that want retries wrap
``Dispatcher.stream`` with :func:`retry_async` and decide per error with
:func:`should_retry_turn`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import random
import time
from typing import TYPE_CHECKING, TypeVar

import httpx

from castor.errors import TransportError, UpstreamError, _walk_exception_chain
from castor.providers._errors import is_retryable_status

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from castor.providers.base import ProviderConfig

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy with exponential backoff and optional jitter."""

    max_attempts: int = 2
    initial_delay_s: float = 0.5
    backoff_multiplier: float = 2.0
    max_delay_s: float = 5.0
    jitter: bool = True  # full jitter
    max_elapsed_s: float | None = 15.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("RetryPolicy.max_attempts must be >= 1")
        if self.initial_delay_s < 0:
            raise ValueError("RetryPolicy.initial_delay_s must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ValueError("RetryPolicy.backoff_multiplier must be > 0")
        if self.max_delay_s < 0:
            raise ValueError("RetryPolicy.max_delay_s must be >= 0")
        if self.max_elapsed_s is not None and self.max_elapsed_s < 0:
            raise ValueError("RetryPolicy.max_elapsed_s must be >= 0 or None")

    @classmethod
    def from_provider(
        cls, provider: ProviderConfig, **overrides: float | bool | None
    ) -> RetryPolicy:
        """Policy allowing the provider's ``request_max_retries`` retries."""
        attempts = provider.request_max_retries + 1
        return cls(max_attempts=attempts, **overrides)  # type: ignore[arg-type]


def _retry_after_from_error(exc: BaseException) -> float | None:
    if isinstance(exc, UpstreamError):
        v = exc.retry_after_s
        if isinstance(v, (int, float)) and v >= 0:
            return float(v)
    return None


def _is_transient_network_error(exc: BaseException) -> bool:
    for e in _walk_exception_chain(exc):
        if isinstance(e, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
            return True
        if isinstance(e, httpx.TransportError):
            return True
    return False


def should_retry_turn(exc: BaseException) -> bool:
    """Return True when opening a turn failed with a retryable error.

    Contract:
    - Cancellation is never retried.
    - UpstreamError is retried when the provider marked it retryable or its
      status is in the retryable set.
    - TransportError follows its own ``retryable`` flag.
    - Configuration, protocol and size errors are never retried.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False

    if isinstance(exc, UpstreamError):
        if exc.retryable is not None:
            return exc.retryable
        return isinstance(exc.status_code, int) and is_retryable_status(exc.status_code)

    if isinstance(exc, TransportError):
        return exc.retryable

    return _is_transient_network_error(exc)


def _compute_backoff_delay(policy: RetryPolicy, *, retry_index: int) -> float:
    # retry_index starts at 1 for the first retry sleep.
    base = policy.initial_delay_s * (policy.backoff_multiplier ** max(0, retry_index - 1))
    base = min(policy.max_delay_s, base)
    if base <= 0:
        return 0.0
    if not policy.jitter:
        return base
    return random.random() * base  # noqa: S311


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = should_retry_turn,
) -> T:
    """Run an async factory with bounded retries.

    ``Retry-After`` hints raise the backoff delay but never past
    ``max_elapsed_s``.
    """
    start = time.monotonic()
    last_exc: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await factory()
        except Exception as exc:
            last_exc = exc
            if not should_retry(exc) or attempt >= policy.max_attempts:
                raise

            retry_after = _retry_after_from_error(exc)
            delay = _compute_backoff_delay(policy, retry_index=attempt)
            if retry_after is not None:
                delay = max(delay, retry_after)

            if policy.max_elapsed_s is not None:
                remaining = policy.max_elapsed_s - (time.monotonic() - start)
                if remaining <= 0:
                    raise
                delay = min(delay, remaining)

            if delay > 0:
                await asyncio.sleep(delay)

    if last_exc is None:  # pragma: no cover
        raise RuntimeError("retry_async exhausted without an exception")
    raise last_exc
