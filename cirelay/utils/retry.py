"""Explicit retry/backoff wrapper for outbound calls.

Every outbound call site chooses its own :class:`RetryPolicy` and wraps the
call with :func:`call_with_retry` (or the :func:`retrying` decorator), so the
retry behaviour of each request is visible where the request is made.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from cirelay.config import HttpRetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

Backoff = Callable[[int], float]


def exponential_backoff(base: float = 1.0) -> Backoff:
    """Return a backoff giving ``base * 2**(attempt-1)``: 1s, 2s, 4s for base 1."""

    def _delay(attempt: int) -> float:
        return base * (2 ** max(attempt - 1, 0))

    return _delay


def reconnect_delay(base: float, attempt: int) -> float:
    """Linear reconnect delay used by the event consumer."""
    return base * attempt


def is_retryable_http_error(exc: BaseException) -> bool:
    """Network errors, 5xx and 429 responses are worth retrying."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code >= 500 or code == 429
    return False


def is_connect_error(exc: BaseException) -> bool:
    """The request never reached the server, so it is safe to resend."""
    return isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff: Backoff = field(default_factory=exponential_backoff)
    retry_on: Callable[[BaseException], bool] = is_retryable_http_error

    @classmethod
    def from_config(cls, config: HttpRetryConfig) -> RetryPolicy:
        return cls(max_attempts=config.max_attempts, backoff=exponential_backoff(config.base_delay))

    @classmethod
    def none(cls) -> RetryPolicy:
        return cls(max_attempts=1)

    def with_retry_on(self, predicate: Callable[[BaseException], bool]) -> RetryPolicy:
        return RetryPolicy(self.max_attempts, self.backoff, predicate)


async def call_with_retry(
    policy: RetryPolicy,
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    description: str = "",
    **kwargs: Any,
) -> T:
    """Await ``fn(*args, **kwargs)`` under *policy*; the last error is re-raised."""
    label = description or getattr(fn, "__qualname__", repr(fn))

    def _wait(state: RetryCallState) -> float:
        return policy.backoff(state.attempt_number)

    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "Retrying %s (attempt %d/%d) - Error: %s",
            label,
            state.attempt_number,
            policy.max_attempts,
            _describe(exc),
        )

    retryer = AsyncRetrying(
        stop=stop_after_attempt(max(policy.max_attempts, 1)),
        wait=_wait,
        retry=retry_if_exception(policy.retry_on),
        before_sleep=_before_sleep,
        reraise=True,
    )
    async for attempt in retryer:
        with attempt:
            return await fn(*args, **kwargs)
    raise AssertionError("unreachable")  # pragma: no cover


def retrying(policy: RetryPolicy, description: str = ""):
    """Decorator form of :func:`call_with_retry`."""

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await call_with_retry(
                policy, fn, *args, description=description or fn.__qualname__, **kwargs
            )

        return wrapper

    return decorator


def _describe(exc: BaseException | None) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return f"{exc.response.status_code} {exc.response.reason_phrase}"
    return str(exc) if exc is not None else ""
