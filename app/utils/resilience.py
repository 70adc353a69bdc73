"""Timeout and retry policies applied around every external call."""

from __future__ import annotations

import asyncio
import functools
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
import openai

from app.config.logger import app_logger
from app.utils.errors import ProviderTimeoutError, TransientProviderError

T = TypeVar("T")

TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}


@dataclass(frozen=True)
class RetryPolicy:
    timeout_seconds: float
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_jitter_seconds: float = 0.5
    max_delay_seconds: float = 30.0

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = self.base_delay_seconds * (2 ** (attempt - 1))
        return min(delay, self.max_delay_seconds) + random.uniform(0, self.max_jitter_seconds)


def is_transient(exc: BaseException) -> bool:
    """True for rate limits and transient network failures only."""
    if isinstance(exc, TransientProviderError):
        return True
    if isinstance(exc, (openai.RateLimitError, openai.APIConnectionError)) and not isinstance(
        exc, openai.APITimeoutError
    ):
        return True
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code in TRANSIENT_STATUS_CODES
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in TRANSIENT_STATUS_CODES
    if isinstance(exc, (httpx.ConnectError, httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)):
        return True
    if isinstance(exc, (ConnectionResetError, ConnectionAbortedError)):
        return True
    return False


async def with_timeout(call: Callable[[], Awaitable[T]], seconds: float, label: str) -> T:
    """Run ``call`` and fail with ProviderTimeoutError after ``seconds``."""
    try:
        return await asyncio.wait_for(call(), timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise ProviderTimeoutError(
            f"{label} timed out after {seconds:g}s",
        ) from exc


async def with_retry(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label: str,
    should_retry: Callable[[BaseException], bool] = is_transient,
) -> T:
    """Retry ``call`` on transient failures with exponential backoff plus jitter."""
    attempt = 1
    while True:
        try:
            return await call()
        except Exception as exc:
            if attempt >= policy.max_attempts or not should_retry(exc):
                raise
            delay = policy.backoff(attempt)
            app_logger.warning(
                f"{label} failed with {type(exc).__name__} (attempt {attempt}/{policy.max_attempts}), "
                f"retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
            attempt += 1


async def call_with_policy(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label: str,
) -> T:
    """Each attempt gets its own timeout; only transient failures are retried."""
    return await with_retry(
        lambda: with_timeout(call, policy.timeout_seconds, label),
        policy,
        label,
    )


def resilient(policy_attr: str, label: Optional[str] = None):
    """Decorate an async method so it runs under ``getattr(self, policy_attr)``.

    The policy lives on the instance so each collaborator can be constructed
    with its own budget.
    """

    def decorator(func):
        name = label or func.__qualname__

        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            policy: RetryPolicy = getattr(self, policy_attr)
            return await call_with_policy(lambda: func(self, *args, **kwargs), policy, name)

        return wrapper

    return decorator
