"""
Exponential-backoff retry for idempotent async operations.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from ..domain.exceptions import TransientStorageError


logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff schedule: attempt ``n`` (1-based) waits ``base_delay * factor ** (n - 1)``
    seconds before attempt ``n + 1``. Only ``retry_on`` exceptions are retried.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    retry_on: Tuple[Type[BaseException], ...] = (TransientStorageError,)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.factor < 1:
            raise ValueError("base_delay must be >= 0 and factor >= 1")

    def delay_after(self, attempt: int) -> float:
        return self.base_delay * self.factor ** (attempt - 1)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Sleep = asyncio.sleep,
    description: str = "operation",
) -> T:
    """
    Run ``operation`` until it succeeds or the policy gives up.

    Exceptions outside ``policy.retry_on`` propagate immediately. After the
    last attempt the final retryable exception propagates unchanged.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except policy.retry_on as exc:
            if attempt >= policy.max_attempts:
                logger.warning("%s failed after %d attempts: %s", description, attempt, exc)
                raise
            delay = policy.delay_after(attempt)
            logger.warning(
                "%s attempt %d/%d failed (%s), retrying in %.1fs",
                description, attempt, policy.max_attempts, exc, delay,
            )
            await sleep(delay)
            attempt += 1


def retrying(policy: RetryPolicy, sleep: Sleep = asyncio.sleep):
    """Decorator form of ``call_with_retry`` for async functions."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await call_with_retry(
                lambda: func(*args, **kwargs),
                policy,
                sleep=sleep,
                description=func.__qualname__,
            )

        return wrapper

    return decorator
