"""Tenacity retry wrapper driven by RetryConfig."""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig

T = TypeVar("T")


def _wait(config: RetryConfig):
    return wait_exponential(
        multiplier=config.multiplier,
        min=config.initial_wait_seconds,
        max=config.max_wait_seconds,
    )


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    Usage::

        @with_retry(config.retry)
        async def publish(request: ExtractionRequest) -> None: ...
    """
    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=_wait(config),
        retry=retry_if_exception_type(retryable_exceptions),
        reraise=True,
    )


def retrying(
    config: RetryConfig,
    *,
    max_attempts: int,
    retryable_exceptions: tuple[type[BaseException], ...],
) -> AsyncRetrying:
    """Return an ``AsyncRetrying`` iterator with an explicit attempt budget.

    Used where the budget is not the configured maximum, e.g. an execution
    resumed after a crash that already spent some of its attempts.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=_wait(config),
        retry=retry_if_exception_type(retryable_exceptions),
        reraise=True,
    )
