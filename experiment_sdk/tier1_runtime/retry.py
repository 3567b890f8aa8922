"""
experiment_sdk.tier1_runtime.retry
───────────────────────────────────
Retry/backoff with jitter for collaborator calls. The engine core never
retries; only the store adapters (the collaborator boundary) apply this.
Backed by Tenacity.

Usage:
    @retry_policy(max_attempts=3, on=[OperationalError])
    async def _fetch(...):
        ...
"""
from __future__ import annotations

import functools
from collections.abc import Callable
from typing import Any, Type

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from experiment_sdk.tier0_core.errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
)

# Caller mistakes are never retried
_NON_RETRYABLE: tuple[type[BaseException], ...] = (
    ValidationError,
    ConflictError,
    NotFoundError,
)


def _is_retryable(exc: BaseException) -> bool:
    return not isinstance(exc, _NON_RETRYABLE)


def retry_policy(
    max_attempts: int = 3,
    min_wait: float = 0.05,
    max_wait: float = 2.0,
    jitter: float = 0.1,
    on: list[Type[Exception]] | None = None,
) -> Callable:
    """
    Decorator applying exponential backoff with jitter to a coroutine.

    Args:
        max_attempts: Total number of attempts (including first).
        min_wait:     Minimum wait seconds between retries.
        max_wait:     Maximum wait seconds between retries.
        jitter:       Maximum random seconds added to each wait.
        on:           Exception types to retry. If None, retries anything
                      that is not a caller error.
    """
    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            if on:
                retry_on = retry_if_exception_type(tuple(on))
            else:
                retry_on = retry_if_exception(_is_retryable)

            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(min=min_wait, max=max_wait) + wait_random(0, jitter),
                retry=retry_on,
                reraise=True,
            ):
                with attempt:
                    return await fn(*args, **kwargs)

        return wrapper
    return decorator


__all__ = ["retry_policy"]
