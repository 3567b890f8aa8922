"""
experiment_sdk.tier2_reliability.fallback
──────────────────────────────────────────
Degraded-but-valid answers when a collaborator fails. Decision paths must
always produce a variant or a boolean; tracking paths must never block the
caller on analytics plumbing.

Patterns supported:
  - Static default value (sync and async callables)
  - Cached last-known-good value, per argument tuple
"""
from __future__ import annotations

import functools
import inspect
from typing import Any, Callable, Hashable, TypeVar

from experiment_sdk.tier0_core.logging import get_logger

F = TypeVar("F", bound=Callable[..., Any])

logger = get_logger(__name__)

ExcTypes = type[Exception] | tuple[type[Exception], ...]


def with_fallback(
    default: Any,
    *,
    on: ExcTypes = Exception,
    reraise: ExcTypes | None = None,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator: when the wrapped callable raises one of *on*, return *default*.

    Args:
        default: Value to return instead of raising.
        on: Exception type(s) that trigger the fallback.
        reraise: Exception type(s) that always propagate, even if matched by *on*.
        log_errors: Whether to log the swallowed exception.

    Usage::

        @with_fallback(default=None, on=CollaboratorUnavailable)
        async def track_exposure(...): ...
    """
    def _handle(fn: Callable[..., Any], exc: Exception) -> Any:
        if reraise and isinstance(exc, reraise):
            raise exc
        if log_errors:
            logger.warning(
                "fallback_triggered",
                function=fn.__qualname__,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        return default

    def decorator(fn: F) -> F:
        if inspect.iscoroutinefunction(fn):
            @functools.wraps(fn)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                try:
                    return await fn(*args, **kwargs)
                except on as exc:
                    return _handle(fn, exc)

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return fn(*args, **kwargs)
            except on as exc:
                return _handle(fn, exc)

        return wrapper  # type: ignore[return-value]

    return decorator


class LastKnownGoodCache:
    """
    Wrap an async callable and remember its last successful result per
    argument tuple. When the callable raises one of *on*, the remembered
    value is returned; with nothing remembered the error propagates.
    """

    def __init__(self, fn: Callable[..., Any], *, on: ExcTypes = Exception) -> None:
        self._fn = fn
        self._on = on
        self._last_good: dict[Hashable, Any] = {}

    async def __call__(self, *args: Any, **kwargs: Any) -> Any:
        result, _ = await self.fetch(*args, **kwargs)
        return result

    async def fetch(self, *args: Any, **kwargs: Any) -> tuple[Any, bool]:
        """
        Like calling the cache, but also report whether the value is stale
        (served from memory because the callable failed).
        """
        key = (args, tuple(sorted(kwargs.items())))
        try:
            result = await self._fn(*args, **kwargs)
        except self._on as exc:
            if key in self._last_good:
                logger.warning(
                    "using_last_known_good",
                    function=getattr(self._fn, "__qualname__", repr(self._fn)),
                    error=str(exc),
                )
                return self._last_good[key], True
            raise
        self._last_good[key] = result
        return result, False

    def forget(self, *args: Any, **kwargs: Any) -> None:
        self._last_good.pop((args, tuple(sorted(kwargs.items()))), None)


__all__ = ["with_fallback", "LastKnownGoodCache"]
