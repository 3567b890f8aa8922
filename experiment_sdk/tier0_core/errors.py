"""
experiment_sdk.tier0_core.errors
─────────────────────────────────
Error taxonomy for the experimentation engine. Administrative operations
raise these synchronously; decision and tracking paths catch
CollaboratorUnavailable and degrade instead of surfacing it.

Optional error capture: EXPERIMENT_ERROR_BACKEND=sentry|none
"""
from __future__ import annotations

import os
from typing import Any


# ── Base error ────────────────────────────────────────────────────────────────

class EngineError(Exception):
    """
    Base class for all engine errors. Every error has:
    - code: stable machine-readable string (snake_case)
    - user_message: safe to surface to API callers
    - detail: internal context, never shown to callers
    - status_code: HTTP-style status used by the kernel transport
    """

    status_code: int = 500
    code: str = "internal_error"

    def __init__(
        self,
        code: str | None = None,
        user_message: str = "An unexpected error occurred.",
        detail: str | None = None,
        **metadata: Any,
    ) -> None:
        self.code = code or self.__class__.code
        self.user_message = user_message
        self.detail = detail or user_message
        self.metadata = metadata
        super().__init__(self.detail)
        _capture(self)

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.user_message,
            }
        }


# ── Typed error classes ───────────────────────────────────────────────────────

class ValidationError(EngineError):
    """Malformed input: bad weights, unknown default variant, empty subject id."""
    status_code = 422
    code = "validation_error"

    def __init__(
        self,
        code: str | None = None,
        user_message: str = "Validation failed.",
        fields: dict | None = None,
        **metadata: Any,
    ) -> None:
        self.fields = fields or {}
        super().__init__(code, user_message, **metadata)

    def to_dict(self) -> dict:
        d = super().to_dict()
        if self.fields:
            d["error"]["fields"] = self.fields
        return d


class ConflictError(ValidationError):
    """Experiment key already taken (keys are never reused, even after retirement)."""
    status_code = 409
    code = "duplicate_key"


class NotFoundError(EngineError):
    """Experiment or feature key does not exist, or has been soft-deleted."""
    status_code = 404
    code = "not_found"


class CollaboratorUnavailable(EngineError):
    """Definition store, event store or event sink could not be reached."""
    status_code = 503
    code = "collaborator_unavailable"


class DeadlineExceeded(CollaboratorUnavailable):
    """A store query did not finish before its deadline."""
    status_code = 504
    code = "deadline_exceeded"


class ConfigurationError(EngineError):
    """Misconfiguration detected at startup."""
    status_code = 500
    code = "configuration_error"


# ── Error capture backend ─────────────────────────────────────────────────────

def _capture(error: EngineError) -> None:
    """Send server-side errors to the configured backend."""
    backend = os.getenv("EXPERIMENT_ERROR_BACKEND", "none").lower()
    if backend != "sentry":
        return
    try:
        import sentry_sdk
    except ImportError:
        return
    if error.status_code >= 500:
        sentry_sdk.capture_exception(error)
    else:
        sentry_sdk.capture_message(
            str(error),
            level="warning",
        )


def configure_sentry(dsn: str, **kwargs: Any) -> None:
    """Initialize Sentry; call once at process startup."""
    import sentry_sdk
    sentry_sdk.init(dsn=dsn, **kwargs)
    os.environ["EXPERIMENT_ERROR_BACKEND"] = "sentry"


__all__ = [
    "EngineError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "CollaboratorUnavailable",
    "DeadlineExceeded",
    "ConfigurationError",
    "configure_sentry",
]
