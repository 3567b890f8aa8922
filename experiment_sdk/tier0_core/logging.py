"""
experiment_sdk.tier0_core.logging
──────────────────────────────────
One structured log stream for the engine: decisions, rollout changes,
dropped tracking events, kernel requests. Every line carries the service
name and environment, plus whatever the kernel bound for the request
(request_id, method).

Targeting attributes and event metadata come from callers, so sensitive
keys inside them are masked before a line is rendered. Subject ids are
kept; they are needed to replay an assignment.

Stack: structlog on the stdlib "experiment_sdk" logger
Configure via: EXPERIMENT_LOG_LEVEL, EXPERIMENT_LOG_FORMAT=json|console,
               APP_NAME, APP_ENV
"""
from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog

_ROOT = "experiment_sdk"
_MASK = "[REDACTED]"

# Caller-supplied keys we never print, at the top level or inside the
# free-form maps below.
_SENSITIVE_KEYS = frozenset({
    "password", "secret", "token", "api_key", "authorization",
    "access_token", "refresh_token", "session", "cookie",
    "email", "phone", "ip", "ip_address",
})

# Fields that hold caller dictionaries (targeting attributes, event
# metadata, raw kernel params).
_CALLER_MAPS = frozenset({"attributes", "metadata", "params"})


# ── Processors ────────────────────────────────────────────────────────────────

def _engine_identity(logger: Any, method: str, event_dict: dict) -> dict:
    event_dict.setdefault("service", os.getenv("APP_NAME", "experiment-engine"))
    event_dict.setdefault("env", os.getenv("APP_ENV", "development"))
    return event_dict


def _mask(mapping: dict) -> dict:
    return {
        k: _MASK if str(k).lower() in _SENSITIVE_KEYS else v
        for k, v in mapping.items()
    }


def _scrub_caller_data(logger: Any, method: str, event_dict: dict) -> dict:
    """Mask sensitive keys, including one level into caller maps."""
    for key, value in list(event_dict.items()):
        if key.lower() in _SENSITIVE_KEYS:
            event_dict[key] = _MASK
        elif key in _CALLER_MAPS and isinstance(value, dict):
            event_dict[key] = _mask(value)
    return event_dict


# ── Configuration ─────────────────────────────────────────────────────────────

def _configure() -> None:
    level = getattr(logging, os.getenv("EXPERIMENT_LOG_LEVEL", "INFO").upper(), logging.INFO)
    console = os.getenv("EXPERIMENT_LOG_FORMAT", "json").lower() == "console"

    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _engine_identity,
        _scrub_caller_data,
    ]
    if not console:
        # the console renderer prints tracebacks itself
        shared.append(structlog.processors.format_exc_info)

    structlog.configure(
        processors=shared + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer() if console else structlog.processors.JSONRenderer(),
        ],
    ))

    # Only the engine's own namespace; host applications keep their root logger.
    engine_logger = logging.getLogger(_ROOT)
    engine_logger.addHandler(handler)
    engine_logger.setLevel(level)
    engine_logger.propagate = False


# ── Public API ────────────────────────────────────────────────────────────────

_configured = False


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Logger for an engine module. Names outside the ``experiment_sdk``
    namespace are nested under it so they share the engine's handler.

    Usage:
        log = get_logger(__name__)
        log.info("rollout_changed", feature_key="new_editor", new_percentage=25)

    ``event`` is the message itself; pass audit event names as ``audit_event``.
    """
    global _configured
    if not _configured:
        _configure()
        _configured = True
    if not name:
        name = _ROOT
    elif name != _ROOT and not name.startswith(_ROOT + "."):
        name = f"{_ROOT}.{name}"
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Attach fields (request id, method) to every line logged in this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


__all__ = ["get_logger", "bind_context", "clear_context"]
