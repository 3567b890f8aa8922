"""
experiment_sdk test configuration.

All tests run against in-memory stores and sinks by default; no database
or network services required. SQL store tests use a temporary SQLite file.
"""
from __future__ import annotations

import os
import uuid
from datetime import datetime, timedelta, timezone

import pytest

# ── Force in-memory collaborators for all tests ───────────────────────────
# These must be set before any experiment_sdk modules are imported.

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("EXPERIMENT_STORE_BACKEND", "memory")
os.environ.setdefault("EXPERIMENT_EVENT_SINK", "memory")
os.environ.setdefault("EXPERIMENT_LOG_LEVEL", "WARNING")
os.environ.setdefault("EXPERIMENT_ERROR_BACKEND", "none")

T0 = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class MovableClock:
    """Clock whose time tests can move forward."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def tick(self, **delta: float) -> None:
        self.current += timedelta(**delta)


def subject_ids(n: int) -> list[str]:
    """Realistic, deterministic subject ids."""
    return [str(uuid.uuid5(uuid.NAMESPACE_DNS, f"user-{i}.example.test")) for i in range(n)]


def experiment_payload(key: str = "checkout_cta", **overrides) -> dict:
    payload = {
        "key": key,
        "name": "Checkout CTA",
        "variants": [
            {"key": "control", "name": "Control", "weight": 50},
            {"key": "bold", "name": "Bold", "weight": 50},
        ],
        "defaultVariant": "control",
        "isActive": True,
    }
    payload.update(overrides)
    return payload


# ── Fixtures ───────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def reset_module_singletons():
    """Restore the process clock and cached config after each test."""
    from experiment_sdk.tier0_core.config import _reset_config
    from experiment_sdk.tier1_runtime.clock import get_clock, set_clock

    original = get_clock()
    yield
    set_clock(original)
    _reset_config()


@pytest.fixture
def clock() -> MovableClock:
    return MovableClock()


@pytest.fixture
def sink():
    from experiment_sdk.tier2_reliability.audit import InMemoryEventSink
    return InMemoryEventSink()


@pytest.fixture
def service(clock, sink):
    """A fully wired service over in-memory stores."""
    from experiment_sdk.service import ExperimentService
    from experiment_sdk.tier3_platform.stores import InMemoryDefinitionStore, InMemoryEventStore

    return ExperimentService(
        InMemoryDefinitionStore(),
        InMemoryEventStore(),
        sink=sink,
        clock=clock,
        query_timeout=5.0,
    )
