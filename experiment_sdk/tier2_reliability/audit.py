"""
experiment_sdk.tier2_reliability.audit
───────────────────────────────────────
Append-only audit trail for rollout mutations. The rollout manager
publishes one AuditEvent per accepted change; the sink is injected, never
looked up globally.

Sinks: structured log (default) or in-memory (tests, local replay).
Select via: EXPERIMENT_EVENT_SINK=log|memory
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from experiment_sdk.tier0_core.logging import get_logger

ROLLOUT_CHANGED = "feature_rollout_changed"
KILL_SWITCH_ACTIVATED = "feature_kill_switch_activated"
FULL_ROLLOUT = "feature_full_rollout"


@dataclass(frozen=True)
class AuditEvent:
    """Immutable record of one rollout change. Never update these."""
    name: str                           # one of the event names above
    feature_key: str
    previous_percentage: float | None   # None when the config was just created
    new_percentage: float
    timestamp: datetime
    properties: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class EventSink(Protocol):
    async def publish(self, event: AuditEvent) -> None: ...


class LogEventSink:
    """Write audit events to the structured log stream."""

    def __init__(self) -> None:
        self._log = get_logger("experiment_sdk.audit")

    async def publish(self, event: AuditEvent) -> None:
        self._log.info(
            event.name,
            feature_key=event.feature_key,
            previous_percentage=event.previous_percentage,
            new_percentage=event.new_percentage,
            timestamp=event.timestamp.isoformat(),
            **event.properties,
        )


class InMemoryEventSink:
    """Keeps published events in order. NOT durable."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def publish(self, event: AuditEvent) -> None:
        self.events.append(event)

    def named(self, name: str) -> list[AuditEvent]:
        return [e for e in self.events if e.name == name]


def create_sink(backend: str) -> EventSink:
    if backend == "memory":
        return InMemoryEventSink()
    return LogEventSink()


__all__ = [
    "AuditEvent",
    "EventSink",
    "LogEventSink",
    "InMemoryEventSink",
    "create_sink",
    "ROLLOUT_CHANGED",
    "KILL_SWITCH_ACTIVATED",
    "FULL_ROLLOUT",
]
