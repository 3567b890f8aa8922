"""
experiment_sdk.tier3_platform.stores
─────────────────────────────────────
Collaborator boundary: the definition store (CRUD over experiment
definitions) and the event store (append-only exposure/conversion events
with per-variant aggregation). The engine only talks to these Protocols.

In-memory implementations live here and back tests and single-process
deployments; SQL implementations live in sql_stores.

Events carry no identifier, so duplicate delivery inflates counts. That is
accepted: nothing here deduplicates.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Protocol, runtime_checkable

from experiment_sdk.tier0_core.errors import ConflictError
from experiment_sdk.tier3_platform.experiments import ExperimentDefinition

EventKind = Literal["exposure", "conversion"]


# ── Events ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExposureEvent:
    """A subject was shown a variant. Never mutated after creation."""
    experiment_key: str
    variant_key: str
    timestamp: datetime
    subject_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    kind: EventKind = field(default="exposure", init=False)


@dataclass(frozen=True)
class ConversionEvent:
    """A subject completed a tracked outcome attributed to a variant."""
    experiment_key: str
    variant_key: str
    conversion_type: str
    timestamp: datetime
    subject_id: str | None = None
    value: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    kind: EventKind = field(default="conversion", init=False)


Event = ExposureEvent | ConversionEvent


@dataclass(frozen=True)
class VariantAggregate:
    """Per-variant rollup returned by EventStore.aggregate()."""
    count: int = 0
    unique_subjects: int = 0
    total_value: float = 0.0


# ── Protocols ─────────────────────────────────────────────────────────────────

@runtime_checkable
class DefinitionStore(Protocol):
    async def get(self, key: str) -> ExperimentDefinition | None: ...

    async def insert(self, definition: ExperimentDefinition) -> None:
        """Raise ConflictError if the key exists (including soft-deleted rows)."""
        ...

    async def replace(self, definition: ExperimentDefinition) -> None: ...

    async def list(
        self,
        *,
        is_active: bool | None = None,
        search: str | None = None,
        limit: int = 50,
        skip: int = 0,
        include_deleted: bool = False,
    ) -> tuple[list[ExperimentDefinition], int]:
        """Return (page newest first, total matching)."""
        ...


@runtime_checkable
class EventStore(Protocol):
    async def append(self, event: Event) -> None: ...

    async def aggregate(
        self,
        experiment_key: str,
        kind: EventKind,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, VariantAggregate]:
        """Group events by variant key within the inclusive time range."""
        ...


# ── In-memory implementations ─────────────────────────────────────────────────

def _matches(definition: ExperimentDefinition, search: str) -> bool:
    needle = search.lower()
    return needle in definition.key.lower() or needle in definition.name.lower()


class InMemoryDefinitionStore:
    """Dict-backed definition store. NOT durable."""

    def __init__(self) -> None:
        self._rows: dict[str, ExperimentDefinition] = {}

    async def get(self, key: str) -> ExperimentDefinition | None:
        return self._rows.get(key)

    async def insert(self, definition: ExperimentDefinition) -> None:
        if definition.key in self._rows:
            raise ConflictError(
                user_message=f"Experiment key {definition.key!r} already exists.",
                fields={"key": "already exists"},
            )
        self._rows[definition.key] = definition

    async def replace(self, definition: ExperimentDefinition) -> None:
        self._rows[definition.key] = definition

    async def list(
        self,
        *,
        is_active: bool | None = None,
        search: str | None = None,
        limit: int = 50,
        skip: int = 0,
        include_deleted: bool = False,
    ) -> tuple[list[ExperimentDefinition], int]:
        rows = [
            d for d in self._rows.values()
            if (include_deleted or not d.is_deleted)
            and (is_active is None or d.is_active == is_active)
            and (not search or _matches(d, search))
        ]
        rows.sort(key=lambda d: d.created_at, reverse=True)
        return rows[skip:skip + limit], len(rows)


class InMemoryEventStore:
    """List-backed event store. NOT durable."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    async def append(self, event: Event) -> None:
        self.events.append(event)

    async def aggregate(
        self,
        experiment_key: str,
        kind: EventKind,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, VariantAggregate]:
        counts: dict[str, int] = {}
        subjects: dict[str, set[str]] = {}
        values: dict[str, float] = {}
        for e in self.events:
            if e.kind != kind or e.experiment_key != experiment_key:
                continue
            if start is not None and e.timestamp < start:
                continue
            if end is not None and e.timestamp > end:
                continue
            counts[e.variant_key] = counts.get(e.variant_key, 0) + 1
            seen = subjects.setdefault(e.variant_key, set())
            if e.subject_id:
                seen.add(e.subject_id)
            value = getattr(e, "value", None)
            if value is not None:
                values[e.variant_key] = values.get(e.variant_key, 0.0) + value
        return {
            key: VariantAggregate(
                count=count,
                unique_subjects=len(subjects[key]),
                total_value=values.get(key, 0.0),
            )
            for key, count in counts.items()
        }


__all__ = [
    "EventKind",
    "ExposureEvent",
    "ConversionEvent",
    "Event",
    "VariantAggregate",
    "DefinitionStore",
    "EventStore",
    "InMemoryDefinitionStore",
    "InMemoryEventStore",
]
