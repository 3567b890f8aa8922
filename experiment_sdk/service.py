"""
experiment_sdk.service
───────────────────────
Caller-facing surface of the engine: variant decisions, rollout checks,
event tracking, results, and the administrative operations behind them.

Decision calls fail closed. During a definition store outage an experiment
we have loaded before answers its default variant; one we have never
loaded answers the caller's fallback variant, or raises when none was
given. A rollout check that hits an unexpected error answers False.
Administrative calls raise.

Everything is wired explicitly through build_service(); there is no global
engine instance.

Usage::

    service = await build_service()
    variant = await service.decide("checkout_cta", user_id, record_exposure=True)
    if service.rollout("new_editor", user_id):
        ...
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncEngine

from experiment_sdk.tier0_core.config import EngineConfig, get_config
from experiment_sdk.tier0_core.data import create_engine, create_schema, create_session_factory
from experiment_sdk.tier0_core.errors import CollaboratorUnavailable, ValidationError
from experiment_sdk.tier0_core.logging import get_logger
from experiment_sdk.tier0_core.metrics import counter
from experiment_sdk.tier1_runtime.clock import Clock, get_clock
from experiment_sdk.tier1_runtime.validate import validate_input
from experiment_sdk.tier2_reliability.audit import EventSink, create_sink
from experiment_sdk.tier2_reliability.fallback import LastKnownGoodCache, with_fallback
from experiment_sdk.tier3_platform.analytics import (
    DateRange,
    ExperimentMetrics,
    ExperimentSummary,
    MetricsEngine,
)
from experiment_sdk.tier3_platform.assignment import require_subject
from experiment_sdk.tier3_platform.experiments import (
    ExperimentDefinition,
    ExperimentInput,
    ExperimentPatch,
    evaluate_targeting,
    resolve_variant,
)
from experiment_sdk.tier3_platform.registry import ExperimentPage, ExperimentRegistry
from experiment_sdk.tier3_platform.rollout import RolloutConfig, RolloutManager
from experiment_sdk.tier3_platform.sql_stores import SqlDefinitionStore, SqlEventStore
from experiment_sdk.tier3_platform.stores import (
    DefinitionStore,
    EventStore,
    InMemoryDefinitionStore,
    InMemoryEventStore,
)

logger = get_logger(__name__)

_decisions = counter(
    "experiment_decisions_total",
    "Variant decisions served, by reason",
    ["reason"],
)

# Decision.reason values
FALLBACK = "fallback"
INACTIVE = "inactive"
OUTSIDE_WINDOW = "outside_window"
FORCED = "forced"
NOT_TARGETED = "not_targeted"
ALLOCATED = "allocated"


@dataclass(frozen=True)
class Decision:
    experiment_key: str
    variant: str
    reason: str


class ExperimentService:
    def __init__(
        self,
        definitions: DefinitionStore,
        events: EventStore,
        sink: EventSink | None = None,
        clock: Clock | None = None,
        query_timeout: float | None = None,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._clock = clock or get_clock()
        self.registry = ExperimentRegistry(definitions, clock=self._clock)
        self.analytics = MetricsEngine(
            self.registry, events, clock=self._clock, query_timeout=query_timeout,
        )
        self.rollouts = RolloutManager(sink=sink, clock=self._clock)
        self._definitions = LastKnownGoodCache(self.registry.get, on=CollaboratorUnavailable)
        self._engine = engine

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    # ── Decisions ─────────────────────────────────────────────────────────────

    async def evaluate(
        self,
        experiment_key: str,
        subject_id: str,
        attributes: dict[str, Any] | None = None,
        force_variant: str | None = None,
        fallback_variant: str | None = None,
    ) -> Decision:
        """
        Decide which variant a subject sees, and why.

        NotFoundError propagates for unknown or retired experiments. A store
        outage answers the last loaded definition's default variant; with
        nothing loaded it answers ``fallback_variant`` if given, otherwise
        CollaboratorUnavailable propagates.
        """
        require_subject(subject_id)
        try:
            definition, stale = await self._definitions.fetch(experiment_key)
        except CollaboratorUnavailable:
            if fallback_variant is None:
                raise
            return self._decided(experiment_key, fallback_variant, FALLBACK)
        if stale:
            return self._decided(experiment_key, definition.default_variant, FALLBACK)

        if not definition.is_active:
            return self._decided(experiment_key, definition.default_variant, INACTIVE)
        if not definition.in_window(self._clock.now()):
            return self._decided(experiment_key, definition.default_variant, OUTSIDE_WINDOW)
        if force_variant and definition.variant(force_variant) is not None:
            return self._decided(experiment_key, force_variant, FORCED)
        if definition.targeting_rules and not evaluate_targeting(
            definition.targeting_rules, attributes
        ):
            return self._decided(experiment_key, definition.default_variant, NOT_TARGETED)
        return self._decided(
            experiment_key, resolve_variant(definition, subject_id, attributes), ALLOCATED,
        )

    async def decide(
        self,
        experiment_key: str,
        subject_id: str,
        attributes: dict[str, Any] | None = None,
        force_variant: str | None = None,
        fallback_variant: str | None = None,
        record_exposure: bool = False,
    ) -> str:
        decision = await self.evaluate(
            experiment_key, subject_id, attributes, force_variant, fallback_variant,
        )
        if record_exposure and decision.reason != FALLBACK:
            await self.analytics.track_exposure(experiment_key, decision.variant, subject_id)
        return decision.variant

    def _decided(self, experiment_key: str, variant: str, reason: str) -> Decision:
        _decisions(reason=reason).inc()
        logger.debug("variant_decided", experiment_key=experiment_key, variant=variant, reason=reason)
        return Decision(experiment_key=experiment_key, variant=variant, reason=reason)

    def rollout(
        self,
        feature_key: str,
        subject_id: str,
        segments: Iterable[str] | None = None,
    ) -> bool:
        """Is the feature on for this subject? Unknown features are off."""
        return _rollout_or_off(self.rollouts, feature_key, subject_id, segments)

    # ── Tracking & results ────────────────────────────────────────────────────

    async def track_exposure(
        self,
        experiment_key: str,
        variant_key: str,
        subject_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self.analytics.track_exposure(experiment_key, variant_key, subject_id, metadata)

    async def track_conversion(
        self,
        experiment_key: str,
        variant_key: str,
        conversion_type: str,
        subject_id: str | None = None,
        value: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self.analytics.track_conversion(
            experiment_key, variant_key, conversion_type, subject_id, value, metadata,
        )

    async def metrics(
        self,
        experiment_key: str,
        date_range: DateRange | None = None,
    ) -> ExperimentMetrics:
        return await self.analytics.get_metrics(experiment_key, date_range)

    async def summary(self, experiment_key: str) -> ExperimentSummary:
        return await self.analytics.get_summary(experiment_key)

    # ── Experiment administration ─────────────────────────────────────────────

    async def create_experiment(
        self, actor: str, data: ExperimentInput | dict[str, Any],
    ) -> ExperimentDefinition:
        return await self.registry.create(actor, data)

    async def update_experiment(
        self, actor: str, experiment_key: str, patch: ExperimentPatch | dict[str, Any],
    ) -> ExperimentDefinition:
        return await self.registry.update(actor, experiment_key, patch)

    async def get_experiment(
        self, experiment_key: str, include_deleted: bool = False,
    ) -> ExperimentDefinition:
        return await self.registry.get(experiment_key, include_deleted=include_deleted)

    async def list_experiments(self, **filters: Any) -> ExperimentPage:
        return await self.registry.list(**filters)

    async def set_experiment_status(
        self, actor: str, experiment_key: str, is_active: bool,
    ) -> ExperimentDefinition:
        return await self.registry.set_status(actor, experiment_key, is_active)

    async def retire_experiment(self, actor: str, experiment_key: str) -> ExperimentDefinition:
        definition = await self.registry.soft_delete(actor, experiment_key)
        self._definitions.forget(experiment_key)
        return definition

    # ── Rollout administration ────────────────────────────────────────────────

    async def set_rollout(self, config: RolloutConfig | dict[str, Any]) -> RolloutConfig:
        if not isinstance(config, RolloutConfig):
            config = _rollout_config(config)
        return await self.rollouts.set_rollout(config)

    def get_rollout(self, feature_key: str) -> RolloutConfig | None:
        return self.rollouts.get_rollout(feature_key)

    def list_rollouts(self) -> list[RolloutConfig]:
        return self.rollouts.list_rollouts()

    async def increase_rollout(self, feature_key: str, percentage: float) -> RolloutConfig | None:
        return await self.rollouts.increase_rollout(feature_key, percentage)

    async def decrease_rollout(self, feature_key: str, percentage: float) -> RolloutConfig | None:
        return await self.rollouts.decrease_rollout(feature_key, percentage)

    async def kill_switch(self, feature_key: str) -> RolloutConfig | None:
        return await self.rollouts.kill_switch(feature_key)

    async def full_rollout(self, feature_key: str) -> RolloutConfig | None:
        return await self.rollouts.full_rollout(feature_key)

    def snapshot_rollouts(self) -> bytes:
        return self.rollouts.snapshot()

    def restore_rollouts(self, data: bytes | str) -> int:
        return self.rollouts.restore(data)


@with_fallback(False, on=Exception, reraise=ValidationError)
def _rollout_or_off(
    manager: RolloutManager,
    feature_key: str,
    subject_id: str,
    segments: Iterable[str] | None,
) -> bool:
    return manager.is_enabled(feature_key, subject_id, segments)


def _rollout_config(data: dict[str, Any]) -> RolloutConfig:
    return validate_input(RolloutConfig, data, "Rollout config is invalid.")


# ── Wiring ────────────────────────────────────────────────────────────────────

async def build_service(
    config: EngineConfig | None = None,
    clock: Clock | None = None,
) -> ExperimentService:
    """
    Build a service from configuration. With the SQL backend this creates
    missing tables; call ``service.close()`` on shutdown.
    """
    cfg = config or get_config()
    engine: AsyncEngine | None = None

    if cfg.store_backend == "sql":
        engine = create_engine(cfg)
        await create_schema(engine)
        sessions = create_session_factory(engine)
        definitions: DefinitionStore = SqlDefinitionStore(
            sessions, retry_attempts=cfg.store_retry_attempts,
        )
        events: EventStore = SqlEventStore(sessions, retry_attempts=cfg.store_retry_attempts)
    else:
        definitions = InMemoryDefinitionStore()
        events = InMemoryEventStore()

    logger.info(
        "service_built",
        store_backend=cfg.store_backend,
        event_sink=cfg.event_sink_backend,
        environment=cfg.environment,
    )
    return ExperimentService(
        definitions,
        events,
        sink=create_sink(cfg.event_sink_backend),
        clock=clock,
        query_timeout=cfg.metrics_query_timeout,
        engine=engine,
    )


__all__ = [
    "ExperimentService",
    "Decision",
    "build_service",
]
