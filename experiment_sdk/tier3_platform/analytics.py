"""
experiment_sdk.tier3_platform.analytics
────────────────────────────────────────
Exposure/conversion tracking and experiment results.

Tracking is best-effort: an unreachable event store costs us the event,
never the caller's request. Reads (get_metrics/get_summary) raise.

Per-variant metrics are computed over the definition's variant list, so a
variant with no traffic still shows up with zeros. Significance is a pooled
two-proportion z-test against the variant keyed ``control``; see stats.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from experiment_sdk.tier0_core.config import get_config
from experiment_sdk.tier0_core.errors import (
    CollaboratorUnavailable,
    DeadlineExceeded,
    ValidationError,
)
from experiment_sdk.tier0_core.logging import get_logger
from experiment_sdk.tier0_core.metrics import counter, histogram
from experiment_sdk.tier1_runtime.clock import Clock, get_clock
from experiment_sdk.tier3_platform.registry import ExperimentRegistry
from experiment_sdk.tier3_platform.stats import calculate_confidence
from experiment_sdk.tier3_platform.stores import (
    ConversionEvent,
    Event,
    EventStore,
    ExposureEvent,
    VariantAggregate,
)

logger = get_logger(__name__)

CONTROL_KEY = "control"
MIN_EXPOSURES_FOR_CONFIDENCE = 30
MIN_EXPOSURES_FOR_RECOMMENDATION = 1000
DEPLOY_CONFIDENCE = 95
STALE_AFTER_DAYS = 30

_events_dropped = counter(
    "experiment_events_dropped_total",
    "Tracking events lost because the event store was unavailable",
    ["kind"],
)
_query_seconds = histogram(
    "experiment_metrics_query_seconds",
    "Wall time of experiment metrics aggregation",
)


# ── Result types ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValidationError(
                user_message="Date range start must not be after its end.",
                fields={"dateRange": "start > end"},
            )


@dataclass(frozen=True)
class VariantMetric:
    key: str
    name: str
    exposures: int
    conversions: int
    conversion_rate: float          # percent, 0-100
    unique_exposures: int
    unique_conversions: int
    total_value: float
    average_value: float
    confidence: int | None = None   # only for non-control variants with enough traffic


@dataclass(frozen=True)
class ExperimentMetrics:
    experiment_key: str
    total_exposures: int
    total_conversions: int
    conversion_rate: float
    variants: list[VariantMetric]
    date_range: DateRange | None = None


class Recommendation(str, Enum):
    NEED_MORE_DATA = "need_more_data"
    DEPLOY_BEST = "deploy_best"
    CONSIDER_ENDING = "consider_ending"
    CONTINUE = "continue"


@dataclass(frozen=True)
class ExperimentSummary:
    experiment_key: str
    is_active: bool
    duration_days: int
    total_exposures: int
    avg_conversion_rate: float
    best_variant: str | None
    recommendation: Recommendation
    message: str


def _rate(numerator: int, denominator: int) -> float:
    return numerator / denominator * 100 if denominator > 0 else 0.0


# ── Engine ────────────────────────────────────────────────────────────────────

class MetricsEngine:
    """Records events and computes per-variant results for one event store."""

    def __init__(
        self,
        registry: ExperimentRegistry,
        store: EventStore,
        clock: Clock | None = None,
        query_timeout: float | None = None,
    ) -> None:
        self._registry = registry
        self._events = store
        self._clock = clock or get_clock()
        self._query_timeout = query_timeout

    # tracking

    async def track_exposure(
        self,
        experiment_key: str,
        variant_key: str,
        subject_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self._append(ExposureEvent(
            experiment_key=experiment_key,
            variant_key=variant_key,
            subject_id=subject_id,
            metadata=dict(metadata or {}),
            timestamp=self._clock.now(),
        ))

    async def track_conversion(
        self,
        experiment_key: str,
        variant_key: str,
        conversion_type: str,
        subject_id: str | None = None,
        value: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self._append(ConversionEvent(
            experiment_key=experiment_key,
            variant_key=variant_key,
            conversion_type=conversion_type,
            subject_id=subject_id,
            value=value,
            metadata=dict(metadata or {}),
            timestamp=self._clock.now(),
        ))

    async def _append(self, event: Event) -> None:
        try:
            await self._events.append(event)
        except CollaboratorUnavailable as exc:
            _events_dropped(kind=event.kind).inc()
            logger.warning(
                "event_dropped",
                kind=event.kind,
                experiment_key=event.experiment_key,
                variant_key=event.variant_key,
                error=str(exc),
            )
            return
        logger.debug(
            "event_tracked",
            kind=event.kind,
            experiment_key=event.experiment_key,
            variant_key=event.variant_key,
        )

    # results

    async def get_metrics(
        self,
        experiment_key: str,
        date_range: DateRange | None = None,
        timeout: float | None = None,
    ) -> ExperimentMetrics:
        # retired experiments keep their history readable
        definition = await self._registry.get(experiment_key, include_deleted=True)
        start = date_range.start if date_range else None
        end = date_range.end if date_range else None

        exposures, conversions = await self._aggregate(
            experiment_key,
            start,
            end,
            timeout or self._query_timeout or get_config().metrics_query_timeout,
        )

        rows: list[dict[str, Any]] = []
        for variant in definition.variants:
            exp = exposures.get(variant.key, VariantAggregate())
            conv = conversions.get(variant.key, VariantAggregate())
            rows.append(dict(
                key=variant.key,
                name=variant.name,
                exposures=exp.count,
                conversions=conv.count,
                conversion_rate=_rate(conv.count, exp.count),
                unique_exposures=exp.unique_subjects,
                unique_conversions=conv.unique_subjects,
                total_value=conv.total_value,
                average_value=conv.total_value / conv.count if conv.count else 0.0,
            ))

        control = next((r for r in rows if r["key"] == CONTROL_KEY), None)
        if control is not None and control["exposures"] > MIN_EXPOSURES_FOR_CONFIDENCE:
            for row in rows:
                if row is control or row["exposures"] <= MIN_EXPOSURES_FOR_CONFIDENCE:
                    continue
                row["confidence"] = calculate_confidence(
                    control["conversions"],
                    control["exposures"],
                    row["conversions"],
                    row["exposures"],
                )

        variants = [VariantMetric(**row) for row in rows]
        total_exposures = sum(v.exposures for v in variants)
        total_conversions = sum(v.conversions for v in variants)
        return ExperimentMetrics(
            experiment_key=experiment_key,
            total_exposures=total_exposures,
            total_conversions=total_conversions,
            conversion_rate=_rate(total_conversions, total_exposures),
            variants=variants,
            date_range=date_range,
        )

    async def _aggregate(
        self,
        experiment_key: str,
        start: datetime | None,
        end: datetime | None,
        timeout: float,
    ) -> tuple[dict[str, VariantAggregate], dict[str, VariantAggregate]]:
        started = time.perf_counter()
        try:
            exposures, conversions = await asyncio.wait_for(
                asyncio.gather(
                    self._events.aggregate(experiment_key, "exposure", start, end),
                    self._events.aggregate(experiment_key, "conversion", start, end),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("metrics_query_timeout", experiment_key=experiment_key, timeout=timeout)
            raise DeadlineExceeded(
                user_message="Experiment metrics took too long to compute.",
                detail=f"aggregation for {experiment_key} exceeded {timeout}s",
            ) from exc
        finally:
            _query_seconds().observe(time.perf_counter() - started)
        return exposures, conversions

    async def get_summary(self, experiment_key: str) -> ExperimentSummary:
        definition = await self._registry.get(experiment_key, include_deleted=True)
        metrics = await self.get_metrics(experiment_key)

        best: VariantMetric | None = None
        for v in metrics.variants:
            if best is None or v.conversion_rate > best.conversion_rate:
                best = v

        now = self._clock.now()
        began = definition.start_date or definition.created_at
        finished = min(now, definition.end_date) if definition.end_date else now
        duration_days = max(0, (finished - began).days)

        if metrics.total_exposures < MIN_EXPOSURES_FOR_RECOMMENDATION:
            recommendation = Recommendation.NEED_MORE_DATA
            message = "Need more data for statistical significance"
        elif best is not None and (best.confidence or 0) >= DEPLOY_CONFIDENCE:
            recommendation = Recommendation.DEPLOY_BEST
            message = f"Deploy {best.name} variant - {DEPLOY_CONFIDENCE}% confidence"
        elif duration_days > STALE_AFTER_DAYS:
            recommendation = Recommendation.CONSIDER_ENDING
            message = f"Consider ending experiment - running for over {STALE_AFTER_DAYS} days"
        else:
            recommendation = Recommendation.CONTINUE
            message = "Continue running experiment"

        return ExperimentSummary(
            experiment_key=experiment_key,
            is_active=definition.is_active,
            duration_days=duration_days,
            total_exposures=metrics.total_exposures,
            avg_conversion_rate=metrics.conversion_rate,
            best_variant=best.key if best else None,
            recommendation=recommendation,
            message=message,
        )


__all__ = [
    "MetricsEngine",
    "DateRange",
    "VariantMetric",
    "ExperimentMetrics",
    "ExperimentSummary",
    "Recommendation",
]
