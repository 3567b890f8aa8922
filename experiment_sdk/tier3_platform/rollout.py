"""
experiment_sdk.tier3_platform.rollout
──────────────────────────────────────
Progressive feature rollout: a percentage of subjects, chosen by
deterministic bucket, sees a feature. Explicit overrides and the active
window take precedence over the percentage.

RolloutManager holds one RolloutConfig per feature key in process memory.
Mutations are serialised per key; reads take no lock and see whole configs
because every change swaps in a new frozen instance. snapshot()/restore()
let the host persist that state across restarts.

RolloutStrategies produce config *sequences* only. Applying them over time
is the caller's job; there is no scheduler here.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Iterable

from pydantic import Field

from experiment_sdk.tier0_core.errors import ValidationError
from experiment_sdk.tier0_core.logging import get_logger
from experiment_sdk.tier0_core.metrics import counter
from experiment_sdk.tier1_runtime.clock import Clock, get_clock
from experiment_sdk.tier1_runtime.serialize import dump_models, load_models
from experiment_sdk.tier2_reliability.audit import (
    FULL_ROLLOUT,
    KILL_SWITCH_ACTIVATED,
    ROLLOUT_CHANGED,
    AuditEvent,
    EventSink,
)
from experiment_sdk.tier3_platform.assignment import bucket
from experiment_sdk.tier3_platform.experiments import EngineModel, UtcDatetime

logger = get_logger(__name__)

_rollout_changes = counter(
    "experiment_rollout_changes_total",
    "Accepted rollout mutations",
    ["event"],
)


class UserOverrides(EngineModel):
    enabled: list[str] = Field(default_factory=list)
    disabled: list[str] = Field(default_factory=list)


class RolloutConfig(EngineModel):
    feature_key: str = ""
    percentage: float = Field(ge=0, le=100)
    enabled_segments: list[str] | None = None
    disabled_segments: list[str] | None = None
    user_overrides: UserOverrides | None = None
    start_date: UtcDatetime | None = None
    end_date: UtcDatetime | None = None


# ── Evaluator ─────────────────────────────────────────────────────────────────

def is_included(
    subject_id: str,
    config: RolloutConfig,
    *,
    segments: Iterable[str] | None = None,
    now: datetime | None = None,
) -> bool:
    """
    Decide whether a subject is inside a rollout.

    Order: overrides, active window, segments (only when the caller passes
    the subject's segments), then ``bucket < percentage``.
    """
    overrides = config.user_overrides
    if overrides is not None:
        if subject_id in overrides.enabled:
            return True
        if subject_id in overrides.disabled:
            return False

    now = now or get_clock().now()
    if config.start_date and now < config.start_date:
        return False
    if config.end_date and now > config.end_date:
        return False

    if segments is not None:
        subject_segments = set(segments)
        if config.disabled_segments and subject_segments & set(config.disabled_segments):
            return False
        if config.enabled_segments and not subject_segments & set(config.enabled_segments):
            return False

    return bucket(subject_id, config.feature_key) < config.percentage


# ── Manager ───────────────────────────────────────────────────────────────────

class RolloutManager:
    """Process-scoped registry of rollout configs, one per feature key."""

    def __init__(self, sink: EventSink | None = None, clock: Clock | None = None) -> None:
        self._configs: dict[str, RolloutConfig] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._sink = sink
        self._clock = clock or get_clock()

    def _lock_for(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    # reads

    def get_rollout(self, feature_key: str) -> RolloutConfig | None:
        return self._configs.get(feature_key)

    def list_rollouts(self) -> list[RolloutConfig]:
        return list(self._configs.values())

    def is_enabled(
        self,
        feature_key: str,
        subject_id: str,
        segments: Iterable[str] | None = None,
    ) -> bool:
        """False for unknown features."""
        config = self._configs.get(feature_key)
        if config is None:
            return False
        return is_included(subject_id, config, segments=segments, now=self._clock.now())

    # mutations

    async def set_rollout(self, config: RolloutConfig) -> RolloutConfig:
        """Insert or replace. The only operation that creates state."""
        if not config.feature_key:
            raise ValidationError(
                user_message="Rollout config needs a feature key.",
                fields={"feature_key": "required"},
            )
        async with self._lock_for(config.feature_key):
            previous = self._configs.get(config.feature_key)
            self._configs[config.feature_key] = config
        await self._emit(
            ROLLOUT_CHANGED,
            config.feature_key,
            previous.percentage if previous else None,
            config.percentage,
        )
        return config

    async def increase_rollout(self, feature_key: str, percentage: float) -> RolloutConfig | None:
        """Raise the percentage. Ignored unless ``current < percentage <= 100``."""
        return await self._change(
            feature_key,
            lambda current: percentage if current < percentage <= 100 else None,
            ROLLOUT_CHANGED,
        )

    async def decrease_rollout(self, feature_key: str, percentage: float) -> RolloutConfig | None:
        """Lower the percentage. Ignored unless ``0 <= percentage < current``."""
        return await self._change(
            feature_key,
            lambda current: percentage if 0 <= percentage < current else None,
            ROLLOUT_CHANGED,
        )

    async def kill_switch(self, feature_key: str) -> RolloutConfig | None:
        return await self._change(feature_key, lambda _: 0, KILL_SWITCH_ACTIVATED)

    async def full_rollout(self, feature_key: str) -> RolloutConfig | None:
        return await self._change(feature_key, lambda _: 100, FULL_ROLLOUT)

    async def _change(self, feature_key, compute, event_name) -> RolloutConfig | None:
        """
        Read-modify-write under the key's lock. Returns the config after the
        call (unchanged when the request was dropped), or None for an
        unknown key.
        """
        if feature_key not in self._configs:
            logger.info("rollout_unknown_feature", feature_key=feature_key, audit_event=event_name)
            return None
        async with self._lock_for(feature_key):
            config = self._configs.get(feature_key)
            if config is None:
                return None
            previous = config.percentage
            target = compute(previous)
            if target is None:
                logger.info(
                    "rollout_change_ignored",
                    feature_key=feature_key,
                    current=previous,
                    audit_event=event_name,
                )
                return config
            updated = config.model_copy(update={"percentage": float(target)})
            self._configs[feature_key] = updated
        await self._emit(event_name, feature_key, previous, updated.percentage)
        return updated

    async def _emit(
        self,
        name: str,
        feature_key: str,
        previous: float | None,
        new: float,
    ) -> None:
        _rollout_changes(event=name).inc()
        logger.info(
            "rollout_changed",
            feature_key=feature_key,
            audit_event=name,
            previous_percentage=previous,
            new_percentage=new,
        )
        if self._sink is None:
            return
        event = AuditEvent(
            name=name,
            feature_key=feature_key,
            previous_percentage=previous,
            new_percentage=new,
            timestamp=self._clock.now(),
        )
        try:
            await self._sink.publish(event)
        except Exception as exc:
            # the mutation already happened; audit delivery is best-effort
            logger.warning(
                "audit_publish_failed",
                feature_key=feature_key,
                audit_event=name,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    # persistence hooks

    def snapshot(self) -> bytes:
        """Serialise every config (JSON list) for the host to persist."""
        return dump_models(self.list_rollouts())

    def restore(self, data: bytes | str) -> int:
        """
        Replace all configs with a snapshot. Returns how many were loaded.
        Not audited: restoring replays state, it does not change it.
        """
        configs = load_models(data, RolloutConfig)
        missing = [i for i, c in enumerate(configs) if not c.feature_key]
        if missing:
            raise ValidationError(
                user_message="Snapshot entries need a feature key.",
                fields={f"{i}.featureKey": "required" for i in missing},
            )
        self._configs = {c.feature_key: c for c in configs}
        self._locks = {k: lock for k, lock in self._locks.items() if k in self._configs}
        logger.info("rollouts_restored", count=len(configs))
        return len(configs)


# ── Strategies ────────────────────────────────────────────────────────────────

class RolloutStrategies:
    """Factories for staged rollout plans. Each returns configs in order."""

    @staticmethod
    def gradual(
        start: float = 10,
        increment: float = 10,
        interval_days: float = 7,
        feature_key: str = "",
        start_date: datetime | None = None,
    ) -> list[RolloutConfig]:
        """start, start+increment, ... below 100, then a final 100 step."""
        if increment <= 0:
            raise ValidationError(
                user_message="Gradual rollout increment must be positive.",
                fields={"increment": "must be > 0"},
            )
        if not 0 <= start <= 100:
            raise ValidationError(
                user_message="Gradual rollout must start within [0, 100].",
                fields={"start": "must be within [0, 100]"},
            )
        when = start_date or get_clock().now()
        step = timedelta(days=interval_days)
        configs: list[RolloutConfig] = []
        percentage = start
        while percentage < 100:
            configs.append(RolloutConfig(
                feature_key=feature_key, percentage=percentage, start_date=when,
            ))
            percentage += increment
            when += step
        configs.append(RolloutConfig(feature_key=feature_key, percentage=100, start_date=when))
        return configs

    @staticmethod
    def canary(feature_key: str = "") -> list[RolloutConfig]:
        return [
            RolloutConfig(feature_key=feature_key, percentage=p)
            for p in (1, 5, 10, 25, 50, 100)
        ]

    @staticmethod
    def blue_green(feature_key: str = "") -> list[RolloutConfig]:
        """Instant cutover: blue (old) then green (new)."""
        return [
            RolloutConfig(feature_key=feature_key, percentage=0),
            RolloutConfig(feature_key=feature_key, percentage=100),
        ]

    @staticmethod
    def ring(
        rings: Iterable[tuple[str, float]],
        feature_key: str = "",
    ) -> list[RolloutConfig]:
        """One config per (segment, percentage) ring."""
        return [
            RolloutConfig(
                feature_key=feature_key,
                percentage=percentage,
                enabled_segments=[segment],
            )
            for segment, percentage in rings
        ]


__all__ = [
    "UserOverrides",
    "RolloutConfig",
    "is_included",
    "RolloutManager",
    "RolloutStrategies",
]
