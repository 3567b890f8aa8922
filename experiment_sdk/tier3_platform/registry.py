"""
experiment_sdk.tier3_platform.registry
───────────────────────────────────────
Administrative CRUD over experiment definitions.

Every write is validated twice: the payload against the pydantic model,
then the merged definition against the cross-field invariants (weights sum
to 100, default variant exists, variant keys unique, window ordered).
Nothing reaches the store until both pass.

Keys are never reused. Retiring an experiment soft-deletes it; the row
stays so historical events remain attributable.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from experiment_sdk.tier0_core.errors import NotFoundError, ValidationError
from experiment_sdk.tier0_core.logging import get_logger
from experiment_sdk.tier1_runtime.clock import Clock, get_clock
from experiment_sdk.tier1_runtime.validate import validate_input
from experiment_sdk.tier3_platform.experiments import (
    ExperimentDefinition,
    ExperimentInput,
    ExperimentPatch,
)
from experiment_sdk.tier3_platform.stores import DefinitionStore

logger = get_logger(__name__)

WEIGHT_TOLERANCE = 1e-9


@dataclass(frozen=True)
class ExperimentPage:
    experiments: list[ExperimentDefinition]
    total: int
    has_more: bool


def check_invariants(definition: ExperimentInput) -> None:
    """Raise ValidationError listing every violated cross-field rule."""
    problems: dict[str, str] = {}

    keys = [v.key for v in definition.variants]
    if len(set(keys)) != len(keys):
        problems["variants"] = "variant keys must be unique"

    weights = [v.weight for v in definition.variants if v.weight]
    if weights and abs(sum(weights) - 100) > WEIGHT_TOLERANCE:
        problems["variants.weight"] = f"weights must sum to 100 (got {sum(weights):g})"

    if definition.default_variant not in keys:
        problems["defaultVariant"] = "must be one of the variant keys"

    if (
        definition.start_date is not None
        and definition.end_date is not None
        and definition.start_date > definition.end_date
    ):
        problems["endDate"] = "must not be before startDate"

    if problems:
        raise ValidationError(
            user_message="Experiment definition is invalid.",
            fields=problems,
        )


class ExperimentRegistry:
    """Validates and persists experiment definitions through a DefinitionStore."""

    def __init__(self, store: DefinitionStore, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or get_clock()

    async def create(self, actor: str, data: ExperimentInput | dict[str, Any]) -> ExperimentDefinition:
        payload = validate_input(ExperimentInput, data, "Experiment definition is invalid.")
        check_invariants(payload)

        now = self._clock.now()
        definition = ExperimentDefinition(
            **payload.model_dump(),
            created_by=actor,
            created_at=now,
            updated_by=actor,
            updated_at=now,
        )
        # ConflictError from the store also covers soft-deleted keys
        await self._store.insert(definition)
        logger.info("experiment_created", experiment_key=definition.key, actor=actor)
        return definition

    async def update(
        self,
        actor: str,
        key: str,
        patch: ExperimentPatch | dict[str, Any],
    ) -> ExperimentDefinition:
        changes = validate_input(ExperimentPatch, patch, "Experiment update is invalid.")
        current = await self.get(key)

        merged = {
            **current.model_dump(),
            **changes.model_dump(exclude_unset=True),
            "updated_by": actor,
            "updated_at": self._clock.now(),
        }
        definition = validate_input(ExperimentDefinition, merged, "Experiment update is invalid.")
        check_invariants(definition)

        await self._store.replace(definition)
        logger.info(
            "experiment_updated",
            experiment_key=key,
            actor=actor,
            fields=sorted(changes.model_fields_set),
        )
        return definition

    async def get(self, key: str, include_deleted: bool = False) -> ExperimentDefinition:
        definition = await self._store.get(key)
        if definition is None or (definition.is_deleted and not include_deleted):
            raise NotFoundError(
                user_message=f"Experiment {key!r} not found.",
                detail=f"experiment_key={key}",
            )
        return definition

    async def list(
        self,
        is_active: bool | None = None,
        search: str | None = None,
        limit: int = 50,
        skip: int = 0,
        include_deleted: bool = False,
    ) -> ExperimentPage:
        if limit < 1 or skip < 0:
            raise ValidationError(
                user_message="Invalid pagination.",
                fields={"limit": "must be >= 1", "skip": "must be >= 0"},
            )
        items, total = await self._store.list(
            is_active=is_active,
            search=search,
            limit=limit,
            skip=skip,
            include_deleted=include_deleted,
        )
        return ExperimentPage(experiments=items, total=total, has_more=skip + len(items) < total)

    async def list_running(self) -> list[ExperimentDefinition]:
        """Active, non-deleted experiments whose window contains now."""
        now = self._clock.now()
        running: list[ExperimentDefinition] = []
        skip = 0
        while True:
            page = await self.list(is_active=True, limit=100, skip=skip)
            running.extend(d for d in page.experiments if d.in_window(now))
            if not page.has_more:
                return running
            skip += len(page.experiments)

    async def set_status(self, actor: str, key: str, is_active: bool) -> ExperimentDefinition:
        return await self._stamp(actor, key, {"is_active": is_active}, "experiment_status_changed")

    async def soft_delete(self, actor: str, key: str) -> ExperimentDefinition:
        """Retire an experiment. The key stays reserved forever."""
        return await self._stamp(
            actor,
            key,
            {"is_active": False, "deleted_at": self._clock.now(), "deleted_by": actor},
            "experiment_deleted",
        )

    async def _stamp(
        self,
        actor: str,
        key: str,
        update: dict[str, Any],
        event: str,
    ) -> ExperimentDefinition:
        current = await self.get(key)
        definition = current.model_copy(
            update={**update, "updated_by": actor, "updated_at": self._clock.now()}
        )
        await self._store.replace(definition)
        logger.info(event, experiment_key=key, actor=actor, **_loggable(update))
        return definition


def _loggable(update: dict[str, Any]) -> dict[str, Any]:
    return {k: v.isoformat() if hasattr(v, "isoformat") else v for k, v in update.items()}


__all__ = [
    "ExperimentRegistry",
    "ExperimentPage",
    "check_invariants",
    "WEIGHT_TOLERANCE",
]
