"""
experiment_sdk.tier3_platform.experiments
──────────────────────────────────────────
Experiment definitions and variant resolution.

A definition is an ordered list of weighted variants plus targeting rules.
resolve_variant() maps a subject to a variant key deterministically: the
same (experiment key, subject id) always yields the same variant as long as
the variant list and weights are unchanged. Changing weights may move
subjects that sit near a range boundary.

Models are frozen; the registry produces new instances for every change.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    JsonValue,
    field_validator,
)
from pydantic.alias_generators import to_camel

from experiment_sdk.tier3_platform.assignment import BUCKETS, bucket


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class EngineModel(BaseModel):
    """Frozen model that reads snake_case or camelCase and writes camelCase."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


# ── Definition model ──────────────────────────────────────────────────────────

class Variant(EngineModel):
    key: str = Field(min_length=1)
    name: str
    description: str | None = None
    weight: float | None = Field(default=None, ge=0, le=100)  # percent of traffic
    payload: JsonValue = None  # opaque to the engine


Operator = Literal["equals", "contains", "greater_than", "less_than", "in", "not_in"]


class TargetingRule(EngineModel):
    attribute: str
    operator: Operator
    value: Any = None


AllocationType = Literal["random", "sticky", "attribute_based"]

_ALLOCATION_ALIASES = {"user_attribute": "attribute_based", "attribute-based": "attribute_based"}


class TrafficAllocation(EngineModel):
    type: AllocationType = "random"
    seed: str | None = None

    @field_validator("type", mode="before")
    @classmethod
    def normalise_type(cls, v: Any) -> Any:
        return _ALLOCATION_ALIASES.get(v, v) if isinstance(v, str) else v


class ExperimentInput(EngineModel):
    """Fields a caller may supply when creating an experiment."""
    key: str = Field(pattern=r"^[a-z0-9_]+$")
    name: str
    description: str | None = None
    variants: list[Variant] = Field(min_length=2)
    default_variant: str
    is_active: bool = False
    traffic_allocation: TrafficAllocation = Field(default_factory=TrafficAllocation)
    targeting_rules: list[TargetingRule] = Field(default_factory=list)
    start_date: UtcDatetime | None = None
    end_date: UtcDatetime | None = None


class ExperimentPatch(EngineModel):
    """Partial update. ``key`` is deliberately absent: keys are immutable."""
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    description: str | None = None
    variants: list[Variant] | None = Field(default=None, min_length=2)
    default_variant: str | None = None
    is_active: bool | None = None
    traffic_allocation: TrafficAllocation | None = None
    targeting_rules: list[TargetingRule] | None = None
    start_date: UtcDatetime | None = None
    end_date: UtcDatetime | None = None


class ExperimentDefinition(ExperimentInput):
    """A stored experiment, including audit fields stamped by the registry."""
    created_by: str
    created_at: UtcDatetime
    updated_by: str
    updated_at: UtcDatetime
    deleted_at: UtcDatetime | None = None
    deleted_by: str | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def salt(self) -> str:
        return self.traffic_allocation.seed or self.key

    def variant(self, key: str) -> Variant | None:
        for v in self.variants:
            if v.key == key:
                return v
        return None

    def in_window(self, now: datetime) -> bool:
        if self.start_date and now < self.start_date:
            return False
        if self.end_date and now > self.end_date:
            return False
        return True


# ── Targeting ─────────────────────────────────────────────────────────────────

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _rule_passes(rule: TargetingRule, attributes: dict[str, Any]) -> bool:
    actual = attributes.get(rule.attribute)
    expected = rule.value
    op = rule.operator
    if op == "equals":
        return actual == expected
    if op == "contains":
        return isinstance(actual, str) and isinstance(expected, str) and expected in actual
    if op == "greater_than":
        return _is_number(actual) and _is_number(expected) and actual > expected
    if op == "less_than":
        return _is_number(actual) and _is_number(expected) and actual < expected
    if op == "in":
        return isinstance(expected, (list, tuple, set)) and actual in expected
    if op == "not_in":
        return isinstance(expected, (list, tuple, set)) and actual not in expected
    return False


def evaluate_targeting(rules: list[TargetingRule], attributes: dict[str, Any] | None) -> bool:
    """True when every rule passes for the subject's attributes (AND)."""
    attrs = attributes or {}
    return all(_rule_passes(rule, attrs) for rule in rules)


# ── Resolution ────────────────────────────────────────────────────────────────

def variant_ranges(variants: list[Variant]) -> list[tuple[str, int, float]]:
    """
    Return (variant key, lower, upper) bucket ranges in declaration order.

    With any non-zero weight, ranges are cumulative weights (absent = 0).
    Otherwise [0, 100) is split evenly, remainder to the first variants.
    """
    ranges: list[tuple[str, int, float]] = []
    if any(v.weight for v in variants):
        lower = 0.0
        for v in variants:
            upper = lower + (v.weight or 0)
            ranges.append((v.key, lower, upper))
            lower = upper
        return ranges

    count = len(variants)
    width, remainder = divmod(BUCKETS, count) if count else (0, 0)
    lower = 0
    for i, v in enumerate(variants):
        upper = lower + width + (1 if i < remainder else 0)
        ranges.append((v.key, lower, upper))
        lower = upper
    return ranges


def resolve_variant(
    definition: ExperimentDefinition,
    subject_id: str,
    attributes: dict[str, Any] | None = None,
) -> str:
    """
    Return the variant key a subject falls into.

    Subjects failing targeting get the default variant without consuming a
    bucket. Raises ValidationError for an empty subject id.
    """
    if definition.targeting_rules and not evaluate_targeting(
        definition.targeting_rules, attributes
    ):
        return definition.default_variant

    b = bucket(subject_id, definition.salt)
    for key, lower, upper in variant_ranges(definition.variants):
        if lower <= b < upper:
            return key
    return definition.default_variant


__all__ = [
    "Variant",
    "TargetingRule",
    "TrafficAllocation",
    "ExperimentInput",
    "ExperimentPatch",
    "ExperimentDefinition",
    "EngineModel",
    "UtcDatetime",
    "evaluate_targeting",
    "variant_ranges",
    "resolve_variant",
]
