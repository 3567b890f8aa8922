"""
experiment_sdk.schemas
───────────────────────
Request models for the caller-facing API. The kernel validates every
message's ``params`` against one of these before calling the service, so
transport callers get the same ValidationError shape as in-process callers.

camelCase and snake_case field names are both accepted.
"""
from __future__ import annotations

from typing import Any

from pydantic import ConfigDict, Field, JsonValue

from experiment_sdk.tier3_platform.experiments import EngineModel, UtcDatetime
from experiment_sdk.tier3_platform.rollout import RolloutConfig


class Request(EngineModel):
    model_config = ConfigDict(extra="forbid")


# ── Decisions ─────────────────────────────────────────────────────────────────

class EvaluateRequest(Request):
    experiment_key: str
    subject_id: str
    attributes: dict[str, Any] | None = None
    force_variant: str | None = None
    fallback_variant: str | None = None
    record_exposure: bool = False


class RolloutCheckRequest(Request):
    feature_key: str
    subject_id: str
    segments: list[str] | None = None


# ── Tracking & results ────────────────────────────────────────────────────────

class TrackExposureRequest(Request):
    experiment_key: str
    variant_key: str
    subject_id: str | None = None
    metadata: dict[str, JsonValue] | None = None


class TrackConversionRequest(Request):
    experiment_key: str
    variant_key: str
    conversion_type: str
    subject_id: str | None = None
    value: float | None = None
    metadata: dict[str, JsonValue] | None = None


class MetricsRequest(Request):
    experiment_key: str
    start: UtcDatetime | None = None
    end: UtcDatetime | None = None


class SummaryRequest(Request):
    experiment_key: str


# ── Experiment administration ─────────────────────────────────────────────────

class CreateExperimentRequest(Request):
    actor: str = Field(min_length=1)
    experiment: dict[str, Any]


class UpdateExperimentRequest(Request):
    actor: str = Field(min_length=1)
    experiment_key: str
    patch: dict[str, Any]


class GetExperimentRequest(Request):
    experiment_key: str
    include_deleted: bool = False


class ListExperimentsRequest(Request):
    is_active: bool | None = None
    search: str | None = None
    limit: int = Field(default=50, ge=1, le=500)
    skip: int = Field(default=0, ge=0)
    include_deleted: bool = False


class SetStatusRequest(Request):
    actor: str = Field(min_length=1)
    experiment_key: str
    is_active: bool


class RetireExperimentRequest(Request):
    actor: str = Field(min_length=1)
    experiment_key: str


# ── Rollout administration ────────────────────────────────────────────────────

class SetRolloutRequest(Request):
    config: RolloutConfig


class FeatureKeyRequest(Request):
    feature_key: str


class ChangeRolloutRequest(Request):
    feature_key: str
    percentage: float


class RestoreRolloutsRequest(Request):
    snapshot: str


class EmptyRequest(Request):
    pass


__all__ = [
    "EvaluateRequest",
    "RolloutCheckRequest",
    "TrackExposureRequest",
    "TrackConversionRequest",
    "MetricsRequest",
    "SummaryRequest",
    "CreateExperimentRequest",
    "UpdateExperimentRequest",
    "GetExperimentRequest",
    "ListExperimentsRequest",
    "SetStatusRequest",
    "RetireExperimentRequest",
    "SetRolloutRequest",
    "FeatureKeyRequest",
    "ChangeRolloutRequest",
    "RestoreRolloutsRequest",
    "EmptyRequest",
]
