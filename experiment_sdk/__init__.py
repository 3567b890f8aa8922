"""
experiment_sdk
──────────────
Stable top-level exports. Import from here, not from sub-modules directly.
Every name exported here is part of the public API and subject to semver.
"""
from experiment_sdk.tier0_core.logging import get_logger
from experiment_sdk.tier0_core.errors import (
    EngineError,
    ValidationError,
    ConflictError,
    NotFoundError,
    CollaboratorUnavailable,
    DeadlineExceeded,
    ConfigurationError,
)
from experiment_sdk.tier0_core.config import get_config, EngineConfig

from experiment_sdk.tier1_runtime.clock import Clock
from experiment_sdk.tier1_runtime.serialize import serialize

from experiment_sdk.tier2_reliability.audit import (
    AuditEvent,
    EventSink,
    LogEventSink,
    InMemoryEventSink,
)

from experiment_sdk.tier3_platform.assignment import bucket
from experiment_sdk.tier3_platform.experiments import (
    Variant,
    TargetingRule,
    TrafficAllocation,
    ExperimentInput,
    ExperimentPatch,
    ExperimentDefinition,
    evaluate_targeting,
    resolve_variant,
)
from experiment_sdk.tier3_platform.rollout import (
    RolloutConfig,
    UserOverrides,
    RolloutManager,
    RolloutStrategies,
    is_included,
)
from experiment_sdk.tier3_platform.stores import (
    DefinitionStore,
    EventStore,
    InMemoryDefinitionStore,
    InMemoryEventStore,
)
from experiment_sdk.tier3_platform.registry import ExperimentRegistry, ExperimentPage
from experiment_sdk.tier3_platform.analytics import (
    MetricsEngine,
    DateRange,
    ExperimentMetrics,
    ExperimentSummary,
    Recommendation,
)
from experiment_sdk.tier3_platform.stats import (
    calculate_confidence,
    is_statistically_significant,
    calculate_sample_size,
)

from experiment_sdk.service import ExperimentService, Decision, build_service

__version__ = "0.1.0"
__all__ = [
    # logging
    "get_logger",
    # errors
    "EngineError", "ValidationError", "ConflictError", "NotFoundError",
    "CollaboratorUnavailable", "DeadlineExceeded", "ConfigurationError",
    # config
    "get_config", "EngineConfig",
    # runtime
    "Clock", "serialize",
    # audit
    "AuditEvent", "EventSink", "LogEventSink", "InMemoryEventSink",
    # assignment
    "bucket",
    # experiments
    "Variant", "TargetingRule", "TrafficAllocation", "ExperimentInput",
    "ExperimentPatch", "ExperimentDefinition", "evaluate_targeting", "resolve_variant",
    # rollout
    "RolloutConfig", "UserOverrides", "RolloutManager", "RolloutStrategies", "is_included",
    # stores
    "DefinitionStore", "EventStore", "InMemoryDefinitionStore", "InMemoryEventStore",
    # registry
    "ExperimentRegistry", "ExperimentPage",
    # analytics
    "MetricsEngine", "DateRange", "ExperimentMetrics", "ExperimentSummary", "Recommendation",
    # stats
    "calculate_confidence", "is_statistically_significant", "calculate_sample_size",
    # service
    "ExperimentService", "Decision", "build_service",
]
