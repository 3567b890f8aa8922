"""
experiment_sdk.tier0_core.metrics
──────────────────────────────────
Operational counters and histograms for the engine itself (decisions served,
events dropped, rollout changes). Not to be confused with experiment
metrics, which live in tier3_platform.analytics.

Stack: prometheus-client
Configure via: EXPERIMENT_METRICS_ENABLED, EXPERIMENT_METRICS_PORT
"""
from __future__ import annotations

import os
from typing import Callable

from prometheus_client import Counter, Histogram, start_http_server

# Labels applied to every metric
_DEFAULT_LABELS = ["service", "env"]
_DEFAULT_LABEL_VALUES = [
    os.getenv("APP_NAME", "experiment-engine"),
    os.getenv("APP_ENV", "development"),
]

# Collectors already registered with the default registry, by metric name.
_collectors: dict[str, Counter | Histogram] = {}


def _default_labels() -> dict[str, str]:
    return dict(zip(_DEFAULT_LABELS, _DEFAULT_LABEL_VALUES))


def counter(name: str, description: str, labels: list[str] | None = None) -> Callable:
    """
    Create a counter carrying the default labels. A second call with the
    same name returns the collector registered by the first.

    Usage:
        decisions = counter("experiment_decisions_total", "Decisions", ["reason"])
        decisions(reason="allocated").inc()
    """
    c = _collectors.get(name)
    if c is None:
        c = _collectors[name] = Counter(name, description, _DEFAULT_LABELS + (labels or []))

    def _counter(**extra_labels: str) -> Counter:
        return c.labels(**_default_labels(), **extra_labels)

    return _counter


def histogram(
    name: str,
    description: str,
    labels: list[str] | None = None,
    buckets: tuple = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
) -> Callable:
    """Create (or reuse) a histogram carrying the default labels."""
    h = _collectors.get(name)
    if h is None:
        h = _collectors[name] = Histogram(
            name, description, _DEFAULT_LABELS + (labels or []), buckets=buckets,
        )

    def _histogram(**extra_labels: str) -> Histogram:
        return h.labels(**_default_labels(), **extra_labels)

    return _histogram


def start_metrics_server(port: int | None = None) -> None:
    """Expose /metrics on a dedicated port. Call once at startup."""
    port = port or int(os.getenv("EXPERIMENT_METRICS_PORT", "8001"))
    start_http_server(port)


__all__ = ["counter", "histogram", "start_metrics_server"]
