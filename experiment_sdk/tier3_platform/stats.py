"""
experiment_sdk.tier3_platform.stats
────────────────────────────────────
Two-proportion significance helpers.

calculate_confidence() keeps the historical scale consumers already read:
exact 99/95/90 buckets at the usual z thresholds and, below 90%, the
heuristic ``round_half_up(z * 35)``. The heuristic is an approximation, not
a p-value; do not change it without product sign-off.
"""
from __future__ import annotations

import math

# two-sided critical values by confidence level; anything else -> 90%
_Z_ALPHA = {0.95: 1.96, 0.99: 2.58}
_Z_ALPHA_DEFAULT = 1.645

# one-sided z for statistical power; anything else -> 80%
_Z_BETA = {0.8: 0.84, 0.9: 1.28}
_Z_BETA_DEFAULT = 0.84


def z_score(
    control_conversions: int,
    control_exposures: int,
    variant_conversions: int,
    variant_exposures: int,
) -> float | None:
    """
    Pooled two-proportion z statistic, as an absolute value.
    Returns None when the standard error is zero (or a side has no exposures).
    """
    if control_exposures <= 0 or variant_exposures <= 0:
        return None
    p1 = control_conversions / control_exposures
    p2 = variant_conversions / variant_exposures
    pooled = (control_conversions + variant_conversions) / (control_exposures + variant_exposures)
    se = math.sqrt(pooled * (1 - pooled) * (1 / control_exposures + 1 / variant_exposures))
    if se == 0:
        return None
    return abs(p2 - p1) / se


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_confidence(
    control_conversions: int,
    control_exposures: int,
    variant_conversions: int,
    variant_exposures: int,
) -> int:
    """Confidence (0-99) that the variant differs from control."""
    z = z_score(control_conversions, control_exposures, variant_conversions, variant_exposures)
    if z is None:
        return 0
    if z >= 2.58:
        return 99
    if z >= 1.96:
        return 95
    if z >= 1.64:
        return 90
    return _round_half_up(z * 35)


def is_statistically_significant(
    control_conversions: int,
    control_total: int,
    variant_conversions: int,
    variant_total: int,
    confidence: float = 0.95,
) -> bool:
    z = z_score(control_conversions, control_total, variant_conversions, variant_total)
    if z is None:
        return False
    return z > _Z_ALPHA.get(confidence, _Z_ALPHA_DEFAULT)


def calculate_sample_size(
    baseline_rate: float,
    minimum_effect: float,
    confidence: float = 0.95,
    power: float = 0.8,
) -> int:
    """
    Subjects needed per variant to detect an absolute lift of
    ``minimum_effect`` over ``baseline_rate`` (both as fractions, 0.1 = 10%).
    """
    if minimum_effect == 0:
        raise ValueError("minimum_effect must be non-zero")
    z_alpha = _Z_ALPHA.get(confidence, _Z_ALPHA_DEFAULT)
    z_beta = _Z_BETA.get(power, _Z_BETA_DEFAULT)
    p1 = baseline_rate
    p2 = baseline_rate + minimum_effect
    p_bar = (p1 + p2) / 2
    numerator = 2 * p_bar * (1 - p_bar) * (z_alpha + z_beta) ** 2
    return math.ceil(numerator / (p1 - p2) ** 2)


__all__ = [
    "z_score",
    "calculate_confidence",
    "is_statistically_significant",
    "calculate_sample_size",
]
