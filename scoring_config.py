"""
Scoring model configuration for parcel development suitability.

Owns every numeric constant that affects the development score.
Search parameters (isochrone minutes, fallback radius, supportive
categories) remain in parcel_analyzer.py.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.
"""

import math
from dataclasses import dataclass
from typing import Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class SubScoreCap:
    """Upper bound for one sub-score. The lower bound is always 0."""
    name: str
    max_points: float


@dataclass(frozen=True)
class DensityRule:
    """Linear ramp: ``count / saturation * max_points``, capped at max_points.

    Used by the POI, supportive-business and category-diversity sub-scores.
    """
    saturation: float      # count at which the sub-score saturates
    max_points: float


@dataclass(frozen=True)
class AmenityCapacity:
    """Distance budget (km) for one facility kind.

    A facility contributes ``max(0, capacity_km - distance_km)`` points, so
    the capacity is both the cut-off radius and the maximum contribution.
    """
    kind: str
    capacity_km: float


@dataclass(frozen=True)
class HazardRule:
    """FTL (full tank level) overlap scoring.

    Overlap at or below ``noise_threshold_pct`` is treated as boundary noise
    and thresholds to 0. Above it, every ``pct_per_point`` percent of
    overlap costs one point from ``max_points``.
    """
    max_points: float = 20.0
    noise_threshold_pct: float = 9.0
    pct_per_point: float = 5.0


@dataclass(frozen=True)
class ScoreBand:
    """Maps a minimum score threshold to a human-readable band label."""
    threshold: int
    label: str


@dataclass(frozen=True)
class ScoringModel:
    """Top-level container for all scoring parameters.

    A single module-level instance (SCORING_MODEL) is the source of truth.
    Bump `version` on every change that alters score outputs.
    """
    version: str
    poi: DensityRule
    business: DensityRule
    accessibility: DensityRule
    amenities: Tuple[AmenityCapacity, ...]
    amenity_max_points: float
    hazard: HazardRule
    composite_max: int
    score_bands: Tuple[ScoreBand, ...]

    def capacity_for(self, kind: str) -> float:
        for cap in self.amenities:
            if cap.kind == kind:
                return cap.capacity_km
        raise KeyError(f"No amenity capacity configured for {kind!r}")

    @property
    def caps(self) -> Tuple[SubScoreCap, ...]:
        return (
            SubScoreCap("poi_score", self.poi.max_points),
            SubScoreCap("amenity_score", self.amenity_max_points),
            SubScoreCap("ftl_score", self.hazard.max_points),
            SubScoreCap("business_score", self.business.max_points),
            SubScoreCap("accessibility_score", self.accessibility.max_points),
        )


# =============================================================================
# Pure numeric helpers
# =============================================================================

def clamp(value: float, low: float, high: float) -> float:
    """Clamp *value* into ``[low, high]``.

    Every sub-score goes through this after its formula so the caps live in
    one place.
    """
    if low > high:
        raise ValueError(f"clamp bounds inverted: low={low} high={high}")
    return max(low, min(high, value))


# Uses floor(x + 0.5) instead of Python's round() to avoid banker's
# rounding (round-half-to-even): round(12.5) -> 12, but a score of 12.5
# should report as 13.
def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round half away from zero for non-negative scores.

    ``ndigits=0`` returns an int.
    """
    if ndigits == 0:
        return int(math.floor(value + 0.5))
    factor = 10 ** ndigits
    return math.floor(value * factor + 0.5) / factor


def apply_density(rule: DensityRule, count: float) -> float:
    """Evaluate a linear density ramp, clamped to ``[0, rule.max_points]``."""
    if rule.saturation <= 0:
        raise ValueError("saturation must be positive")
    # Multiply first: 40 * 30 / 100 is exactly 12.0, 40 / 100 * 30 is not.
    return clamp(count * rule.max_points / rule.saturation, 0.0, rule.max_points)


def threshold_hazard(rule: HazardRule, raw_pct: float) -> int:
    """Apply the FTL noise threshold to a raw overlap percentage.

    Strictly greater than the threshold keeps the (rounded) value; exactly
    at the threshold is still noise.
    """
    if raw_pct > rule.noise_threshold_pct:
        return round_half_up(raw_pct)
    return 0


# =============================================================================
# SCORING_MODEL: current production values
# =============================================================================

SCORING_MODEL = ScoringModel(
    version="2.0.0",

    # 100 POIs inside the walk area saturates the density score.
    poi=DensityRule(saturation=100, max_points=30),

    # Retail, health and accommodation: 20 establishments saturate.
    business=DensityRule(saturation=20, max_points=15),

    # Category diversity: 15 distinct categories saturate.
    accessibility=DensityRule(saturation=15, max_points=10),

    amenities=(
        AmenityCapacity(kind="police", capacity_km=10.0),
        AmenityCapacity(kind="hospital", capacity_km=10.0),
        AmenityCapacity(kind="road", capacity_km=5.0),
    ),
    amenity_max_points=25,

    hazard=HazardRule(
        max_points=20,
        noise_threshold_pct=9.0,
        pct_per_point=5.0,
    ),

    composite_max=100,

    score_bands=(
        ScoreBand(80, "Excellent Development Potential"),
        ScoreBand(60, "Good Development Potential"),
        ScoreBand(40, "Moderate Development Potential"),
        ScoreBand(20, "Limited Development Potential"),
        ScoreBand(0, "Poor Development Potential"),
    ),
)


# Validate the caps at import time (ValueError, not assert, so validation is
# never stripped by python -O).  Five sub-score caps must add up to the
# composite maximum or the composite could never reach 100.
_cap_sum = sum(c.max_points for c in SCORING_MODEL.caps)
if abs(_cap_sum - SCORING_MODEL.composite_max) >= 0.001:
    raise ValueError(
        f"Sub-score caps sum to {_cap_sum}, expected {SCORING_MODEL.composite_max}"
    )
