#!/usr/bin/env python3
"""
Parcel Development Suitability Analyzer

Scores a surveyed land parcel for development suitability from four
location signals:
- what is reachable within a 10-minute walk (POI density, diversity and
  supportive businesses)
- distance to the nearest police station, hospital and main road
- overlap of the walk area with tank full-tank-level (FTL) zones

Requirements:
- Mapbox access token (walking isochrones) in MAPBOX_TOKEN
- SpatiaLite parcel database (see scripts/ingest_layer.py)

Usage:
    python parcel_analyzer.py analyze "Hanamkonda" 123
    python parcel_analyzer.py analyze "Hanamkonda" 123 --json --save
    python parcel_analyzer.py search hana
"""

import os
import sys
import json
import time
import logging
import argparse
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Callable, Iterable
from concurrent.futures import ThreadPoolExecutor

from dotenv import load_dotenv

from analysis_trace import TraceContext, get_trace, set_trace, clear_trace
from analysis_store import SQLiteAnalysisStore, analysis_key
from isochrone_http import (
    ACCEPTED_GEOMETRY_TYPES,
    ConfigurationError,
    ExternalServiceError,
    IsochroneHTTPClient,
)
from scoring_config import (
    SCORING_MODEL,
    ScoringModel,
    apply_density,
    clamp,
    round_half_up,
    threshold_hazard,
)
from spatial_store import (
    FACILITY_KINDS,
    ComputationError,
    ParcelNotFound,
    ParcelSpatialStore,
    POIRow,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ComputationError",
    "ConfigurationError",
    "ExternalServiceError",
    "ParcelNotFound",
    "analyze_parcel",
    "result_to_dict",
]

# =============================================================================
# CONFIGURATION
# =============================================================================

# Walking isochrone parameters
ISO_MINUTES = 10
DENOISE = 1

# Buffer radius used when the isochrone service is unavailable
FALLBACK_RADIUS_M = 1000

# Categories counted as supportive businesses (exact, case-sensitive labels)
SUPPORTIVE_CATEGORIES = ("Retail", "Health And Medical", "Accommodation")

# Worker threads: three facility lookups + POI + hazard queries
MAX_WORKERS = 5


# =============================================================================
# DATA CLASSES
# =============================================================================

class Provenance(Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class ParcelLocation:
    village: str
    survey_number: str
    lat: float
    lng: float
    geometry: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ReachabilityArea:
    """Walk-reachable area: a true isochrone or the fallback buffer."""
    geometry: Dict[str, Any]
    provenance: Provenance

    def __post_init__(self):
        geom_type = self.geometry.get("type") if isinstance(self.geometry, dict) else None
        if geom_type not in ACCEPTED_GEOMETRY_TYPES:
            raise ValueError(f"Reachability area must be a polygon, got {geom_type!r}")
        if not self.geometry.get("coordinates"):
            raise ValueError("Reachability area has no coordinates")

    @property
    def used_fallback(self) -> bool:
        return self.provenance is Provenance.FALLBACK


@dataclass(frozen=True)
class PointOfInterest:
    category: Optional[str]
    lat: float
    lng: float


@dataclass
class CategoryAggregate:
    category: Optional[str]
    count: int
    percent: float
    locations: List[Dict[str, float]] = field(default_factory=list)


@dataclass
class SupportiveBusiness:
    category: str
    count: int
    percent: float   # share of the supportive subset, not of all POIs


@dataclass
class POISummary:
    total: int
    breakdown: List[CategoryAggregate]
    supportive: List[SupportiveBusiness]

    @property
    def distinct_categories(self) -> int:
        return len(self.breakdown)

    @property
    def supportive_total(self) -> int:
        return sum(b.count for b in self.supportive)


@dataclass(frozen=True)
class FacilityProximity:
    kind: str            # "police" | "hospital" | "road"
    distance_m: float
    lat: float
    lng: float

    @property
    def distance_km(self) -> float:
        return self.distance_m / 1000.0


@dataclass
class HazardOverlap:
    raw_percentage: float
    percentage: int                                # after the noise threshold
    tanks_geometry: Optional[Dict[str, Any]] = None


@dataclass
class ScoreBreakdown:
    poi_score: float
    amenity_score: float
    ftl_score: float
    business_score: float
    accessibility_score: float
    development_score: int

    def to_dict(self) -> Dict[str, float]:
        return {
            "poi_score": self.poi_score,
            "amenity_score": self.amenity_score,
            "ftl_score": self.ftl_score,
            "business_score": self.business_score,
            "accessibility_score": self.accessibility_score,
        }


@dataclass
class AnalysisResult:
    parcel: ParcelLocation
    reachability: ReachabilityArea
    pois: POISummary
    police: Optional[FacilityProximity]
    hospital: Optional[FacilityProximity]
    road: Optional[FacilityProximity]
    hazard: HazardOverlap
    scores: ScoreBreakdown
    analysis_date: str
    model_version: str = ""

    @property
    def used_fallback(self) -> bool:
        return self.reachability.used_fallback

    @property
    def development_score(self) -> int:
        return self.scores.development_score


# =============================================================================
# PIPELINE STAGES
# =============================================================================

def lookup_parcel(store, village: str, survey_number: Any) -> ParcelLocation:
    """Resolve the parcel centroid. ParcelNotFound propagates (fatal)."""
    row = store.parcel_location(village, str(survey_number))
    return ParcelLocation(
        village=row.village,
        survey_number=row.survey_number,
        lat=row.lat,
        lng=row.lng,
        geometry=row.geometry,
    )


def resolve_reachability(
    store,
    isochrone: IsochroneHTTPClient,
    parcel: ParcelLocation,
    minutes: int = ISO_MINUTES,
    fallback_radius_m: float = FALLBACK_RADIUS_M,
    denoise: float = DENOISE,
) -> ReachabilityArea:
    """Walking isochrone around the parcel, or a buffer if the service fails.

    Any ExternalServiceError (HTTP error, timeout, wrong geometry type) or
    an empty polygon switches to the buffer.  The routing call is never
    retried.
    """
    try:
        geometry = isochrone.walking_isochrone(
            parcel.lng, parcel.lat, minutes=minutes, denoise=denoise
        )
        return ReachabilityArea(geometry=geometry, provenance=Provenance.PRIMARY)
    except (ExternalServiceError, ValueError) as e:
        logger.warning(
            "Isochrone failed for %s/%s: %s; using %dm buffer fallback",
            parcel.village, parcel.survey_number, e, fallback_radius_m,
        )

    geometry = store.buffer_polygon(parcel.lat, parcel.lng, fallback_radius_m)
    return ReachabilityArea(geometry=geometry, provenance=Provenance.FALLBACK)


def aggregate_pois(
    pois: Iterable[PointOfInterest],
    supportive_categories: Iterable[str] = SUPPORTIVE_CATEGORIES,
) -> POISummary:
    """Group POIs by their raw category label.

    Labels are kept exactly as given (no case folding, None stays None).
    Breakdown is sorted by count descending; ties keep first-seen order.
    """
    by_category: Dict[Optional[str], List[Dict[str, float]]] = {}
    total = 0
    for poi in pois:
        by_category.setdefault(poi.category, []).append({"lat": poi.lat, "lon": poi.lng})
        total += 1

    breakdown = [
        CategoryAggregate(
            category=category,
            count=len(locations),
            percent=round_half_up(len(locations) / total * 100, 2) if total else 0.0,
            locations=locations,
        )
        for category, locations in by_category.items()
    ]
    # sorted() is stable, so equal counts stay in first-encountered order
    breakdown = sorted(breakdown, key=lambda c: c.count, reverse=True)

    supportive_set = set(supportive_categories)
    supportive_items = [c for c in breakdown if c.category in supportive_set]
    supportive_total = sum(c.count for c in supportive_items)
    supportive = [
        SupportiveBusiness(
            category=c.category,
            count=c.count,
            percent=(
                round_half_up(c.count / supportive_total * 100, 2)
                if supportive_total else 0.0
            ),
        )
        for c in supportive_items
    ]
    return POISummary(total=total, breakdown=breakdown, supportive=supportive)


def collect_pois(store, area: ReachabilityArea) -> POISummary:
    rows: List[POIRow] = store.pois_intersecting(area.geometry)
    return aggregate_pois(
        PointOfInterest(category=r.category, lat=r.lat, lng=r.lng) for r in rows
    )


def locate_facility(store, parcel: ParcelLocation, kind: str) -> Optional[FacilityProximity]:
    """Nearest facility of *kind*; None when the store has none."""
    row = store.nearest_feature(parcel.lat, parcel.lng, kind)
    if row is None:
        logger.info("No %s facility found for %s/%s", kind, parcel.village, parcel.survey_number)
        return None
    return FacilityProximity(kind=kind, distance_m=row.distance_m, lat=row.lat, lng=row.lng)


def compute_hazard_overlap(
    store,
    area: ReachabilityArea,
    model: ScoringModel = SCORING_MODEL,
) -> HazardOverlap:
    """Share of the walk area inside tank (FTL) polygons."""
    intersection_m2, area_m2 = store.hazard_overlap(area.geometry)
    raw = (intersection_m2 / area_m2) * 100 if area_m2 > 0 else 0.0
    tanks = store.hazard_features(area.geometry) if intersection_m2 > 0 else None
    return HazardOverlap(
        raw_percentage=raw,
        percentage=threshold_hazard(model.hazard, raw),
        tanks_geometry=tanks,
    )


def compose_score(
    pois: POISummary,
    facilities: Dict[str, Optional[FacilityProximity]],
    hazard: HazardOverlap,
    model: ScoringModel = SCORING_MODEL,
) -> ScoreBreakdown:
    """Combine the four signals into five capped sub-scores and a composite.

    Pure: identical inputs always produce an identical breakdown.  The
    composite is the rounded sum of the unrounded sub-scores; sub-scores
    are reported to one decimal.
    """
    poi = apply_density(model.poi, pois.total)

    amenity_raw = 0.0
    for kind in FACILITY_KINDS:
        facility = facilities.get(kind)
        if facility is None:
            continue
        amenity_raw += max(0.0, model.capacity_for(kind) - facility.distance_km)
    amenity = clamp(amenity_raw, 0.0, model.amenity_max_points)

    rule = model.hazard
    if hazard.percentage == 0:
        ftl = rule.max_points
    else:
        ftl = clamp(rule.max_points - hazard.percentage / rule.pct_per_point, 0.0, rule.max_points)

    business = apply_density(model.business, pois.supportive_total)
    accessibility = apply_density(model.accessibility, pois.distinct_categories)

    composite = round_half_up(poi + amenity + ftl + business + accessibility)
    composite = int(clamp(composite, 0, model.composite_max))

    return ScoreBreakdown(
        poi_score=round_half_up(poi, 1),
        amenity_score=round_half_up(amenity, 1),
        ftl_score=round_half_up(ftl, 1),
        business_score=round_half_up(business, 1),
        accessibility_score=round_half_up(accessibility, 1),
        development_score=composite,
    )


def get_score_band(score: int, model: ScoringModel = SCORING_MODEL) -> str:
    for band in model.score_bands:
        if score >= band.threshold:
            return band.label
    return model.score_bands[-1].label


# =============================================================================
# MAIN ANALYSIS
# =============================================================================

def _timed_stage(stage_name, fn, *args, **kwargs):
    """Run *fn* with timing.  Logs duration and re-raises on failure."""
    trace = get_trace()
    if trace:
        trace.start_stage(stage_name)
    t0 = time.time()
    try:
        result = fn(*args, **kwargs)
        t1 = time.time()
        if trace:
            trace.record_stage(stage_name, t0, t1)
        else:
            logger.info("  [stage] %s OK (%.1fs)", stage_name, t1 - t0)
        return result
    except Exception as exc:
        t1 = time.time()
        if trace:
            trace.record_stage(
                stage_name, t0, t1,
                error_class=type(exc).__name__,
                error_message=str(exc)[:200],
            )
        else:
            logger.warning("  [stage] %s FAILED (%.1fs)", stage_name, t1 - t0)
        raise
    finally:
        if trace:
            trace.end_stage()


def _timed_stage_in_thread(parent_trace, stage_name, fn, *args, **kwargs):
    """Run _timed_stage in a worker thread with trace propagation."""
    set_trace(parent_trace)
    try:
        return _timed_stage(stage_name, fn, *args, **kwargs)
    finally:
        set_trace(None)


def analyze_parcel(
    village: str,
    survey_number: Any,
    store=None,
    isochrone: Optional[IsochroneHTTPClient] = None,
    model: ScoringModel = SCORING_MODEL,
    on_stage: Optional[Callable[[str], None]] = None,
) -> AnalysisResult:
    """Run the full suitability analysis for one parcel.

    The three facility lookups start as soon as the parcel is located; the
    POI and hazard queries start once the walk area is resolved.  Everything
    is joined before scoring.

    Raises ParcelNotFound, ConfigurationError or ComputationError; an
    isochrone failure is absorbed by the buffer fallback.

    on_stage: optional callback(stage_name) for progress reporting.
    """
    def _run_stage(name: str, fn, *args, **kwargs):
        if on_stage:
            on_stage(name)
        return _timed_stage(name, fn, *args, **kwargs)

    eval_start = time.time()

    # Missing credentials are a deployment defect: fail before any work.
    if isochrone is None:
        isochrone = IsochroneHTTPClient()
    if store is None:
        store = ParcelSpatialStore()

    parcel = _run_stage("parcel_lookup", lookup_parcel, store, village, survey_number)

    parent_trace = get_trace()
    if parent_trace:
        parent_trace.model_version = model.version

    facility_futures: Dict[str, Any] = {}
    with ThreadPoolExecutor(max_workers=MAX_WORKERS) as pool:
        for kind in FACILITY_KINDS:
            facility_futures[kind] = pool.submit(
                _timed_stage_in_thread, parent_trace,
                f"nearest_{kind}", locate_facility, store, parcel, kind,
            )

        area = _run_stage(
            "reachability", resolve_reachability, store, isochrone, parcel,
        )
        if parent_trace:
            parent_trace.used_fallback = area.used_fallback

        if on_stage:
            on_stage("analyzing")
        poi_future = pool.submit(
            _timed_stage_in_thread, parent_trace, "pois", collect_pois, store, area,
        )
        hazard_future = pool.submit(
            _timed_stage_in_thread, parent_trace,
            "hazard", compute_hazard_overlap, store, area, model,
        )

        # Any fatal branch error re-raises here, after the pool drains.
        facilities = {kind: f.result() for kind, f in facility_futures.items()}
        pois = poi_future.result()
        hazard = hazard_future.result()

    scores = _run_stage("scoring", compose_score, pois, facilities, hazard, model)

    result = AnalysisResult(
        parcel=parcel,
        reachability=area,
        pois=pois,
        police=facilities.get("police"),
        hospital=facilities.get("hospital"),
        road=facilities.get("road"),
        hazard=hazard,
        scores=scores,
        analysis_date=datetime.now(timezone.utc).isoformat(),
        model_version=model.version,
    )

    logger.info(
        "Analysis complete for %s/%s: %d POIs, score=%d, fallback=%s (%.1fs)",
        parcel.village, parcel.survey_number, pois.total,
        scores.development_score, area.used_fallback, time.time() - eval_start,
    )
    return result


# =============================================================================
# SERIALIZATION
# =============================================================================

def _km(facility: Optional[FacilityProximity]) -> Optional[float]:
    if facility is None:
        return None
    return round_half_up(facility.distance_km, 3)


def _facility_point(facility: Optional[FacilityProximity]) -> Optional[Dict[str, float]]:
    if facility is None:
        return None
    return {"distance_m": facility.distance_m, "lat": facility.lat, "lon": facility.lng}


def result_to_dict(result: AnalysisResult) -> Dict[str, Any]:
    """Stable, JSON-ready output contract consumed by storage and reports."""
    return {
        "village": result.parcel.village,
        "survey_number": result.parcel.survey_number,
        "latitude": result.parcel.lat,
        "longitude": result.parcel.lng,
        "total_pois": result.pois.total,
        "poi_breakdown": [
            {
                "category": c.category,
                "count": c.count,
                "percent": c.percent,
                "locations": list(c.locations),
            }
            for c in result.pois.breakdown
        ],
        "distance_to_police": _km(result.police),
        "distance_to_hospital": _km(result.hospital),
        "distance_to_main_road": _km(result.road),
        "supportive_businesses": [
            {"category": b.category, "count": b.count, "percent": b.percent}
            for b in result.pois.supportive
        ],
        "ftl_zone_percentage": result.hazard.percentage,
        "development_score": result.scores.development_score,
        "score_breakdown": result.scores.to_dict(),
        "used_fallback": result.used_fallback,
        "analysis_date": result.analysis_date,
        "map_data": {
            "isochrone_geometry": result.reachability.geometry,
            "nearest_police": _facility_point(result.police),
            "nearest_hospital": _facility_point(result.hospital),
            "nearest_road": _facility_point(result.road),
            "tanks_geometry": result.hazard.tanks_geometry,
        },
    }


def format_result(result: AnalysisResult) -> str:
    """Format an analysis result as a readable report."""
    lines = []
    s = result.scores

    lines.append("=" * 70)
    lines.append(f"PARCEL: {result.parcel.village}, Survey #{result.parcel.survey_number}")
    lines.append(f"COORDINATES: {result.parcel.lat:.6f}, {result.parcel.lng:.6f}")
    area_kind = (
        f"{FALLBACK_RADIUS_M}m buffer (isochrone unavailable)"
        if result.used_fallback else f"{ISO_MINUTES}-minute walking isochrone"
    )
    lines.append(f"WALK AREA: {area_kind}")
    lines.append("=" * 70)

    lines.append(f"\nPOINTS OF INTEREST: {result.pois.total}")
    for c in result.pois.breakdown[:10]:
        lines.append(f"  - {c.category}: {c.count} ({c.percent}%)")
    if len(result.pois.breakdown) > 10:
        lines.append(f"  ... {len(result.pois.breakdown) - 10} more categories")

    if result.pois.supportive:
        lines.append("\nSUPPORTIVE BUSINESSES:")
        for b in result.pois.supportive:
            lines.append(f"  - {b.category}: {b.count} ({b.percent}%)")

    lines.append("\nNEAREST FACILITIES:")
    for label, facility in (
        ("Police station", result.police),
        ("Hospital", result.hospital),
        ("Main road", result.road),
    ):
        km = _km(facility)
        lines.append(f"  - {label}: {f'{km} km' if km is not None else 'not found'}")

    lines.append(f"\nFTL ZONE OVERLAP: {result.hazard.percentage}%")

    lines.append("\nSCORE BREAKDOWN:")
    lines.append(f"  - POI density:       {s.poi_score}/30")
    lines.append(f"  - Amenity access:    {s.amenity_score}/25")
    lines.append(f"  - FTL safety:        {s.ftl_score}/20")
    lines.append(f"  - Business support:  {s.business_score}/15")
    lines.append(f"  - Accessibility:     {s.accessibility_score}/10")

    lines.append(f"\n{'=' * 70}")
    lines.append(
        f"DEVELOPMENT SCORE: {s.development_score}/100 "
        f"({get_score_band(s.development_score)})"
    )
    lines.append("=" * 70)
    return "\n".join(lines)


# =============================================================================
# CLI
# =============================================================================

def _init_sentry():
    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return False
    import sentry_sdk
    sentry_sdk.init(dsn=dsn, traces_sample_rate=0.0)
    return True


def _cmd_analyze(args) -> int:
    sentry_enabled = _init_sentry()
    if sentry_enabled:
        import sentry_sdk
        sentry_sdk.set_tag("village", args.village)
        sentry_sdk.set_tag("survey_number", str(args.survey_number))

    trace = TraceContext(trace_id=analysis_key(args.village, args.survey_number))
    set_trace(trace)
    try:
        result = analyze_parcel(args.village, args.survey_number)
    except (ParcelNotFound, ConfigurationError, ComputationError) as e:
        if sentry_enabled and not isinstance(e, ParcelNotFound):
            import sentry_sdk
            sentry_sdk.capture_exception(e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        trace.log_summary()
        clear_trace()

    output = result_to_dict(result)
    if args.save:
        SQLiteAnalysisStore().put(analysis_key(args.village, args.survey_number), output)

    if args.json:
        print(json.dumps(output, indent=2))
    else:
        print(format_result(result))
    return 0


def _print_rows(rows: Iterable[Any]) -> None:
    for row in rows:
        print("\t".join(row) if isinstance(row, tuple) else row)


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    parser = argparse.ArgumentParser(
        description="Score a surveyed parcel for development suitability"
    )
    sub = parser.add_subparsers(dest="command")

    p_analyze = sub.add_parser("analyze", help="Analyze one parcel")
    p_analyze.add_argument("village", help="Village name (exact)")
    p_analyze.add_argument("survey_number", help="Survey number")
    p_analyze.add_argument("--json", action="store_true", help="Output JSON instead of a report")
    p_analyze.add_argument("--save", action="store_true", help="Store the result in the analysis DB")

    sub.add_parser("parcels", help="List every village / survey number pair")

    p_surveys = sub.add_parser("surveys", help="List survey numbers of a village")
    p_surveys.add_argument("village")

    p_search = sub.add_parser("search", help="Search villages (or survey numbers)")
    p_search.add_argument("query")
    p_search.add_argument("--prefix", action="store_true", help="Prefix match only")
    p_search.add_argument(
        "--surveys", metavar="VILLAGE", nargs="?", const="",
        help="Search survey numbers instead, optionally within VILLAGE",
    )

    args = parser.parse_args(argv)

    if args.command == "analyze":
        return _cmd_analyze(args)

    if args.command is None:
        parser.print_help()
        return 1

    store = ParcelSpatialStore()
    try:
        if args.command == "parcels":
            _print_rows(store.list_parcels())
        elif args.command == "surveys":
            _print_rows(store.survey_numbers(args.village))
        elif args.command == "search":
            if args.surveys is not None:
                _print_rows(store.search_survey_numbers(args.query, village=args.surveys or None))
            else:
                _print_rows(store.search_villages(args.query, prefix_only=args.prefix))
    except ComputationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
