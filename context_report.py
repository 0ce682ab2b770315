"""
Context report assembly and the top-level report service.

Request lifecycle (ContextReportService.build):

    validate -> clamp radius -> resolve -> report cache check
        hit:  return the cached report object unchanged
        miss: fan out to sources -> metric builders -> category/composite
              scores -> cache write -> return

Validation failures (empty input, unresolvable address) raise
ReportValidationError. Source outages never fail a request; they show
up as warnings and missing categories. Builder or scorer bugs are not
caught here and fail the request.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from bs_trace import TraceContext, clear_trace, get_trace, set_trace
from cancellation import CancelToken, check_cancelled
from context_data import (
    SOURCE_CBS,
    SOURCE_CBS_CRIME,
    SOURCE_LUCHTMEETNET,
    SOURCE_ORDER,
    SOURCE_OVERPASS,
    ContextDataProvider,
    ContextSourceData,
    SourceAttribution,
    unavailable_warning,
)
from location import ResolvedLocation
from metric_builders import (
    WARN_AMENITIES,
    WARN_ENVIRONMENT,
    WARN_SAFETY,
    WARN_SOCIAL,
    ContextMetric,
    build_amenities,
    build_demographics,
    build_environment,
    build_housing,
    build_mobility,
    build_safety,
    build_social,
)
from report_cache import ReportCache, report_cache_key
from scoring_config import SCORING_MODEL, round_half_up
from settings import EnrichmentSettings

logger = logging.getLogger(__name__)

CATEGORY_SOCIAL = "Social"
CATEGORY_SAFETY = "Safety"
CATEGORY_DEMOGRAPHICS = "Demographics"
CATEGORY_HOUSING = "Housing"
CATEGORY_MOBILITY = "Mobility"
CATEGORY_AMENITIES = "Amenities"
CATEGORY_ENVIRONMENT = "Environment"

CATEGORIES = (
    CATEGORY_SOCIAL,
    CATEGORY_SAFETY,
    CATEGORY_DEMOGRAPHICS,
    CATEGORY_HOUSING,
    CATEGORY_MOBILITY,
    CATEGORY_AMENITIES,
    CATEGORY_ENVIRONMENT,
)

DEFAULT_RADIUS_METERS = 1000

# Builder warnings that repeat a provider "Source X unavailable" warning
_WARNING_SOURCE = {
    WARN_SOCIAL: SOURCE_CBS,
    WARN_SAFETY: SOURCE_CBS_CRIME,
    WARN_AMENITIES: SOURCE_OVERPASS,
    WARN_ENVIRONMENT: SOURCE_LUCHTMEETNET,
}


class ReportValidationError(ValueError):
    """The request cannot produce a report (bad input, unknown address)."""

    def __init__(self, message: str, field_name: str = "input"):
        super().__init__(message)
        self.errors: Dict[str, List[str]] = {field_name: [message]}


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class ContextReportRequest:
    input: str
    radius_meters: int = DEFAULT_RADIUS_METERS


@dataclass(frozen=True)
class ContextReport:
    location: ResolvedLocation
    social_metrics: Tuple[ContextMetric, ...]
    safety_metrics: Tuple[ContextMetric, ...]
    demographics_metrics: Tuple[ContextMetric, ...]
    housing_metrics: Tuple[ContextMetric, ...]
    mobility_metrics: Tuple[ContextMetric, ...]
    amenity_metrics: Tuple[ContextMetric, ...]
    environment_metrics: Tuple[ContextMetric, ...]
    composite_score: float
    category_scores: Mapping[str, float]
    sources: Tuple[SourceAttribution, ...]
    warnings: Tuple[str, ...]
    radius_meters: int = DEFAULT_RADIUS_METERS
    scoring_version: str = field(default=SCORING_MODEL.version)

    def metrics_by_category(self) -> Dict[str, Tuple[ContextMetric, ...]]:
        return {
            CATEGORY_SOCIAL: self.social_metrics,
            CATEGORY_SAFETY: self.safety_metrics,
            CATEGORY_DEMOGRAPHICS: self.demographics_metrics,
            CATEGORY_HOUSING: self.housing_metrics,
            CATEGORY_MOBILITY: self.mobility_metrics,
            CATEGORY_AMENITIES: self.amenity_metrics,
            CATEGORY_ENVIRONMENT: self.environment_metrics,
        }


# =============================================================================
# Composite scorer
# =============================================================================

def compute_category_scores(
    metrics_by_category: Mapping[str, Sequence[ContextMetric]],
) -> Dict[str, float]:
    """Mean of each category's non-null scores, one decimal.

    Categories without any scored metric are left out, not zero-filled.
    """
    scores: Dict[str, float] = {}
    for category in CATEGORIES:
        values = [m.score for m in metrics_by_category.get(category, ()) if m.score is not None]
        if values:
            scores[category] = round_half_up(sum(values) / len(values))
    return scores


def compute_composite_score(category_scores: Mapping[str, float]) -> float:
    """Mean of the present category scores; 0 when nothing could be scored."""
    if not category_scores:
        return 0.0
    return round_half_up(sum(category_scores.values()) / len(category_scores))


def build_report(
    location: ResolvedLocation,
    source_data: ContextSourceData,
    radius_meters: int = DEFAULT_RADIUS_METERS,
    extra_warnings: Sequence[str] = (),
) -> ContextReport:
    """Pure fan-in: snapshots -> metrics -> scores -> ContextReport.

    Warning order: provider warnings, then *extra_warnings* (the radius
    clamp note), then builder warnings whose source the provider has not
    already reported.
    """
    social, w_social = build_social(source_data.neighborhood)
    safety, w_safety = build_safety(source_data.crime)
    demographics, w_demo = build_demographics(source_data.neighborhood)
    housing, w_housing = build_housing(source_data.neighborhood)
    mobility, w_mobility = build_mobility(source_data.neighborhood)
    amenity, w_amenity = build_amenities(source_data.amenities, source_data.neighborhood)
    environment, w_env = build_environment(source_data.air_quality)

    metrics_by_category = {
        CATEGORY_SOCIAL: social,
        CATEGORY_SAFETY: safety,
        CATEGORY_DEMOGRAPHICS: demographics,
        CATEGORY_HOUSING: housing,
        CATEGORY_MOBILITY: mobility,
        CATEGORY_AMENITIES: amenity,
        CATEGORY_ENVIRONMENT: environment,
    }
    category_scores = compute_category_scores(metrics_by_category)

    failed = set(source_data.failed_sources)
    builder_warnings = [
        w for w in (w_social + w_safety + w_demo + w_housing + w_mobility + w_amenity + w_env)
        if _WARNING_SOURCE.get(w) not in failed
    ]
    warnings = list(source_data.warnings) + list(extra_warnings) + builder_warnings

    return ContextReport(
        location=location,
        social_metrics=tuple(social),
        safety_metrics=tuple(safety),
        demographics_metrics=tuple(demographics),
        housing_metrics=tuple(housing),
        mobility_metrics=tuple(mobility),
        amenity_metrics=tuple(amenity),
        environment_metrics=tuple(environment),
        composite_score=compute_composite_score(category_scores),
        category_scores=MappingProxyType(category_scores),
        sources=tuple(source_data.sources),
        warnings=tuple(warnings),
        radius_meters=radius_meters,
    )


def clamp_radius(requested: int, min_radius: int, max_radius: int) -> Tuple[int, Optional[str]]:
    """Clamp into [min_radius, max_radius]; second item is the warning, if any."""
    clamped = max(min_radius, min(max_radius, int(requested)))
    if clamped == requested:
        return clamped, None
    return clamped, (
        f"Radius clamped from {requested}m to {clamped}m to respect system limits."
    )


_PROVIDER_WARNINGS = frozenset(unavailable_warning(s) for s in SOURCE_ORDER)


def with_request_warning(report: ContextReport, warning: Optional[str]) -> ContextReport:
    """Copy of *report* with a per-request note placed after the provider warnings.

    The cached report is returned as-is when there is nothing to add.
    """
    if not warning:
        return report
    split = 0
    while split < len(report.warnings) and report.warnings[split] in _PROVIDER_WARNINGS:
        split += 1
    warnings = report.warnings[:split] + (warning,) + report.warnings[split:]
    return replace(report, warnings=warnings)


# =============================================================================
# Service
# =============================================================================

def _timed_stage(stage_name, fn, *args, **kwargs):
    """Run *fn* with timing.  Logs duration and re-raises on failure."""
    trace = get_trace()
    if trace:
        trace.start_stage(stage_name)
    t0 = time.time()
    try:
        result = fn(*args, **kwargs)
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
    t1 = time.time()
    if trace:
        trace.record_stage(stage_name, t0, t1)
    else:
        logger.info("  [stage] %s OK (%.1fs)", stage_name, t1 - t0)
    return result


class ContextReportService:
    def __init__(
        self,
        resolver,
        provider: ContextDataProvider,
        cache: ReportCache,
        settings: Optional[EnrichmentSettings] = None,
    ):
        self.resolver = resolver
        self.provider = provider
        self.cache = cache
        self.settings = settings or EnrichmentSettings()

    def build(
        self,
        request: ContextReportRequest,
        cancel_token: Optional[CancelToken] = None,
    ) -> ContextReport:
        if not request.input or not request.input.strip():
            raise ReportValidationError("Input is required.")

        own_trace = get_trace() is None
        trace = get_trace() or TraceContext(trace_id=uuid.uuid4().hex[:12])
        trace.scoring_version = SCORING_MODEL.version
        if own_trace:
            set_trace(trace)
        try:
            return self._build(request, trace, cancel_token)
        finally:
            if own_trace:
                trace.log_summary()
                clear_trace()

    def _build(
        self,
        request: ContextReportRequest,
        trace: TraceContext,
        cancel_token: Optional[CancelToken],
    ) -> ContextReport:
        radius, clamp_warning = clamp_radius(
            request.radius_meters,
            self.settings.min_radius_meters,
            self.settings.max_radius_meters,
        )
        if clamp_warning:
            logger.info("[report] %s", clamp_warning)

        location = _timed_stage(
            "resolve", self.resolver.resolve, request.input, cancel_token=cancel_token,
        )
        if location is None:
            raise ReportValidationError("Could not resolve input to a supported address.")

        key = report_cache_key(location.latitude, location.longitude, radius)
        cached = self.cache.get(key)
        if cached is not None:
            trace.report_cache_hit = True
            logger.info("[report] cache hit %s", key)
            return with_request_warning(cached, clamp_warning)

        check_cancelled(cancel_token)
        source_data = _timed_stage(
            "fan_out", self.provider.get_source_data, location, radius, cancel_token,
        )
        report = _timed_stage("score", build_report, location, source_data, radius)

        self.cache.set(key, report, self.settings.report_cache_ttl_seconds)
        logger.info(
            "[report] %s composite=%.1f categories=%d warnings=%d",
            location.display_address,
            report.composite_score,
            len(report.category_scores),
            len(report.warnings),
        )
        return with_request_warning(report, clamp_warning)


def build_default_service(
    settings: Optional[EnrichmentSettings] = None,
    cache: Optional[ReportCache] = None,
) -> ContextReportService:
    """Wire the production resolver and source clients from settings."""
    from air_quality import LuchtmeetnetClient
    from amenities import OverpassAmenityClient
    from cbs_client import CbsCrimeStatsClient, CbsNeighborhoodStatsClient
    from location import PdokLocationResolver
    from overpass_http import OverpassHTTPClient

    settings = settings or EnrichmentSettings.from_env()
    provider = ContextDataProvider(
        neighborhood_client=CbsNeighborhoodStatsClient(
            settings.cbs_base_url, settings.cbs_cache_minutes),
        crime_client=CbsCrimeStatsClient(
            settings.cbs_base_url, settings.cbs_cache_minutes),
        amenity_client=OverpassAmenityClient(
            OverpassHTTPClient(settings.overpass_base_url), settings.amenities_cache_minutes),
        air_quality_client=LuchtmeetnetClient(
            settings.luchtmeetnet_base_url, settings.air_cache_minutes),
    )
    resolver = PdokLocationResolver(settings.pdok_base_url, settings.resolver_cache_minutes)
    return ContextReportService(resolver, provider, cache or ReportCache(), settings)


# =============================================================================
# Serialisation
# =============================================================================

def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def _metric_dict(m: ContextMetric) -> Dict[str, Any]:
    return {
        "key": m.key,
        "label": m.label,
        "value": m.value,
        "unit": m.unit,
        "score": m.score,
        "source": m.source,
        "note": m.note,
    }


def report_to_dict(report: ContextReport) -> Dict[str, Any]:
    """JSON-ready dict (timestamps as ISO-8601 strings)."""
    loc = report.location
    return {
        "location": {
            "query": loc.query,
            "display_address": loc.display_address,
            "latitude": loc.latitude,
            "longitude": loc.longitude,
            "rd_x": loc.rd_x,
            "rd_y": loc.rd_y,
            "municipality_code": loc.municipality_code,
            "municipality_name": loc.municipality_name,
            "district_code": loc.district_code,
            "district_name": loc.district_name,
            "neighborhood_code": loc.neighborhood_code,
            "neighborhood_name": loc.neighborhood_name,
            "postal_code": loc.postal_code,
        },
        "radius_meters": report.radius_meters,
        "metrics": {
            category: [_metric_dict(m) for m in metrics]
            for category, metrics in report.metrics_by_category().items()
        },
        "composite_score": report.composite_score,
        "category_scores": dict(report.category_scores),
        "sources": [
            {
                "source": s.source,
                "url": s.url,
                "license": s.license,
                "retrieved_at": _iso(s.retrieved_at),
            }
            for s in report.sources
        ],
        "warnings": list(report.warnings),
        "scoring_version": report.scoring_version,
    }
