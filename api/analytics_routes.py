"""
FastAPI routes for enforcement analytics.

Provides endpoints for:
- Area drill-down
- Corridor risk and recurring hotspots
- Speed-over thresholds and temporal patterns
- Pattern discovery, location profiles and anomalies
"""

import time
from typing import Any, Awaitable, Callable, Optional

from fastapi import APIRouter, Request

from analytics.corridor_analyzer import clamp_limit
from analytics.engine import AnalyticsResult, get_engine
from analytics.filters import (
    Bounds,
    SpatialFilter,
    parse_bounds,
    parse_filter,
    parse_tristate,
)
from api.analytics_models import Pattern
from config import AnalyticsConfig
from core.concurrency import (
    ClientDisconnected,
    ConcurrencyLimitExceeded,
    acquire_slot,
    run_until_disconnected,
)
from core.errors import AnalyticsError, InternalAggregationFailure
from core.structured_logging import get_logger, get_trace_id
from services import AnalyticsResponseBuilder

logger = get_logger(__name__)

# ============================================================================
# ROUTER
# ============================================================================
router = APIRouter(tags=["Enforcement Analytics"])


async def _execute(
    request: Request,
    operation: str,
    compute: Callable[[], Awaitable[Any]],
    context: Optional[dict] = None,
) -> Any:
    """
    Run one analytics computation inside a request slot.

    The computation is cancelled if the client disconnects. Analytics,
    capacity and disconnect errors propagate to the application exception
    handlers; anything else is reported as InternalAggregationFailure.
    """
    start_time = time.time()
    context = dict(context or {})
    context["trace_id"] = get_trace_id()

    logger.info(f"{operation} requested", context=context)

    try:
        async with acquire_slot():
            result = await run_until_disconnected(request, compute())
    except (AnalyticsError, ConcurrencyLimitExceeded, ClientDisconnected) as e:
        logger.warning(f"{operation} failed", context={
            **context,
            "error": str(e),
            "error_type": type(e).__name__,
            "duration_ms": round((time.time() - start_time) * 1000, 2),
        })
        raise
    except Exception as e:
        logger.error(f"{operation} failed unexpectedly", context={
            **context,
            "error": str(e),
            "error_type": type(e).__name__,
            "duration_ms": round((time.time() - start_time) * 1000, 2),
        }, exc_info=True)
        raise InternalAggregationFailure() from e

    logger.info(f"{operation} completed", context={
        **context,
        "duration_ms": round((time.time() - start_time) * 1000, 2),
    })
    return result


# ============================================================================
# ENDPOINT: GET /area-drilldown
# ============================================================================
@router.get("/area-drilldown")
async def area_drilldown(request: Request):
    """
    Detailed analytics for a selected geographic area.

    Query params:
    - bounds: "minLng,minLat,maxLng,maxLat" (required)
    - year, detectionMethod, speedOnly, minSpeedOver, vehicleMake,
      hasAlcohol, hasAccident (optional)
    """
    spatial_filter = parse_filter(request.query_params, require_bounds=True)
    engine = get_engine()

    result: AnalyticsResult = await _execute(
        request,
        "Area drill-down",
        lambda: engine.area_summary(spatial_filter),
        context={"bounds": request.query_params.get("bounds")},
    )
    return AnalyticsResponseBuilder.build(result.data, result.message)


# ============================================================================
# ENDPOINT: GET /route-risk
# ============================================================================
@router.get("/route-risk")
async def route_risk(request: Request):
    """
    Enforcement risk assessment for road corridors.

    Query params:
    - bounds: "minLng,minLat,maxLng,maxLat" (optional; malformed bounds are ignored)
    - limit: Maximum corridors to return (default 20, max 50)
    """
    raw_bounds = request.query_params.get("bounds")
    bounds = parse_bounds(raw_bounds, strict=False)
    limit = clamp_limit(request.query_params.get("limit"))
    spatial_filter = SpatialFilter(bounds=bounds)
    engine = get_engine()

    result: AnalyticsResult = await _execute(
        request,
        "Route risk",
        lambda: engine.route_risk(spatial_filter, limit),
        context={"bounds": raw_bounds, "bounds_applied": bounds is not None, "limit": limit},
    )
    return AnalyticsResponseBuilder.build(
        result.data,
        result.message,
        bounds=raw_bounds if bounds is not None else "all",
        limit=limit,
    )


# ============================================================================
# ENDPOINT: GET /hotspots
# ============================================================================
@router.get("/hotspots")
async def hotspots(request: Request):
    """
    Recurring enforcement locations.

    Query params:
    - bounds: "minLng,minLat,maxLng,maxLat" (optional; malformed bounds are ignored)
    - limit: Maximum hotspots to return (default 50, max 200)
    - minStops: Minimum stops to qualify as a hotspot (default 10)
    """
    raw_bounds = request.query_params.get("bounds")
    bounds = parse_bounds(raw_bounds, strict=False)
    limit = clamp_limit(
        request.query_params.get("limit"),
        default=AnalyticsConfig.HOTSPOT_DEFAULT_LIMIT,
        maximum=AnalyticsConfig.HOTSPOT_MAX_LIMIT,
    )
    min_stops = clamp_limit(
        request.query_params.get("minStops"),
        default=AnalyticsConfig.HOTSPOT_MIN_STOPS,
        maximum=AnalyticsConfig.HOTSPOT_MAX_MIN_STOPS,
    )
    spatial_filter = SpatialFilter(bounds=bounds)
    engine = get_engine()

    result: AnalyticsResult = await _execute(
        request,
        "Hotspots",
        lambda: engine.hotspots(spatial_filter, limit, min_stops),
        context={"bounds": raw_bounds, "limit": limit, "min_stops": min_stops},
    )
    return AnalyticsResponseBuilder.build(
        result.data,
        result.message,
        bounds=raw_bounds if bounds is not None else "all",
        minStopsThreshold=min_stops,
        limit=limit,
    )


# ============================================================================
# ENDPOINT: GET /thresholds
# ============================================================================
@router.get("/thresholds")
async def thresholds(request: Request):
    """
    Speed-over threshold analysis - "How fast is too fast?"

    Accepts the area drill-down filter parameters as optional narrowing.
    """
    spatial_filter = parse_filter(request.query_params)
    engine = get_engine()

    result: AnalyticsResult = await _execute(
        request,
        "Threshold analysis",
        lambda: engine.thresholds(spatial_filter),
        context={"filtered": not spatial_filter.is_empty()},
    )
    return AnalyticsResponseBuilder.build(result.data, result.message)


# ============================================================================
# ENDPOINT: GET /time-patterns
# ============================================================================
@router.get("/time-patterns")
async def time_patterns(request: Request):
    """
    Temporal enforcement patterns: quota curve, weekdays, hours, seasons.

    Accepts the area drill-down filter parameters as optional narrowing.
    """
    spatial_filter = parse_filter(request.query_params)
    engine = get_engine()

    result: AnalyticsResult = await _execute(
        request,
        "Time patterns",
        lambda: engine.time_patterns(spatial_filter),
        context={"filtered": not spatial_filter.is_empty()},
    )
    return AnalyticsResponseBuilder.build(
        result.data, result.message, totalRecords=result.data.total_records
    )


def _within(pattern: Pattern, bounds: Optional[Bounds]) -> Pattern:
    """Keep only the pattern locations inside ``bounds``."""
    if bounds is None:
        return pattern
    locations = [loc for loc in pattern.locations if bounds.contains(loc.lat, loc.lng)]
    return pattern.model_copy(update={"locations": locations})


# ============================================================================
# ENDPOINT: GET /ml/patterns
# ============================================================================
@router.get("/ml/patterns")
async def patterns(request: Request):
    """
    Discovered enforcement patterns.

    Query params:
    - type: time_cluster | method_zone | day_pattern | quota_effect
    - summary: true to omit pattern locations
    - patternId: return a single pattern
    - bounds: "minLng,minLat,maxLng,maxLat" to keep only locations in view
      (optional; malformed bounds are ignored)
    """
    pattern_type = request.query_params.get("type")
    summary_only = parse_tristate("summary", request.query_params.get("summary")) or False
    pattern_id = request.query_params.get("patternId")
    raw_bounds = request.query_params.get("bounds")
    bounds = parse_bounds(raw_bounds, strict=False)
    applied_bounds = raw_bounds if bounds is not None else "all"
    engine = get_engine()

    if pattern_id:
        pattern = await _execute(
            request,
            "Pattern lookup",
            lambda: engine.pattern(pattern_id),
            context={"pattern_id": pattern_id, "bounds": raw_bounds},
        )
        return AnalyticsResponseBuilder.build(
            _within(pattern, bounds),
            exclude={"locations"} if summary_only else None,
            bounds=applied_bounds,
        )

    result: AnalyticsResult = await _execute(
        request,
        "Pattern discovery",
        lambda: engine.patterns(pattern_type),
        context={"type": pattern_type, "summary": summary_only, "bounds": raw_bounds},
    )
    report = result.data
    if bounds is not None:
        report = report.model_copy(
            update={"patterns": [_within(p, bounds) for p in report.patterns]}
        )
    exclude = {"patterns": {"__all__": {"locations"}}} if summary_only else None
    return AnalyticsResponseBuilder.build(
        report, result.message, exclude=exclude, bounds=applied_bounds
    )


# ============================================================================
# ENDPOINT: GET /ml/location/{grid_id}
# ============================================================================
@router.get("/ml/location/{grid_id}")
async def location_profile(grid_id: str, request: Request):
    """Temporal and detection profile of one grid cell ("lat_lng")."""
    engine = get_engine()

    profile = await _execute(
        request,
        "Location profile",
        lambda: engine.location_profile(grid_id),
        context={"grid_id": grid_id},
    )
    return AnalyticsResponseBuilder.build(profile, gridId=profile.location.grid_id)


# ============================================================================
# ENDPOINT: GET /ml/anomalies
# ============================================================================
@router.get("/ml/anomalies")
async def anomalies(request: Request):
    """Statistically significant enforcement anomalies."""
    engine = get_engine()

    result: AnalyticsResult = await _execute(
        request,
        "Anomaly detection",
        engine.anomalies,
    )
    return AnalyticsResponseBuilder.build(result.data, result.message)
