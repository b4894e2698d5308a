"""
Location Profile Service.

Temporal and detection signature of a single grid cell, with chi-square
tests of whether its hour and day distributions differ from uniform.
"""

import math
from decimal import Decimal
from typing import Any

from api.analytics_models import (
    DetectionProfile,
    GridCell,
    LocationProfile,
    LocationStatistics,
    TemporalSignature,
)
from config import AnalyticsConfig
from core.concurrency import gather_bounded
from core.errors import DatasetNotReady, InvalidFilter, LocationNotFound
from core.structured_logging import get_logger

from .filters import DetectionMethod, method_case_sql
from .pattern_detector import DAY_NAMES_MONDAY_FIRST
from .statistics import chi_square_uniform, round_half_up, shares, top_share
from .threshold_analyzer import strictness_for

logger = get_logger(__name__)

PEAK_DAY_COUNT = 2
WEEKDAYS = range(5)  # Monday..Friday
INSIGHT_CONCENTRATION = 0.3


def parse_grid_id(grid_id: str) -> tuple[float, float]:
    """
    Parse ``"lat_lng"`` (e.g. ``"39.046_-77.120"``).

    Raises:
        InvalidFilter: Malformed id or coordinates out of range.
    """
    parts = (grid_id or "").split("_")
    if len(parts) != 2:
        raise InvalidFilter("Invalid grid ID format. Expected: lat_lng")
    try:
        lat, lng = float(parts[0]), float(parts[1])
    except ValueError:
        raise InvalidFilter("Invalid coordinates in grid ID")
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise InvalidFilter("Invalid coordinates in grid ID")
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        raise InvalidFilter("Grid ID coordinates out of range")
    return lat, lng


def confidence_level_for(pvalue: float) -> str:
    if pvalue < AnalyticsConfig.HIGH_CONFIDENCE_LEVEL:
        return "high"
    if pvalue < AnalyticsConfig.SIGNIFICANCE_LEVEL:
        return "medium"
    return "low"


def _top_indices(counts: list[int], top: int) -> list[int]:
    ranked = sorted(
        (i for i, c in enumerate(counts) if c > 0),
        key=lambda i: (-counts[i], i),
    )
    return ranked[:top]


class LocationProfiler:
    """Builds the profile of one grid cell."""

    def __init__(self, store):
        self.store = store
        self.precision = int(AnalyticsConfig.PATTERN_GRID_PRECISION)

    @property
    def table(self) -> str:
        return self.store.table

    async def profile(self, grid_id: str) -> LocationProfile:
        """
        Raises:
            InvalidFilter: Malformed grid id.
            LocationNotFound: No stops recorded in the cell.
        """
        lat, lng = parse_grid_id(grid_id)
        lat = round(lat, self.precision)
        lng = round(lng, self.precision)
        canonical_id = f"{lat:.{self.precision}f}_{lng:.{self.precision}f}"

        try:
            hour_rows, day_rows, method_rows, speed_rows = await self._load(lat, lng)
        except DatasetNotReady:
            raise LocationNotFound(f"No enforcement data for location {canonical_id}")

        methods = {row["bucket"]: int(row["count"]) for row in method_rows}
        total_stops = sum(methods.values())
        if total_stops == 0:
            raise LocationNotFound(f"No enforcement data for location {canonical_id}")

        hours = [0] * 24
        for row in hour_rows:
            hour = int(row["bucket"])
            if 0 <= hour < 24:
                hours[hour] = int(row["count"])
        days = [0] * 7
        for row in day_rows:
            day = int(row["bucket"])
            if 0 <= day < 7:
                days[day] = int(row["count"])

        temporal = self._temporal_signature(hours, days)
        detection = self._detection_profile(methods, speed_rows[0] if speed_rows else {})

        hour_chi2, hour_pvalue = chi_square_uniform(hours)
        day_chi2, day_pvalue = chi_square_uniform(days)
        statistics = LocationStatistics(
            total_stops=total_stops,
            hour_chi2=round(hour_chi2, 2),
            hour_pvalue=hour_pvalue,
            day_chi2=round(day_chi2, 2),
            day_pvalue=day_pvalue,
            is_significant=hour_pvalue < AnalyticsConfig.SIGNIFICANCE_LEVEL,
            confidence_level=confidence_level_for(hour_pvalue),
        )

        logger.info(
            f"Location profile computed for {canonical_id}",
            context={"total_stops": total_stops, "hour_pvalue": hour_pvalue},
        )

        return LocationProfile(
            location=GridCell(grid_id=canonical_id, lat=lat, lng=lng),
            temporal_signature=temporal,
            detection_profile=detection,
            statistics=statistics,
            generated_insight=self._generated_insight(temporal, detection),
        )

    def _temporal_signature(self, hours: list[int], days: list[int]) -> TemporalSignature:
        peak_hours = _top_indices(hours, AnalyticsConfig.PEAK_HOUR_COUNT)
        peak_days = _top_indices(days, PEAK_DAY_COUNT)
        day_total = sum(days)

        hour_concentration = top_share(hours, AnalyticsConfig.PEAK_HOUR_COUNT)
        if hour_concentration > INSIGHT_CONCENTRATION:
            insight = (
                f"{int(round_half_up(hour_concentration * 100))}% of enforcement "
                f"occurs around peak hours"
            )
        else:
            insight = "Enforcement spread across hours"

        return TemporalSignature(
            hour_distribution=shares(hours),
            day_distribution=shares(days),
            peak_hours=peak_hours,
            peak_days=[DAY_NAMES_MONDAY_FIRST[d] for d in peak_days],
            peak_day_numbers=peak_days,
            hour_concentration=round_half_up(hour_concentration, 2),
            day_concentration=round_half_up(top_share(days, PEAK_DAY_COUNT), 2),
            weekday_ratio=(
                round_half_up(sum(days[d] for d in WEEKDAYS) / day_total, 2) if day_total else 0.0
            ),
            insight=insight,
        )

    def _detection_profile(
        self, methods: dict[str, int], speed_row: dict[str, Any]
    ) -> DetectionProfile:
        primary = min(methods.items(), key=lambda item: (-item[1], item[0]))[0]
        total = sum(methods.values())
        distribution = {
            method: round(count / total, 3)
            for method, count in sorted(methods.items(), key=lambda item: (-item[1], item[0]))
        }

        avg = speed_row.get("avg_speed_over")
        min_speed = speed_row.get("min_speed_over")
        if avg is not None:
            avg_speed_over = round_half_up(float(avg), 1)
            strictness = strictness_for(avg_speed_over).value
        else:
            avg_speed_over = None
            strictness = "unknown"

        return DetectionProfile(
            primary_method=primary,
            method_distribution=distribution,
            avg_speed_over=avg_speed_over,
            min_speed_over=int(min_speed) if min_speed is not None else None,
            strictness_level=strictness,
            insight=f"{primary} detection with {strictness} enforcement",
        )

    def _generated_insight(self, temporal: TemporalSignature, detection: DetectionProfile) -> str:
        parts = []
        if temporal.hour_concentration > INSIGHT_CONCENTRATION and temporal.peak_hours:
            peak = temporal.peak_hours[0]
            peak_range = f"{peak}:00-{(peak + 1) % 24}:00"
            parts.append(
                f"{int(round_half_up(temporal.hour_concentration * 100))}% of stops occur "
                f"around {peak_range} on {'/'.join(temporal.peak_days)}"
            )
        if detection.primary_method != DetectionMethod.UNKNOWN.value:
            parts.append(f"{detection.primary_method} detection zone")
        if detection.strictness_level == "strict" and detection.avg_speed_over is not None:
            parts.append(f"Strict enforcement (avg {int(round_half_up(detection.avg_speed_over))} over)")
        if not parts:
            return "No distinctive enforcement pattern at this location."
        return ". ".join(parts) + "."

    async def _load(self, lat: float, lng: float):
        params = {
            "grid_lat": Decimal(f"{lat:.{self.precision}f}"),
            "grid_lng": Decimal(f"{lng:.{self.precision}f}"),
        }
        where = (
            f"WHERE ROUND(latitude::numeric, {self.precision}) = :grid_lat "
            f"AND ROUND(longitude::numeric, {self.precision}) = :grid_lng"
        )

        def grouped(name: str, bucket_sql: str, condition: str = ""):
            extra = f" AND {condition}" if condition else ""
            return lambda: self.store.fetch(
                name,
                f"""
                SELECT {bucket_sql} AS bucket, COUNT(*) AS count
                FROM {self.table}
                {where}{extra}
                GROUP BY bucket
                """,
                params,
            )

        return await gather_bounded([
            grouped("location_hours", "EXTRACT(HOUR FROM stop_time)::int", "stop_time IS NOT NULL"),
            grouped("location_days", "(EXTRACT(ISODOW FROM stop_date)::int - 1)", "stop_date IS NOT NULL"),
            grouped("location_methods", method_case_sql()),
            lambda: self.store.fetch(
                "location_speed",
                f"""
                SELECT AVG(speed_over) AS avg_speed_over, MIN(speed_over) AS min_speed_over
                FROM {self.table}
                {where} AND speed_over IS NOT NULL AND speed_over > 0
                """,
                params,
            ),
        ])
