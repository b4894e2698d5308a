"""
Threshold Analyzer - "How fast is too fast?"

Analyzes the speed-over distribution of speed violations:
- Overall histogram and percentiles
- Typical threshold per detection method
- Strict vs lenient areas
- Speed-over per posted limit
"""

from typing import Any, Optional

from api.analytics_models import (
    AreaThreshold,
    LocationThresholds,
    MethodThreshold,
    MethodThresholds,
    OverallThresholds,
    Percentiles,
    RiskBand,
    SpeedBucket,
    SpeedLimitThreshold,
    SpeedLimitThresholds,
    Strictness,
    ThresholdProfile,
    ThresholdRecommendations,
)
from config import AnalyticsConfig
from core.concurrency import gather_bounded
from core.structured_logging import get_logger

from .filters import DetectionMethod, SpatialFilter, compile_filter, method_case_sql
from .statistics import (
    format_number,
    percentages,
    round_half_up,
    weighted_mean,
    weighted_percentiles,
)

logger = get_logger(__name__)

# (label, lower bound inclusive, upper bound exclusive)
SPEED_BUCKETS: tuple[tuple[str, int, Optional[int]], ...] = (
    ("1-4", 1, 5),
    ("5-9", 5, 10),
    ("10-14", 10, 15),
    ("15-19", 15, 20),
    ("20-24", 20, 25),
    ("25-29", 25, 30),
    ("30+", 30, None),
)

# Buckets below the typical ticketing threshold
LOW_SPEED_BUCKETS = ("1-4", "5-9")

PERCENTILE_LEVELS = (0.10, 0.25, 0.50, 0.75, 0.90)

DEFAULT_GENERAL_THRESHOLD = 10

RISK_BANDS = (
    RiskBand(speed_over="1-5", risk="very_low", description="Rarely ticketed"),
    RiskBand(speed_over="6-9", risk="low", description="Uncommon to be ticketed"),
    RiskBand(speed_over="10-14", risk="moderate", description="Within normal enforcement"),
    RiskBand(speed_over="15-19", risk="high", description="Frequently ticketed"),
    RiskBand(speed_over="20+", risk="very_high", description="Almost always ticketed"),
)

SPEED_CONDITIONS = ("speed_over IS NOT NULL", "speed_over > 0")


def strictness_for(avg_speed_over: float) -> Strictness:
    if avg_speed_over < AnalyticsConfig.STRICT_AVG_SPEED_OVER:
        return Strictness.STRICT
    if avg_speed_over < AnalyticsConfig.MODERATE_AVG_SPEED_OVER:
        return Strictness.MODERATE
    return Strictness.LENIENT


def bucket_for(speed_over: float) -> str:
    for label, lower, upper in SPEED_BUCKETS:
        if upper is None or speed_over < upper:
            return label
    return SPEED_BUCKETS[-1][0]


def _round1(value: Any) -> float:
    return round_half_up(float(value), 1) if value is not None else 0.0


class ThresholdAnalyzer:
    """Computes the speed-over threshold profile."""

    def __init__(self, store):
        self.store = store
        self.grid_precision = int(AnalyticsConfig.THRESHOLD_GRID_PRECISION)

    @property
    def table(self) -> str:
        return self.store.table

    async def analyze_thresholds(
        self, spatial_filter: Optional[SpatialFilter] = None
    ) -> ThresholdProfile:
        """Run every threshold sub-query concurrently and assemble the profile."""
        predicate = compile_filter(spatial_filter)
        params = {
            **predicate.bind_params,
            "min_grid_samples": AnalyticsConfig.THRESHOLD_GRID_MIN_SAMPLES,
            "min_limit_samples": AnalyticsConfig.THRESHOLD_SPEED_LIMIT_MIN_SAMPLES,
        }

        value_rows, method_rows, location_rows, limit_rows = await gather_bounded([
            lambda: self._speed_value_counts(predicate, params),
            lambda: self._by_method(predicate, params),
            lambda: self._by_location(predicate, params),
            lambda: self._by_speed_limit(predicate, params),
        ])
        return self.build_profile(value_rows, method_rows, location_rows, limit_rows)

    def build_profile(
        self,
        value_rows: list[dict[str, Any]],
        method_rows: list[dict[str, Any]],
        location_rows: list[dict[str, Any]],
        limit_rows: list[dict[str, Any]],
    ) -> ThresholdProfile:
        """Assemble the profile from the raw sub-query rows."""
        value_counts = [
            (float(r["speed_over"]), int(r["count"]))
            for r in value_rows
            if r.get("speed_over") is not None and int(r["count"]) > 0
        ]

        overall, p10 = self._overall(value_counts)
        general_threshold = (
            int(round_half_up(p10)) if p10 is not None else DEFAULT_GENERAL_THRESHOLD
        )

        profile = ThresholdProfile(
            overall=overall,
            by_method=self._method_thresholds(method_rows),
            by_location=self._location_thresholds(location_rows),
            by_speed_limit=self._speed_limit_thresholds(limit_rows),
            recommendations=ThresholdRecommendations(
                general_threshold=general_threshold,
                safe_buffer=max(AnalyticsConfig.MIN_SAFE_BUFFER, general_threshold - 2),
                risk_levels=list(RISK_BANDS),
            ),
        )

        logger.info(
            "Threshold profile computed",
            context={
                "speed_violations": overall.total_speed_violations,
                "methods": len(profile.by_method.methods),
                "speed_limits": len(profile.by_speed_limit.data),
            },
        )
        return profile

    # ========================================================================
    # ASSEMBLY
    # ========================================================================

    def _overall(
        self, value_counts: list[tuple[float, int]]
    ) -> tuple[OverallThresholds, Optional[float]]:
        total = sum(count for _, count in value_counts)

        bucket_counts = {label: 0 for label, _, _ in SPEED_BUCKETS}
        for value, count in value_counts:
            bucket_counts[bucket_for(value)] += count

        distribution: list[SpeedBucket] = []
        if total > 0:
            counts = [bucket_counts[label] for label, _, _ in SPEED_BUCKETS]
            cumulative_units = 0
            for (label, _, _), count, pct in zip(SPEED_BUCKETS, counts, percentages(counts)):
                # Sum in tenths to stay exact
                cumulative_units += int(round(pct * 10))
                distribution.append(SpeedBucket(
                    bucket=label,
                    count=count,
                    percentage=pct,
                    cumulative_percentage=cumulative_units / 10,
                ))

        quantiles = weighted_percentiles(value_counts, PERCENTILE_LEVELS)
        p10, p25, p50, p75, p90 = quantiles
        average = weighted_mean(value_counts)

        def as_int(value: Optional[float]) -> int:
            return int(round_half_up(value)) if value is not None else 0

        if total > 0:
            under_pct = sum(b.percentage for b in distribution if b.bucket in LOW_SPEED_BUCKETS)
            insight = (
                f"Under {as_int(p10)} mph over is rarely ticketed "
                f"({as_int(under_pct)}% of tickets). "
                f"Most tickets are {as_int(p50)}+ over."
            )
        else:
            insight = "No speed violation data available"

        overall = OverallThresholds(
            insight=insight,
            total_speed_violations=total,
            average_speed_over=_round1(average),
            median_speed_over=_round1(p50),
            percentiles=Percentiles(
                p10=as_int(p10),
                p25=as_int(p25),
                p50=as_int(p50),
                p75=as_int(p75),
                p90=as_int(p90),
            ),
            distribution=distribution,
        )
        return overall, p10

    def _method_thresholds(self, rows: list[dict[str, Any]]) -> MethodThresholds:
        methods = []
        for r in rows:
            if r.get("method") in (None, "", DetectionMethod.UNKNOWN.value):
                continue
            avg = _round1(r.get("avg_speed_over"))
            p10 = r.get("p10_speed_over")
            methods.append(MethodThreshold(
                method=r["method"],
                count=int(r["count"]),
                avg_speed_over=avg,
                median_speed_over=_round1(r.get("median_speed_over")),
                min_typical=int(round_half_up(float(p10))) if p10 is not None else 0,
                strictness=strictness_for(avg),
            ))
        methods.sort(key=lambda m: (-m.count, m.method))

        if methods:
            lowest = min(methods, key=lambda m: (m.avg_speed_over, m.method))
            insight = (
                f"{lowest.method} has lowest avg ({format_number(lowest.avg_speed_over)} over). "
                f"Different methods have different thresholds."
            )
        else:
            insight = "Detection method data not available"
        return MethodThresholds(insight=insight, methods=methods)

    def _location_thresholds(self, rows: list[dict[str, Any]]) -> LocationThresholds:
        areas = []
        for r in rows:
            count = int(r["count"])
            if count < AnalyticsConfig.THRESHOLD_GRID_MIN_SAMPLES:
                continue
            lat = round(float(r["lat"]), self.grid_precision)
            lng = round(float(r["lng"]), self.grid_precision)
            avg = _round1(r.get("avg_speed_over"))
            areas.append(AreaThreshold(
                grid_id=f"{lat:.{self.grid_precision}f}_{lng:.{self.grid_precision}f}",
                lat=lat,
                lng=lng,
                ticket_count=count,
                avg_speed_over=avg,
                min_speed_over=int(r.get("min_speed_over") or 0),
                strictness=strictness_for(avg),
            ))

        top = AnalyticsConfig.THRESHOLD_TOP_AREAS
        strict_areas = sorted(
            (a for a in areas if a.strictness == Strictness.STRICT),
            key=lambda a: (a.avg_speed_over, a.grid_id),
        )[:top]
        lenient_areas = sorted(
            (a for a in areas if a.strictness == Strictness.LENIENT),
            key=lambda a: (-a.avg_speed_over, a.grid_id),
        )[:top]

        if strict_areas:
            lenient_avg = (
                format_number(lenient_areas[0].avg_speed_over) if lenient_areas else "N/A"
            )
            insight = (
                f"Some areas ticket at {format_number(strict_areas[0].avg_speed_over)} over avg, "
                f"while lenient areas average {lenient_avg} over."
            )
        else:
            insight = "Location data not available"
        return LocationThresholds(
            insight=insight, strict_areas=strict_areas, lenient_areas=lenient_areas
        )

    def _speed_limit_thresholds(self, rows: list[dict[str, Any]]) -> SpeedLimitThresholds:
        data = [
            SpeedLimitThreshold(
                posted_limit=int(r["posted_limit"]),
                ticket_count=int(r["count"]),
                avg_speed_over=_round1(r.get("avg_speed_over")),
                median_speed_over=_round1(r.get("median_speed_over")),
            )
            for r in rows
            if r.get("posted_limit") is not None
            and int(r["count"]) >= AnalyticsConfig.THRESHOLD_SPEED_LIMIT_MIN_SAMPLES
        ]
        data.sort(key=lambda d: d.posted_limit)

        if data:
            low, high = data[0], data[-1]
            insight = (
                f"Higher speed zones ({high.posted_limit} mph) see avg "
                f"{format_number(high.avg_speed_over)} over vs "
                f"{format_number(low.avg_speed_over)} over in {low.posted_limit} mph zones."
            )
        else:
            insight = "Speed limit data not available"
        return SpeedLimitThresholds(insight=insight, data=data)

    # ========================================================================
    # SUB-QUERIES
    # ========================================================================

    async def _speed_value_counts(self, predicate, params) -> list[dict[str, Any]]:
        return await self.store.fetch(
            "threshold_speed_values",
            f"""
            SELECT speed_over, COUNT(*) AS count
            FROM {self.table}
            {predicate.where(*SPEED_CONDITIONS)}
            GROUP BY speed_over
            ORDER BY speed_over
            """,
            params,
        )

    async def _by_method(self, predicate, params) -> list[dict[str, Any]]:
        return await self.store.fetch(
            "threshold_by_method",
            f"""
            SELECT
                {method_case_sql()} AS method,
                COUNT(*) AS count,
                AVG(speed_over) AS avg_speed_over,
                PERCENTILE_CONT(0.5) WITHIN GROUP (ORDER BY speed_over) AS median_speed_over,
                PERCENTILE_CONT(0.1) WITHIN GROUP (ORDER BY speed_over) AS p10_speed_over
            FROM {self.table}
            {predicate.where(*SPEED_CONDITIONS, "arrest_type IS NOT NULL")}
            GROUP BY method
            ORDER BY count DESC, method ASC
            """,
            params,
        )

    async def _by_location(self, predicate, params) -> list[dict[str, Any]]:
        precision = self.grid_precision
        return await self.store.fetch(
            "threshold_by_location",
            f"""
            SELECT
                ROUND(latitude::numeric, {precision}) AS lat,
                ROUND(longitude::numeric, {precision}) AS lng,
                COUNT(*) AS count,
                AVG(speed_over) AS avg_speed_over,
                MIN(speed_over) AS min_speed_over
            FROM {self.table}
            {predicate.where(*SPEED_CONDITIONS, "latitude IS NOT NULL", "longitude IS NOT NULL")}
            GROUP BY lat, lng
            HAVING COUNT(*) >= :min_grid_samples
            ORDER BY avg_speed_over ASC, lat ASC, lng ASC
            """,
            params,
        )

    async def _by_speed_limit(self, predicate, params) -> list[dict[str, Any]]:
        return await self.store.fetch(
            "threshold_by_speed_limit",
            f"""
            SELECT
                posted_limit,
                COUNT(*) AS count,
                AVG(speed_over) AS avg_speed_over,
                PERCENTILE_CONT(0.5) WITHIN GROUP (ORDER BY speed_over) AS median_speed_over
            FROM {self.table}
            {predicate.where(*SPEED_CONDITIONS, "posted_limit IS NOT NULL")}
            GROUP BY posted_limit
            HAVING COUNT(*) >= :min_limit_samples
            ORDER BY posted_limit
            """,
            params,
        )
