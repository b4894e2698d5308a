"""
Corridor Risk Analyzer.

Groups stops into east-west road corridors (latitude rounded to two
decimals), scores each corridor by enforcement density and finds the hot
and safe time windows of the busiest ones.
"""

from collections import defaultdict
from typing import Any, Optional

from api.analytics_models import (
    Corridor,
    CorridorBounds,
    CorridorReport,
    CorridorSummary,
    PeakTime,
    RiskLevel,
    RiskLevelGuideEntry,
    TimeWindow,
)
from config import AnalyticsConfig
from core.concurrency import gather_bounded
from core.structured_logging import get_logger

from .filters import DetectionMethod, SpatialFilter, compile_filter, method_case_sql
from .statistics import format_number, round_half_up

logger = get_logger(__name__)

DAY_NAMES_SUNDAY_FIRST = (
    "Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday",
)

PEAK_TIME_COUNT = 3


def risk_level_for(stops_per_mile: float) -> RiskLevel:
    """Risk level of a corridor; every threshold is inclusive."""
    if stops_per_mile >= AnalyticsConfig.RISK_CRITICAL_STOPS_PER_MILE:
        return RiskLevel.CRITICAL
    if stops_per_mile >= AnalyticsConfig.RISK_HIGH_STOPS_PER_MILE:
        return RiskLevel.HIGH
    if stops_per_mile >= AnalyticsConfig.RISK_MODERATE_STOPS_PER_MILE:
        return RiskLevel.MODERATE
    return RiskLevel.LOW


def risk_level_guide() -> dict[str, RiskLevelGuideEntry]:
    critical = format_number(AnalyticsConfig.RISK_CRITICAL_STOPS_PER_MILE)
    high = format_number(AnalyticsConfig.RISK_HIGH_STOPS_PER_MILE)
    moderate = format_number(AnalyticsConfig.RISK_MODERATE_STOPS_PER_MILE)
    return {
        RiskLevel.CRITICAL.value: RiskLevelGuideEntry(
            stops_per_mile=f"{critical}+",
            description="Extremely heavy enforcement - avoid if possible",
        ),
        RiskLevel.HIGH.value: RiskLevelGuideEntry(
            stops_per_mile=f"{high}-{critical}",
            description="Heavy enforcement - drive carefully",
        ),
        RiskLevel.MODERATE.value: RiskLevelGuideEntry(
            stops_per_mile=f"{moderate}-{high}",
            description="Normal enforcement levels",
        ),
        RiskLevel.LOW.value: RiskLevelGuideEntry(
            stops_per_mile=f"<{moderate}",
            description="Light enforcement",
        ),
    }


def clamp_limit(
    raw: Optional[str],
    default: int = AnalyticsConfig.CORRIDOR_DEFAULT_LIMIT,
    maximum: int = AnalyticsConfig.CORRIDOR_MAX_LIMIT,
) -> int:
    """Parse an integer query parameter leniently and clamp it to 1..maximum."""
    try:
        limit = int(raw) if raw not in (None, "") else default
    except ValueError:
        limit = default
    return max(1, min(limit, maximum))


def _hour_label(hour: int) -> str:
    return f"{hour:02d}:00"


def _contiguous_runs(flags: list[bool]) -> list[tuple[int, int]]:
    """``(start, end)`` pairs (end exclusive) of consecutive True flags."""
    runs = []
    start = None
    for index, flag in enumerate(flags):
        if flag and start is None:
            start = index
        elif not flag and start is not None:
            runs.append((start, index))
            start = None
    if start is not None:
        runs.append((start, len(flags)))
    return runs


def find_time_windows(
    cross_tab: dict[int, dict[int, int]],
) -> tuple[list[TimeWindow], list[TimeWindow]]:
    """
    Hot and safe windows from a day (0=Sunday) x hour cross-tab.

    Per day with data, ``avg = dayTotal / 24``; hours above
    HOT_HOUR_FACTOR x avg are hot, hours below SAFE_HOUR_FACTOR x avg are safe
    (missing hours count as 0). Contiguous runs collapse into one window; safe
    windows need SAFE_WINDOW_MIN_HOURS hours.

    Returns:
        (hot windows by multiplier desc, safe windows by length desc), each
        truncated to MAX_WINDOWS.
    """
    hot: list[tuple[float, int, int, TimeWindow]] = []
    safe: list[tuple[int, int, int, TimeWindow]] = []

    for day in range(7):
        hours_counts = cross_tab.get(day)
        if not hours_counts:
            continue
        counts = [hours_counts.get(hour, 0) for hour in range(24)]
        day_total = sum(counts)
        if day_total <= 0:
            continue
        avg_per_hour = day_total / 24

        hot_flags = [c > avg_per_hour * AnalyticsConfig.HOT_HOUR_FACTOR for c in counts]
        for start, end in _contiguous_runs(hot_flags):
            multiplier = round_half_up(sum(counts[start:end]) / (end - start) / avg_per_hour, 1)
            window = TimeWindow(
                day=DAY_NAMES_SUNDAY_FIRST[day],
                hours=f"{_hour_label(start)}-{_hour_label(end)}",
                risk_multiplier=multiplier,
            )
            hot.append((-multiplier, day, start, window))

        safe_flags = [c < avg_per_hour * AnalyticsConfig.SAFE_HOUR_FACTOR for c in counts]
        for start, end in _contiguous_runs(safe_flags):
            if end - start < AnalyticsConfig.SAFE_WINDOW_MIN_HOURS:
                continue
            multiplier = round_half_up(sum(counts[start:end]) / (end - start) / avg_per_hour, 1)
            window = TimeWindow(
                day=DAY_NAMES_SUNDAY_FIRST[day],
                hours=f"{_hour_label(start)}-{_hour_label(end)}",
                risk_multiplier=multiplier,
            )
            safe.append((-(end - start), day, start, window))

    hot.sort(key=lambda item: item[:3])
    safe.sort(key=lambda item: item[:3])
    limit = AnalyticsConfig.MAX_WINDOWS
    return [item[3] for item in hot[:limit]], [item[3] for item in safe[:limit]]


def peak_times(cross_tab: dict[int, dict[int, int]]) -> list[PeakTime]:
    cells = [
        (count, day, hour)
        for day, hours_counts in cross_tab.items()
        for hour, count in hours_counts.items()
        if count > 0
    ]
    cells.sort(key=lambda cell: (-cell[0], cell[1], cell[2]))
    return [
        PeakTime(
            day=DAY_NAMES_SUNDAY_FIRST[day],
            hour=hour,
            hour_label=_hour_label(hour),
            count=count,
        )
        for count, day, hour in cells[:PEAK_TIME_COUNT]
    ]


def _lat_key(value: Any) -> str:
    return f"{float(value):.{AnalyticsConfig.CORRIDOR_PRECISION}f}"


class CorridorRiskAnalyzer:
    """Scores road corridors by stops per mile."""

    def __init__(self, store, min_stops: Optional[int] = None):
        self.store = store
        self.min_stops = min_stops or AnalyticsConfig.CORRIDOR_MIN_STOPS
        self.precision = int(AnalyticsConfig.CORRIDOR_PRECISION)

    @property
    def table(self) -> str:
        return self.store.table

    async def analyze_corridors(
        self,
        spatial_filter: Optional[SpatialFilter] = None,
        limit: Optional[int] = None,
    ) -> CorridorReport:
        """
        Compute the corridor report.

        Args:
            spatial_filter: Optional restriction, usually just a viewport.
            limit: Max corridors returned (default 20, clamped to 1..50).
        """
        limit = limit or AnalyticsConfig.CORRIDOR_DEFAULT_LIMIT
        limit = max(1, min(int(limit), AnalyticsConfig.CORRIDOR_MAX_LIMIT))

        predicate = compile_filter(spatial_filter)
        params = {**predicate.bind_params, "min_stops": self.min_stops}

        group_rows, average_rows, window_rows = await gather_bounded([
            lambda: self._corridor_groups(predicate, params),
            lambda: self._system_average(),
            lambda: self._time_window_counts(predicate, params),
        ])
        return self.build_report(group_rows, average_rows, window_rows, limit)

    def build_report(
        self,
        group_rows: list[dict[str, Any]],
        average_rows: list[dict[str, Any]],
        window_rows: list[dict[str, Any]],
        limit: int = AnalyticsConfig.CORRIDOR_DEFAULT_LIMIT,
    ) -> CorridorReport:
        """Assemble the report from the raw sub-query rows."""
        avg_stops = None
        if average_rows:
            avg_stops = average_rows[0].get("avg_stops_per_corridor")
        avg_stops = float(avg_stops) if avg_stops else AnalyticsConfig.FALLBACK_STOPS_PER_CORRIDOR

        cross_tabs: dict[str, dict[int, dict[int, int]]] = defaultdict(lambda: defaultdict(dict))
        for row in window_rows:
            key = _lat_key(row["corridor_lat"])
            cross_tabs[key][int(row["day_num"])][int(row["hour"])] = int(row["count"])

        corridors = []
        for row in group_rows:
            total_stops = int(row["total_stops"])
            if total_stops < self.min_stops:
                continue
            corridors.append(self._build_corridor(row, avg_stops, cross_tabs.get(_lat_key(row["corridor_lat"]))))

        corridors.sort(key=lambda c: (-c.stops_per_mile, -c.total_stops, c.latitude_center))
        corridors = corridors[:limit]

        critical = [c for c in corridors if c.risk_level == RiskLevel.CRITICAL]
        high = [c for c in corridors if c.risk_level == RiskLevel.HIGH]

        logger.info(
            "Corridor analysis computed",
            context={
                "corridors": len(corridors),
                "critical": len(critical),
                "high": len(high),
                "limit": limit,
            },
        )

        return CorridorReport(
            corridors=corridors,
            summary=CorridorSummary(
                total_corridors=len(corridors),
                critical_count=len(critical),
                high_risk_count=len(high),
                insight=self._summary_insight(critical, high),
            ),
            risk_level_guide=risk_level_guide(),
        )

    def _build_corridor(
        self,
        row: dict[str, Any],
        avg_stops: float,
        cross_tab: Optional[dict[int, dict[int, int]]],
    ) -> Corridor:
        total_stops = int(row["total_stops"])
        latitude = round(float(row["corridor_lat"]), self.precision)
        west = float(row["lng_min"])
        east = float(row["lng_max"])

        approx_miles = max(1, int(round_half_up((east - west) * AnalyticsConfig.MILES_PER_DEGREE_LNG)))
        stops_per_mile = round_half_up(total_stops / approx_miles, 1)
        risk_multiplier = round_half_up(total_stops / avg_stops, 1)

        hot_windows: list[TimeWindow] = []
        safe_windows: list[TimeWindow] = []
        peaks: list[PeakTime] = []
        if cross_tab:
            hot_windows, safe_windows = find_time_windows(cross_tab)
            peaks = peak_times(cross_tab)

        dominant_method = row.get("dominant_method") or DetectionMethod.UNKNOWN.value
        avg_speed_over = row.get("avg_speed_over")

        insight = f"{total_stops} stops over ~{approx_miles} miles ({format_number(stops_per_mile)}/mile)."
        if hot_windows:
            insight += f" Avoid {hot_windows[0].day} {hot_windows[0].hours}."
        if dominant_method != DetectionMethod.UNKNOWN.value:
            insight += f" Primarily {dominant_method} detection."

        half_band = 0.5 * 10 ** -self.precision
        return Corridor(
            id=f"corridor_{latitude:.{self.precision}f}",
            latitude_center=latitude,
            bounds=CorridorBounds(
                south=round(latitude - half_band, self.precision + 1),
                north=round(latitude + half_band, self.precision + 1),
                west=west,
                east=east,
            ),
            total_stops=total_stops,
            unique_locations=int(row.get("unique_locations") or 0),
            approx_miles=approx_miles,
            stops_per_mile=stops_per_mile,
            risk_multiplier=risk_multiplier,
            risk_level=risk_level_for(stops_per_mile),
            avg_speed_over=round_half_up(float(avg_speed_over), 1) if avg_speed_over is not None else 0.0,
            dominant_method=dominant_method,
            peak_times=peaks,
            hot_windows=hot_windows,
            safe_windows=safe_windows,
            insight=insight,
        )

    def _summary_insight(self, critical: list[Corridor], high: list[Corridor]) -> str:
        if critical:
            return (
                f"{len(critical)} critical corridors with "
                f"{format_number(AnalyticsConfig.RISK_CRITICAL_STOPS_PER_MILE)}+ stops/mile. "
                f"Top: {format_number(critical[0].stops_per_mile)}/mile."
            )
        if high:
            return (
                f"{len(high)} high-risk corridors with "
                f"{format_number(AnalyticsConfig.RISK_HIGH_STOPS_PER_MILE)}+ stops/mile."
            )
        return "No critical enforcement corridors in this area."

    # ========================================================================
    # SUB-QUERIES
    # ========================================================================

    async def _corridor_groups(self, predicate, params) -> list[dict[str, Any]]:
        return await self.store.fetch(
            "corridor_groups",
            f"""
            SELECT
                ROUND(latitude::numeric, {self.precision}) AS corridor_lat,
                MIN(longitude) AS lng_min,
                MAX(longitude) AS lng_max,
                COUNT(*) AS total_stops,
                COUNT(DISTINCT ROUND(longitude::numeric, 3)) AS unique_locations,
                AVG(speed_over) AS avg_speed_over,
                MODE() WITHIN GROUP (ORDER BY {method_case_sql()}) AS dominant_method
            FROM {self.table}
            {predicate.where("latitude IS NOT NULL", "longitude IS NOT NULL")}
            GROUP BY corridor_lat
            HAVING COUNT(*) >= :min_stops
            ORDER BY total_stops DESC, corridor_lat ASC
            """,
            params,
        )

    async def _system_average(self) -> list[dict[str, Any]]:
        return await self.store.fetch(
            "corridor_system_average",
            f"""
            SELECT
                COUNT(*)::float
                    / NULLIF(COUNT(DISTINCT ROUND(latitude::numeric, {self.precision})), 0)
                    AS avg_stops_per_corridor
            FROM {self.table}
            WHERE latitude IS NOT NULL
            """,
        )

    async def _time_window_counts(self, predicate, params) -> list[dict[str, Any]]:
        where = predicate.where(
            "latitude IS NOT NULL",
            "longitude IS NOT NULL",
            "stop_date IS NOT NULL",
            "stop_time IS NOT NULL",
        )
        return await self.store.fetch(
            "corridor_time_windows",
            f"""
            WITH filtered AS (
                SELECT
                    ROUND(latitude::numeric, {self.precision}) AS corridor_lat,
                    stop_date,
                    stop_time
                FROM {self.table}
                {where}
            ),
            top_corridors AS (
                SELECT corridor_lat
                FROM filtered
                GROUP BY corridor_lat
                HAVING COUNT(*) >= :min_stops
                ORDER BY COUNT(*) DESC, corridor_lat ASC
                LIMIT {int(AnalyticsConfig.CORRIDOR_TIME_WINDOW_TOP)}
            )
            SELECT
                f.corridor_lat,
                EXTRACT(DOW FROM f.stop_date)::int AS day_num,
                EXTRACT(HOUR FROM f.stop_time)::int AS hour,
                COUNT(*) AS count
            FROM filtered f
            JOIN top_corridors tc ON f.corridor_lat = tc.corridor_lat
            GROUP BY f.corridor_lat, day_num, hour
            ORDER BY f.corridor_lat, day_num, hour
            """,
            params,
        )
