"""
Hotspot Analyzer.

Finds recurring enforcement locations: grid cells (lat/lng rounded to
three decimals) with enough stops spread over enough distinct days, plus
the busiest day/hour combinations of the top cells.
"""

from collections import defaultdict
from typing import Any, Optional

from api.analytics_models import (
    DateRange,
    Hotspot,
    HotspotReport,
    HotspotSummary,
    PeakTime,
    RiskLevel,
)
from config import AnalyticsConfig
from core.concurrency import gather_bounded
from core.structured_logging import get_logger

from .corridor_analyzer import peak_times
from .filters import DetectionMethod, SpatialFilter, compile_filter, method_case_sql
from .statistics import round_half_up

logger = get_logger(__name__)


def severity_for(total_stops: int) -> RiskLevel:
    if total_stops > AnalyticsConfig.HOTSPOT_CRITICAL_STOPS:
        return RiskLevel.CRITICAL
    if total_stops > AnalyticsConfig.HOTSPOT_HIGH_STOPS:
        return RiskLevel.HIGH
    return RiskLevel.MODERATE


def _cell_key(lat: Any, lng: Any) -> str:
    precision = AnalyticsConfig.HOTSPOT_PRECISION
    return f"{float(lat):.{precision}f}_{float(lng):.{precision}f}"


def _iso(value: Any) -> str:
    if value is None:
        return ""
    return value.isoformat() if hasattr(value, "isoformat") else str(value)


def _insight(total_stops: int, unique_days: int, peaks: list[PeakTime]) -> str:
    if not peaks:
        return f"{total_stops} stops over {unique_days} days"
    days = list(dict.fromkeys(p.day for p in peaks))
    return f"{total_stops} stops total. Most active: {', '.join(days)} around {peaks[0].hour_label}"


class HotspotAnalyzer:
    """Ranks recurring enforcement locations by stop volume."""

    def __init__(self, store):
        self.store = store
        self.precision = int(AnalyticsConfig.HOTSPOT_PRECISION)

    @property
    def table(self) -> str:
        return self.store.table

    async def find_hotspots(
        self,
        spatial_filter: Optional[SpatialFilter] = None,
        limit: Optional[int] = None,
        min_stops: Optional[int] = None,
    ) -> HotspotReport:
        """
        Compute the hotspot report.

        Args:
            spatial_filter: Optional restriction, usually just a viewport.
            limit: Max hotspots returned (default 50, clamped to 1..200).
            min_stops: Minimum stops for a cell to qualify (default 10).
        """
        limit = limit or AnalyticsConfig.HOTSPOT_DEFAULT_LIMIT
        limit = max(1, min(int(limit), AnalyticsConfig.HOTSPOT_MAX_LIMIT))
        min_stops = max(1, int(min_stops or AnalyticsConfig.HOTSPOT_MIN_STOPS))

        predicate = compile_filter(spatial_filter)
        params = {
            **predicate.bind_params,
            "min_stops": min_stops,
            "min_unique_days": AnalyticsConfig.HOTSPOT_MIN_UNIQUE_DAYS,
        }

        cell_rows, time_rows = await gather_bounded([
            lambda: self._hotspot_cells(predicate, {**params, "limit": limit}),
            lambda: self._time_breakdown(predicate, params),
        ])
        return self.build_report(cell_rows, time_rows)

    def build_report(
        self,
        cell_rows: list[dict[str, Any]],
        time_rows: list[dict[str, Any]],
    ) -> HotspotReport:
        """Assemble the report from the raw sub-query rows."""
        cross_tabs: dict[str, dict[int, dict[int, int]]] = defaultdict(lambda: defaultdict(dict))
        for row in time_rows:
            key = _cell_key(row["lat"], row["lng"])
            cross_tabs[key][int(row["day_num"])][int(row["hour"])] = int(row["count"])

        hotspots = []
        for index, row in enumerate(cell_rows):
            cross_tab = None
            if index < AnalyticsConfig.HOTSPOT_DETAIL_TOP:
                cross_tab = cross_tabs.get(_cell_key(row["lat"], row["lng"]))
            hotspots.append(self._build_hotspot(row, cross_tab))

        summary = self._summary(hotspots)
        logger.info(
            "Hotspot analysis computed",
            context={
                "hotspots": summary.total_hotspots,
                "critical": summary.critical_count,
                "high": summary.high_count,
            },
        )
        return HotspotReport(hotspots=hotspots, summary=summary)

    def _build_hotspot(
        self,
        row: dict[str, Any],
        cross_tab: Optional[dict[int, dict[int, int]]],
    ) -> Hotspot:
        lat = round(float(row["lat"]), self.precision)
        lng = round(float(row["lng"]), self.precision)
        grid_id = _cell_key(lat, lng)
        total_stops = int(row["total_stops"])
        unique_days = int(row["unique_days"])
        avg_speed_over = row.get("avg_speed_over")
        peaks = peak_times(cross_tab) if cross_tab else []

        return Hotspot(
            id=f"hotspot_{grid_id}",
            grid_id=grid_id,
            lat=lat,
            lng=lng,
            total_stops=total_stops,
            unique_days=unique_days,
            frequency_score=round_half_up(total_stops / unique_days, 1) if unique_days else 0.0,
            avg_speed_over=round_half_up(float(avg_speed_over), 1) if avg_speed_over is not None else 0.0,
            dominant_method=row.get("dominant_method") or DetectionMethod.UNKNOWN.value,
            severity=severity_for(total_stops),
            peak_times=peaks,
            date_range=DateRange(earliest=_iso(row.get("first_stop")), latest=_iso(row.get("last_stop"))),
            insight=_insight(total_stops, unique_days, peaks),
        )

    @staticmethod
    def _summary(hotspots: list[Hotspot]) -> HotspotSummary:
        critical = sum(1 for h in hotspots if h.severity == RiskLevel.CRITICAL)
        high = sum(1 for h in hotspots if h.severity == RiskLevel.HIGH)

        # Dominant method weighted by the stops of each hotspot
        method_stops: dict[str, int] = defaultdict(int)
        for h in hotspots:
            method_stops[h.dominant_method] += h.total_stops
        dominant_method = DetectionMethod.UNKNOWN.value
        if method_stops:
            dominant_method = min(method_stops.items(), key=lambda item: (-item[1], item[0]))[0]

        return HotspotSummary(
            total_hotspots=len(hotspots),
            critical_count=critical,
            high_count=high,
            moderate_count=len(hotspots) - critical - high,
            total_stops_in_hotspots=sum(h.total_stops for h in hotspots),
            dominant_method=dominant_method,
            insight=(
                f"Found {len(hotspots)} recurring enforcement locations. "
                f"{critical} critical, {high} high-risk."
            ),
        )

    # ========================================================================
    # SUB-QUERIES
    # ========================================================================

    async def _hotspot_cells(self, predicate, params) -> list[dict[str, Any]]:
        precision = self.precision
        return await self.store.fetch(
            "hotspot_cells",
            f"""
            SELECT
                ROUND(latitude::numeric, {precision}) AS lat,
                ROUND(longitude::numeric, {precision}) AS lng,
                COUNT(*) AS total_stops,
                COUNT(DISTINCT stop_date) AS unique_days,
                AVG(speed_over) AS avg_speed_over,
                MODE() WITHIN GROUP (ORDER BY {method_case_sql()}) AS dominant_method,
                MIN(stop_date) AS first_stop,
                MAX(stop_date) AS last_stop
            FROM {self.table}
            {predicate.where("latitude IS NOT NULL", "longitude IS NOT NULL")}
            GROUP BY lat, lng
            HAVING COUNT(*) >= :min_stops
                AND COUNT(DISTINCT stop_date) >= :min_unique_days
            ORDER BY total_stops DESC, lat ASC, lng ASC
            LIMIT :limit
            """,
            params,
        )

    async def _time_breakdown(self, predicate, params) -> list[dict[str, Any]]:
        precision = self.precision
        # Cells are ranked exactly like hotspot_cells; undated stops only drop out of the cross-tab
        return await self.store.fetch(
            "hotspot_time_breakdown",
            f"""
            WITH filtered AS (
                SELECT
                    ROUND(latitude::numeric, {precision}) AS lat,
                    ROUND(longitude::numeric, {precision}) AS lng,
                    stop_date,
                    stop_time
                FROM {self.table}
                {predicate.where("latitude IS NOT NULL", "longitude IS NOT NULL")}
            ),
            top_cells AS (
                SELECT lat, lng
                FROM filtered
                GROUP BY lat, lng
                HAVING COUNT(*) >= :min_stops
                    AND COUNT(DISTINCT stop_date) >= :min_unique_days
                ORDER BY COUNT(*) DESC, lat ASC, lng ASC
                LIMIT {int(AnalyticsConfig.HOTSPOT_DETAIL_TOP)}
            )
            SELECT
                f.lat,
                f.lng,
                EXTRACT(DOW FROM f.stop_date)::int AS day_num,
                EXTRACT(HOUR FROM f.stop_time)::int AS hour,
                COUNT(*) AS count
            FROM filtered f
            JOIN top_cells tc ON f.lat = tc.lat AND f.lng = tc.lng
            WHERE f.stop_date IS NOT NULL AND f.stop_time IS NOT NULL
            GROUP BY f.lat, f.lng, day_num, hour
            ORDER BY f.lat, f.lng, day_num, hour
            """,
            params,
        )
