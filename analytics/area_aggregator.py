"""
Area Aggregator.

Builds the drill-down summary of the stops inside a filtered area:
headline numbers, vehicle makes, hour/day patterns, detection methods,
speed statistics, charge types and monthly/yearly distributions.

The eight sub-queries run serially by default so large areas do not contend
for shared memory in the store; a bounded parallel strategy is available
through configuration. The whole pipeline is all-or-nothing and runs under a
single request deadline.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

from api.analytics_models import (
    AreaStats,
    AreaSummary,
    ChargeTypeCount,
    DateRange,
    DayCount,
    HourCount,
    MethodCount,
    MonthCount,
    SpeedStats,
    TimePatterns,
    VehicleCount,
    YearCount,
)
from config import AnalyticsConfig
from core.concurrency import gather_bounded, run_serially
from core.errors import UpstreamTimeout
from core.structured_logging import get_logger

from .filters import SpatialFilter, compile_filter, method_case_sql
from .statistics import percentages, round_half_up

logger = get_logger(__name__)

# EXTRACT(DOW ...) numbering
DAY_NAMES_SUNDAY_FIRST = (
    "Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday",
)

EXECUTION_STRATEGIES = ("serial", "parallel")


def _iso(value: Any) -> str:
    if value is None:
        return ""
    return value.isoformat() if hasattr(value, "isoformat") else str(value)


class AreaAggregator:
    """Summarizes the stops matching a SpatialFilter."""

    def __init__(
        self,
        store,
        strategy: Optional[str] = None,
        max_parallel: Optional[int] = None,
        deadline_seconds: Optional[float] = None,
        row_ceiling: Optional[int] = None,
    ):
        self.store = store
        self.strategy = (strategy or AnalyticsConfig.AREA_EXECUTION_STRATEGY).lower()
        if self.strategy not in EXECUTION_STRATEGIES:
            raise ValueError(f"Unknown area execution strategy: {self.strategy}")
        self.max_parallel = max_parallel or AnalyticsConfig.AREA_MAX_PARALLEL
        self.deadline_seconds = deadline_seconds or AnalyticsConfig.AREA_REQUEST_DEADLINE_SECONDS
        self.row_ceiling = row_ceiling or AnalyticsConfig.AREA_ROW_CEILING
        self.top_vehicle_makes = AnalyticsConfig.AREA_TOP_VEHICLE_MAKES

    @property
    def table(self) -> str:
        return self.store.table

    async def summarize(self, spatial_filter: SpatialFilter) -> AreaSummary:
        """
        Compute the area summary.

        Raises:
            UpstreamTimeout: The request deadline was exceeded.
            AreaTooLarge / DatasetNotReady / InternalAggregationFailure:
                Propagated from the store.
        """
        start_time = time.time()
        try:
            summary = await asyncio.wait_for(
                self._summarize(spatial_filter),
                timeout=self.deadline_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Area summary exceeded request deadline",
                context={
                    "deadline_seconds": self.deadline_seconds,
                    "strategy": self.strategy,
                },
            )
            raise UpstreamTimeout(
                f"Area summary did not complete within {self.deadline_seconds:g}s"
            )

        logger.info(
            f"All area queries completed in {int((time.time() - start_time) * 1000)}ms",
            context={
                "total_stops": summary.summary.total_stops,
                "strategy": self.strategy,
            },
        )
        return summary

    async def _summarize(self, spatial_filter: SpatialFilter) -> AreaSummary:
        predicate = compile_filter(spatial_filter)
        params = predicate.bind_params

        count_rows = await self.store.fetch(
            "area_count",
            f"SELECT COUNT(*) AS total FROM {self.table} {predicate.where()}",
            params,
        )
        total = int(count_rows[0]["total"] or 0) if count_rows else 0
        logger.info(f"Total stops in selected area: {total}")

        if total > self.row_ceiling:
            logger.warning(
                f"Large area with {total} stops - aggregation may exhaust store resources",
                context={"total_stops": total, "row_ceiling": self.row_ceiling},
            )

        if total == 0:
            return AreaSummary()

        speed_step = self._speed_stats if spatial_filter.speed_only else self._no_speed_stats
        steps = [
            ("Summary stats", self._summary_stats),
            ("Vehicle distribution", self._vehicle_distribution),
            ("Time patterns", self._time_patterns),
            ("Detection methods", self._detection_methods),
            ("Speed stats", speed_step),
            ("Charge types", self._charge_types),
            ("Monthly distribution", self._monthly_distribution),
            ("Yearly distribution", self._yearly_distribution),
        ]

        def step(
            index: int, label: str, method: Callable[..., Awaitable[Any]]
        ) -> Callable[[], Awaitable[Any]]:
            async def run() -> Any:
                logger.debug(f"Query {index}/{len(steps)}: {label}")
                return await method(predicate, params)
            return run

        logger.info(f"Starting {len(steps)} {self.strategy} area queries")
        factories = [
            step(index, label, method)
            for index, (label, method) in enumerate(steps, start=1)
        ]
        if self.strategy == "parallel":
            results = await gather_bounded(factories, limit=self.max_parallel)
        else:
            results = await run_serially(factories)

        (
            stats,
            vehicles,
            time_patterns,
            detection_methods,
            speed_stats,
            charge_types,
            monthly,
            yearly,
        ) = results

        return AreaSummary(
            summary=stats,
            vehicles=vehicles,
            time_patterns=time_patterns,
            detection_methods=detection_methods,
            speed_stats=speed_stats,
            charge_types=charge_types,
            monthly_distribution=monthly,
            yearly_distribution=yearly,
        )

    # ========================================================================
    # SUB-QUERIES
    # ========================================================================

    async def _summary_stats(self, predicate, params) -> AreaStats:
        rows = await self.store.fetch(
            "area_summary",
            f"""
            SELECT
                COUNT(*) AS total_stops,
                MIN(stop_date) AS earliest_date,
                MAX(stop_date) AS latest_date
            FROM {self.table}
            {predicate.where()}
            """,
            params,
        )
        top_rows = await self.store.fetch(
            "area_top_location",
            f"""
            SELECT location, COUNT(*) AS count
            FROM {self.table}
            {predicate.where("location IS NOT NULL")}
            GROUP BY location
            ORDER BY count DESC, location ASC
            LIMIT 1
            """,
            params,
        )
        row = rows[0] if rows else {}
        return AreaStats(
            total_stops=int(row.get("total_stops") or 0),
            date_range=DateRange(
                earliest=_iso(row.get("earliest_date")),
                latest=_iso(row.get("latest_date")),
            ),
            top_location=(top_rows[0].get("location") or "") if top_rows else "",
        )

    async def _vehicle_distribution(self, predicate, params) -> list[VehicleCount]:
        rows = await self.store.fetch(
            "area_vehicles",
            f"""
            SELECT vehicle_make AS make, COUNT(*) AS count
            FROM {self.table}
            {predicate.where("vehicle_make IS NOT NULL")}
            GROUP BY vehicle_make
            ORDER BY count DESC, make ASC
            LIMIT {int(self.top_vehicle_makes)}
            """,
            params,
        )
        counts = [int(r["count"]) for r in rows]
        return [
            VehicleCount(make=r["make"], count=count, percentage=pct)
            for r, count, pct in zip(rows, counts, percentages(counts))
        ]

    async def _time_patterns(self, predicate, params) -> TimePatterns:
        hour_rows = await self.store.fetch(
            "area_by_hour",
            f"""
            SELECT EXTRACT(HOUR FROM stop_time)::int AS hour, COUNT(*) AS count
            FROM {self.table}
            {predicate.where("stop_time IS NOT NULL")}
            GROUP BY hour
            ORDER BY hour
            """,
            params,
        )
        day_rows = await self.store.fetch(
            "area_by_day",
            f"""
            SELECT EXTRACT(DOW FROM stop_date)::int AS day, COUNT(*) AS count
            FROM {self.table}
            {predicate.where("stop_date IS NOT NULL")}
            GROUP BY day
            ORDER BY day
            """,
            params,
        )

        by_hour = [0] * 24
        for r in hour_rows:
            hour = int(r["hour"])
            if 0 <= hour < 24:
                by_hour[hour] = int(r["count"])

        by_day = [0] * 7
        for r in day_rows:
            day = int(r["day"])
            if 0 <= day < 7:
                by_day[day] = int(r["count"])

        return TimePatterns(
            by_hour=[HourCount(hour=h, count=c) for h, c in enumerate(by_hour)],
            by_day=[
                DayCount(day=d, day_name=DAY_NAMES_SUNDAY_FIRST[d], count=c)
                for d, c in enumerate(by_day)
            ],
        )

    async def _detection_methods(self, predicate, params) -> list[MethodCount]:
        rows = await self.store.fetch(
            "area_detection_methods",
            f"""
            SELECT {method_case_sql()} AS method, COUNT(*) AS count
            FROM {self.table}
            {predicate.where()}
            GROUP BY method
            ORDER BY count DESC, method ASC
            """,
            params,
        )
        counts = [int(r["count"]) for r in rows]
        return [
            MethodCount(method=r["method"], count=count, percentage=pct)
            for r, count, pct in zip(rows, counts, percentages(counts))
        ]

    async def _speed_stats(self, predicate, params) -> SpeedStats:
        rows = await self.store.fetch(
            "area_speed_stats",
            f"""
            SELECT AVG(speed_over) AS avg_speed_over, MAX(speed_over) AS max_speed_over
            FROM {self.table}
            {predicate.where("speed_over IS NOT NULL")}
            """,
            params,
        )
        row = rows[0] if rows else {}
        avg = row.get("avg_speed_over")
        return SpeedStats(
            avg_speed_over=round_half_up(float(avg), 1) if avg is not None else 0.0,
            max_speed_over=int(row.get("max_speed_over") or 0),
        )

    async def _no_speed_stats(self, predicate, params) -> None:
        return None

    async def _charge_types(self, predicate, params) -> list[ChargeTypeCount]:
        rows = await self.store.fetch(
            "area_charge_types",
            f"""
            SELECT violation_type AS charge_type, COUNT(*) AS count
            FROM {self.table}
            {predicate.where("violation_type IS NOT NULL")}
            GROUP BY charge_type
            ORDER BY count DESC, charge_type ASC
            """,
            params,
        )
        counts = [int(r["count"]) for r in rows]
        return [
            ChargeTypeCount(type=r["charge_type"], count=count, percentage=pct)
            for r, count, pct in zip(rows, counts, percentages(counts))
        ]

    async def _monthly_distribution(self, predicate, params) -> list[MonthCount]:
        rows = await self.store.fetch(
            "area_monthly",
            f"""
            SELECT EXTRACT(MONTH FROM stop_date)::int AS month, COUNT(*) AS count
            FROM {self.table}
            {predicate.where("stop_date IS NOT NULL")}
            GROUP BY month
            ORDER BY month
            """,
            params,
        )
        months = [0] * 12
        for r in rows:
            month = int(r["month"])
            if 1 <= month <= 12:
                months[month - 1] = int(r["count"])
        return [MonthCount(month=i + 1, count=c) for i, c in enumerate(months)]

    async def _yearly_distribution(self, predicate, params) -> list[YearCount]:
        rows = await self.store.fetch(
            "area_yearly",
            f"""
            SELECT EXTRACT(YEAR FROM stop_date)::int AS year, COUNT(*) AS count
            FROM {self.table}
            {predicate.where("stop_date IS NOT NULL")}
            GROUP BY year
            ORDER BY year
            """,
            params,
        )
        return [YearCount(year=int(r["year"]), count=int(r["count"])) for r in rows]
