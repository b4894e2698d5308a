"""
Time Pattern Analyzer - when is enforcement heaviest?

System-wide temporal profile of the stop records:
- Day of month (end-of-month vs start-of-month quota curve)
- Day of week intensity
- Hourly enforcement windows and rush hours
- Monthly / seasonal rates
- Weekend vs weekday stops per day
"""

import calendar
from typing import Any, Optional

from api.analytics_models import (
    DayOfMonthRate,
    DayOfWeekPattern,
    HourlyPattern,
    HourlyRate,
    MonthlyRate,
    QuotaCurve,
    RiskLevel,
    RushHours,
    RushWindow,
    SeasonalPattern,
    TimePatternReport,
    WeekdayIntensity,
    WeekendComparison,
)
from config import AnalyticsConfig
from core.concurrency import gather_bounded
from core.structured_logging import get_logger

from .corridor_analyzer import DAY_NAMES_SUNDAY_FIRST
from .filters import SpatialFilter, compile_filter
from .statistics import round_half_up

logger = get_logger(__name__)

MONTH_NAMES = tuple(calendar.month_abbr[m] for m in range(1, 13))

# (label, first hour, last hour), both inclusive
MORNING_RUSH = ("7:00-10:00 AM", 7, 10)
AFTERNOON_RUSH = ("3:00-6:00 PM", 15, 18)

WEEKDAY_COUNT = 5
WEEKEND_DAY_COUNT = 2


def _rate(count: float, average: float) -> float:
    return round_half_up(count / average, 2) if average > 0 else 0.0


def _pct(value: float) -> int:
    return int(round_half_up(value * 100))


def _speed(value: Any) -> float:
    return round_half_up(float(value), 1) if value is not None else 0.0


def hour_risk_level(count: int, avg_per_hour: float) -> RiskLevel:
    if count > avg_per_hour * AnalyticsConfig.TIME_PATTERN_HIGH_HOUR_FACTOR:
        return RiskLevel.HIGH
    if count > avg_per_hour * AnalyticsConfig.TIME_PATTERN_MODERATE_HOUR_FACTOR:
        return RiskLevel.MODERATE
    return RiskLevel.LOW


class TimePatternAnalyzer:
    """Temporal enforcement profile over the whole (optionally filtered) dataset."""

    def __init__(self, store):
        self.store = store

    @property
    def table(self) -> str:
        return self.store.table

    async def analyze_time_patterns(
        self, spatial_filter: Optional[SpatialFilter] = None
    ) -> TimePatternReport:
        predicate = compile_filter(spatial_filter)
        params = predicate.bind_params

        day_of_month, day_of_week, hourly, monthly, weekend = await gather_bounded([
            lambda: self._day_of_month(predicate, params),
            lambda: self._day_of_week(predicate, params),
            lambda: self._hourly(predicate, params),
            lambda: self._monthly(predicate, params),
            lambda: self._weekend_vs_weekday(predicate, params),
        ])
        return self.build_report(day_of_month, day_of_week, hourly, monthly, weekend)

    def build_report(
        self,
        day_of_month_rows: list[dict[str, Any]],
        day_of_week_rows: list[dict[str, Any]],
        hourly_rows: list[dict[str, Any]],
        monthly_rows: list[dict[str, Any]],
        weekend_rows: list[dict[str, Any]],
    ) -> TimePatternReport:
        """Assemble the report from the raw sub-query rows."""
        total_records = sum(int(r["count"]) for r in day_of_month_rows)

        report = TimePatternReport(
            total_records=total_records,
            quota_pattern=self._quota_curve(day_of_month_rows, total_records),
            day_of_week=self._day_of_week_pattern(day_of_week_rows),
            hourly_pattern=self._hourly_pattern(hourly_rows),
            seasonal=self._seasonal_pattern(monthly_rows),
            weekend_vs_weekday=self._weekend_comparison(weekend_rows),
        )
        logger.info(
            "Time patterns computed",
            context={
                "total_records": total_records,
                "end_of_month_effect": report.quota_pattern.end_of_month_effect,
            },
        )
        return report

    # ========================================================================
    # SECTIONS
    # ========================================================================

    def _quota_curve(self, rows: list[dict[str, Any]], total: int) -> QuotaCurve:
        avg_per_day = total / 31
        data = [
            DayOfMonthRate(
                day_of_month=int(r["day_of_month"]),
                count=int(r["count"]),
                relative_rate=_rate(int(r["count"]), avg_per_day),
            )
            for r in rows
        ]
        window = AnalyticsConfig.TIME_PATTERN_QUOTA_WINDOW_DAYS
        start = sum(d.count for d in data if d.day_of_month <= window) / window
        end = sum(
            d.count for d in data if d.day_of_month >= AnalyticsConfig.TIME_PATTERN_END_OF_MONTH_START
        ) / window
        effect = _pct((end - start) / start) if start > 0 else 0

        if effect > 0:
            insight = (
                f"End of month (days {AnalyticsConfig.TIME_PATTERN_END_OF_MONTH_START}-31) has "
                f"{effect}% more tickets than start of month (days 1-{window})"
            )
        else:
            insight = "No significant end-of-month quota effect detected"
        return QuotaCurve(
            insight=insight,
            is_significant=abs(effect) > AnalyticsConfig.TIME_PATTERN_QUOTA_SIGNIFICANT_PCT,
            end_of_month_effect=effect,
            data=data,
        )

    def _day_of_week_pattern(self, rows: list[dict[str, Any]]) -> DayOfWeekPattern:
        counts = [(int(r["day_num"]), int(r["count"]), r.get("avg_speed_over")) for r in rows]
        avg_per_day = sum(count for _, count, _ in counts) / 7
        data = [
            WeekdayIntensity(
                day=DAY_NAMES_SUNDAY_FIRST[day],
                day_num=day,
                count=count,
                avg_speed_over=_speed(avg_speed),
                relative_rate=_rate(count, avg_per_day),
            )
            for day, count, avg_speed in counts
        ]
        if not data or avg_per_day <= 0:
            return DayOfWeekPattern(insight="Day-of-week data not available", data=data)

        # First day wins ties
        highest = max(data, key=lambda d: d.count)
        lowest = min(data, key=lambda d: d.count)
        variation = _pct((highest.count - lowest.count) / avg_per_day)
        return DayOfWeekPattern(
            insight=f"{highest.day} has {variation}% more tickets than {lowest.day}",
            highest_day=highest.day,
            lowest_day=lowest.day,
            data=data,
        )

    def _hourly_pattern(self, rows: list[dict[str, Any]]) -> HourlyPattern:
        total = sum(int(r["count"]) for r in rows)
        avg_per_hour = total / 24
        data = []
        for r in rows:
            hour = int(r["hour"])
            count = int(r["count"])
            data.append(HourlyRate(
                hour=hour,
                label=f"{hour:02d}:00",
                count=count,
                avg_speed_over=_speed(r.get("avg_speed_over")),
                risk_level=hour_risk_level(count, avg_per_hour),
            ))

        busiest = sorted(data, key=lambda h: (-h.count, h.hour))
        peak_hours = sorted(h.hour for h in busiest[:AnalyticsConfig.TIME_PATTERN_PEAK_HOURS])

        def rush(window: tuple[str, int, int]) -> RushWindow:
            label, first, last = window
            return RushWindow(
                hours=label,
                total_stops=sum(h.count for h in data if first <= h.hour <= last),
            )

        if peak_hours:
            insight = "Peak enforcement: " + ", ".join(f"{h:02d}:00" for h in peak_hours)
        else:
            insight = "Hourly data not available"
        return HourlyPattern(
            insight=insight,
            peak_hours=peak_hours,
            rush_hour=RushHours(morning=rush(MORNING_RUSH), afternoon=rush(AFTERNOON_RUSH)),
            data=data,
        )

    def _seasonal_pattern(self, rows: list[dict[str, Any]]) -> SeasonalPattern:
        total = sum(int(r["count"]) for r in rows)
        avg_per_month = total / 12
        data = [
            MonthlyRate(
                month=MONTH_NAMES[int(r["month"]) - 1],
                month_num=int(r["month"]),
                count=int(r["count"]),
                relative_rate=_rate(int(r["count"]), avg_per_month),
            )
            for r in rows
        ]
        if not data or total <= 0:
            return SeasonalPattern(insight="Monthly data not available", data=data)

        highest = max(data, key=lambda m: m.count)
        lowest = min(data, key=lambda m: m.count)
        return SeasonalPattern(
            insight=(
                f"{highest.month} has highest enforcement (+{_pct(highest.relative_rate - 1)}%), "
                f"{lowest.month} lowest ({_pct(lowest.relative_rate - 1)}%)"
            ),
            highest_month=highest.month,
            lowest_month=lowest.month,
            data=data,
        )

    def _weekend_comparison(self, rows: list[dict[str, Any]]) -> WeekendComparison:
        weekday_total = sum(int(r["count"]) for r in rows if not r["is_weekend"])
        weekend_total = sum(int(r["count"]) for r in rows if r["is_weekend"])
        weekday_avg = weekday_total / WEEKDAY_COUNT
        weekend_avg = weekend_total / WEEKEND_DAY_COUNT
        difference = _pct((weekend_avg - weekday_avg) / weekday_avg) if weekday_avg > 0 else 0

        if difference < 0:
            insight = f"Weekends have {abs(difference)}% fewer tickets per day than weekdays"
        else:
            insight = f"Weekends have {difference}% more tickets per day than weekdays"
        return WeekendComparison(
            insight=insight,
            weekday_avg_per_day=int(round_half_up(weekday_avg)),
            weekend_avg_per_day=int(round_half_up(weekend_avg)),
            difference=difference,
        )

    # ========================================================================
    # SUB-QUERIES
    # ========================================================================

    async def _day_of_month(self, predicate, params) -> list[dict[str, Any]]:
        return await self.store.fetch(
            "time_day_of_month",
            f"""
            SELECT
                EXTRACT(DAY FROM stop_date)::int AS day_of_month,
                COUNT(*) AS count
            FROM {self.table}
            {predicate.where("stop_date IS NOT NULL")}
            GROUP BY day_of_month
            ORDER BY day_of_month
            """,
            params,
        )

    async def _day_of_week(self, predicate, params) -> list[dict[str, Any]]:
        return await self.store.fetch(
            "time_day_of_week",
            f"""
            SELECT
                EXTRACT(DOW FROM stop_date)::int AS day_num,
                COUNT(*) AS count,
                AVG(speed_over) AS avg_speed_over
            FROM {self.table}
            {predicate.where("stop_date IS NOT NULL")}
            GROUP BY day_num
            ORDER BY day_num
            """,
            params,
        )

    async def _hourly(self, predicate, params) -> list[dict[str, Any]]:
        return await self.store.fetch(
            "time_hourly",
            f"""
            SELECT
                EXTRACT(HOUR FROM stop_time)::int AS hour,
                COUNT(*) AS count,
                AVG(speed_over) AS avg_speed_over
            FROM {self.table}
            {predicate.where("stop_time IS NOT NULL")}
            GROUP BY hour
            ORDER BY hour
            """,
            params,
        )

    async def _monthly(self, predicate, params) -> list[dict[str, Any]]:
        return await self.store.fetch(
            "time_monthly",
            f"""
            SELECT
                EXTRACT(MONTH FROM stop_date)::int AS month,
                COUNT(*) AS count
            FROM {self.table}
            {predicate.where("stop_date IS NOT NULL")}
            GROUP BY month
            ORDER BY month
            """,
            params,
        )

    async def _weekend_vs_weekday(self, predicate, params) -> list[dict[str, Any]]:
        return await self.store.fetch(
            "time_weekend_vs_weekday",
            f"""
            SELECT
                EXTRACT(DOW FROM stop_date) IN (0, 6) AS is_weekend,
                COUNT(*) AS count
            FROM {self.table}
            {predicate.where("stop_date IS NOT NULL")}
            GROUP BY is_weekend
            """,
            params,
        )
