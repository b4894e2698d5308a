"""
Pattern Discovery Engine for enforcement data.

Detects statistically supported enforcement patterns across grid cells
(lat/lng rounded to 3 decimals, roughly 100 m):
- Time clusters (cells whose stops concentrate in a few hours)
- Method zones (cells dominated by one detection method)
- Day patterns (cells enforced mostly on one day of the week)
- Quota effect (more stops per day at the end of the month)
"""

import calendar
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Optional

from api.analytics_models import (
    GridCell,
    Pattern,
    PatternReport,
    PatternSummary,
    PatternType,
)
from config import AnalyticsConfig
from core.concurrency import gather_bounded
from core.errors import InvalidFilter, PatternNotFound
from core.structured_logging import get_logger

from .filters import DetectionMethod, method_case_sql
from .statistics import chi_square_uniform, round_half_up, top_share, welch_t_test

logger = get_logger(__name__)

# ISO numbering, 0 = Monday
DAY_NAMES_MONDAY_FIRST = (
    "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday",
)


def grid_id_for(lat: float, lng: float) -> str:
    return f"{lat:.3f}_{lng:.3f}"


@dataclass
class CellProfile:
    """Aggregated counts of one grid cell."""

    lat: float
    lng: float
    hours: list[int] = field(default_factory=lambda: [0] * 24)
    days: list[int] = field(default_factory=lambda: [0] * 7)
    methods: dict[str, int] = field(default_factory=dict)

    @property
    def grid_id(self) -> str:
        return grid_id_for(self.lat, self.lng)

    @property
    def total(self) -> int:
        return sum(self.methods.values())

    def peak_hour(self) -> int:
        return max(range(24), key=lambda h: (self.hours[h], -h))

    def peak_day(self) -> int:
        return max(range(7), key=lambda d: (self.days[d], -d))

    def primary_method(self) -> Optional[str]:
        if not self.methods:
            return None
        return min(self.methods.items(), key=lambda item: (-item[1], item[0]))[0]


def _cell_key(row: dict[str, Any]) -> tuple[float, float]:
    return round(float(row["lat"]), 3), round(float(row["lng"]), 3)


def sample_factor(samples: int) -> float:
    return min(1.0, samples / AnalyticsConfig.CONFIDENCE_SAMPLE_SATURATION)


def _pvalue(value: float) -> float:
    return float(f"{value:.3g}")


def confidence_for(strength: float, samples: int) -> float:
    """Strength scaled by sample size, clipped to [0, 1]."""
    return round(max(0.0, min(1.0, strength * sample_factor(samples))), 3)


class PatternDetector:
    """Discovers enforcement patterns in the stop-record store."""

    def __init__(self, store):
        self.store = store
        self.precision = int(AnalyticsConfig.PATTERN_GRID_PRECISION)
        self.min_cell_stops = AnalyticsConfig.PATTERN_MIN_CELL_STOPS
        self.min_locations = AnalyticsConfig.PATTERN_MIN_LOCATIONS
        self.min_samples = AnalyticsConfig.PATTERN_MIN_SAMPLES

    @property
    def table(self) -> str:
        return self.store.table

    async def discover_patterns(self, pattern_type: Optional[str] = None) -> PatternReport:
        """
        Run every detector and return the patterns sorted by confidence.

        Args:
            pattern_type: Only return patterns of this type. The summary
                always describes the full discovery.

        Raises:
            InvalidFilter: Unknown pattern type.
        """
        selected_type = self._parse_type(pattern_type)

        cells, system_methods, daily_counts = await self._load()

        patterns: list[Pattern] = []
        patterns.extend(self.detect_time_clusters(cells))
        patterns.extend(self.detect_method_zones(cells, system_methods))
        patterns.extend(self.detect_day_patterns(cells))

        quota_pattern, quota_ratio = self.detect_quota_effect(daily_counts)
        if quota_pattern is not None:
            patterns.append(quota_pattern)

        patterns.sort(key=lambda p: (-p.confidence, p.id))

        pattern_types: dict[str, int] = defaultdict(int)
        for p in patterns:
            pattern_types[p.pattern_type.value] += 1

        summary = PatternSummary(
            total_patterns=len(patterns),
            pattern_types=dict(sorted(pattern_types.items())),
            locations_analyzed=len(cells),
            quota_effect_detected=quota_pattern is not None,
            quota_ratio=quota_ratio,
        )

        logger.info(
            f"Pattern discovery found {len(patterns)} patterns",
            context={
                "locations_analyzed": len(cells),
                "pattern_types": summary.pattern_types,
            },
        )

        if selected_type is not None:
            patterns = [p for p in patterns if p.pattern_type == selected_type]
        return PatternReport(patterns=patterns, summary=summary)

    async def get_pattern(self, pattern_id: str) -> Pattern:
        """Look up one discovered pattern by id."""
        report = await self.discover_patterns()
        for pattern in report.patterns:
            if pattern.id == pattern_id:
                return pattern
        raise PatternNotFound(f"Pattern {pattern_id} not found")

    @staticmethod
    def _parse_type(pattern_type: Optional[str]) -> Optional[PatternType]:
        if pattern_type is None or pattern_type.strip() in ("", "all"):
            return None
        try:
            return PatternType(pattern_type.strip())
        except ValueError:
            raise InvalidFilter(f"Unknown pattern type: {pattern_type}")

    # ========================================================================
    # DETECTORS
    # ========================================================================

    def detect_time_clusters(self, cells: list[CellProfile]) -> list[Pattern]:
        """
        Group cells whose top hours carry most of their stops by peak hour.

        A cell only counts when its hourly spread also departs from uniform
        under a chi-square test at the configured significance level.
        """
        groups: dict[int, list[tuple[CellProfile, float, float]]] = defaultdict(list)
        for cell in cells:
            if sum(cell.hours) == 0:
                continue
            concentration = top_share(cell.hours, AnalyticsConfig.PEAK_HOUR_COUNT)
            if concentration < AnalyticsConfig.HOUR_CONCENTRATION_THRESHOLD:
                continue
            _, pvalue = chi_square_uniform(cell.hours)
            if pvalue < AnalyticsConfig.SIGNIFICANCE_LEVEL:
                groups[cell.peak_hour()].append((cell, concentration, pvalue))

        patterns = []
        for hour, members in sorted(groups.items()):
            samples = sum(sum(cell.hours) for cell, _, _ in members)
            if not self._is_supported(len(members), samples):
                continue
            avg_concentration = sum(c for _, c, _ in members) / len(members)
            pct = int(round_half_up(avg_concentration * 100))
            patterns.append(Pattern(
                id=f"time_cluster_h{hour:02d}",
                pattern_type=PatternType.TIME_CLUSTER,
                name=f"{hour:02d}:00 enforcement cluster",
                description=(
                    f"{len(members)} locations concentrate {pct}% of their stops "
                    f"in {AnalyticsConfig.PEAK_HOUR_COUNT} hours, peaking at {hour:02d}:00"
                ),
                location_count=len(members),
                locations=self._locations(cell for cell, _, _ in members),
                confidence=confidence_for(avg_concentration, samples),
                statistics={
                    "peakHour": hour,
                    "avgConcentration": round(avg_concentration, 3),
                    "maxPValue": _pvalue(max(p for _, _, p in members)),
                    "totalStops": samples,
                },
                insight=(
                    f"Expect heavier enforcement around {hour:02d}:00-{(hour + 1) % 24:02d}:00 "
                    f"at these {len(members)} locations."
                ),
            ))
        return patterns

    def detect_method_zones(
        self, cells: list[CellProfile], system_methods: dict[str, int]
    ) -> list[Pattern]:
        """Group cells where one detection method dominates well above its system share."""
        system_total = sum(system_methods.values())
        if system_total == 0:
            return []
        system_share = {m: c / system_total for m, c in system_methods.items()}

        groups: dict[str, list[tuple[CellProfile, float]]] = defaultdict(list)
        for cell in cells:
            method = cell.primary_method()
            if method is None or method == DetectionMethod.UNKNOWN.value or cell.total == 0:
                continue
            share = cell.methods[method] / cell.total
            baseline = system_share.get(method, 0.0)
            if (
                share >= AnalyticsConfig.METHOD_ZONE_MIN_SHARE
                and share >= AnalyticsConfig.METHOD_ZONE_LIFT * baseline
            ):
                groups[method].append((cell, share))

        patterns = []
        for method, members in sorted(groups.items()):
            samples = sum(cell.total for cell, _ in members)
            if not self._is_supported(len(members), samples):
                continue
            avg_share = sum(s for _, s in members) / len(members)
            baseline = system_share.get(method, 0.0)
            pct = int(round_half_up(avg_share * 100))
            patterns.append(Pattern(
                id=f"method_zone_{method}",
                pattern_type=PatternType.METHOD_ZONE,
                name=f"{method.capitalize()} zone",
                description=(
                    f"{len(members)} locations where {method} accounts for {pct}% of stops "
                    f"(system-wide {int(round_half_up(baseline * 100))}%)"
                ),
                location_count=len(members),
                locations=self._locations(cell for cell, _ in members),
                confidence=confidence_for(avg_share, samples),
                statistics={
                    "method": method,
                    "avgShare": round(avg_share, 3),
                    "systemShare": round(baseline, 3),
                    "lift": round(avg_share / baseline, 2) if baseline > 0 else None,
                    "totalStops": samples,
                },
                insight=f"Expect {method} detection at these {len(members)} locations.",
            ))
        return patterns

    def detect_day_patterns(self, cells: list[CellProfile]) -> list[Pattern]:
        """Group cells enforced mostly on one day of the week by that day."""
        groups: dict[int, list[tuple[CellProfile, float, float]]] = defaultdict(list)
        for cell in cells:
            total = sum(cell.days)
            if total == 0:
                continue
            peak = cell.peak_day()
            ratio = (cell.days[peak] / total) / (1 / 7)
            if ratio < AnalyticsConfig.DAY_RATIO_THRESHOLD:
                continue
            _, pvalue = chi_square_uniform(cell.days)
            if pvalue < AnalyticsConfig.SIGNIFICANCE_LEVEL:
                groups[peak].append((cell, ratio, pvalue))

        patterns = []
        for day, members in sorted(groups.items()):
            samples = sum(sum(cell.days) for cell, _, _ in members)
            if not self._is_supported(len(members), samples):
                continue
            avg_ratio = sum(r for _, r, _ in members) / len(members)
            day_name = DAY_NAMES_MONDAY_FIRST[day]
            patterns.append(Pattern(
                id=f"day_pattern_{day_name.lower()}",
                pattern_type=PatternType.DAY_PATTERN,
                name=f"{day_name} enforcement",
                description=(
                    f"{len(members)} locations see {avg_ratio:.1f}x their expected "
                    f"stops on {day_name}"
                ),
                location_count=len(members),
                locations=self._locations(cell for cell, _, _ in members),
                # Peak-day share: ratio / 7
                confidence=confidence_for(avg_ratio / 7, samples),
                statistics={
                    "peakDay": day_name,
                    "peakDayNumber": day,
                    "avgDayRatio": round(avg_ratio, 2),
                    "maxPValue": _pvalue(max(p for _, _, p in members)),
                    "totalStops": samples,
                },
                insight=f"Enforcement at these {len(members)} locations peaks on {day_name}s.",
            ))
        return patterns

    def detect_quota_effect(
        self, daily_counts: list[tuple[Any, int]]
    ) -> tuple[Optional[Pattern], Optional[float]]:
        """
        Compare stops per day in the last days of each month with mid-month.

        Returns:
            (pattern or None, month-end / mid-month ratio or None when either
            group has too few dates)
        """
        boundary: list[int] = []
        mid_month: list[int] = []
        for stop_date, count in daily_counts:
            days_in_month = calendar.monthrange(stop_date.year, stop_date.month)[1]
            first_boundary_day = days_in_month - AnalyticsConfig.QUOTA_BOUNDARY_DAYS + 1
            if stop_date.day >= first_boundary_day:
                boundary.append(count)
            elif stop_date.day >= AnalyticsConfig.QUOTA_MID_START_DAY:
                mid_month.append(count)

        min_dates = AnalyticsConfig.QUOTA_MIN_DATES
        if len(boundary) < min_dates or len(mid_month) < min_dates:
            return None, None

        boundary_avg = sum(boundary) / len(boundary)
        mid_avg = sum(mid_month) / len(mid_month)
        if mid_avg <= 0:
            return None, None
        ratio = boundary_avg / mid_avg
        t_statistic, pvalue = welch_t_test(boundary, mid_month)
        rounded_ratio = round(ratio, 2)

        if ratio < AnalyticsConfig.QUOTA_RATIO_THRESHOLD or pvalue >= AnalyticsConfig.SIGNIFICANCE_LEVEL:
            return None, rounded_ratio

        samples = sum(boundary) + sum(mid_month)
        pct = int(round_half_up((ratio - 1) * 100))
        pattern = Pattern(
            id="quota_effect_month_end",
            pattern_type=PatternType.QUOTA_EFFECT,
            name="Month-end quota effect",
            description=(
                f"{pct}% more stops per day in the last "
                f"{AnalyticsConfig.QUOTA_BOUNDARY_DAYS} days of the month than mid-month"
            ),
            location_count=0,
            locations=[],
            confidence=confidence_for(1.0 - pvalue, samples),
            statistics={
                "monthEndDailyAvg": round(boundary_avg, 1),
                "midMonthDailyAvg": round(mid_avg, 1),
                "ratio": rounded_ratio,
                "tStatistic": round(t_statistic, 3),
                "pValue": pvalue,
                "monthEndDates": len(boundary),
                "midMonthDates": len(mid_month),
            },
            insight=(
                f"Enforcement rises {pct}% at month end. "
                f"Drive carefully in the last {AnalyticsConfig.QUOTA_BOUNDARY_DAYS} days of the month."
            ),
        )
        return pattern, rounded_ratio

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _is_supported(self, location_count: int, samples: int) -> bool:
        return location_count >= self.min_locations and samples >= self.min_samples

    def _locations(self, cells) -> list[GridCell]:
        ordered = sorted(cells, key=lambda c: (-c.total, c.grid_id))
        return [
            GridCell(grid_id=cell.grid_id, lat=cell.lat, lng=cell.lng)
            for cell in ordered[: AnalyticsConfig.PATTERN_MAX_LOCATIONS]
        ]

    async def _load(
        self,
    ) -> tuple[list[CellProfile], dict[str, int], list[tuple[Any, int]]]:
        hour_rows, day_rows, method_rows, system_rows, daily_rows = await gather_bounded([
            lambda: self._fetch_cells("pattern_cell_hours", "EXTRACT(HOUR FROM stop_time)::int", "stop_time IS NOT NULL"),
            lambda: self._fetch_cells("pattern_cell_days", "(EXTRACT(ISODOW FROM stop_date)::int - 1)", "stop_date IS NOT NULL"),
            lambda: self._fetch_cells("pattern_cell_methods", method_case_sql(), None),
            lambda: self.store.fetch(
                "pattern_system_methods",
                f"SELECT {method_case_sql()} AS bucket, COUNT(*) AS count FROM {self.table} GROUP BY bucket",
            ),
            lambda: self.store.fetch(
                "pattern_daily_counts",
                f"""
                SELECT stop_date, COUNT(*) AS count
                FROM {self.table}
                WHERE stop_date IS NOT NULL
                GROUP BY stop_date
                ORDER BY stop_date
                """,
            ),
        ])

        cells: dict[tuple[float, float], CellProfile] = {}

        def cell_for(row: dict[str, Any]) -> CellProfile:
            key = _cell_key(row)
            if key not in cells:
                cells[key] = CellProfile(lat=key[0], lng=key[1])
            return cells[key]

        for row in method_rows:
            cell_for(row).methods[row["bucket"]] = int(row["count"])
        for row in hour_rows:
            hour = int(row["bucket"])
            if 0 <= hour < 24:
                cell_for(row).hours[hour] = int(row["count"])
        for row in day_rows:
            day = int(row["bucket"])
            if 0 <= day < 7:
                cell_for(row).days[day] = int(row["count"])

        eligible = sorted(
            (cell for cell in cells.values() if cell.total >= self.min_cell_stops),
            key=lambda c: c.grid_id,
        )
        system_methods = {row["bucket"]: int(row["count"]) for row in system_rows}
        daily_counts = [(row["stop_date"], int(row["count"])) for row in daily_rows]
        return eligible, system_methods, daily_counts

    async def _fetch_cells(
        self, name: str, bucket_sql: str, condition: Optional[str]
    ) -> list[dict[str, Any]]:
        """Per-cell counts of ``bucket_sql`` for cells with enough stops."""
        precision = self.precision
        extra = f"AND {condition}" if condition else ""
        return await self.store.fetch(
            name,
            f"""
            WITH cells AS (
                SELECT
                    ROUND(latitude::numeric, {precision}) AS lat,
                    ROUND(longitude::numeric, {precision}) AS lng,
                    stop_date,
                    stop_time,
                    arrest_type
                FROM {self.table}
                WHERE latitude IS NOT NULL AND longitude IS NOT NULL
            ),
            eligible AS (
                SELECT lat, lng
                FROM cells
                GROUP BY lat, lng
                HAVING COUNT(*) >= :min_cell_stops
            )
            SELECT c.lat, c.lng, {bucket_sql} AS bucket, COUNT(*) AS count
            FROM cells c
            JOIN eligible e ON c.lat = e.lat AND c.lng = e.lng
            WHERE TRUE {extra}
            GROUP BY c.lat, c.lng, bucket
            """,
            {"min_cell_stops": self.min_cell_stops},
        )
