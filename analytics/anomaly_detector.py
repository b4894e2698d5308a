"""
Anomaly Detector.

Flags statistically unusual enforcement:
- temporal_spike: one hour of a grid cell far above its hourly average
- enforcement_surge / enforcement_drop: the last 30 days of a cell versus
  the 60 days before, anchored on the latest stop date in the dataset
"""

import math
from typing import Any

from api.analytics_models import (
    Anomaly,
    AnomalyReport,
    AnomalySummary,
    AnomalyType,
    Severity,
)
from config import AnalyticsConfig
from core.concurrency import gather_bounded
from core.structured_logging import get_logger

from .pattern_detector import grid_id_for
from .statistics import round_half_up, two_sided_pvalue

logger = get_logger(__name__)

# Daily rate used when a cell has no history
HISTORY_FLOOR_DAILY = 0.1


def severity_for(z_score: float) -> Severity:
    magnitude = abs(z_score)
    if magnitude > 3:
        return Severity.HIGH
    if magnitude > 2:
        return Severity.MEDIUM
    return Severity.LOW


class AnomalyDetector:
    """Detects temporal spikes and recent enforcement changes per grid cell."""

    def __init__(self, store):
        self.store = store
        self.precision = int(AnalyticsConfig.PATTERN_GRID_PRECISION)

    @property
    def table(self) -> str:
        return self.store.table

    async def detect_anomalies(self) -> AnomalyReport:
        hour_rows, change_rows = await gather_bounded([
            self._cell_hour_counts,
            self._recent_changes,
        ])

        anomalies = self.detect_temporal_spikes(hour_rows) + self.detect_recent_changes(change_rows)
        anomalies.sort(key=lambda a: (-abs(a.z_score), a.grid_id, a.type.value))
        anomalies = anomalies[: AnalyticsConfig.ANOMALY_LIMIT]

        summary = AnomalySummary(
            total_anomalies=len(anomalies),
            high_severity=sum(1 for a in anomalies if a.severity == Severity.HIGH),
            medium_severity=sum(1 for a in anomalies if a.severity == Severity.MEDIUM),
            by_type={
                "temporalSpike": sum(1 for a in anomalies if a.type == AnomalyType.TEMPORAL_SPIKE),
                "enforcementSurge": sum(1 for a in anomalies if a.type == AnomalyType.ENFORCEMENT_SURGE),
                "enforcementDrop": sum(1 for a in anomalies if a.type == AnomalyType.ENFORCEMENT_DROP),
            },
        )
        logger.info(
            f"Anomaly detection found {len(anomalies)} anomalies",
            context={"by_type": summary.by_type},
        )
        return AnomalyReport(anomalies=anomalies, summary=summary)

    def detect_temporal_spikes(self, rows: list[dict[str, Any]]) -> list[Anomaly]:
        """Hours with more than SPIKE_FACTOR x the cell's hourly average (Poisson z)."""
        cells: dict[tuple[float, float], list[int]] = {}
        for row in rows:
            key = (round(float(row["lat"]), self.precision), round(float(row["lng"]), self.precision))
            hours = cells.setdefault(key, [0] * 24)
            hour = int(row["hour"])
            if 0 <= hour < 24:
                hours[hour] = int(row["count"])

        anomalies = []
        for (lat, lng), hours in sorted(cells.items()):
            total = sum(hours)
            if total < AnalyticsConfig.ANOMALY_MIN_CELL_STOPS:
                continue
            expected = total / 24
            for hour, actual in enumerate(hours):
                if actual <= expected * AnalyticsConfig.ANOMALY_SPIKE_FACTOR:
                    continue
                if actual < AnalyticsConfig.ANOMALY_SPIKE_MIN_COUNT:
                    continue
                z_score = (actual - expected) / math.sqrt(expected)
                if z_score <= AnalyticsConfig.ANOMALY_MIN_Z:
                    continue
                above_pct = int(round_half_up((actual / expected - 1) * 100))
                anomalies.append(Anomaly(
                    grid_id=grid_id_for(lat, lng),
                    lat=lat,
                    lng=lng,
                    type=AnomalyType.TEMPORAL_SPIKE,
                    description=f"Unusually high {hour}:00 enforcement",
                    z_score=round(z_score, 2),
                    p_value=two_sided_pvalue(z_score),
                    expected_value=round_half_up(expected, 1),
                    actual_value=actual,
                    severity=severity_for(z_score),
                    insight=(
                        f"{actual} stops at {hour}:00 vs {int(round_half_up(expected))} expected "
                        f"({above_pct}% above average)"
                    ),
                ))
        return anomalies

    def detect_recent_changes(self, rows: list[dict[str, Any]]) -> list[Anomaly]:
        """Cells whose recent daily rate doubled or halved against their history."""
        recent_days = AnalyticsConfig.ANOMALY_RECENT_DAYS
        history_days = AnalyticsConfig.ANOMALY_HISTORY_DAYS

        anomalies = []
        for row in rows:
            recent = int(row["recent_count"])
            historical = int(row["historical_count"] or 0)
            if recent < AnalyticsConfig.ANOMALY_MIN_RECENT_STOPS:
                continue
            recent_daily = recent / recent_days
            historical_daily = historical / history_days if historical else HISTORY_FLOOR_DAILY
            ratio = recent_daily / historical_daily

            if ratio > AnalyticsConfig.ANOMALY_SURGE_RATIO:
                anomaly_type = AnomalyType.ENFORCEMENT_SURGE
            elif ratio < AnalyticsConfig.ANOMALY_DROP_RATIO:
                anomaly_type = AnomalyType.ENFORCEMENT_DROP
            else:
                continue

            is_surge = anomaly_type == AnomalyType.ENFORCEMENT_SURGE
            z_score = math.log2(ratio)
            lat = round(float(row["lat"]), self.precision)
            lng = round(float(row["lng"]), self.precision)
            change_pct = int(round_half_up(abs(ratio - 1) * 100))
            anomalies.append(Anomaly(
                grid_id=grid_id_for(lat, lng),
                lat=lat,
                lng=lng,
                type=anomaly_type,
                description=(
                    f"{'Increased' if is_surge else 'Decreased'} enforcement "
                    f"in past {recent_days} days"
                ),
                z_score=round(z_score, 2),
                p_value=two_sided_pvalue(z_score),
                expected_value=round_half_up(historical_daily * recent_days, 1),
                actual_value=recent,
                severity=severity_for(z_score),
                insight=(
                    f"{change_pct}% {'increase' if is_surge else 'decrease'} in enforcement "
                    f"vs prior {history_days} days"
                ),
            ))
        return anomalies

    # ========================================================================
    # SUB-QUERIES
    # ========================================================================

    async def _cell_hour_counts(self) -> list[dict[str, Any]]:
        precision = self.precision
        return await self.store.fetch(
            "anomaly_cell_hours",
            f"""
            WITH cell_hours AS (
                SELECT
                    ROUND(latitude::numeric, {precision}) AS lat,
                    ROUND(longitude::numeric, {precision}) AS lng,
                    EXTRACT(HOUR FROM stop_time)::int AS hour,
                    COUNT(*) AS count
                FROM {self.table}
                WHERE latitude IS NOT NULL
                    AND longitude IS NOT NULL
                    AND stop_time IS NOT NULL
                GROUP BY lat, lng, hour
            ),
            eligible AS (
                SELECT lat, lng
                FROM cell_hours
                GROUP BY lat, lng
                HAVING SUM(count) >= :min_cell_stops
            )
            SELECT h.lat, h.lng, h.hour, h.count
            FROM cell_hours h
            JOIN eligible e ON h.lat = e.lat AND h.lng = e.lng
            """,
            {"min_cell_stops": AnalyticsConfig.ANOMALY_MIN_CELL_STOPS},
        )

    async def _recent_changes(self) -> list[dict[str, Any]]:
        precision = self.precision
        recent_days = int(AnalyticsConfig.ANOMALY_RECENT_DAYS)
        window_days = recent_days + int(AnalyticsConfig.ANOMALY_HISTORY_DAYS)
        return await self.store.fetch(
            "anomaly_recent_changes",
            f"""
            WITH anchor AS (
                SELECT MAX(stop_date) AS latest FROM {self.table}
            )
            SELECT
                ROUND(t.latitude::numeric, {precision}) AS lat,
                ROUND(t.longitude::numeric, {precision}) AS lng,
                COUNT(*) FILTER (WHERE t.stop_date > a.latest - {recent_days}) AS recent_count,
                COUNT(*) FILTER (
                    WHERE t.stop_date <= a.latest - {recent_days}
                        AND t.stop_date > a.latest - {window_days}
                ) AS historical_count
            FROM {self.table} t
            CROSS JOIN anchor a
            WHERE t.latitude IS NOT NULL
                AND t.longitude IS NOT NULL
                AND t.stop_date > a.latest - {window_days}
            GROUP BY lat, lng
            HAVING COUNT(*) FILTER (WHERE t.stop_date > a.latest - {recent_days}) >= :min_recent
            ORDER BY lat, lng
            """,
            {"min_recent": AnalyticsConfig.ANOMALY_MIN_RECENT_STOPS},
        )
