"""
Analytics Engine - Main orchestrator for enforcement analytics.

Coordinates all analytics components:
- Area drill-down summaries
- Corridor risk scoring and recurring hotspots
- Speed-over thresholds and temporal patterns
- Pattern discovery and location profiles
- Anomaly detection

A missing stop-record table is not an error for the caller: every
operation then returns its empty result with an explanatory message.
"""

from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel

from api.analytics_models import (
    AnomalyReport,
    AnomalySummary,
    AreaSummary,
    CorridorReport,
    HotspotReport,
    LocationProfile,
    Pattern,
    PatternReport,
    PatternSummary,
    ThresholdProfile,
    TimePatternReport,
)

from core.errors import DatasetNotReady, PatternNotFound
from core.structured_logging import get_logger

from .anomaly_detector import AnomalyDetector
from .area_aggregator import AreaAggregator
from .corridor_analyzer import CorridorRiskAnalyzer
from .filters import SpatialFilter
from .hotspot_analyzer import HotspotAnalyzer
from .location_profile import LocationProfiler
from .pattern_detector import PatternDetector
from .store import StopRecordStore
from .threshold_analyzer import ThresholdAnalyzer
from .time_pattern_analyzer import TimePatternAnalyzer

logger = get_logger(__name__)


@dataclass
class AnalyticsResult:
    """Payload of one analytics operation plus an optional notice."""

    data: BaseModel
    message: Optional[str] = None


class AnalyticsEngine:
    """Main analytics engine that orchestrates all components."""

    def __init__(self, store=None):
        self.store = store or StopRecordStore()
        self.area_aggregator = AreaAggregator(self.store)
        self.corridor_analyzer = CorridorRiskAnalyzer(self.store)
        self.hotspot_analyzer = HotspotAnalyzer(self.store)
        self.threshold_analyzer = ThresholdAnalyzer(self.store)
        self.time_pattern_analyzer = TimePatternAnalyzer(self.store)
        self.pattern_detector = PatternDetector(self.store)
        self.location_profiler = LocationProfiler(self.store)
        self.anomaly_detector = AnomalyDetector(self.store)

    async def area_summary(self, spatial_filter: SpatialFilter) -> AnalyticsResult:
        try:
            return AnalyticsResult(await self.area_aggregator.summarize(spatial_filter))
        except DatasetNotReady as e:
            return self._not_ready("area_summary", AreaSummary(), e)

    async def route_risk(
        self, spatial_filter: Optional[SpatialFilter], limit: Optional[int] = None
    ) -> AnalyticsResult:
        try:
            return AnalyticsResult(
                await self.corridor_analyzer.analyze_corridors(spatial_filter, limit)
            )
        except DatasetNotReady as e:
            empty: CorridorReport = self.corridor_analyzer.build_report([], [], [])
            return self._not_ready("route_risk", empty, e)

    async def hotspots(
        self,
        spatial_filter: Optional[SpatialFilter] = None,
        limit: Optional[int] = None,
        min_stops: Optional[int] = None,
    ) -> AnalyticsResult:
        try:
            return AnalyticsResult(
                await self.hotspot_analyzer.find_hotspots(spatial_filter, limit, min_stops)
            )
        except DatasetNotReady as e:
            empty: HotspotReport = self.hotspot_analyzer.build_report([], [])
            return self._not_ready("hotspots", empty, e)

    async def thresholds(self, spatial_filter: Optional[SpatialFilter] = None) -> AnalyticsResult:
        try:
            return AnalyticsResult(await self.threshold_analyzer.analyze_thresholds(spatial_filter))
        except DatasetNotReady as e:
            empty: ThresholdProfile = self.threshold_analyzer.build_profile([], [], [], [])
            return self._not_ready("thresholds", empty, e)

    async def time_patterns(self, spatial_filter: Optional[SpatialFilter] = None) -> AnalyticsResult:
        try:
            return AnalyticsResult(
                await self.time_pattern_analyzer.analyze_time_patterns(spatial_filter)
            )
        except DatasetNotReady as e:
            empty: TimePatternReport = self.time_pattern_analyzer.build_report([], [], [], [], [])
            return self._not_ready("time_patterns", empty, e)

    async def patterns(self, pattern_type: Optional[str] = None) -> AnalyticsResult:
        try:
            return AnalyticsResult(await self.pattern_detector.discover_patterns(pattern_type))
        except DatasetNotReady as e:
            empty = PatternReport(
                patterns=[],
                summary=PatternSummary(
                    total_patterns=0,
                    pattern_types={},
                    locations_analyzed=0,
                    quota_effect_detected=False,
                    quota_ratio=None,
                ),
            )
            return self._not_ready("patterns", empty, e)

    async def pattern(self, pattern_id: str) -> Pattern:
        """Single pattern lookup; a missing table surfaces as PatternNotFound."""
        try:
            return await self.pattern_detector.get_pattern(pattern_id)
        except DatasetNotReady:
            raise PatternNotFound(f"Pattern {pattern_id} not found")

    async def location_profile(self, grid_id: str) -> LocationProfile:
        return await self.location_profiler.profile(grid_id)

    async def anomalies(self) -> AnalyticsResult:
        try:
            return AnalyticsResult(await self.anomaly_detector.detect_anomalies())
        except DatasetNotReady as e:
            empty = AnomalyReport(
                anomalies=[],
                summary=AnomalySummary(
                    total_anomalies=0,
                    high_severity=0,
                    medium_severity=0,
                    by_type={"temporalSpike": 0, "enforcementSurge": 0, "enforcementDrop": 0},
                ),
            )
            return self._not_ready("anomalies", empty, e)

    @staticmethod
    def _not_ready(operation: str, empty: BaseModel, error: DatasetNotReady) -> AnalyticsResult:
        logger.warning(
            "Stop-record table not available, returning empty result",
            context={"operation": operation},
        )
        return AnalyticsResult(data=empty, message=error.message)


# Singleton engine instance
_engine: Optional[AnalyticsEngine] = None


def get_engine() -> AnalyticsEngine:
    """Get or create the analytics engine singleton."""
    global _engine
    if _engine is None:
        _engine = AnalyticsEngine()
    return _engine
