"""
Analytics Engine for enforcement data.

This module provides the analytics capabilities:
- Area drill-down summaries
- Corridor risk scoring
- Speed-over thresholds
- Pattern discovery and location profiles
- Anomaly detection
"""

from .anomaly_detector import AnomalyDetector
from .area_aggregator import AreaAggregator
from .corridor_analyzer import CorridorRiskAnalyzer
from .engine import AnalyticsEngine, AnalyticsResult, get_engine
from .filters import SpatialFilter, compile_filter, parse_bounds, parse_filter
from .location_profile import LocationProfiler
from .pattern_detector import PatternDetector
from .store import StopRecordStore
from .threshold_analyzer import ThresholdAnalyzer

__all__ = [
    "AnalyticsEngine",
    "AnalyticsResult",
    "AnomalyDetector",
    "AreaAggregator",
    "CorridorRiskAnalyzer",
    "LocationProfiler",
    "PatternDetector",
    "SpatialFilter",
    "StopRecordStore",
    "ThresholdAnalyzer",
    "compile_filter",
    "get_engine",
    "parse_bounds",
    "parse_filter",
]
