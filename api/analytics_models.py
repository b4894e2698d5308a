"""
Data models for the enforcement analytics API.
Defines the response schemas produced by the analyzers.

Fields are declared in snake_case and serialized in camelCase
(``model_dump(by_alias=True)``).
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# ENUMS
# ============================================================================

class RiskLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MODERATE = "moderate"
    LOW = "low"


class Strictness(str, Enum):
    STRICT = "strict"
    MODERATE = "moderate"
    LENIENT = "lenient"


class PatternType(str, Enum):
    TIME_CLUSTER = "time_cluster"
    METHOD_ZONE = "method_zone"
    DAY_PATTERN = "day_pattern"
    QUOTA_EFFECT = "quota_effect"


class AnomalyType(str, Enum):
    TEMPORAL_SPIKE = "temporal_spike"
    ENFORCEMENT_SURGE = "enforcement_surge"
    ENFORCEMENT_DROP = "enforcement_drop"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ============================================================================
# RESPONSE MODELS - AREA SUMMARY
# ============================================================================

class DateRange(CamelModel):
    earliest: str = ""
    latest: str = ""


class AreaStats(CamelModel):
    """Headline numbers of the selected area."""

    total_stops: int = 0
    date_range: DateRange = Field(default_factory=DateRange)
    top_location: str = Field(default="", description="Most frequent location label")


class VehicleCount(CamelModel):
    make: str
    count: int
    percentage: float


class HourCount(CamelModel):
    hour: int = Field(..., ge=0, le=23)
    count: int


class DayCount(CamelModel):
    day: int = Field(..., ge=0, le=6, description="0 = Sunday")
    day_name: str
    count: int


class TimePatterns(CamelModel):
    by_hour: list[HourCount] = Field(default_factory=list)
    by_day: list[DayCount] = Field(default_factory=list)


class MethodCount(CamelModel):
    method: str
    count: int
    percentage: float


class SpeedStats(CamelModel):
    avg_speed_over: float
    max_speed_over: int


class ChargeTypeCount(CamelModel):
    type: str
    count: int
    percentage: float


class MonthCount(CamelModel):
    month: int = Field(..., ge=1, le=12)
    count: int


class YearCount(CamelModel):
    year: int
    count: int


class AreaSummary(CamelModel):
    """Drill-down summary of the stops inside a filtered area."""

    summary: AreaStats = Field(default_factory=AreaStats)
    vehicles: list[VehicleCount] = Field(default_factory=list)
    time_patterns: TimePatterns = Field(default_factory=TimePatterns)
    detection_methods: list[MethodCount] = Field(default_factory=list)
    speed_stats: Optional[SpeedStats] = Field(
        default=None, description="Only present for speed-only requests"
    )
    charge_types: list[ChargeTypeCount] = Field(default_factory=list)
    monthly_distribution: list[MonthCount] = Field(default_factory=list)
    yearly_distribution: list[YearCount] = Field(default_factory=list)


# ============================================================================
# RESPONSE MODELS - CORRIDORS
# ============================================================================

class CorridorBounds(CamelModel):
    south: float
    north: float
    west: float
    east: float


class PeakTime(CamelModel):
    day: str
    hour: int
    hour_label: str
    count: int


class TimeWindow(CamelModel):
    """Contiguous run of hours on one day of the week."""

    day: str
    hours: str = Field(..., description='"HH:00-HH:00", end exclusive')
    risk_multiplier: float


class Corridor(CamelModel):
    """East-west road corridor: all stops sharing a 2-decimal latitude."""

    id: str
    latitude_center: float
    bounds: CorridorBounds
    total_stops: int
    unique_locations: int
    approx_miles: int
    stops_per_mile: float
    risk_multiplier: float
    risk_level: RiskLevel
    avg_speed_over: float
    dominant_method: str
    peak_times: list[PeakTime] = Field(default_factory=list)
    hot_windows: list[TimeWindow] = Field(default_factory=list)
    safe_windows: list[TimeWindow] = Field(default_factory=list)
    insight: str


class CorridorSummary(CamelModel):
    total_corridors: int
    critical_count: int
    high_risk_count: int
    insight: str


class RiskLevelGuideEntry(CamelModel):
    stops_per_mile: str
    description: str


class CorridorReport(CamelModel):
    corridors: list[Corridor] = Field(default_factory=list)
    summary: CorridorSummary
    risk_level_guide: dict[str, RiskLevelGuideEntry]


# ============================================================================
# RESPONSE MODELS - HOTSPOTS
# ============================================================================

class Hotspot(CamelModel):
    """Grid cell with enforcement recurring over several days."""

    id: str
    grid_id: str
    lat: float
    lng: float
    total_stops: int
    unique_days: int
    frequency_score: float = Field(..., description="Stops per day with activity")
    avg_speed_over: float
    dominant_method: str
    severity: RiskLevel
    peak_times: list[PeakTime] = Field(default_factory=list)
    date_range: DateRange = Field(default_factory=DateRange)
    insight: str


class HotspotSummary(CamelModel):
    total_hotspots: int
    critical_count: int
    high_count: int
    moderate_count: int
    total_stops_in_hotspots: int
    dominant_method: str
    insight: str


class HotspotReport(CamelModel):
    hotspots: list[Hotspot] = Field(default_factory=list)
    summary: HotspotSummary


# ============================================================================
# RESPONSE MODELS - TIME PATTERNS
# ============================================================================

class DayOfMonthRate(CamelModel):
    day_of_month: int = Field(..., ge=1, le=31)
    count: int
    relative_rate: float


class QuotaCurve(CamelModel):
    """Stops per day of the month, end of month against start of month."""

    insight: str
    is_significant: bool
    end_of_month_effect: int = Field(..., description="Percent change, days 25-31 vs 1-7")
    data: list[DayOfMonthRate] = Field(default_factory=list)


class WeekdayIntensity(CamelModel):
    day: str
    day_num: int = Field(..., ge=0, le=6, description="0 = Sunday")
    count: int
    avg_speed_over: float
    relative_rate: float


class DayOfWeekPattern(CamelModel):
    insight: str
    highest_day: Optional[str] = None
    lowest_day: Optional[str] = None
    data: list[WeekdayIntensity] = Field(default_factory=list)


class HourlyRate(CamelModel):
    hour: int = Field(..., ge=0, le=23)
    label: str
    count: int
    avg_speed_over: float
    risk_level: RiskLevel


class RushWindow(CamelModel):
    hours: str
    total_stops: int


class RushHours(CamelModel):
    morning: RushWindow
    afternoon: RushWindow


class HourlyPattern(CamelModel):
    insight: str
    peak_hours: list[int] = Field(default_factory=list)
    rush_hour: RushHours
    data: list[HourlyRate] = Field(default_factory=list)


class MonthlyRate(CamelModel):
    month: str
    month_num: int = Field(..., ge=1, le=12)
    count: int
    relative_rate: float


class SeasonalPattern(CamelModel):
    insight: str
    highest_month: Optional[str] = None
    lowest_month: Optional[str] = None
    data: list[MonthlyRate] = Field(default_factory=list)


class WeekendComparison(CamelModel):
    insight: str
    weekday_avg_per_day: int
    weekend_avg_per_day: int
    difference: int = Field(..., description="Percent, weekend vs weekday")


class TimePatternReport(CamelModel):
    """System-wide temporal enforcement patterns."""

    total_records: int
    quota_pattern: QuotaCurve
    day_of_week: DayOfWeekPattern
    hourly_pattern: HourlyPattern
    seasonal: SeasonalPattern
    weekend_vs_weekday: WeekendComparison


# ============================================================================
# RESPONSE MODELS - THRESHOLDS
# ============================================================================

class Percentiles(CamelModel):
    p10: int = 0
    p25: int = 0
    p50: int = 0
    p75: int = 0
    p90: int = 0


class SpeedBucket(CamelModel):
    bucket: str
    count: int
    percentage: float
    cumulative_percentage: float


class OverallThresholds(CamelModel):
    insight: str
    total_speed_violations: int
    average_speed_over: float
    median_speed_over: float
    percentiles: Percentiles
    distribution: list[SpeedBucket] = Field(default_factory=list)


class MethodThreshold(CamelModel):
    method: str
    count: int
    avg_speed_over: float
    median_speed_over: float
    min_typical: int = Field(..., description="10th percentile of speed over")
    strictness: Strictness


class MethodThresholds(CamelModel):
    insight: str
    methods: list[MethodThreshold] = Field(default_factory=list)


class AreaThreshold(CamelModel):
    grid_id: str
    lat: float
    lng: float
    ticket_count: int
    avg_speed_over: float
    min_speed_over: int
    strictness: Strictness


class LocationThresholds(CamelModel):
    insight: str
    strict_areas: list[AreaThreshold] = Field(default_factory=list)
    lenient_areas: list[AreaThreshold] = Field(default_factory=list)


class SpeedLimitThreshold(CamelModel):
    posted_limit: int
    ticket_count: int
    avg_speed_over: float
    median_speed_over: float


class SpeedLimitThresholds(CamelModel):
    insight: str
    data: list[SpeedLimitThreshold] = Field(default_factory=list)


class RiskBand(CamelModel):
    speed_over: str
    risk: str
    description: str


class ThresholdRecommendations(CamelModel):
    general_threshold: int
    safe_buffer: int
    risk_levels: list[RiskBand]


class ThresholdProfile(CamelModel):
    """How fast is too fast: speed-over distribution and enforcement strictness."""

    overall: OverallThresholds
    by_method: MethodThresholds
    by_location: LocationThresholds
    by_speed_limit: SpeedLimitThresholds
    recommendations: ThresholdRecommendations


# ============================================================================
# RESPONSE MODELS - PATTERNS
# ============================================================================

class GridCell(CamelModel):
    grid_id: str
    lat: float
    lng: float


class Pattern(CamelModel):
    """Statistically validated enforcement pattern."""

    id: str
    pattern_type: PatternType
    name: str
    description: str
    location_count: int
    locations: list[GridCell] = Field(default_factory=list)
    confidence: float = Field(..., ge=0, le=1)
    statistics: dict[str, Any] = Field(default_factory=dict)
    insight: str


class PatternSummary(CamelModel):
    total_patterns: int
    pattern_types: dict[str, int]
    locations_analyzed: int
    quota_effect_detected: bool
    quota_ratio: Optional[float] = None


class PatternReport(CamelModel):
    patterns: list[Pattern] = Field(default_factory=list)
    summary: PatternSummary


# ============================================================================
# RESPONSE MODELS - LOCATION PROFILE
# ============================================================================

class TemporalSignature(CamelModel):
    hour_distribution: list[float] = Field(..., description="24 shares summing to 1")
    day_distribution: list[float] = Field(..., description="7 shares, 0 = Monday")
    peak_hours: list[int]
    peak_days: list[str]
    peak_day_numbers: list[int]
    hour_concentration: float
    day_concentration: float
    weekday_ratio: float
    insight: str


class DetectionProfile(CamelModel):
    primary_method: str
    method_distribution: dict[str, float]
    avg_speed_over: Optional[float] = None
    min_speed_over: Optional[int] = None
    strictness_level: str
    insight: str


class LocationStatistics(CamelModel):
    total_stops: int
    hour_chi2: float
    hour_pvalue: float
    day_chi2: float
    day_pvalue: float
    is_significant: bool
    confidence_level: str


class LocationProfile(CamelModel):
    """Temporal and detection signature of one grid cell."""

    location: GridCell
    temporal_signature: TemporalSignature
    detection_profile: DetectionProfile
    statistics: LocationStatistics
    generated_insight: str


# ============================================================================
# RESPONSE MODELS - ANOMALIES
# ============================================================================

class Anomaly(CamelModel):
    grid_id: str
    lat: float
    lng: float
    type: AnomalyType
    description: str
    z_score: float
    p_value: float
    expected_value: float
    actual_value: int
    severity: Severity
    insight: str


class AnomalySummary(CamelModel):
    total_anomalies: int
    high_severity: int
    medium_severity: int
    by_type: dict[str, int]


class AnomalyReport(CamelModel):
    anomalies: list[Anomaly] = Field(default_factory=list)
    summary: AnomalySummary


# ============================================================================
# RESPONSE MODELS - SERVICE
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    timestamp: str = Field(..., description="UTC timestamp")
    concurrency: dict[str, Any] = Field(default_factory=dict, description="Concurrency stats")
