"""
Filter Compiler for stop-record queries.

Turns raw query-string parameters into a validated ``SpatialFilter`` and
compiles it into a parameter-bound SQL predicate. User input never reaches
the SQL text: every value is bound through a ``:pN`` placeholder, and the
detection-method category is resolved through a closed lookup table.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from core.errors import InvalidFilter


# ============================================================================
# DETECTION METHODS
# ============================================================================
class DetectionMethod(str, Enum):
    """Detection-method category derived from the arrest type."""

    RADAR = "radar"
    LASER = "laser"
    VASCAR = "vascar"
    PATROL = "patrol"
    AUTOMATED = "automated"
    UNKNOWN = "unknown"


# First letter of ``arrest_type`` -> category. Anything else is "unknown".
DETECTION_METHOD_CODES: dict[DetectionMethod, tuple[str, ...]] = {
    DetectionMethod.RADAR: ("E", "F", "G", "H", "I", "J"),
    DetectionMethod.LASER: ("Q", "R"),
    DetectionMethod.VASCAR: ("C", "D"),
    DetectionMethod.PATROL: ("A", "B", "L", "M", "N", "O", "P"),
    DetectionMethod.AUTOMATED: ("S",),
}

_CODE_TO_METHOD = {
    code: method
    for method, codes in DETECTION_METHOD_CODES.items()
    for code in codes
}


def method_for_arrest_type(arrest_type: Optional[str]) -> str:
    """Label an arrest type with its detection-method category."""
    if not arrest_type:
        return DetectionMethod.UNKNOWN.value
    method = _CODE_TO_METHOD.get(arrest_type.strip()[:1].upper())
    return method.value if method else DetectionMethod.UNKNOWN.value


def method_case_sql(column: str = "arrest_type") -> str:
    """
    SQL ``CASE`` expression labelling each row with its detection method.

    Generated from DETECTION_METHOD_CODES so labelling and filtering never
    disagree. Only constants of the lookup table appear in the text.
    """
    branches = []
    for method, codes in DETECTION_METHOD_CODES.items():
        code_list = ", ".join(f"'{code}'" for code in codes)
        branches.append(f"WHEN LEFT({column}, 1) IN ({code_list}) THEN '{method.value}'")
    return (
        "CASE "
        + " ".join(branches)
        + f" ELSE '{DetectionMethod.UNKNOWN.value}' END"
    )


# ============================================================================
# FILTER VALUE OBJECTS
# ============================================================================
MIN_YEAR = 1900
MAX_YEAR = 2100
MAX_VEHICLE_MAKE_LENGTH = 64
MAX_SPEED_OVER = 200

_TRUE_VALUES = ("true", "1")
_FALSE_VALUES = ("false", "0")


@dataclass(frozen=True)
class Bounds:
    """Geographic bounding box (degrees)."""

    min_lng: float
    min_lat: float
    max_lng: float
    max_lat: float

    def contains(self, lat: float, lng: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lng <= lng <= self.max_lng


@dataclass(frozen=True)
class SpatialFilter:
    """Validated, immutable set of stop-record restrictions."""

    bounds: Optional[Bounds] = None
    year: Optional[int] = None
    detection_method: Optional[DetectionMethod] = None
    speed_only: bool = False
    min_speed_over: Optional[int] = None
    vehicle_make: Optional[str] = None
    has_alcohol: Optional[bool] = None
    has_accident: Optional[bool] = None

    def is_empty(self) -> bool:
        return self == SpatialFilter()


@dataclass(frozen=True)
class CompiledPredicate:
    """SQL predicate with ``:p1..:pN`` placeholders and their bound values."""

    sql: str
    params: tuple[Any, ...] = ()

    @property
    def bind_params(self) -> dict[str, Any]:
        """Placeholder name -> value mapping, as expected by ``text()``."""
        return {f"p{i}": value for i, value in enumerate(self.params, start=1)}

    def where(self, *extra: str) -> str:
        """
        Build a ``WHERE`` clause from the predicate plus constant conditions.

        Returns an empty string when there is nothing to restrict.
        """
        conditions = ([self.sql] if self.sql else []) + [c for c in extra if c]
        if not conditions:
            return ""
        return "WHERE " + " AND ".join(conditions)


# ============================================================================
# PARSING
# ============================================================================
def _is_absent(value: Optional[str]) -> bool:
    return value is None or value.strip() == "" or value.strip().lower() == "all"


def parse_bounds(text: Optional[str], strict: bool = True) -> Optional[Bounds]:
    """
    Parse ``"minLng,minLat,maxLng,maxLat"``.

    Args:
        text: Raw parameter value.
        strict: Raise InvalidFilter on malformed input. When False, malformed
            bounds are treated as absent.
    """
    if text is None or text.strip() == "":
        return None
    try:
        return _parse_bounds(text)
    except InvalidFilter:
        if strict:
            raise
        return None


def _parse_bounds(text: str) -> Bounds:
    parts = [part.strip() for part in text.split(",")]
    if len(parts) != 4:
        raise InvalidFilter(
            'Invalid bounds format. Expected: "minLng,minLat,maxLng,maxLat"'
        )
    try:
        min_lng, min_lat, max_lng, max_lat = (float(part) for part in parts)
    except ValueError:
        raise InvalidFilter("Bounds must contain 4 numeric values")

    for value in (min_lng, min_lat, max_lng, max_lat):
        if not math.isfinite(value):
            raise InvalidFilter("Bounds must be finite numbers")
    for lng in (min_lng, max_lng):
        if not -180.0 <= lng <= 180.0:
            raise InvalidFilter("Longitude must be between -180 and 180")
    for lat in (min_lat, max_lat):
        if not -90.0 <= lat <= 90.0:
            raise InvalidFilter("Latitude must be between -90 and 90")
    if min_lng > max_lng or min_lat > max_lat:
        raise InvalidFilter("Bounds minimum must not exceed maximum")

    return Bounds(min_lng=min_lng, min_lat=min_lat, max_lng=max_lng, max_lat=max_lat)


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        raise InvalidFilter(f"{name} must be an integer")


def parse_tristate(name: str, value: Optional[str]) -> Optional[bool]:
    """Parse ``true|false|1|0``; absent values give None."""
    if value is None or value.strip() == "":
        return None
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise InvalidFilter(f"{name} must be one of true, false, 1, 0")


def parse_filter(
    params: Mapping[str, Optional[str]],
    require_bounds: bool = False,
) -> SpatialFilter:
    """
    Validate raw query parameters into a SpatialFilter.

    Recognized keys: bounds, year, detectionMethod, speedOnly, minSpeedOver,
    vehicleMake, hasAlcohol, hasAccident. Unknown keys are ignored.

    Raises:
        InvalidFilter: On any malformed or out-of-range value.
    """
    raw_bounds = params.get("bounds")
    if require_bounds and (raw_bounds is None or raw_bounds.strip() == ""):
        raise InvalidFilter("bounds parameter is required")
    bounds = parse_bounds(raw_bounds, strict=True)

    year = None
    raw_year = params.get("year")
    if not _is_absent(raw_year):
        year = _parse_int("year", raw_year)
        if not MIN_YEAR <= year <= MAX_YEAR:
            raise InvalidFilter(f"year must be between {MIN_YEAR} and {MAX_YEAR}")

    detection_method = None
    raw_method = params.get("detectionMethod")
    if not _is_absent(raw_method):
        try:
            detection_method = DetectionMethod(raw_method.strip().lower())
        except ValueError:
            detection_method = None
        if detection_method is None or detection_method not in DETECTION_METHOD_CODES:
            raise InvalidFilter(f"Unknown detection method: {raw_method}")

    speed_only = parse_tristate("speedOnly", params.get("speedOnly")) or False

    min_speed_over = None
    raw_min_speed = params.get("minSpeedOver")
    if not _is_absent(raw_min_speed):
        min_speed_over = _parse_int("minSpeedOver", raw_min_speed)
        if not 0 <= min_speed_over <= MAX_SPEED_OVER:
            raise InvalidFilter(f"minSpeedOver must be between 0 and {MAX_SPEED_OVER}")

    vehicle_make = None
    raw_make = params.get("vehicleMake")
    if not _is_absent(raw_make):
        vehicle_make = raw_make.strip()
        if len(vehicle_make) > MAX_VEHICLE_MAKE_LENGTH:
            raise InvalidFilter(
                f"vehicleMake must be at most {MAX_VEHICLE_MAKE_LENGTH} characters"
            )

    return SpatialFilter(
        bounds=bounds,
        year=year,
        detection_method=detection_method,
        speed_only=speed_only,
        min_speed_over=min_speed_over,
        vehicle_make=vehicle_make,
        has_alcohol=parse_tristate("hasAlcohol", params.get("hasAlcohol")),
        has_accident=parse_tristate("hasAccident", params.get("hasAccident")),
    )


# ============================================================================
# COMPILATION
# ============================================================================
def compile_filter(spatial_filter: Optional[SpatialFilter]) -> CompiledPredicate:
    """
    Compile a SpatialFilter into a parameter-bound predicate.

    Each present field appends exactly one clause; absent fields add
    nothing. An empty filter compiles to an empty predicate.
    """
    if spatial_filter is None:
        return CompiledPredicate(sql="")

    clauses: list[str] = []
    values: list[Any] = []

    def bind(value: Any) -> str:
        values.append(value)
        return f":p{len(values)}"

    f = spatial_filter
    if f.bounds is not None:
        clauses.append(
            f"(latitude BETWEEN {bind(f.bounds.min_lat)} AND {bind(f.bounds.max_lat)}"
            f" AND longitude BETWEEN {bind(f.bounds.min_lng)} AND {bind(f.bounds.max_lng)})"
        )
    if f.year is not None:
        clauses.append(f"EXTRACT(YEAR FROM stop_date) = {bind(f.year)}")
    if f.detection_method is not None:
        codes = DETECTION_METHOD_CODES[f.detection_method]
        placeholders = ", ".join(bind(code) for code in codes)
        clauses.append(f"LEFT(arrest_type, 1) IN ({placeholders})")
    if f.speed_only:
        clauses.append(f"is_speed_related = {bind(True)}")
    if f.min_speed_over is not None:
        clauses.append(f"speed_over >= {bind(f.min_speed_over)}")
    if f.vehicle_make is not None:
        clauses.append(f"vehicle_make = {bind(f.vehicle_make)}")
    if f.has_alcohol is not None:
        clauses.append(f"alcohol = {bind(f.has_alcohol)}")
    if f.has_accident is not None:
        clauses.append(f"accident = {bind(f.has_accident)}")

    return CompiledPredicate(sql=" AND ".join(clauses), params=tuple(values))
