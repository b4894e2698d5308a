"""
Core module of the service.
Contains database access, concurrency control, errors and logging.
"""

from .errors import (
    AnalyticsError,
    AreaTooLarge,
    DatasetNotReady,
    InternalAggregationFailure,
    InvalidFilter,
    LocationNotFound,
    PatternNotFound,
    StoreUnavailable,
    UpstreamTimeout,
)

__all__ = [
    "AnalyticsError",
    "AreaTooLarge",
    "DatasetNotReady",
    "InternalAggregationFailure",
    "InvalidFilter",
    "LocationNotFound",
    "PatternNotFound",
    "StoreUnavailable",
    "UpstreamTimeout",
]
