"""
Typed errors of the analytics engine.

Each error carries a stable ``code`` for programmatic branching and the HTTP
status it is rendered with. ``DatasetNotReady`` is the one case that never
reaches the client as an error: the engine turns it into an empty result.
"""

from typing import Optional


class AnalyticsError(Exception):
    """Base class for every error surfaced by the analytics API."""

    code = "ANALYTICS_ERROR"
    status_code = 500
    default_message = "Analytics request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidFilter(AnalyticsError):
    """Malformed or out-of-range request input."""

    code = "INVALID_FILTER"
    status_code = 400
    default_message = "Invalid filter"


class AreaTooLarge(AnalyticsError):
    """The store ran out of a shared resource while aggregating."""

    code = "AREA_TOO_LARGE"
    status_code = 413
    default_message = (
        "Selected area is too large. Please select a smaller area."
    )


class DatasetNotReady(AnalyticsError):
    """The stop-record table does not exist yet."""

    code = "DATASET_NOT_READY"
    status_code = 200
    default_message = "No data yet. Run the stop-record import to load data."


class UpstreamTimeout(AnalyticsError):
    """A sub-query or the whole request deadline was exceeded."""

    code = "UPSTREAM_TIMEOUT"
    status_code = 504
    default_message = "The analytics query took too long to complete"


class LocationNotFound(AnalyticsError):
    """No stops are recorded in the requested grid cell."""

    code = "LOCATION_NOT_FOUND"
    status_code = 404
    default_message = "No enforcement data for this location"


class PatternNotFound(AnalyticsError):
    """The requested pattern id was not discovered."""

    code = "PATTERN_NOT_FOUND"
    status_code = 404
    default_message = "Pattern not found"


class InternalAggregationFailure(AnalyticsError):
    """Unexpected failure in the middle of an aggregation pipeline."""

    code = "INTERNAL_AGGREGATION_FAILURE"
    status_code = 500
    default_message = "Failed to compute analytics"


class StoreUnavailable(AnalyticsError):
    """The stop-record store could not be reached."""

    code = "STORE_UNAVAILABLE"
    status_code = 503
    default_message = "The analytics data store is unavailable. Try again later."
