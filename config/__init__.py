"""
Configuration module.
"""

from .settings import (
    AnalyticsConfig,
    ConcurrencyConfig,
    DatabaseConfig,
    LoggingConfig,
    ServiceConfig,
)

__all__ = [
    "AnalyticsConfig",
    "ConcurrencyConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "ServiceConfig",
]
