"""
Response services of the analytics API.
"""

from .response_builder import AnalyticsResponseBuilder, dump_model

__all__ = [
    "AnalyticsResponseBuilder",
    "dump_model",
]
