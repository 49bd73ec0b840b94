"""
Middleware package for the Wound Measurement API.
"""

from .logging_middleware import (
    RequestLoggingMiddleware,
    RequestStats,
    RequestStatsMiddleware,
)

__all__ = [
    "RequestLoggingMiddleware",
    "RequestStats",
    "RequestStatsMiddleware",
]
