"""Observability package for harvest.

Key components:
- metrics: in-memory time series with retention and percentile stats
- errors: error occurrence tracking (frequent / recent)
"""

from harvest.observability.errors import ErrorOccurrence, ErrorTracker
from harvest.observability.metrics import (
    DEFAULT_RETENTION_MS,
    MetricStats,
    MetricStore,
    percentile,
)

__all__ = [
    "MetricStore",
    "MetricStats",
    "percentile",
    "DEFAULT_RETENTION_MS",
    "ErrorTracker",
    "ErrorOccurrence",
]
