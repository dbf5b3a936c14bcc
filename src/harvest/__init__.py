"""
Harvest - resilient execution and metrics for the produce marketplace backend.

Subpackages:
- harvest.core: errors, structured logging, settings
- harvest.execution: retry with backoff, circuit breaking, batch coordination
- harvest.observability: in-memory metric series and error tracking
"""

__version__ = "0.1.0"

from harvest.core.errors import (
    CircuitOpenError,
    ConfigurationError,
    HarvestError,
    RetriesExhaustedError,
    TransientOperationFailure,
)
from harvest.execution import (
    BatchCoordinator,
    BatchProcessorConfig,
    CircuitBreaker,
    ExponentialBackoff,
    RetryExecutor,
    RetryOptions,
)
from harvest.observability import ErrorTracker, MetricStore

__all__ = [
    "__version__",
    "HarvestError",
    "TransientOperationFailure",
    "RetriesExhaustedError",
    "CircuitOpenError",
    "ConfigurationError",
    "BatchCoordinator",
    "BatchProcessorConfig",
    "CircuitBreaker",
    "ExponentialBackoff",
    "RetryExecutor",
    "RetryOptions",
    "ErrorTracker",
    "MetricStore",
]
