"""Resilient execution: backoff, retry, circuit breaking and batch fan-out.

Data flow::

    BatchCoordinator.process_batch(items, operation, key)
      └── per item (bounded by concurrency_limit)
            CircuitBreaker.before_call(key)
              └── RetryExecutor.execute(operation)  ── ExponentialBackoff
            CircuitBreaker.after_call(key, succeeded)
            MetricStore.record(latency, outcome)
"""

from harvest.execution.batch import (
    BatchCoordinator,
    BatchProcessorConfig,
    BatchResult,
    ChunkedBatchResult,
    ItemResult,
    ProcessingMetrics,
    classify_error,
)
from harvest.execution.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerState,
    CircuitState,
    CircuitStats,
)
from harvest.execution.retry import (
    ExponentialBackoff,
    RetryAttemptOutcome,
    RetryExecutor,
    RetryOptions,
    with_retry,
)

__all__ = [
    # Retry
    "RetryOptions",
    "ExponentialBackoff",
    "RetryAttemptOutcome",
    "RetryExecutor",
    "with_retry",
    # Circuit breaker
    "CircuitState",
    "CircuitBreakerState",
    "CircuitStats",
    "CircuitBreaker",
    # Batch
    "BatchProcessorConfig",
    "ItemResult",
    "ProcessingMetrics",
    "BatchResult",
    "ChunkedBatchResult",
    "classify_error",
    "BatchCoordinator",
]
