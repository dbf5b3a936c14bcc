"""Batch Coordinator: bounded fan-out of retried, circuit-guarded work.

ARCHITECTURE
────────────
::

    BatchCoordinator(config, breaker, metrics)
      ├── .process_batch(items, operation, key)   ─ one result per item
      │     asyncio.gather + Semaphore(concurrency_limit)
      │       └── per item: breaker.acquire(key) -> generation ticket
      │              ├── None   → CircuitOpenError result (operation not run)
      │              └── ticket → RetryExecutor.execute → breaker.after_call(ticket)
      ├── .process_chunked(items, processor, chunk_size, key)
      └── BatchResult ─ ItemResult sequence + ProcessingMetrics

The coordinator holds only its configuration and the collaborators it was
given; every batch's bookkeeping lives in the returned ``BatchResult``.
Failures of single items never abort the batch and results keep the input
order regardless of completion order.

Example::

    coordinator = BatchCoordinator(BatchProcessorConfig(concurrency_limit=5))
    result = await coordinator.process_batch(image_urls, grade_image, key="ai-grading")
    print(result.metrics.success_rate, result.metrics.error_categories)
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, overload

from harvest.core.errors import (
    CircuitOpenError,
    ConfigurationError,
    ErrorCategory,
    HarvestError,
    RetriesExhaustedError,
)
from harvest.core.logging import LogContext, get_logger
from harvest.execution.circuit_breaker import CircuitBreaker
from harvest.execution.retry import RetryExecutor, RetryOptions
from harvest.observability.errors import ErrorTracker
from harvest.observability.metrics import MetricStore

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class BatchProcessorConfig:
    """Immutable configuration for a BatchCoordinator.

    Attributes:
        max_retries: Retries per item after the first attempt
        retry_delay_ms: Delay before the first retry
        concurrency_limit: Maximum items in flight
        circuit_breaker_threshold: Consecutive failed items that open the circuit
        circuit_breaker_timeout_ms: How long the circuit stays open
        max_retry_delay_ms: Retry delay cap
        backoff_factor: Exponential multiplier between retries
    """

    max_retries: int = 3
    retry_delay_ms: int = 1000
    concurrency_limit: int = 3
    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout_ms: int = 60_000
    max_retry_delay_ms: int = 30_000
    backoff_factor: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigurationError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.concurrency_limit < 1:
            raise ConfigurationError(
                f"concurrency_limit must be >= 1, got {self.concurrency_limit}"
            )
        if self.circuit_breaker_threshold < 1:
            raise ConfigurationError(
                f"circuit_breaker_threshold must be >= 1, got {self.circuit_breaker_threshold}"
            )
        if self.circuit_breaker_timeout_ms < 0:
            raise ConfigurationError("circuit_breaker_timeout_ms must be >= 0")
        # RetryOptions validates delays and factor
        self.retry_options()

    def retry_options(self) -> RetryOptions:
        return RetryOptions(
            max_attempts=self.max_retries + 1,
            initial_delay_ms=self.retry_delay_ms,
            max_delay_ms=self.max_retry_delay_ms,
            backoff_factor=self.backoff_factor,
        )


@dataclass
class ItemResult(Generic[T, R]):
    """Outcome of a single batch item."""

    index: int
    item: T
    success: bool
    value: R | None = None
    error: BaseException | None = None
    category: str | None = None
    attempts: int = 0
    duration_ms: float = 0.0

    @property
    def short_circuited(self) -> bool:
        return isinstance(self.error, CircuitOpenError)


@dataclass
class ProcessingMetrics:
    """Aggregates derived from one batch's item results."""

    total_processed: int = 0
    success_count: int = 0
    error_count: int = 0
    success_rate: float = 0.0
    average_processing_time_ms: float = 0.0
    error_categories: dict[str, int] = field(default_factory=dict)
    retry_count: int = 0
    circuit_rejections: int = 0

    @classmethod
    def from_results(cls, results: Sequence[ItemResult[Any, Any]]) -> ProcessingMetrics:
        total = len(results)
        successes = sum(1 for r in results if r.success)
        invoked = [r.duration_ms for r in results if not r.short_circuited]
        categories: dict[str, int] = {}
        for r in results:
            if not r.success:
                category = r.category or ErrorCategory.UNKNOWN.value
                categories[category] = categories.get(category, 0) + 1

        return cls(
            total_processed=total,
            success_count=successes,
            error_count=total - successes,
            success_rate=successes / total if total else 0.0,
            average_processing_time_ms=sum(invoked) / len(invoked) if invoked else 0.0,
            error_categories=categories,
            retry_count=sum(max(r.attempts - 1, 0) for r in results),
            circuit_rejections=sum(1 for r in results if r.short_circuited),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "success_rate": self.success_rate,
            "average_processing_time_ms": self.average_processing_time_ms,
            "error_categories": dict(self.error_categories),
            "retry_count": self.retry_count,
            "circuit_rejections": self.circuit_rejections,
        }


class BatchResult(Sequence[ItemResult[T, R]], Generic[T, R]):
    """Per-item results in input order plus the batch aggregates."""

    def __init__(self, batch_id: str, results: list[ItemResult[T, R]]) -> None:
        self.batch_id = batch_id
        self._results = results
        self.metrics = ProcessingMetrics.from_results(results)

    @overload
    def __getitem__(self, index: int) -> ItemResult[T, R]: ...

    @overload
    def __getitem__(self, index: slice) -> list[ItemResult[T, R]]: ...

    def __getitem__(self, index):
        return self._results[index]

    def __len__(self) -> int:
        return len(self._results)

    def __iter__(self) -> Iterator[ItemResult[T, R]]:
        return iter(self._results)

    @property
    def succeeded(self) -> list[ItemResult[T, R]]:
        return [r for r in self._results if r.success]

    @property
    def failed(self) -> list[ItemResult[T, R]]:
        return [r for r in self._results if not r.success]

    @property
    def values(self) -> list[R | None]:
        """Values in input order (None where the item failed)."""
        return [r.value for r in self._results]

    def to_dict(self) -> dict[str, Any]:
        """Serialise for logging / API responses."""
        return {
            "batch_id": self.batch_id,
            "metrics": self.metrics.to_dict(),
            "items": [
                {
                    "index": r.index,
                    "success": r.success,
                    "attempts": r.attempts,
                    "duration_ms": r.duration_ms,
                    "category": r.category,
                    "error": str(r.error) if r.error is not None else None,
                }
                for r in self._results
            ],
        }


@dataclass
class ChunkedBatchResult(Generic[T, R]):
    """Result of chunked processing: flattened outputs and failed inputs."""

    results: list[R]
    failed: list[T]
    metrics: ProcessingMetrics
    chunks: BatchResult


_CATEGORY_PATTERNS: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.TIMEOUT, ("timeout", "timed out", "deadline")),
    (ErrorCategory.VALIDATION, ("validation", "validat", "invalid")),
    (ErrorCategory.NETWORK, (
        "network", "connection", "connect", "socket", "dns",
        "unreachable", "econnrefused", "econnreset", "refused",
    )),
)
_MATCHED_CATEGORIES = frozenset(category for category, _ in _CATEGORY_PATTERNS)


def classify_error(error: BaseException | None) -> str:
    """Map an item failure to an ``ErrorCategory`` value.

    Short-circuits are ``circuit_open``; exhausted retries are classified by
    their last underlying error. A ``HarvestError`` whose category is one of
    the matched categories keeps it; anything else is classified by string
    matching on type and message, falling back to ``unknown``.
    """
    if error is None:
        return ErrorCategory.UNKNOWN.value
    if isinstance(error, CircuitOpenError):
        return ErrorCategory.CIRCUIT_OPEN.value
    if isinstance(error, RetriesExhaustedError):
        error = error.last_error
    if isinstance(error, HarvestError) and error.category in _MATCHED_CATEGORIES:
        return error.category.value

    text = f"{type(error).__name__} {error}".lower()
    for category, needles in _CATEGORY_PATTERNS:
        if any(needle in text for needle in needles):
            return category.value
    return ErrorCategory.UNKNOWN.value


class BatchCoordinator:
    """Runs many independent operations with retry, circuit breaking and a
    concurrency bound.

    Parameters
    ----------
    config : BatchProcessorConfig
        Retry, concurrency and breaker settings (never mutated).
    breaker : CircuitBreaker, optional
        Shared breaker; one is built from ``config`` when omitted.
    metrics : MetricStore, optional
        Shared store receiving per-item latency and outcome samples.
    executor : RetryExecutor, optional
        Shared retry executor.
    error_tracker : ErrorTracker, optional
        Receives every item failure.
    """

    def __init__(
        self,
        config: BatchProcessorConfig | None = None,
        *,
        breaker: CircuitBreaker | None = None,
        metrics: MetricStore | None = None,
        executor: RetryExecutor | None = None,
        error_tracker: ErrorTracker | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or BatchProcessorConfig()
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=self.config.circuit_breaker_threshold,
            reset_timeout_ms=self.config.circuit_breaker_timeout_ms,
            clock=clock,
        )
        self.metrics = metrics if metrics is not None else MetricStore()
        self.executor = executor or RetryExecutor(metrics=self.metrics, clock=clock)
        self.error_tracker = error_tracker
        self._clock = clock

    # ── Execution ────────────────────────────────────────────────────

    async def process_batch(
        self,
        items: Sequence[T],
        operation: Callable[[T], Awaitable[R]],
        *,
        key: str = "default",
    ) -> BatchResult[T, R]:
        """Run ``operation`` over every item, bounded by ``concurrency_limit``.

        Args:
            items: Inputs; result ``i`` always belongs to ``items[i]``.
            operation: Async callable applied to one item.
            key: Circuit breaker key shared by all items of this batch.
        """
        batch_id = str(uuid.uuid4())
        sem = asyncio.Semaphore(self.config.concurrency_limit)
        options = self.config.retry_options()

        async def _run_one(index: int, item: T) -> ItemResult[T, R]:
            async with sem:
                return await self._process_item(index, item, operation, options, key)

        # Item tasks inherit the binding, so retry and breaker events carry it too
        async with LogContext(batch_id=batch_id, key=key):
            logger.info(
                "batch.start",
                items=len(items),
                concurrency_limit=self.config.concurrency_limit,
            )
            results = await asyncio.gather(
                *[_run_one(index, item) for index, item in enumerate(items)]
            )
            batch = BatchResult(batch_id, list(results))

            self.metrics.set_custom_metric(f"batch.{key}.last_run", batch.metrics.to_dict())
            logger.info(
                "batch.complete",
                succeeded=batch.metrics.success_count,
                failed=batch.metrics.error_count,
                success_rate=batch.metrics.success_rate,
                error_categories=batch.metrics.error_categories,
            )
        return batch

    async def _process_item(
        self,
        index: int,
        item: T,
        operation: Callable[[T], Awaitable[R]],
        options: RetryOptions,
        key: str,
    ) -> ItemResult[T, R]:
        generation = self.breaker.acquire(key)
        if generation is None:
            result = ItemResult(
                index=index,
                item=item,
                success=False,
                error=CircuitOpenError(key),
                category=ErrorCategory.CIRCUIT_OPEN.value,
            )
            self._record(key, result)
            return result

        retries = 0

        def _count_retry(attempt: int, error: Exception, delay_ms: int) -> None:
            nonlocal retries
            retries += 1

        started = self._clock()
        succeeded = False
        try:
            value = await self.executor.execute(
                lambda: operation(item),
                options,
                operation_name=f"batch.{key}",
                on_retry=_count_retry,
            )
            succeeded = True
        except RetriesExhaustedError as e:
            result = ItemResult(
                index=index,
                item=item,
                success=False,
                error=e,
                category=classify_error(e),
                attempts=e.attempts,
                duration_ms=(self._clock() - started) * 1000,
            )
        else:
            result = ItemResult(
                index=index,
                item=item,
                success=True,
                value=value,
                attempts=retries + 1,
                duration_ms=(self._clock() - started) * 1000,
            )
        finally:
            self.breaker.after_call(key, succeeded, generation)

        self._record(key, result)
        return result

    def _record(self, key: str, result: ItemResult[Any, Any]) -> None:
        if not result.short_circuited:
            self.metrics.record(f"batch.{key}.latency_ms", result.duration_ms)
        self.metrics.record(f"batch.{key}.success", 1.0 if result.success else 0.0)

        if result.success:
            return
        logger.warning(
            "batch.item_failed",
            index=result.index,
            category=result.category,
            attempts=result.attempts,
            error=str(result.error),
        )
        if self.error_tracker is not None:
            cause = result.error
            if isinstance(cause, RetriesExhaustedError):
                cause = cause.last_error
            self.error_tracker.record(cause, result.category or ErrorCategory.UNKNOWN.value)

    async def process_chunked(
        self,
        items: Sequence[T],
        processor: Callable[[list[T]], Awaitable[list[R]]],
        *,
        chunk_size: int = 10,
        key: str = "default",
    ) -> ChunkedBatchResult[T, R]:
        """Process ``items`` in chunks, each chunk being one retried unit.

        Returns:
            Flattened outputs of successful chunks and the inputs of failed ones.
        """
        if chunk_size < 1:
            raise ConfigurationError(f"chunk_size must be >= 1, got {chunk_size}")

        chunks = [list(items[i:i + chunk_size]) for i in range(0, len(items), chunk_size)]
        batch = await self.process_batch(chunks, processor, key=key)

        results: list[R] = []
        failed: list[T] = []
        for chunk_result in batch:
            if chunk_result.success:
                results.extend(chunk_result.value or [])
            else:
                failed.extend(chunk_result.item)

        return ChunkedBatchResult(results=results, failed=failed, metrics=batch.metrics, chunks=batch)


__all__ = [
    "BatchProcessorConfig",
    "ItemResult",
    "ProcessingMetrics",
    "BatchResult",
    "ChunkedBatchResult",
    "classify_error",
    "BatchCoordinator",
]
