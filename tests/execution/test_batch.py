"""Tests for BatchCoordinator: bounded, retried, circuit-guarded fan-out."""

from __future__ import annotations

import asyncio

import pytest
import structlog

from harvest.core.errors import (
    CircuitOpenError,
    ConfigurationError,
    ErrorCategory,
    HarvestError,
    RetriesExhaustedError,
    TransientOperationFailure,
)
from harvest.execution.batch import (
    BatchCoordinator,
    BatchProcessorConfig,
    BatchResult,
    ItemResult,
    ProcessingMetrics,
    classify_error,
)
from harvest.execution.circuit_breaker import CircuitBreaker, CircuitState
from harvest.execution.retry import RetryExecutor
from harvest.observability.errors import ErrorTracker


# ── Helpers ──────────────────────────────────────────────────────────────


async def _double(n: int) -> int:
    return n * 2


def _failing_on(bad: set[int], message: str = "connection refused"):
    calls: dict[int, int] = {}

    async def operation(n: int) -> int:
        calls[n] = calls.get(n, 0) + 1
        if n in bad:
            raise ConnectionError(f"{message} for {n}")
        return n * 10

    return operation, calls


@pytest.fixture
def coordinator_factory(fake_sleep, metric_store, clock):
    def build(**config_kwargs) -> BatchCoordinator:
        config = BatchProcessorConfig(**{"retry_delay_ms": 10, **config_kwargs})
        return BatchCoordinator(
            config,
            metrics=metric_store,
            executor=RetryExecutor(sleep=fake_sleep),
            clock=clock,
        )

    return build


# ── Configuration ────────────────────────────────────────────────────────


class TestBatchProcessorConfig:
    def test_defaults(self):
        config = BatchProcessorConfig()
        assert config.max_retries == 3
        assert config.retry_delay_ms == 1000
        assert config.concurrency_limit == 3
        assert config.circuit_breaker_threshold == 5
        assert config.circuit_breaker_timeout_ms == 60_000

    def test_retry_options_mapping(self):
        options = BatchProcessorConfig(max_retries=2, retry_delay_ms=250).retry_options()
        assert options.max_attempts == 3
        assert options.initial_delay_ms == 250
        assert options.max_delay_ms == 30_000

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_retries": -1},
            {"concurrency_limit": 0},
            {"circuit_breaker_threshold": 0},
            {"circuit_breaker_timeout_ms": -1},
            {"retry_delay_ms": -10},
            {"backoff_factor": 0.1},
        ],
    )
    def test_invalid_config_fails_at_construction(self, kwargs):
        with pytest.raises(ConfigurationError):
            BatchProcessorConfig(**kwargs)

    def test_config_is_immutable(self):
        config = BatchProcessorConfig()
        with pytest.raises(AttributeError):
            config.concurrency_limit = 10

    def test_breaker_built_from_config(self):
        coordinator = BatchCoordinator(
            BatchProcessorConfig(circuit_breaker_threshold=7, circuit_breaker_timeout_ms=500)
        )
        assert coordinator.breaker.failure_threshold == 7
        assert coordinator.breaker.reset_timeout_ms == 500


# ── classify_error ───────────────────────────────────────────────────────


class TestClassifyError:
    @pytest.mark.parametrize(
        "error, category",
        [
            (TimeoutError("upstream"), "timeout"),
            (RuntimeError("request timed out after 30s"), "timeout"),
            (ValueError("Validation failed for processed results"), "validation"),
            (ValueError("invalid produce grade"), "validation"),
            (ConnectionError("reset by peer"), "network"),
            (OSError("ECONNREFUSED 10.0.0.1:443"), "network"),
            (RuntimeError("network unreachable"), "network"),
            (RuntimeError("something odd"), "unknown"),
            (KeyError("grade"), "unknown"),
        ],
    )
    def test_string_matching(self, error, category):
        assert classify_error(error) == category

    def test_circuit_open(self):
        assert classify_error(CircuitOpenError("ai-grading")) == "circuit_open"

    def test_exhausted_uses_last_error(self):
        error = RetriesExhaustedError("op", 3, TimeoutError("deadline exceeded"))
        assert classify_error(error) == "timeout"

    def test_none_is_unknown(self):
        assert classify_error(None) == "unknown"

    def test_harvest_error_category_wins(self):
        assert classify_error(TransientOperationFailure("upstream returned 503")) == "network"
        error = RetriesExhaustedError(
            "op", 2, HarvestError("bad payload", category=ErrorCategory.VALIDATION)
        )
        assert classify_error(error) == "validation"

    @pytest.mark.parametrize(
        "error",
        [
            None,
            CircuitOpenError("k"),
            TimeoutError("x"),
            ValueError("invalid"),
            ConnectionError("x"),
            RuntimeError("odd"),
        ],
    )
    def test_results_are_error_category_values(self, error):
        assert classify_error(error) in {c.value for c in ErrorCategory}


# ── process_batch ────────────────────────────────────────────────────────


class TestProcessBatch:
    @pytest.mark.asyncio
    async def test_all_succeed(self, coordinator_factory):
        coordinator = coordinator_factory()

        result = await coordinator.process_batch([1, 2, 3], _double)

        assert isinstance(result, BatchResult)
        assert result.values == [2, 4, 6]
        assert all(r.success and r.attempts == 1 for r in result)
        assert result.metrics.success_rate == 1.0
        assert result.metrics.error_categories == {}

    @pytest.mark.asyncio
    async def test_partial_failures(self, coordinator_factory):
        coordinator = coordinator_factory(max_retries=2)
        operation, calls = _failing_on({2, 4})

        result = await coordinator.process_batch([1, 2, 3, 4, 5], operation)

        assert len(result) == 5
        assert [r.success for r in result] == [True, False, True, False, True]
        assert result.values == [10, None, 30, None, 50]
        assert isinstance(result[1].error, RetriesExhaustedError)
        assert result[1].attempts == 3
        assert calls[2] == 3 and calls[4] == 3 and calls[1] == 1

        metrics = result.metrics
        assert metrics.total_processed == 5
        assert metrics.success_count == 3
        assert metrics.error_count == 2
        assert metrics.success_rate == pytest.approx(0.6)
        assert metrics.error_categories == {"network": 2}
        assert metrics.retry_count == 4

    @pytest.mark.asyncio
    async def test_empty_batch(self, coordinator_factory):
        result = await coordinator_factory().process_batch([], _double)
        assert len(result) == 0
        assert result.metrics.total_processed == 0
        assert result.metrics.success_rate == 0.0

    @pytest.mark.asyncio
    async def test_preserves_input_order(self, coordinator_factory):
        coordinator = coordinator_factory(concurrency_limit=5)
        finished: list[int] = []

        async def slow_first(n: int) -> int:
            await asyncio.sleep(0.01 * (5 - n))
            finished.append(n)
            return n

        result = await coordinator.process_batch([0, 1, 2, 3, 4], slow_first)

        assert finished == [4, 3, 2, 1, 0]
        assert result.values == [0, 1, 2, 3, 4]
        assert [r.index for r in result] == [0, 1, 2, 3, 4]
        assert [r.item for r in result] == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_concurrency_limit_bounds_in_flight(self, coordinator_factory):
        coordinator = coordinator_factory(concurrency_limit=2)
        in_flight = 0
        peak = 0

        async def tracked(n: int) -> int:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.005)
            in_flight -= 1
            return n

        await coordinator.process_batch(list(range(10)), tracked)

        assert peak == 2

    @pytest.mark.asyncio
    async def test_retry_recovers_item(self, coordinator_factory):
        coordinator = coordinator_factory(max_retries=3)
        attempts: dict[int, int] = {}

        async def flaky(n: int) -> int:
            attempts[n] = attempts.get(n, 0) + 1
            if attempts[n] < 3:
                raise TimeoutError("timed out")
            return n

        result = await coordinator.process_batch([7], flaky)

        assert result[0].success
        assert result[0].attempts == 3
        assert result.metrics.retry_count == 2

    @pytest.mark.asyncio
    async def test_circuit_opens_and_short_circuits(self, coordinator_factory):
        coordinator = coordinator_factory(
            max_retries=1, concurrency_limit=1, circuit_breaker_threshold=2
        )
        operation, calls = _failing_on({1, 2, 3, 4, 5})

        result = await coordinator.process_batch([1, 2, 3, 4, 5], operation, key="ai-grading")

        assert len(result) == 5
        assert [r.category for r in result] == [
            "network", "network", "circuit_open", "circuit_open", "circuit_open",
        ]
        assert all(isinstance(r.error, CircuitOpenError) for r in result[2:])
        assert all(r.short_circuited for r in result[2:])
        assert 3 not in calls and 4 not in calls and 5 not in calls
        assert result.metrics.circuit_rejections == 3
        assert result.metrics.error_categories == {"network": 2, "circuit_open": 3}
        assert coordinator.breaker.state("ai-grading") == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_shared_breaker_across_coordinators(self, fake_sleep, clock):
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout_ms=60_000, clock=clock)
        config = BatchProcessorConfig(max_retries=0, concurrency_limit=1)
        first = BatchCoordinator(config, breaker=breaker, executor=RetryExecutor(sleep=fake_sleep))
        second = BatchCoordinator(config, breaker=breaker, executor=RetryExecutor(sleep=fake_sleep))
        operation, _ = _failing_on({1})

        await first.process_batch([1], operation, key="prices")
        result = await second.process_batch([2], _double, key="prices")

        assert result[0].category == "circuit_open"

    @pytest.mark.asyncio
    async def test_half_open_trial_closes_circuit(self, coordinator_factory, clock):
        coordinator = coordinator_factory(
            max_retries=0,
            concurrency_limit=1,
            circuit_breaker_threshold=1,
            circuit_breaker_timeout_ms=1_000,
        )
        failing, _ = _failing_on({1})
        await coordinator.process_batch([1], failing, key="prices")

        clock.advance_ms(1_000)
        result = await coordinator.process_batch([2, 3], _double, key="prices")

        assert result.values == [4, 6]
        assert coordinator.breaker.state("prices") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_breaker_released_after_every_item(self, coordinator_factory):
        coordinator = coordinator_factory(max_retries=0, circuit_breaker_threshold=100)
        operation, _ = _failing_on({2, 3})

        await coordinator.process_batch([1, 2, 3, 4], operation, key="prices")

        stats = coordinator.breaker.stats("prices")
        assert stats.allowed == 4
        assert stats.successes + stats.failures == 4

    @pytest.mark.asyncio
    async def test_records_into_metric_store(self, coordinator_factory, metric_store):
        coordinator = coordinator_factory(max_retries=0)
        operation, _ = _failing_on({2})

        await coordinator.process_batch([1, 2, 3], operation, key="ai-grading")

        assert sorted(metric_store.get_metric("batch.ai-grading.success")) == [0.0, 1.0, 1.0]
        assert metric_store.get_stats("batch.ai-grading.latency_ms").count == 3
        last_run = metric_store.get_custom_metric("batch.ai-grading.last_run")
        assert last_run["total_processed"] == 3
        assert last_run["success_rate"] == pytest.approx(2 / 3)

    @pytest.mark.asyncio
    async def test_default_executor_records_every_attempt(self, metric_store, clock):
        coordinator = BatchCoordinator(
            BatchProcessorConfig(max_retries=1, retry_delay_ms=0),
            metrics=metric_store,
            clock=clock,
        )
        operation, _ = _failing_on({2})

        await coordinator.process_batch([1, 2], operation, key="k")

        assert metric_store.get_stats("batch.k.attempt_ms").count == 3
        assert sorted(metric_store.get_metric("batch.k.attempt_success")) == [0.0, 0.0, 1.0]

    @pytest.mark.asyncio
    async def test_log_context_bound_per_batch(self, coordinator_factory):
        coordinator = coordinator_factory()
        seen: list[dict] = []

        async def capture(n: int) -> int:
            seen.append(structlog.contextvars.get_contextvars())
            return n

        result = await coordinator.process_batch([1, 2], capture, key="prices")

        assert [ctx["batch_id"] for ctx in seen] == [result.batch_id] * 2
        assert all(ctx["key"] == "prices" for ctx in seen)
        assert "batch_id" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_error_tracker_receives_failures(self, fake_sleep, clock):
        tracker = ErrorTracker()
        coordinator = BatchCoordinator(
            BatchProcessorConfig(max_retries=0),
            executor=RetryExecutor(sleep=fake_sleep),
            error_tracker=tracker,
            clock=clock,
        )

        async def invalid(n: int) -> int:
            raise ValueError("invalid moisture reading")

        await coordinator.process_batch([1, 2], invalid)

        summary = tracker.summary()
        assert summary["total"] == 2
        assert summary["unique"] == 1
        assert summary["recent"][0]["category"] == "validation"

    @pytest.mark.asyncio
    async def test_to_dict(self, coordinator_factory):
        result = await coordinator_factory().process_batch([1], _double)
        data = result.to_dict()
        assert data["batch_id"] == result.batch_id
        assert data["metrics"]["success_count"] == 1
        assert data["items"][0]["error"] is None


# ── process_chunked ──────────────────────────────────────────────────────


class TestProcessChunked:
    @pytest.mark.asyncio
    async def test_chunks_flatten_results(self, coordinator_factory):
        coordinator = coordinator_factory()
        seen_chunks: list[list[str]] = []

        async def grade_chunk(chunk: list[str]) -> list[str]:
            seen_chunks.append(chunk)
            return [f"graded:{c}" for c in chunk]

        result = await coordinator.process_chunked(
            ["a", "b", "c", "d", "e"], grade_chunk, chunk_size=2
        )

        assert sorted(map(len, seen_chunks)) == [1, 2, 2]
        assert result.results == [f"graded:{c}" for c in "abcde"]
        assert result.failed == []
        assert result.metrics.total_processed == 3

    @pytest.mark.asyncio
    async def test_failed_chunks_report_items(self, coordinator_factory):
        coordinator = coordinator_factory(max_retries=1)

        async def grade_chunk(chunk: list[str]) -> list[str]:
            if "bad" in chunk:
                raise ValueError("Validation failed for processed results")
            return chunk

        result = await coordinator.process_chunked(
            ["a", "bad", "c", "d"], grade_chunk, chunk_size=2
        )

        assert result.results == ["c", "d"]
        assert result.failed == ["a", "bad"]
        assert result.metrics.error_categories == {"validation": 1}

    @pytest.mark.asyncio
    async def test_invalid_chunk_size(self, coordinator_factory):
        with pytest.raises(ConfigurationError):
            await coordinator_factory().process_chunked([1], _double, chunk_size=0)


# ── ProcessingMetrics ────────────────────────────────────────────────────


class TestProcessingMetrics:
    def test_average_excludes_short_circuits(self):
        results = [
            ItemResult(index=0, item=1, success=True, value=1, attempts=1, duration_ms=10.0),
            ItemResult(index=1, item=2, success=False, error=RuntimeError("x"),
                       category="unknown", attempts=2, duration_ms=30.0),
            ItemResult(index=2, item=3, success=False, error=CircuitOpenError("k"),
                       category="circuit_open"),
        ]

        metrics = ProcessingMetrics.from_results(results)

        assert metrics.average_processing_time_ms == pytest.approx(20.0)
        assert metrics.retry_count == 1
        assert metrics.circuit_rejections == 1
        assert metrics.to_dict()["error_categories"] == {"unknown": 1, "circuit_open": 1}
