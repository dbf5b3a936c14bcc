"""Retry with bounded exponential backoff for async remote operations.

Example:
    >>> from harvest.execution.retry import ExponentialBackoff, RetryOptions
    >>>
    >>> options = RetryOptions(max_attempts=5, initial_delay_ms=1000, max_delay_ms=10000)
    >>> backoff = ExponentialBackoff()
    >>> [backoff.next_delay(attempt, options) for attempt in range(1, 6)]
    [1000, 2000, 4000, 8000, 10000]

    >>> executor = RetryExecutor()
    >>> grade = await executor.execute(
    ...     lambda: client.grade(image_url), options, operation_name="grade_produce"
    ... )
"""

from __future__ import annotations

import asyncio
import functools
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from harvest.core.errors import ConfigurationError, RetriesExhaustedError
from harvest.core.logging import get_logger

if TYPE_CHECKING:
    from harvest.observability.metrics import MetricStore

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryOptions:
    """Immutable retry configuration.

    Attributes:
        max_attempts: Total attempts including the first one (>= 1)
        initial_delay_ms: Delay before the first retry
        max_delay_ms: Delay cap
        backoff_factor: Exponential multiplier (>= 1)
        jitter: Fraction of each delay that may be randomly removed (0 = none)
    """

    max_attempts: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 10_000
    backoff_factor: float = 2.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ConfigurationError("retry delays must be non-negative")
        if self.backoff_factor < 1:
            raise ConfigurationError(f"backoff_factor must be >= 1, got {self.backoff_factor}")
        if not 0.0 <= self.jitter <= 1.0:
            raise ConfigurationError(f"jitter must be within [0, 1], got {self.jitter}")


class ExponentialBackoff:
    """Bounded exponential backoff.

    Delay = min(initial_delay * factor ** (attempt - 1), max_delay)

    With ``jitter > 0`` the delay is drawn from
    ``[delay * (1 - jitter), delay]`` so the deterministic curve stays an
    upper bound.
    """

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng or random.Random()

    def next_delay(self, attempt: int, options: RetryOptions) -> int:
        """Delay in milliseconds to wait after the given (1-based) failed attempt."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")

        delay = min(
            options.initial_delay_ms * (options.backoff_factor ** (attempt - 1)),
            options.max_delay_ms,
        )

        if options.jitter:
            delay = self._rng.uniform(delay * (1 - options.jitter), delay)

        return max(0, int(delay))


@dataclass(frozen=True)
class RetryAttemptOutcome:
    """Outcome of one attempt of a retried operation."""

    attempt_number: int
    succeeded: bool
    error: str | None = None
    delay_before_next_ms: int | None = None
    duration_ms: float = 0.0


class RetryExecutor:
    """Drives an async operation through the backoff policy.

    The executor keeps no per-call state, so one instance can serve any
    number of concurrent operations.

    Args:
        backoff: Delay policy (default: deterministic ExponentialBackoff)
        sleep: Awaitable sleep taking seconds (default: asyncio.sleep)
        metrics: Optional store receiving per-attempt latency and outcome
        clock: Monotonic clock in seconds used to time attempts
    """

    def __init__(
        self,
        backoff: ExponentialBackoff | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        metrics: MetricStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backoff = backoff or ExponentialBackoff()
        self._sleep = sleep
        self._metrics = metrics
        self._clock = clock

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        options: RetryOptions | None = None,
        operation_name: str = "operation",
        on_retry: Callable[[int, Exception, int], None] | None = None,
    ) -> T:
        """Run ``operation`` until it succeeds or ``max_attempts`` is reached.

        Any ``Exception`` counts as a failure and is retried; the executor
        does not inspect it. Cancellation propagates untouched.

        Returns:
            The operation's result

        Raises:
            RetriesExhaustedError: after the last allowed attempt failed
        """
        options = options or RetryOptions()
        outcomes: list[RetryAttemptOutcome] = []
        attempt = 1

        while True:
            started = self._clock()
            try:
                result = await operation()
            except Exception as e:
                duration_ms = (self._clock() - started) * 1000
                self._record(operation_name, duration_ms, succeeded=False)

                if attempt >= options.max_attempts:
                    outcomes.append(
                        RetryAttemptOutcome(attempt, False, str(e), None, duration_ms)
                    )
                    logger.error(
                        "retry.exhausted",
                        operation=operation_name,
                        attempts=attempt,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    raise RetriesExhaustedError(operation_name, attempt, e, outcomes) from e

                delay_ms = self._backoff.next_delay(attempt, options)
                outcomes.append(
                    RetryAttemptOutcome(attempt, False, str(e), delay_ms, duration_ms)
                )
                logger.warning(
                    "retry.attempt_failed",
                    operation=operation_name,
                    attempt=attempt,
                    max_attempts=options.max_attempts,
                    delay_ms=delay_ms,
                    error=str(e),
                )

                if on_retry:
                    on_retry(attempt, e, delay_ms)

                await self._sleep(delay_ms / 1000)
                attempt += 1
                continue

            self._record(operation_name, (self._clock() - started) * 1000, succeeded=True)
            if attempt > 1:
                logger.info("retry.succeeded", operation=operation_name, attempts=attempt)
            return result

    def _record(self, operation_name: str, duration_ms: float, *, succeeded: bool) -> None:
        if self._metrics is None:
            return
        self._metrics.record(f"{operation_name}.attempt_ms", duration_ms)
        self._metrics.record(f"{operation_name}.attempt_success", 1.0 if succeeded else 0.0)


def with_retry(
    options: RetryOptions | None = None,
    operation_name: str | None = None,
    executor: RetryExecutor | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator factory adding retry logic to an ``async def`` function.

    Example:
        >>> @with_retry(RetryOptions(max_attempts=4), operation_name="fetch_market_price")
        ... async def fetch_market_price(produce_id):
        ...     return await client.get_price(produce_id)
    """
    executor = executor or RetryExecutor()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        name = operation_name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await executor.execute(lambda: func(*args, **kwargs), options, name)

        return wrapper

    return decorator


__all__ = [
    "RetryOptions",
    "ExponentialBackoff",
    "RetryAttemptOutcome",
    "RetryExecutor",
    "with_retry",
]
