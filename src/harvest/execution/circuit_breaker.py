"""Circuit breaker guarding classes of remote operations.

One breaker instance holds an independent state per key (an endpoint, a
remote model, an operation name). Callers ask before working and report
the outcome afterwards.

States:
    CLOSED: Normal operation, calls pass through
    OPEN: Failing fast, calls rejected immediately
    HALF_OPEN: Cooldown elapsed, a single trial call is in flight

Example:
    >>> breaker = CircuitBreaker(failure_threshold=5, reset_timeout_ms=60_000)
    >>>
    >>> ticket = breaker.acquire("ai-grading")
    >>> if ticket is not None:
    ...     try:
    ...         result = await grade(image)
    ...     except Exception:
    ...         breaker.after_call("ai-grading", False, ticket)
    ...         raise
    ...     breaker.after_call("ai-grading", True, ticket)
    >>>
    >>> # or, pairing the calls automatically:
    >>> async with breaker.guard("ai-grading"):
    ...     result = await grade(image)
"""

from __future__ import annotations

import threading
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from enum import Enum

from harvest.core.errors import CircuitOpenError, ConfigurationError
from harvest.core.logging import get_logger

logger = get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Rejecting requests
    HALF_OPEN = "half_open"  # Trial call in flight


@dataclass
class CircuitBreakerState:
    """Per-key breaker state. Only the breaker mutates it.

    ``generation`` increases on every trip and every reset; a call admitted
    by ``acquire`` carries the generation it was admitted in.
    """

    is_open: bool = False
    failure_count: int = 0
    last_failure_time: float | None = None
    trial_in_flight: bool = False
    generation: int = 0


@dataclass
class CircuitStats:
    """Statistics for circuit breaker monitoring."""

    allowed: int = 0
    rejected: int = 0
    successes: int = 0
    failures: int = 0
    trips: int = 0

    @property
    def failure_rate(self) -> float:
        """Failure rate as a percentage of completed calls."""
        total = self.successes + self.failures
        if total == 0:
            return 0.0
        return (self.failures / total) * 100


class CircuitBreaker:
    """Keyed circuit breaker.

    Every ``before_call`` that returns True must be paired with exactly one
    ``after_call`` for the same key, on every exit path. ``guard`` does this
    for you.

    Attributes:
        failure_threshold: Consecutive failures before the circuit opens
        reset_timeout_ms: Time the circuit stays open before a trial call
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout_ms: int = 60_000,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ConfigurationError(
                f"failure_threshold must be >= 1, got {failure_threshold}"
            )
        if reset_timeout_ms < 0:
            raise ConfigurationError(
                f"reset_timeout_ms must be >= 0, got {reset_timeout_ms}"
            )
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self._clock = clock
        self._states: dict[str, CircuitBreakerState] = {}
        self._stats: dict[str, CircuitStats] = {}
        self._lock = threading.RLock()

    def _get(self, key: str) -> CircuitBreakerState:
        state = self._states.get(key)
        if state is None:
            state = self._states[key] = CircuitBreakerState()
            self._stats[key] = CircuitStats()
        return state

    def _cooldown_elapsed(self, state: CircuitBreakerState) -> bool:
        if state.last_failure_time is None:
            return True
        return (self._clock() - state.last_failure_time) * 1000 >= self.reset_timeout_ms

    def acquire(self, key: str) -> int | None:
        """Admit a call for ``key`` and return its generation ticket.

        Returns:
            The generation to hand back to ``after_call``, or None if the
            call must be short-circuited
        """
        with self._lock:
            state = self._get(key)
            stats = self._stats[key]

            if not state.is_open:
                stats.allowed += 1
                return state.generation

            if not state.trial_in_flight and self._cooldown_elapsed(state):
                state.trial_in_flight = True
                stats.allowed += 1
                logger.info("circuit_breaker.half_open", key=key)
                return state.generation

            stats.rejected += 1
            return None

    def before_call(self, key: str) -> bool:
        """Check whether a call for ``key`` may proceed.

        Returns:
            True if the call can proceed, False if it must be short-circuited
        """
        return self.acquire(key) is not None

    def after_call(self, key: str, succeeded: bool, generation: int | None = None) -> None:
        """Record the outcome of a call previously allowed by ``before_call``.

        Passing the ``generation`` returned by ``acquire`` lets the breaker
        tell the half-open trial apart from calls admitted before the last
        trip. Outcomes from an older generation only update the statistics.
        """
        with self._lock:
            state = self._get(key)
            stats = self._stats[key]

            if succeeded:
                stats.successes += 1
            else:
                stats.failures += 1

            if generation is not None and generation != state.generation:
                return

            if not succeeded:
                state.failure_count += 1

            if state.trial_in_flight:
                state.trial_in_flight = False
                if succeeded:
                    state.is_open = False
                    state.failure_count = 0
                    logger.info("circuit_breaker.closed", key=key)
                else:
                    state.last_failure_time = self._clock()
                    logger.warning(
                        "circuit_breaker.trial_failed",
                        key=key,
                        failure_count=state.failure_count,
                    )
                return

            if state.is_open:
                # Late outcome of a call admitted before the circuit opened.
                return

            if succeeded:
                state.failure_count = 0
                return

            state.last_failure_time = self._clock()
            if state.failure_count >= self.failure_threshold:
                state.is_open = True
                state.generation += 1
                stats.trips += 1
                logger.warning(
                    "circuit_breaker.opened",
                    key=key,
                    failure_count=state.failure_count,
                    reset_timeout_ms=self.reset_timeout_ms,
                )

    @asynccontextmanager
    async def guard(self, key: str) -> AsyncIterator[None]:
        """Scoped acquisition: reject when open, otherwise always report back.

        Raises:
            CircuitOpenError: if the circuit rejects the call
        """
        generation = self.acquire(key)
        if generation is None:
            raise CircuitOpenError(key)

        succeeded = False
        try:
            yield
            succeeded = True
        finally:
            self.after_call(key, succeeded, generation)

    def state(self, key: str) -> CircuitState:
        """Current state for ``key`` (CLOSED for unknown keys)."""
        with self._lock:
            state = self._states.get(key)
            if state is None or not state.is_open:
                return CircuitState.CLOSED
            if state.trial_in_flight:
                return CircuitState.HALF_OPEN
            return CircuitState.OPEN

    def snapshot(self, key: str) -> CircuitBreakerState:
        """Copy of the state for ``key``; mutating it has no effect."""
        with self._lock:
            return replace(self._states.get(key) or CircuitBreakerState())

    def stats(self, key: str) -> CircuitStats:
        """Copy of the statistics for ``key``."""
        with self._lock:
            return replace(self._stats.get(key) or CircuitStats())

    def keys(self) -> list[str]:
        """All keys seen so far."""
        with self._lock:
            return list(self._states.keys())

    def reset(self, key: str | None = None) -> None:
        """Close one circuit, or all circuits when ``key`` is None."""
        with self._lock:
            targets = [key] if key is not None else list(self._states.keys())
            for name in targets:
                if name in self._states:
                    # Calls admitted before the reset become stale
                    previous = self._states[name].generation
                    self._states[name] = CircuitBreakerState(generation=previous + 1)


__all__ = [
    "CircuitState",
    "CircuitBreakerState",
    "CircuitStats",
    "CircuitBreaker",
]
