"""
Shared pytest fixtures and configuration for harvest tests.

This module provides:
- A controllable clock for breaker, retry and metric timing
- A recording sleep so retries never wait in real time
- Fresh MetricStore / CircuitBreaker instances per test
- structlog reset between tests so log capture is reliable
"""

import sys
from pathlib import Path

import pytest
import structlog

# Ensure harvest package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from harvest.core.settings import clear_settings_cache
from harvest.execution.circuit_breaker import CircuitBreaker
from harvest.observability.metrics import MetricStore


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)

        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)

        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Time Fixtures
# =============================================================================


class FakeClock:
    """Manually advanced clock returning seconds."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def advance_ms(self, milliseconds: float) -> None:
        self.now += milliseconds / 1000


class RecordingSleep:
    """Async sleep stand-in that records requested delays and returns at once."""

    def __init__(self, clock: FakeClock | None = None):
        self.calls: list[float] = []
        self._clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self._clock is not None:
            self._clock.advance(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(clock)


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def metric_store(clock: FakeClock) -> MetricStore:
    return MetricStore(retention_ms=60_000, clock=clock)


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(failure_threshold=3, reset_timeout_ms=1_000, clock=clock)


# =============================================================================
# Cleanup Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo any logging configuration done by a test."""
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


@pytest.fixture(autouse=True)
def reset_settings_cache():
    clear_settings_cache()
    yield
    clear_settings_cache()
