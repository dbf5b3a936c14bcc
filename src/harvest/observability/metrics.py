"""In-memory time-series metrics with bounded retention.

Each series is a named, append-only sequence of ``(timestamp, value)``
samples in call order. Samples older than the retention window are evicted
lazily the next time the same series is written; there is no background
timer. Statistics are computed on demand.

Example:
    >>> store = MetricStore(retention_ms=60 * 60 * 1000)
    >>> for latency in (120, 80, 95, 300, 110):
    ...     store.record("ai_grading.latency_ms", latency)
    >>> store.get_stats("ai_grading.latency_ms").max
    300.0
    >>> store.set_custom_metric("daily_offers", {"created": 42, "accepted": 17})
"""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from numbers import Real
from typing import Any

from harvest.core.errors import ConfigurationError

DEFAULT_RETENTION_MS = 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class MetricStats:
    """Aggregate statistics over a series. All zero when it has no samples."""

    avg: float = 0.0
    min: float = 0.0
    max: float = 0.0
    count: int = 0
    p95: float = 0.0
    p99: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def percentile(sorted_values: list[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending list (no interpolation).

    index = ceil(pct / 100 * n) - 1, clamped to the list bounds.
    """
    if not sorted_values:
        return 0.0
    index = math.ceil((pct / 100) * len(sorted_values)) - 1
    index = min(max(index, 0), len(sorted_values) - 1)
    return sorted_values[index]


class MetricStore:
    """Numeric series plus a last-write-wins store of custom snapshots.

    The store is the sole owner of both maps. Construct one per process (or
    per test) and share it; nothing here is a module-level global.

    Args:
        retention_ms: Maximum sample age kept in a series
        clock: Wall clock in seconds used to timestamp samples
    """

    def __init__(
        self,
        retention_ms: int = DEFAULT_RETENTION_MS,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if retention_ms <= 0:
            raise ConfigurationError(f"retention_ms must be > 0, got {retention_ms}")
        self.retention_ms = retention_ms
        self._clock = clock
        self._series: dict[str, deque[tuple[float, float]]] = {}
        self._custom: dict[str, Any] = {}
        self._lock = threading.Lock()

    # ── Numeric series ───────────────────────────────────────────────

    def record(self, name: str, value: float) -> None:
        """Append ``value`` to the series and evict expired samples."""
        if isinstance(value, bool) or not isinstance(value, Real):
            raise TypeError(f"metric value must be a number, got {type(value).__name__}")

        now = self._clock()
        with self._lock:
            series = self._series.setdefault(name, deque())
            series.append((now, float(value)))
            self._evict(series, now)

    def _evict(self, series: deque[tuple[float, float]], now: float) -> None:
        cutoff = now - self.retention_ms / 1000
        while series and series[0][0] < cutoff:
            series.popleft()

    def get_metric(self, name: str) -> list[float]:
        """Retained values of a series in insertion order."""
        with self._lock:
            return [value for _, value in self._series.get(name, ())]

    def _values(self, name: str, window_ms: int | None) -> list[float]:
        with self._lock:
            samples = list(self._series.get(name, ()))
        if not window_ms:
            return [value for _, value in samples]
        cutoff = self._clock() - window_ms / 1000
        return [value for ts, value in samples if ts >= cutoff]

    def get_stats(self, name: str, window_ms: int | None = None) -> MetricStats:
        """Statistics over retained samples, or only those within ``window_ms``.

        Missing or empty series yield all-zero stats.
        """
        values = self._values(name, window_ms)
        if not values:
            return MetricStats()

        ordered = sorted(values)
        return MetricStats(
            avg=sum(values) / len(values),
            min=ordered[0],
            max=ordered[-1],
            count=len(values),
            p95=percentile(ordered, 95),
            p99=percentile(ordered, 99),
        )

    def get_all_metrics(self) -> dict[str, list[float]]:
        """Copy of every series' retained values."""
        with self._lock:
            return {
                name: [value for _, value in series]
                for name, series in self._series.items()
            }

    @contextmanager
    def timed(self, name: str) -> Iterator[None]:
        """Record the elapsed milliseconds of the block, even if it raises."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.record(name, (time.perf_counter() - started) * 1000)

    # ── Custom snapshots ─────────────────────────────────────────────

    def set_custom_metric(self, name: str, value: Any) -> None:
        with self._lock:
            self._custom[name] = value

    def get_custom_metric(self, name: str, default: Any = None) -> Any:
        with self._lock:
            return self._custom.get(name, default)

    def get_all_custom_metrics(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._custom)

    # ── Reset ────────────────────────────────────────────────────────

    def clear_metrics(self) -> None:
        """Empty both the numeric series and the custom snapshots."""
        with self._lock:
            self._series.clear()
            self._custom.clear()


__all__ = ["DEFAULT_RETENTION_MS", "MetricStats", "MetricStore", "percentile"]
