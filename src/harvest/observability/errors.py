"""Error occurrence tracking for batch processing.

Keeps per-message counts plus a bounded log of recent occurrences, so a
long-running worker can report which failures keep coming back without
holding every error it has ever seen.
"""

from __future__ import annotations

import threading
from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from harvest.core.errors import ConfigurationError


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


@dataclass
class ErrorOccurrence:
    message: str
    category: str
    count: int
    last_occurred: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "category": self.category,
            "count": self.count,
            "last_occurred": self.last_occurred.isoformat(),
        }


class ErrorTracker:
    """Counts errors by message and remembers the most recent ones.

    At most ``max_tracked`` distinct messages are counted; recording a new
    message beyond that evicts the one seen least recently. ``total`` still
    counts every recorded error.

    Args:
        max_recent: Occurrences kept in the recent log
        frequent_threshold: Count at which a message is reported as frequent
        max_tracked: Distinct messages counted at once
    """

    def __init__(
        self,
        max_recent: int = 100,
        frequent_threshold: int = 5,
        max_tracked: int = 1000,
    ) -> None:
        if max_tracked < 1:
            raise ConfigurationError(f"max_tracked must be >= 1, got {max_tracked}")
        self._frequent_threshold = frequent_threshold
        self._max_tracked = max_tracked
        self._by_message: OrderedDict[str, ErrorOccurrence] = OrderedDict()
        self._recent: deque[ErrorOccurrence] = deque(maxlen=max_recent)
        self._total = 0
        self._lock = threading.Lock()

    def record(self, error: BaseException | str, category: str = "unknown") -> None:
        message = str(error)
        now = utcnow()
        with self._lock:
            self._total += 1
            entry = self._by_message.get(message)
            if entry is None:
                entry = self._by_message[message] = ErrorOccurrence(message, category, 0, now)
                if len(self._by_message) > self._max_tracked:
                    self._by_message.popitem(last=False)
            else:
                self._by_message.move_to_end(message)
            entry.count += 1
            entry.last_occurred = now
            entry.category = category
            self._recent.append(ErrorOccurrence(message, category, entry.count, now))

    @property
    def total(self) -> int:
        with self._lock:
            return self._total

    def summary(self, recent: int = 10) -> dict[str, Any]:
        """Totals, frequent messages and the latest ``recent`` occurrences."""
        with self._lock:
            latest = list(self._recent)[-recent:] if recent > 0 else []
            return {
                "total": self._total,
                "unique": len(self._by_message),
                "frequent": [
                    entry.to_dict()
                    for entry in self._by_message.values()
                    if entry.count >= self._frequent_threshold
                ],
                "recent": [entry.to_dict() for entry in latest],
            }

    def clear(self) -> None:
        with self._lock:
            self._by_message.clear()
            self._recent.clear()
            self._total = 0


__all__ = ["ErrorOccurrence", "ErrorTracker"]
