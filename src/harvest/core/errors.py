"""
Structured error types for the harvest resilience core.

Every failure that leaves a harvest component is a ``HarvestError`` carrying
a category, a retryable flag, structured context and the chained cause. The
batch coordinator relies on these types to tell a short-circuited call apart
from one that ran out of retries.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────┐
        │                      HarvestError                        │
        │      (category, retryable, context, cause)               │
        ├──────────────────────────────────────────────────────────┤
        │  TransientOperationFailure   RetriesExhaustedError       │
        │  (retryable=True)            (attempts, last_error)      │
        │                                                          │
        │  CircuitOpenError            ConfigurationError          │
        │  (key, fast failure)         (CONFIG, also ValueError)   │
        └──────────────────────────────────────────────────────────┘

Examples:
    >>> error = TransientOperationFailure("upstream returned 503")
    >>> error.retryable
    True
    >>> error.with_context(operation="grade_produce").context.operation
    'grade_produce'

Guardrails:
    ❌ DON'T: Swallow the original exception when wrapping it
    ✅ DO: Pass it as ``cause=`` so ``__cause__`` is chained
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Coarse error categories used for routing and batch breakdowns."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    CONFIG = "config"
    CIRCUIT_OPEN = "circuit_open"
    RETRY = "retry"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error for logging."""

    operation: str | None = None
    key: str | None = None
    attempts: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["operation", "key", "attempts"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class HarvestError(Exception):
    """
    Base exception for all harvest errors.

    Subclasses set ``default_category`` and ``default_retryable`` so callers
    only pass what differs from the defaults.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> HarvestError:
        """
        Add context to this error (fluent API).

        Usage:
            raise HarvestError("Failed").with_context(operation="grade_produce")
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


class TransientOperationFailure(HarvestError):
    """A failure of the wrapped operation that is worth retrying."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class RetriesExhaustedError(HarvestError):
    """
    Terminal failure: the operation failed on every allowed attempt.

    Carries the operation name, the number of attempts made, the last
    underlying error and the per-attempt outcomes.
    """

    default_category = ErrorCategory.RETRY

    def __init__(
        self,
        operation_name: str,
        attempts: int,
        last_error: BaseException,
        outcomes: list[Any] | None = None,
    ):
        super().__init__(
            f"{operation_name} failed after {attempts} attempts: {last_error}",
            context=ErrorContext(operation=operation_name, attempts=attempts),
            cause=last_error,
        )
        self.operation_name = operation_name
        self.attempts = attempts
        self.last_error = last_error
        self.outcomes = list(outcomes or [])


class CircuitOpenError(HarvestError):
    """Raised when a circuit is open and the call was rejected without running."""

    default_category = ErrorCategory.CIRCUIT_OPEN

    def __init__(self, key: str, message: str | None = None):
        super().__init__(
            message or f"Circuit '{key}' is open, rejecting request",
            context=ErrorContext(key=key),
        )
        self.key = key


class ConfigurationError(HarvestError, ValueError):
    """Invalid configuration, raised at construction time."""

    default_category = ErrorCategory.CONFIG


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "HarvestError",
    "TransientOperationFailure",
    "RetriesExhaustedError",
    "CircuitOpenError",
    "ConfigurationError",
]
