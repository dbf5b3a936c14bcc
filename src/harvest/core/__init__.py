"""Harvest Core -- errors, structured logging and settings shared by every module.

Architecture::

    errors.py      Typed error hierarchy (HarvestError, RetriesExhaustedError, ...)
    logging.py     structlog configuration + get_logger
    settings.py    HarvestSettings (pydantic-settings, HARVEST_ prefix)
"""

from harvest.core.errors import (
    CircuitOpenError,
    ConfigurationError,
    ErrorCategory,
    ErrorContext,
    HarvestError,
    RetriesExhaustedError,
    TransientOperationFailure,
)
from harvest.core.logging import (
    LogContext,
    configure_logging,
    get_logger,
)

__all__ = [
    # errors
    "ErrorCategory",
    "ErrorContext",
    "HarvestError",
    "TransientOperationFailure",
    "RetriesExhaustedError",
    "CircuitOpenError",
    "ConfigurationError",
    # logging
    "configure_logging",
    "get_logger",
    "LogContext",
]
