"""refspine.core -- foundation layer shared by every refspine component.

Architecture::

    errors.py          Structured error hierarchy (RefSpineError, TransientError, ...)
    logging.py         structlog configuration, get_logger, LogContext
    settings.py        RefSpineSettings (pydantic-settings)
    timestamps.py      UTC helpers, ULIDs, Clock / ManualClock
    retry.py           ExponentialBackoff, RetryContext
    hashing.py         Content fingerprints for change detection
    orm/               SQLAlchemy tables and session factory
"""

from refspine.core.errors import (
    ErrorCategory,
    ErrorContext,
    FetchError,
    RefSpineError,
    TransientError,
    is_retryable,
)
from refspine.core.logging import LogContext, configure_logging, get_logger
from refspine.core.timestamps import Clock, ManualClock, SystemClock, utc_now

__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "FetchError",
    "RefSpineError",
    "TransientError",
    "is_retryable",
    "LogContext",
    "configure_logging",
    "get_logger",
    "Clock",
    "ManualClock",
    "SystemClock",
    "utc_now",
]
