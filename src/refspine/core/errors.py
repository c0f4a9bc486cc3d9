"""
Structured error types for refspine.

Provides a typed hierarchy of errors with metadata for retry decisions,
categorization, reporting and root cause analysis through error chaining.

Every error raised by the reference-data engine extends RefSpineError and
carries:
- **Category:** What kind of error (network, source, hierarchy, conversion...)
- **Retryable:** Whether the operation can be retried automatically
- **Retry-after:** How long to wait before retrying
- **Context:** Structured metadata (source, URL, URI, dimension, custom fields)
- **Cause:** Chained underlying exception

Manifesto:
    - **Typed Error Hierarchy:** Fetch, hierarchy and conversion failures are
      different things and are handled at different layers
    - **Explicit Retry Semantics:** Only transient errors are retried by sync
    - **Rich Context:** Errors carry metadata for logging and reports
    - **Error Chaining:** Preserve original exceptions while adding context

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                      RefSpineError                               │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  TransientError    SourceError        ValidationError           │
        │  (retryable=True)  (SOURCE)           (VALIDATION)              │
        │       │                │                   │                     │
        │  FetchError        SourceNotFound     RelationshipMismatch      │
        │  NetworkError      ParseError         NonNumericResult          │
        │  RateLimitError                                                  │
        │                                                                  │
        │  HierarchyError    ConversionError    StorageError              │
        │  (HIERARCHY)       (CONVERSION)       (STORAGE)                 │
        │       │                │                   │                     │
        │  HierarchyCycle    IncompatibleDim    ConcurrentModification    │
        │                    NoConversionPath                             │
        │                    UndefinedConversion                          │
        │                    UnknownConcept                               │
        │                                                                  │
        │  ConfigError       AssociationError                             │
        │  (CONFIG)          (ASSOCIATION)                                │
        │                        │                                         │
        │                    NoSpatialRelation                             │
        └─────────────────────────────────────────────────────────────────┘

    StaleCacheWarning is not part of the hierarchy: stale data is a status,
    recorded on entries and in sync reports, never raised.

Propagation:
    - Fetch failures are recovered by the cache controller (serve stale,
      mark error) and only surface as report entries.
    - Hierarchy and conversion errors are caller-visible: they indicate a
      data-integrity problem.
    - Association mismatches downgrade the association status.

Examples:
    >>> error = FetchError("Finto returned 503", retry_after=30)
    >>> error.retryable
    True
    >>> error.with_context(source_name="finto", url="https://api.finto.fi")
    FetchError('Finto returned 503', category=NETWORK)

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context,
    refspine, hierarchy, conversion
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification and routing.

    Categories are grouped by their typical retry behavior:
    - **Infrastructure (usually transient):** NETWORK, STORAGE
    - **Source/data errors:** SOURCE, PARSE, VALIDATION
    - **Data integrity (never retryable):** HIERARCHY, CONVERSION, ASSOCIATION
    - **Configuration:** CONFIG
    - **Internal errors:** INTERNAL, UNKNOWN
    """

    # Infrastructure errors (usually transient)
    NETWORK = "NETWORK"           # Connection, timeout, HTTP 5xx
    STORAGE = "STORAGE"           # Store writes, optimistic conflicts

    # Source/data errors
    SOURCE = "SOURCE"             # Upstream API, item not found
    PARSE = "PARSE"               # Malformed external payloads
    VALIDATION = "VALIDATION"     # Relationship mismatch, bad values

    # Data integrity errors
    HIERARCHY = "HIERARCHY"       # Cycles in broader edges
    CONVERSION = "CONVERSION"     # Unit conversion failures
    ASSOCIATION = "ASSOCIATION"   # Spatial association evaluation

    # Configuration errors (never retryable)
    CONFIG = "CONFIG"

    # Internal errors
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata context for errors.

    Typed fields for the metadata refspine attaches most often; anything
    else goes into ``metadata``. ``to_dict()`` serializes non-None fields
    for structured logging.

    Attributes:
        source_name: Name of the external source (e.g. ``"finto"``)
        url: URL that was being accessed
        http_status: HTTP status code if applicable
        uri: Concept URI involved
        dimension: Dimension tag involved
        sync_run_id: Identifier of the sync pass
        metadata: Additional key-value pairs
    """

    source_name: str | None = None
    url: str | None = None
    http_status: int | None = None
    uri: str | None = None
    dimension: str | None = None
    sync_run_id: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["source_name", "url", "http_status", "uri", "dimension", "sync_run_id"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class RefSpineError(Exception):
    """
    Base exception for all refspine errors.

    Subclasses set ``default_category`` and ``default_retryable`` class
    attributes to provide sensible defaults for their domain.

    Examples:
        >>> error = RefSpineError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.to_dict()["retryable"]
        False
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> RefSpineError:
        """
        Add context to this error (fluent API).

        Usage:
            raise FetchError("Failed").with_context(
                source_name="finto",
                url="https://api.finto.fi/rest/v1/ucum/data"
            )
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
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (Retryable)
# =============================================================================


class TransientError(RefSpineError):
    """
    Temporary error that may succeed on retry.

    Network timeouts, rate limiting, 5xx responses. The sync orchestrator
    retries these with exponential backoff; everything else fails the page
    immediately.
    """

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class FetchError(TransientError):
    """An external fetch failed in a way that may succeed later."""


class NetworkError(FetchError):
    """Connection-level failure (DNS, refused, reset, timeout)."""


class RateLimitError(FetchError):
    """Rate limit exceeded (HTTP 429)."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: int = 60,
        **kwargs: Any,
    ):
        super().__init__(message, retry_after=retry_after, **kwargs)


# =============================================================================
# SOURCE ERRORS
# =============================================================================


class SourceError(RefSpineError):
    """
    Error from an external source.

    Not retryable by default (404, 400, malformed payloads).
    """

    default_category = ErrorCategory.SOURCE
    default_retryable = False


class SourceNotFoundError(SourceError):
    """Requested item does not exist at the source."""


class ParseError(SourceError):
    """External payload could not be transformed into the local shape."""

    default_category = ErrorCategory.PARSE


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(RefSpineError):
    """
    Data validation error.

    Never retryable - data must be fixed.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        return result


class RelationshipMismatchError(ValidationError):
    """Declared spatial relationship no longer holds against cached geometry."""

    def __init__(self, declared: str, computed: str | None, target: str):
        self.declared = declared
        self.computed = computed
        self.target = target
        found = computed or "disjoint"
        super().__init__(
            f"declared '{declared}' but geometry is '{found}' against {target}",
            field="spatial_relation",
            value=declared,
        )


class NonNumericResultError(ValidationError):
    """Only numeric observation results can be converted."""


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(RefSpineError):
    """Configuration error. Never retryable."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# STORAGE ERRORS
# =============================================================================


class StorageError(RefSpineError):
    """Store read/write error."""

    default_category = ErrorCategory.STORAGE
    default_retryable = False


class ConcurrentModificationError(StorageError):
    """Compare-and-set on a record version failed: another writer got there first."""

    default_retryable = True

    def __init__(self, key: str, expected: Any, actual: Any):
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Concurrent modification of {key}: expected version "
            f"{expected!r}, found {actual!r}"
        )


# =============================================================================
# HIERARCHY ERRORS
# =============================================================================


class HierarchyError(RefSpineError):
    """Hierarchy materialization failure."""

    default_category = ErrorCategory.HIERARCHY
    default_retryable = False


class HierarchyCycleError(HierarchyError):
    """A concept is reachable from itself through ``broader`` edges."""

    def __init__(self, dimension: str, chain: list[str]):
        self.dimension = dimension
        self.chain = list(chain)
        super().__init__(
            f"Cycle in '{dimension}' hierarchy: {' -> '.join(self.chain)}"
        )
        self.with_context(dimension=dimension, uri=self.chain[0] if self.chain else None)


# =============================================================================
# CONVERSION ERRORS
# =============================================================================


class ConversionError(RefSpineError):
    """Unit conversion failure. Names both URIs."""

    default_category = ErrorCategory.CONVERSION
    default_retryable = False

    def __init__(self, message: str, *, from_uri: str, to_uri: str, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.from_uri = from_uri
        self.to_uri = to_uri
        self.with_context(from_uri=from_uri, to_uri=to_uri)


class IncompatibleDimensionError(ConversionError):
    """The two units do not share a dimension."""

    def __init__(
        self,
        from_uri: str,
        to_uri: str,
        from_dimension: str | None,
        to_dimension: str | None,
    ):
        self.from_dimension = from_dimension
        self.to_dimension = to_dimension
        super().__init__(
            f"Cannot convert {from_uri} ({from_dimension}) to {to_uri} ({to_dimension}): "
            "incompatible dimensions",
            from_uri=from_uri,
            to_uri=to_uri,
        )


class NoConversionPathError(ConversionError):
    """No chain of base-unit conversions connects the two units."""

    def __init__(self, from_uri: str, to_uri: str, reason: str = "no common base unit"):
        self.reason = reason
        super().__init__(
            f"No conversion path from {from_uri} to {to_uri}: {reason}",
            from_uri=from_uri,
            to_uri=to_uri,
        )


class UndefinedConversionError(ConversionError):
    """A non-base unit on the walk has no conversion block."""

    def __init__(self, uri: str, from_uri: str, to_uri: str):
        self.uri = uri
        super().__init__(
            f"Unit {uri} is not a base unit and defines no conversion "
            f"(converting {from_uri} to {to_uri})",
            from_uri=from_uri,
            to_uri=to_uri,
        )


class UnknownConceptError(ConversionError):
    """A URI on the walk is not present in the concept store."""

    def __init__(self, uri: str, from_uri: str, to_uri: str):
        self.uri = uri
        super().__init__(
            f"Unknown unit {uri} (converting {from_uri} to {to_uri})",
            from_uri=from_uri,
            to_uri=to_uri,
        )


# =============================================================================
# ASSOCIATION ERRORS
# =============================================================================


class AssociationError(RefSpineError):
    """Association evaluation error."""

    default_category = ErrorCategory.ASSOCIATION
    default_retryable = False


class NoSpatialRelationError(AssociationError):
    """Source and candidate geometries are disjoint."""


# =============================================================================
# WARNINGS
# =============================================================================


class StaleCacheWarning(Warning):
    """Stale data is being served because a refresh failed.

    Recorded in reports and on entry status; never raised.
    """

    def __init__(self, key: str, message: str):
        self.key = key
        self.message = message
        super().__init__(f"{key}: {message}")


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, RefSpineError):
        return error.retryable
    return False


def get_retry_after(error: BaseException) -> int | None:
    """Get the upstream-suggested retry delay, if any."""
    if isinstance(error, RefSpineError):
        return error.retry_after
    return None


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "RefSpineError",
    "TransientError",
    "FetchError",
    "NetworkError",
    "RateLimitError",
    "SourceError",
    "SourceNotFoundError",
    "ParseError",
    "ValidationError",
    "RelationshipMismatchError",
    "NonNumericResultError",
    "ConfigError",
    "StorageError",
    "ConcurrentModificationError",
    "HierarchyError",
    "HierarchyCycleError",
    "ConversionError",
    "IncompatibleDimensionError",
    "NoConversionPathError",
    "UndefinedConversionError",
    "UnknownConceptError",
    "AssociationError",
    "NoSpatialRelationError",
    "StaleCacheWarning",
    "is_retryable",
    "get_retry_after",
]
