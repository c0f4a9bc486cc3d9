"""Tests for refspine.core.errors module."""

import pytest

from refspine.core.errors import (
    ConcurrentModificationError,
    ErrorCategory,
    ErrorContext,
    FetchError,
    HierarchyCycleError,
    IncompatibleDimensionError,
    NetworkError,
    ParseError,
    RateLimitError,
    RefSpineError,
    SourceError,
    SourceNotFoundError,
    StaleCacheWarning,
    TransientError,
    ValidationError,
    get_retry_after,
    is_retryable,
)


class TestErrorContext:
    def test_to_dict_includes_set_fields(self):
        ctx = ErrorContext(source_name="finto", http_status=503, metadata={"page": 3})
        d = ctx.to_dict()
        assert d == {"source_name": "finto", "http_status": 503, "page": 3}

    def test_empty_context(self):
        assert ErrorContext().to_dict() == {}


class TestRefSpineError:
    def test_defaults(self):
        error = RefSpineError("boom")
        assert error.message == "boom"
        assert error.category == ErrorCategory.INTERNAL
        assert error.retryable is False
        assert str(error) == "boom"

    def test_with_context_is_fluent(self):
        error = FetchError("Finto returned 503").with_context(source_name="finto", page=2)
        assert isinstance(error, FetchError)
        assert error.context.source_name == "finto"
        assert error.context.metadata["page"] == 2

    def test_cause_is_chained(self):
        root = ValueError("bad json")
        error = ParseError("unparseable", cause=root)
        assert error.__cause__ is root
        assert error.to_dict()["cause"] == "bad json"

    def test_to_dict(self):
        error = RateLimitError(retry_after=30).with_context(url="https://api.finto.fi")
        d = error.to_dict()
        assert d["error_type"] == "RateLimitError"
        assert d["retryable"] is True
        assert d["retry_after"] == 30
        assert d["context"]["url"] == "https://api.finto.fi"


class TestHierarchy:
    @pytest.mark.parametrize("cls", [FetchError, NetworkError, RateLimitError])
    def test_fetch_failures_are_transient(self, cls):
        error = cls("x")
        assert isinstance(error, TransientError)
        assert is_retryable(error)

    def test_source_errors_are_not_retryable(self):
        assert not is_retryable(SourceError("400"))
        assert not is_retryable(SourceNotFoundError("404"))
        assert ParseError("x").category == ErrorCategory.PARSE

    def test_concurrent_modification_is_retryable_storage_error(self):
        error = ConcurrentModificationError("k", 3, 4)
        assert error.category == ErrorCategory.STORAGE
        assert error.retryable
        assert "expected version 3, found 4" in error.message

    def test_cycle_error_names_the_chain(self):
        error = HierarchyCycleError("pressure", ["a", "b", "a"])
        assert "a -> b -> a" in error.message
        assert error.context.dimension == "pressure"

    def test_conversion_error_names_both_uris(self):
        error = IncompatibleDimensionError("u:m", "u:Pa", "length", "pressure")
        assert error.from_uri == "u:m"
        assert error.to_uri == "u:Pa"
        assert "incompatible" in error.message

    def test_validation_error_field(self):
        error = ValidationError("bad factor", field="factor", value=-1)
        assert error.to_dict()["field"] == "factor"

    def test_stale_warning_is_a_warning(self):
        warning = StaleCacheWarning("watersheds/ws-7", "refresh failed")
        assert isinstance(warning, Warning)
        assert "watersheds/ws-7" in str(warning)


class TestHelpers:
    def test_plain_exceptions_are_not_retryable(self):
        assert not is_retryable(ValueError("x"))
        assert get_retry_after(ValueError("x")) is None

    def test_retry_after_hint(self):
        assert get_retry_after(RateLimitError(retry_after=12)) == 12
