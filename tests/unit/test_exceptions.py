"""
Tests for orderview.exceptions module.
"""
import pytest

from orderview.exceptions import (
    FallbackTimeout,
    ProjectionUnavailable,
    QueryTimeoutError,
    ReadModelError,
    RefreshFailed,
    ResolutionGap,
    ScopeRejected,
    ValidationError,
)


class TestReadModelError:
    """Tests for base ReadModelError exception."""

    def test_message_only(self):
        error = ReadModelError("Something went wrong")
        assert str(error) == "Something went wrong"
        assert error.details is None

    def test_message_with_details(self):
        error = ReadModelError("Build failed", "disk full")
        assert str(error) == "Build failed: disk full"


class TestDomainErrors:
    """Tests for the read-model error subclasses."""

    @pytest.mark.parametrize("error", [
        ScopeRejected("fitter", "all"),
        ProjectionUnavailable("enriched_order_view"),
        RefreshFailed("order_edit_view", "boom"),
        ResolutionGap("abc", "invalid"),
        FallbackTimeout("enriched_order_view", 10.0),
    ])
    def test_inheritance(self, error):
        assert isinstance(error, ReadModelError)

    def test_scope_rejected(self):
        """The message is safe to show; role and scope go in details."""
        error = ScopeRejected("fitter", "all")
        assert error.message == "Scope not permitted for this role"
        assert error.role == "fitter"
        assert error.scope == "all"

    def test_fallback_timeout_retry_after(self):
        error = FallbackTimeout("enriched_order_view", 10.0)
        assert error.retry_after == 5
        assert "after 10.0s" in str(error)

    def test_projection_attributes(self):
        assert RefreshFailed("order_edit_view").projection == "order_edit_view"
        assert ProjectionUnavailable("enriched_order_view", "never built").details == "never built"


class TestValidationError:
    """Tests for ValidationError exception."""

    def test_with_value(self):
        error = ValidationError("limit", "Must be at least 1", 0)
        assert str(error) == "limit: Must be at least 1 (got: 0)"

    def test_without_value(self):
        error = ValidationError("table", "Table name is required")
        assert str(error) == "table: Table name is required"

    def test_not_a_read_model_error(self):
        assert not isinstance(ValidationError("x", "y"), ReadModelError)


class TestQueryTimeoutError:
    """Tests for QueryTimeoutError exception."""

    def test_truncates_query(self):
        error = QueryTimeoutError("SELECT " + "x" * 500, 5.0)
        assert len(error.query) == 203
        assert error.query.endswith("...")

    def test_str(self):
        error = QueryTimeoutError("SELECT 1", 2.0)
        assert str(error) == "QueryTimeoutError: Query timed out after 2.0s - SELECT 1"
