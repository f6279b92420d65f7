"""
Custom exception hierarchy for the enriched order read model.

Exception Hierarchy:
    ReadModelError (base)
    ├── ScopeRejected          - Caller role may not request this scope (403)
    ├── ProjectionUnavailable  - No built generation exists (internal, triggers fallback)
    ├── RefreshFailed          - Projection rebuild errored (operator-facing only)
    ├── ResolutionGap          - No legacy/opaque identifier mapping (internal)
    └── FallbackTimeout        - Live join timed out (retryable, 503)

    ValidationError            - Input validation failed
    QueryTimeoutError          - Any other DuckDB query exceeded its timeout
"""


class ReadModelError(Exception):
    """Base exception for all read-model errors."""

    def __init__(self, message: str, details: str = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ScopeRejected(ReadModelError):
    """
    Caller requested a scope its role is not entitled to.

    Surfaced to the caller as an authorization failure; never downgraded.
    """

    def __init__(self, role: str, scope: str):
        super().__init__(
            "Scope not permitted for this role",
            f"role={role} scope={scope}",
        )
        self.role = role
        self.scope = scope


class ProjectionUnavailable(ReadModelError):
    """No successfully built generation exists for a projection."""

    def __init__(self, projection: str, details: str = None):
        super().__init__(f"Projection {projection} is unavailable", details)
        self.projection = projection


class RefreshFailed(ReadModelError):
    """
    A projection rebuild errored.

    The previous generation keeps serving; only operator endpoints see this.
    """

    def __init__(self, projection: str, details: str = None):
        super().__init__(f"Refresh of {projection} failed", details)
        self.projection = projection


class ResolutionGap(ReadModelError):
    """No mapping exists between the legacy and opaque identifier schemes."""

    def __init__(self, identifier, scheme: str):
        super().__init__(
            "Identifier has no cross-scheme mapping",
            f"{scheme}={identifier!r}",
        )
        self.identifier = identifier
        self.scheme = scheme


class FallbackTimeout(ReadModelError):
    """
    The live-join safety net exceeded its timeout.

    Retryable: there is no further fallback, so the caller should try again.
    """

    def __init__(self, projection: str, timeout: float, retry_after: int = 5):
        super().__init__(
            f"Live query for {projection} timed out",
            f"after {timeout}s",
        )
        self.projection = projection
        self.timeout = timeout
        self.retry_after = retry_after


class ValidationError(Exception):
    """
    Input validation failed.

    Used for validating request parameters before planning a query.
    """

    def __init__(self, field: str, message: str, value: any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        if self.value is not None:
            return f"{self.field}: {self.message} (got: {self.value!r})"
        return f"{self.field}: {self.message}"


class QueryTimeoutError(Exception):
    """Database query exceeded timeout."""

    def __init__(self, query: str, timeout: float, details: str = None):
        self.query = query[:200] + "..." if len(query) > 200 else query
        self.timeout = timeout
        self.details = details
        message = f"Query timed out after {timeout}s"
        if details:
            message = f"{message}: {details}"
        super().__init__(message)

    def __str__(self) -> str:
        return f"QueryTimeoutError: Query timed out after {self.timeout}s - {self.query}"
