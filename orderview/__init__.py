"""
Enriched order read model.

A role-scoped, cached read model over saddle orders and their related
customers, fitters, factories, saddles, leather types and statuses:
- projections: projection SQL definitions and version pointers
- store: DuckDB store with build-and-swap and live-join reads
- refresh: coalescing refresh coordinator and debounced write trigger
- cache: Redis cache with namespace invalidation
- planner: role-scoped query planning
- service: the read path tying them together
"""

from orderview.exceptions import (
    ReadModelError,
    ScopeRejected,
    ProjectionUnavailable,
    RefreshFailed,
    ResolutionGap,
    FallbackTimeout,
    ValidationError,
    QueryTimeoutError,
)

from orderview.models import (
    Scope,
    RoleClass,
    Target,
    OrderFilters,
    SortSpec,
    PageRequest,
    Page,
)

from orderview.projections import compute_total_price

__all__ = [
    # Exceptions
    "ReadModelError",
    "ScopeRejected",
    "ProjectionUnavailable",
    "RefreshFailed",
    "ResolutionGap",
    "FallbackTimeout",
    "ValidationError",
    "QueryTimeoutError",
    # Models
    "Scope",
    "RoleClass",
    "Target",
    "OrderFilters",
    "SortSpec",
    "PageRequest",
    "Page",
    "compute_total_price",
]
