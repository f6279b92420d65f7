"""
Input validation functions for read-model parameters.

All validators raise ValidationError on invalid input.
"""

from typing import Optional

from orderview.exceptions import ValidationError
from orderview.models import DEFAULT_ORDER_BY, ORDER_SORT_COLUMNS, Scope, SortSpec
from orderview.projections import PROJECTIONS


# Base tables whose writes can change a projection
TRACKED_TABLES = frozenset({
    "orders",
    "customers",
    "fitters",
    "factories",
    "saddles",
    "leather_types",
    "statuses",
    "credentials",
})

# Maximum allowed values
MAX_LIMIT = 100
MAX_SEARCH_LENGTH = 255


def validate_page(value: Optional[int], field: str = "page") -> int:
    """
    Validate a 1-based page number.

    Args:
        value: Page number (None means first page)
        field: Field name for error messages

    Returns:
        Validated page number

    Raises:
        ValidationError: If page is not a positive integer
    """
    if value is None:
        return 1

    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(field, "Must be an integer", value)

    if value < 1:
        raise ValidationError(field, "Must be at least 1", value)

    return value


def validate_limit(
    value: Optional[int],
    default: int = 50,
    max_value: int = MAX_LIMIT,
    field: str = "limit",
) -> int:
    """
    Validate a page size.

    Values above max_value are capped rather than rejected.

    Raises:
        ValidationError: If limit is not a positive integer
    """
    if value is None:
        return min(default, max_value)

    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(field, "Must be an integer", value)

    if value < 1:
        raise ValidationError(field, "Must be at least 1", value)

    return min(value, max_value)


def validate_scope(value: Optional[str], field: str = "scope") -> Scope:
    """
    Validate a requested scope; absent means "mine".

    Raises:
        ValidationError: If scope is not one of mine/available/all
    """
    if value is None or value == "":
        return Scope.default()

    try:
        return Scope(value.strip().lower())
    except ValueError:
        raise ValidationError(
            field,
            f"Must be one of: {', '.join(s.value for s in Scope)}",
            value,
        )


def validate_sort(order_by: Optional[str], direction: Optional[str]) -> SortSpec:
    """
    Resolve sort parameters against the column whitelist.

    Unknown columns fall back to the default sort; only the direction is
    strictly validated.

    Raises:
        ValidationError: If direction is not ASC or DESC
    """
    column = order_by if order_by in ORDER_SORT_COLUMNS else DEFAULT_ORDER_BY

    if direction is None or direction == "":
        return SortSpec(order_by=column, direction="DESC")

    normalized = direction.strip().upper()
    if normalized not in ("ASC", "DESC"):
        raise ValidationError("orderDirection", "Must be ASC or DESC", direction)

    return SortSpec(order_by=column, direction=normalized)


def validate_search(value: Optional[str], field: str = "search") -> Optional[str]:
    """
    Validate a free-text search term.

    Returns:
        Stripped term, or None when empty

    Raises:
        ValidationError: If the term is too long
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    if len(value) > MAX_SEARCH_LENGTH:
        raise ValidationError(
            field,
            f"Search term too long (max {MAX_SEARCH_LENGTH} chars)",
            len(value),
        )

    return value


def validate_table_name(value: str, field: str = "table") -> str:
    """
    Validate that a mutation targets a tracked base table.

    Raises:
        ValidationError: If the table is unknown
    """
    if not value:
        raise ValidationError(field, "Table name is required")

    normalized = value.strip().lower()
    if normalized not in TRACKED_TABLES:
        raise ValidationError(
            field,
            f"Unknown table. Must be one of: {', '.join(sorted(TRACKED_TABLES))}",
            value,
        )

    return normalized


def validate_projection_name(value: str, field: str = "projection") -> str:
    """
    Validate a projection name.

    Raises:
        ValidationError: If no such projection is defined
    """
    if value not in PROJECTIONS:
        raise ValidationError(
            field,
            f"Unknown projection. Must be one of: {', '.join(PROJECTIONS)}",
            value,
        )
    return value
