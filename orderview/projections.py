"""
Projection definitions for the enriched order read model.

Each projection is a single SELECT over the base tables. The same SQL is
used to materialize a generation table and, wrapped as a subquery, by the
live-join fallback path, so both paths return identical row shapes.

Every optional relation is a LEFT JOIN on a primary key: missing
customers, fitters, factories, saddles, leather types or statuses yield
NULL display columns and never drop the order row.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple

from orderview.exceptions import ValidationError

ENRICHED_ORDER_VIEW = "enriched_order_view"
ORDER_EDIT_VIEW = "order_edit_view"

# List projection first; the edit projection is independent of it
REFRESH_ORDER: Tuple[str, ...] = (ENRICHED_ORDER_VIEW, ORDER_EDIT_VIEW)

# (column, sign) pairs of the total price contract
PRICE_COMPONENTS: Tuple[Tuple[str, int], ...] = (
    ("price_saddle", 1),
    ("price_tradein", -1),
    ("price_deposit", -1),
    ("price_discount", -1),
    ("price_fittingeval", 1),
    ("price_callfee", 1),
    ("price_girth", 1),
    ("price_shipping", 1),
    ("price_tax", 1),
    ("price_additional", 1),
)


def total_price_sql(alias: str = "o") -> str:
    """SQL expression for the total price of an order row."""
    expr = f"{alias}.{PRICE_COMPONENTS[0][0]}"
    for column, sign in PRICE_COMPONENTS[1:]:
        op = "+" if sign > 0 else "-"
        expr += f" {op} {alias}.{column}"
    return f"({expr})"


def compute_total_price(prices: Mapping[str, Any]) -> int:
    """Python mirror of total_price_sql for callers holding raw components."""
    return sum(sign * int(prices.get(column) or 0) for column, sign in PRICE_COMPONENTS)


_PRICE_COLUMNS_SQL = ",\n        ".join(f"o.{column}" for column, _ in PRICE_COMPONENTS)

_BASE_JOINS = """
    FROM orders o
    LEFT JOIN customers c ON o.customer_id = c.id
    LEFT JOIN fitters f ON o.fitter_id = f.id
    LEFT JOIN credentials fc ON f.user_id = fc.user_id
    LEFT JOIN factories fa ON o.factory_id = fa.id
    LEFT JOIN credentials fac ON fa.user_id = fac.user_id
    LEFT JOIN saddles s ON o.saddle_id = s.id
    LEFT JOIN leather_types lt ON o.leather_id = lt.id
"""

ENRICHED_ORDER_SELECT = f"""
    SELECT
        o.id,
        o.order_status,
        o.order_time,
        o.payment_time,
        o.order_step,
        o.currency,
        o.fitter_reference,
        o.special_notes,
        o.serial_number,
        o.name AS order_name,
        o.horse_name,
        o.rushed <> 0 AS is_urgent,
        o.repair <> 0 AS repair,
        o.demo <> 0 AS demo,
        o.sponsored <> 0 AS sponsored,
        o.custom_order <> 0 AS custom_order,
        o.fitter_stock <> 0 AS fitter_stock,
        o.deleted <> 0 AS is_deleted,
        {_PRICE_COLUMNS_SQL},
        {total_price_sql('o')} AS total_price,
        c.id AS customer_id,
        c.name AS customer_name,
        c.email AS customer_email,
        c.city AS customer_city,
        c.country AS customer_country,
        f.id AS fitter_id,
        fc.full_name AS fitter_name,
        fc.user_name AS fitter_username,
        f.emailaddress AS fitter_email,
        fa.id AS factory_id,
        fac.full_name AS factory_name,
        fac.user_name AS factory_username,
        fa.emailaddress AS factory_email,
        s.id AS saddle_id,
        s.brand AS brand_name,
        s.model_name,
        s.type AS saddle_type,
        lt.id AS leather_id,
        lt.name AS leather_name,
        st.name AS status_name,
        st.sequence AS status_sequence
    {_BASE_JOINS}
    LEFT JOIN statuses st ON o.order_status = st.id
"""

ORDER_EDIT_SELECT = f"""
    SELECT
        o.id,
        o.order_status,
        o.order_time,
        o.fitter_reference,
        o.special_notes,
        o.deleted <> 0 AS is_deleted,
        c.id AS customer_id,
        c.name AS customer_name,
        f.id AS fitter_id,
        fc.full_name AS fitter_name,
        fa.id AS factory_id,
        fac.full_name AS factory_name,
        s.id AS saddle_id,
        s.brand AS brand_name,
        s.model_name,
        lt.id AS leather_id,
        lt.name AS leather_name,
        {_PRICE_COLUMNS_SQL},
        {total_price_sql('o')} AS total_price,
        o.order_data
    {_BASE_JOINS}
"""


@dataclass(frozen=True)
class ProjectionDefinition:
    """A named projection and how to materialize it."""

    name: str
    select_sql: str
    indexed_columns: Tuple[str, ...]
    description: str = ""


PROJECTIONS: Dict[str, ProjectionDefinition] = {
    ENRICHED_ORDER_VIEW: ProjectionDefinition(
        name=ENRICHED_ORDER_VIEW,
        select_sql=ENRICHED_ORDER_SELECT,
        indexed_columns=("customer_id", "fitter_id", "factory_id", "order_status", "order_time"),
        description="Order list rows with resolved display names and total price",
    ),
    ORDER_EDIT_VIEW: ProjectionDefinition(
        name=ORDER_EDIT_VIEW,
        select_sql=ORDER_EDIT_SELECT,
        indexed_columns=("fitter_id", "factory_id"),
        description="Order edit rows with the raw configuration payload",
    ),
}


def get_definition(name: str) -> ProjectionDefinition:
    """Look up a projection by name."""
    try:
        return PROJECTIONS[name]
    except KeyError:
        raise ValidationError("projection", "Unknown projection", name)


@dataclass(frozen=True)
class ProjectionState:
    """
    Current version of a projection.

    Replaced as a whole after each successful swap; readers only ever see
    a complete generation.
    """

    name: str
    generation: int
    physical_table: str
    built_at: datetime
    row_count: int
    duration_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "generation": self.generation,
            "physical_table": self.physical_table,
            "built_at": self.built_at.isoformat(),
            "row_count": self.row_count,
            "duration_ms": self.duration_ms,
        }


def generation_table(name: str, generation: int) -> str:
    """Physical table name of a projection generation."""
    return f"{name}__g{generation}"
