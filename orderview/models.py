"""
Domain models for the enriched order read model.

Provides type-safe enums and dataclasses for scopes, filters, sorting and
pages. These models are shared by the planner, the read service and the
web layer.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class Scope(str, Enum):
    """Logical row subset requested by a caller."""
    MINE = "mine"
    AVAILABLE = "available"
    ALL = "all"

    @classmethod
    def default(cls) -> "Scope":
        return cls.MINE


class RoleClass(str, Enum):
    """Coarse role classes used for scope decisions."""
    FRONTLINE = "frontline"
    PRIVILEGED = "privileged"


class Target(str, Enum):
    """Query targets served by the read model."""
    ORDERS = "orders"
    EDIT = "edit"
    STOCK = "stock"


class UserType(IntEnum):
    """Legacy credentials.user_type values."""
    FITTER = 1
    ADMIN = 2
    FACTORY = 3
    CUSTOMSADDLER = 4

    @property
    def role(self) -> str:
        """Role name used by the gateway headers."""
        return self.name.lower()


class Source(str, Enum):
    """Which path served a read."""
    CACHE = "cache"
    PROJECTION = "projection"
    FALLBACK = "fallback"


# ═══════════════════════════════════════════════════════════════════════════════
# SORTING
# ═══════════════════════════════════════════════════════════════════════════════

# API sort name -> projection column
ORDER_SORT_COLUMNS: Dict[str, str] = {
    "created_at": "order_time",
    "urgency": "is_urgent",
    "customer_name": "customer_name",
    "fitter_name": "fitter_name",
    "brand_name": "brand_name",
    "model_name": "model_name",
    "status": "order_status",
    "total_price": "total_price",
    "id": "id",
}
DEFAULT_ORDER_BY = "created_at"


@dataclass(frozen=True)
class SortSpec:
    """Whitelisted sort column and direction."""
    order_by: str = DEFAULT_ORDER_BY
    direction: str = "DESC"

    @property
    def column(self) -> str:
        return ORDER_SORT_COLUMNS[self.order_by]

    def to_sql(self) -> str:
        # id tie-breaker keeps pages stable across both read paths
        if self.column == "id":
            return f"ORDER BY id {self.direction}"
        return f"ORDER BY {self.column} {self.direction} NULLS LAST, id ASC"

    def cache_fragment(self) -> Dict[str, str]:
        return {"order_by": self.order_by, "direction": self.direction}


# ═══════════════════════════════════════════════════════════════════════════════
# FILTERS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class OrderFilters:
    """
    Explicit filters on the order list.

    All columns are unqualified projection columns so the same clause applies
    to the stored projection and to the live-join subquery.
    """
    urgent: Optional[bool] = None
    fitter_id: Optional[int] = None
    customer_id: Optional[int] = None
    factory_id: Optional[int] = None
    order_status: Optional[int] = None
    include_deleted: bool = False

    def to_sql(self) -> Tuple[List[str], List[Any]]:
        """Return (conditions, params)."""
        conditions: List[str] = []
        params: List[Any] = []

        if not self.include_deleted:
            conditions.append("NOT is_deleted")
        if self.urgent is not None:
            conditions.append("is_urgent = ?")
            params.append(self.urgent)
        if self.fitter_id is not None:
            conditions.append("fitter_id = ?")
            params.append(self.fitter_id)
        if self.customer_id is not None:
            conditions.append("customer_id = ?")
            params.append(self.customer_id)
        if self.factory_id is not None:
            conditions.append("factory_id = ?")
            params.append(self.factory_id)
        if self.order_status is not None:
            conditions.append("order_status = ?")
            params.append(self.order_status)

        return conditions, params

    def cache_fragment(self) -> Dict[str, Any]:
        return {
            "urgent": self.urgent,
            "fitter_id": self.fitter_id,
            "customer_id": self.customer_id,
            "factory_id": self.factory_id,
            "order_status": self.order_status,
            "include_deleted": self.include_deleted or None,
        }


STOCK_BASE_CONDITIONS = ("fitter_stock", "NOT is_deleted")


# ═══════════════════════════════════════════════════════════════════════════════
# PAGINATION
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PageRequest:
    """1-based page number and page size."""
    page: int = 1
    limit: int = 50

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass
class Page:
    """One page of rows plus the total count of the filtered set."""
    rows: List[Dict[str, Any]]
    total: int
    page: int
    limit: int
    source: Source = Source.PROJECTION
    generation: Optional[int] = None
    cached: bool = False
    processing_time_ms: float = 0.0

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    def pagination(self) -> Dict[str, Any]:
        return {
            "totalItems": self.total,
            "totalPages": self.total_pages,
            "currentPage": self.page,
            "itemsPerPage": self.limit,
            "hasNext": self.has_next,
            "hasPrevious": self.has_previous,
        }

    def to_cache(self) -> Dict[str, Any]:
        """Serializable payload stored in the cache."""
        return {
            "rows": self.rows,
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "source": self.source.value,
            "generation": self.generation,
        }

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "Page":
        return cls(
            rows=data["rows"],
            total=data["total"],
            page=data["page"],
            limit=data["limit"],
            source=Source(data.get("source", Source.PROJECTION.value)),
            generation=data.get("generation"),
            cached=True,
        )


# ═══════════════════════════════════════════════════════════════════════════════
# STOCK DTO
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class StockItem:
    """A saddle held in fitter stock, in the shape the stock UI consumes."""
    id: int
    serial: Optional[str]
    name: str
    owner_id: Optional[int]
    owner_name: Optional[str]
    factory_id: Optional[int]
    model_name: Optional[str]
    leather_type: Optional[str]
    demo: bool = False
    customizable_product: bool = False
    product_has_been_ordered: bool = False
    sponsored: bool = False
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "StockItem":
        """Build from an enriched_order_view row."""
        brand = row.get("brand_name") or ""
        model = row.get("model_name") or ""
        order_time = row.get("order_time")
        return cls(
            id=row["id"],
            serial=row.get("serial_number"),
            name=f"{brand} {model}".strip(),
            owner_id=row.get("fitter_id"),
            owner_name=row.get("fitter_name"),
            factory_id=row.get("factory_id"),
            model_name=row.get("model_name"),
            leather_type=row.get("leather_name"),
            demo=bool(row.get("demo")),
            customizable_product=bool(row.get("custom_order")),
            product_has_been_ordered=(row.get("order_status") or 0) > 0,
            sponsored=bool(row.get("sponsored")),
            created_at=(
                datetime.fromtimestamp(order_time, tz=timezone.utc)
                if order_time else None
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON-LD member shape."""
        return {
            "@id": f"/api/saddle-stock/{self.id}",
            "@type": "SaddleStock",
            "id": self.id,
            "serial": self.serial,
            "name": self.name,
            "stock": True,
            "stockOwner": {"id": self.owner_id, "name": self.owner_name},
            "factory": {"id": self.factory_id} if self.factory_id is not None else None,
            "model": {"name": self.model_name},
            "leatherType": {"name": self.leather_type},
            "demo": self.demo,
            "customizableProduct": self.customizable_product,
            "productHasBeenOrdered": self.product_has_been_ordered,
            "sponsored": self.sponsored,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


def to_stock_item(row: Dict[str, Any]) -> Dict[str, Any]:
    """Map a projection row to a stock collection member."""
    return StockItem.from_row(row).to_dict()


@dataclass(frozen=True)
class MutationEvent:
    """A committed write reported by the write layer."""
    table: str
    record_id: Optional[int] = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
