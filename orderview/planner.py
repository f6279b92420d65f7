"""
Role-scoped query planning.

Turns a requested logical scope plus the caller's identity into a concrete
row filter before any cache lookup or query runs:

    mine       holder column equals the caller's fitter/factory id
               (no associated entity -> empty result, not an error)
    available  holder column differs from the caller's entity (stock only)
    all        privileged roles only; frontline callers are rejected

A search term adds a case-insensitive substring predicate across a fixed
set of display columns. It narrows the scope filter and never replaces it.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from orderview.config import config
from orderview.exceptions import ScopeRejected, ValidationError
from orderview.models import RoleClass, Scope, Target

logger = logging.getLogger(__name__)


# Display columns searched per target
SEARCH_COLUMNS: Dict[Target, Tuple[str, ...]] = {
    Target.STOCK: ("serial_number", "brand_name", "model_name", "fitter_name"),
    Target.ORDERS: ("serial_number", "brand_name", "model_name", "fitter_name", "customer_name"),
    Target.EDIT: (),
}

# Holder lookup for factory accounts; every other role holds through fitters
FACTORY_ROLE = "factory"
MATCH_NOTHING = "FALSE"


def normalize_role(role: Optional[str]) -> str:
    """Lowercase a role name and strip a legacy ROLE_ prefix."""
    value = (role or "").strip().lower()
    if value.startswith("role_"):
        value = value[len("role_"):]
    return value


def classify_role(role: Optional[str]) -> RoleClass:
    """Privileged roles are listed explicitly; anything else is frontline."""
    if normalize_role(role) in config.roles.privileged:
        return RoleClass.PRIVILEGED
    return RoleClass.FRONTLINE


@dataclass(frozen=True)
class Caller:
    """Identity of the requesting account as supplied by the gateway."""
    account_id: Optional[str]
    role: str

    @property
    def role_name(self) -> str:
        return normalize_role(self.role)

    @property
    def role_class(self) -> RoleClass:
        return classify_role(self.role)

    @property
    def is_privileged(self) -> bool:
        return self.role_class is RoleClass.PRIVILEGED


@dataclass(frozen=True)
class HolderEntity:
    """The fitter or factory row a caller acts for (entity_id None if none)."""
    table: str
    column: str
    entity_id: Optional[int]
    user_id: Optional[int] = None


@dataclass(frozen=True)
class ScopeDescriptor:
    """Resolved scope: produces the SQL predicate and cache-key fragment."""
    target: Target
    scope: Scope
    role_class: RoleClass
    holder_column: str
    holder_id: Optional[int]
    search: Optional[str] = None

    @property
    def matches_nothing(self) -> bool:
        return self.scope is Scope.MINE and self.holder_id is None

    def to_sql(self) -> Tuple[List[str], List[Any]]:
        """Return (conditions, params) over unqualified projection columns."""
        conditions: List[str] = []
        params: List[Any] = []

        if self.scope is Scope.MINE:
            if self.holder_id is None:
                conditions.append(MATCH_NOTHING)
            else:
                conditions.append(f"{self.holder_column} = ?")
                params.append(self.holder_id)
        elif self.scope is Scope.AVAILABLE and self.holder_id is not None:
            conditions.append(f"{self.holder_column} IS DISTINCT FROM ?")
            params.append(self.holder_id)

        columns = SEARCH_COLUMNS.get(self.target, ())
        if self.search and columns:
            term = self.search.lower()
            conditions.append(
                "(" + " OR ".join(f"contains(lower({c}), ?)" for c in columns) + ")"
            )
            params.extend([term] * len(columns))

        return conditions, params

    def cache_fragment(self) -> Dict[str, Any]:
        return {
            "target": self.target.value,
            "scope": self.scope.value,
            "role_class": self.role_class.value,
            "holder_column": self.holder_column,
            "holder_id": self.holder_id,
            "search": self.search.lower() if self.search else None,
        }


class QueryPlanner:
    """
    Resolves (caller, target, scope, search) into a ScopeDescriptor.

    Usage:
        planner = QueryPlanner(store)
        descriptor = await planner.plan(caller, Target.STOCK, Scope.AVAILABLE)
        conditions, params = descriptor.to_sql()
    """

    def __init__(self, resolver):
        # Any object with resolve_account() and find_entity_id()
        self.resolver = resolver

    async def resolve_holder(self, caller: Caller) -> HolderEntity:
        """
        Find the caller's fitter or factory row.

        Unresolvable accounts and accounts without a live entity row yield
        a HolderEntity with entity_id None.
        """
        if caller.role_name == FACTORY_ROLE:
            table, column = "factories", "factory_id"
        else:
            table, column = "fitters", "fitter_id"

        user_id = await self.resolver.resolve_account(caller.account_id)
        if user_id is None:
            logger.debug(f"Caller {caller.account_id!r} has no legacy account mapping")
            return HolderEntity(table=table, column=column, entity_id=None)

        entity_id = await self.resolver.find_entity_id(table, user_id)
        return HolderEntity(table=table, column=column, entity_id=entity_id, user_id=user_id)

    def check_scope(self, caller: Caller, target: Target, scope: Scope) -> None:
        """
        Reject scopes the caller's role or the target does not allow.

        Raises:
            ScopeRejected: If a frontline caller requests "all"
            ValidationError: If "available" is requested outside stock
        """
        if scope is Scope.ALL and not caller.is_privileged:
            raise ScopeRejected(caller.role_name or "anonymous", scope.value)
        if scope is Scope.AVAILABLE and target is not Target.STOCK:
            raise ValidationError("scope", "available is only valid for stock", scope.value)

    async def plan(
        self,
        caller: Caller,
        target: Target,
        scope: Optional[Scope] = None,
        search: Optional[str] = None,
    ) -> ScopeDescriptor:
        """Build the scope descriptor for a request (default scope: mine)."""
        scope = scope or Scope.default()
        self.check_scope(caller, target, scope)

        if scope is Scope.ALL:
            holder_column = "factory_id" if caller.role_name == FACTORY_ROLE else "fitter_id"
            holder_id = None
        else:
            holder = await self.resolve_holder(caller)
            holder_column, holder_id = holder.column, holder.entity_id

        return ScopeDescriptor(
            target=target,
            scope=scope,
            role_class=caller.role_class,
            holder_column=holder_column,
            holder_id=holder_id,
            search=search,
        )
