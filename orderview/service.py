"""
Read service for the enriched order read model.

Control flow for every read:

    caller + scope -> QueryPlanner -> ScopeDescriptor
        -> cache lookup (hit: return)
        -> stored projection (if built and not stale)
           or live join over the base tables (fallback)
        -> cache set -> return

Writes reported through on_mutation() invalidate every cached namespace,
mark the projections dirty and queue a debounced refresh.
"""
import asyncio
import time
from dataclasses import replace
from typing import Any, Dict, List, Optional

import duckdb

from orderview.cache import (
    NAMESPACE_EDIT,
    NAMESPACE_ORDERS,
    NAMESPACE_STOCK,
    RedisCache,
    cache as default_cache,
)
from orderview.config import config
from orderview.events import EventBus, ReadModelEvent, events as default_events
from orderview.exceptions import ProjectionUnavailable, QueryTimeoutError
from orderview.models import (
    STOCK_BASE_CONDITIONS,
    MutationEvent,
    OrderFilters,
    Page,
    PageRequest,
    Scope,
    SortSpec,
    Source,
    Target,
)
from orderview.observability import get_logger, metrics
from orderview.planner import Caller, QueryPlanner, ScopeDescriptor
from orderview.projections import ENRICHED_ORDER_VIEW, ORDER_EDIT_VIEW, PROJECTIONS
from orderview.refresh import RefreshCoordinator
from orderview.validators import validate_table_name

logger = get_logger(__name__)

STOCK_SORT = SortSpec(order_by="id", direction="DESC")


class ReadModelService:
    """
    Serves role-scoped pages of enriched orders and stock.

    Usage:
        service = ReadModelService(store)
        page = await service.list_stock(caller, scope=Scope.AVAILABLE)
        await service.on_mutation("orders", 500)
    """

    def __init__(
        self,
        store,
        cache: RedisCache = default_cache,
        bus: EventBus = default_events,
        coordinator: Optional[RefreshCoordinator] = None,
        planner: Optional[QueryPlanner] = None,
        trigger_on_write: bool = config.refresh.trigger_on_write,
    ):
        self.store = store
        self.cache = cache
        self.bus = bus
        self.coordinator = coordinator or RefreshCoordinator(store, cache=cache, bus=bus)
        self.planner = planner or QueryPlanner(store)
        self.trigger_on_write = trigger_on_write

        # Bumped by every mutation; a read that spans a bump is not cached
        self._invalidation_epoch = 0

    # ─── Core read path ──────────────────────────────────────────────────────

    async def _read(
        self,
        name: str,
        conditions: List[str],
        params: List[Any],
        order_sql: str,
        page: PageRequest,
    ) -> Page:
        """Projection when usable, otherwise the live join."""
        reason = None
        if not self.coordinator.is_available(name):
            reason = "unavailable"
        elif self.coordinator.is_stale(name):
            reason = "stale"
        else:
            try:
                rows, total = await self.store.query_projection_page(
                    name, conditions, params, order_sql, page
                )
                state = self.store.get_projection_state(name)
                metrics.increment("read:projection")
                return Page(
                    rows=rows,
                    total=total,
                    page=page.page,
                    limit=page.limit,
                    source=Source.PROJECTION,
                    generation=state.generation if state else None,
                )
            except (ProjectionUnavailable, QueryTimeoutError, duckdb.Error) as e:
                logger.warning(f"Projection read failed, falling back: {e}")
                reason = "error"

        metrics.increment("read:fallback")
        await self.bus.emit(
            ReadModelEvent.FALLBACK_SERVED, {"projection": name, "reason": reason}
        )
        rows, total = await self.store.query_live_page(
            name, conditions, params, order_sql, page
        )
        return Page(
            rows=rows,
            total=total,
            page=page.page,
            limit=page.limit,
            source=Source.FALLBACK,
        )

    async def _cached_read(
        self,
        namespace: str,
        name: str,
        descriptor: ScopeDescriptor,
        conditions: List[str],
        params: List[Any],
        sort: SortSpec,
        page: PageRequest,
        shape: Dict[str, Any],
    ) -> Page:
        start = time.perf_counter()
        key = self.cache.build_key(
            namespace,
            scope=descriptor.cache_fragment(),
            sort=sort.cache_fragment(),
            page=page.page,
            limit=page.limit,
            **shape,
        )

        epoch = self._invalidation_epoch
        cached, hit = await self.cache.get(key)
        if hit:
            result = Page.from_cache(cached)
            metrics.increment("read:cache")
        else:
            if descriptor.matches_nothing:
                # Caller has no fitter/factory: nothing is "mine"
                result = Page(rows=[], total=0, page=page.page, limit=page.limit)
            else:
                scope_conditions, scope_params = descriptor.to_sql()
                result = await self._read(
                    name,
                    conditions + scope_conditions,
                    params + scope_params,
                    sort.to_sql(),
                    page,
                )
            if epoch == self._invalidation_epoch:
                await self.cache.set(key, result.to_cache())
            else:
                logger.debug(f"Skipping cache set for {key}: invalidated during read")

        result.processing_time_ms = round((time.perf_counter() - start) * 1000, 2)
        return result

    # ─── Read operations ─────────────────────────────────────────────────────

    async def list_orders(
        self,
        caller: Caller,
        filters: Optional[OrderFilters] = None,
        sort: Optional[SortSpec] = None,
        page: Optional[PageRequest] = None,
        scope: Optional[Scope] = None,
        search: Optional[str] = None,
        fitter_account: Optional[str] = None,
    ) -> Page:
        """
        Paginated enriched orders within the caller's scope.

        fitter_account filters by a fitter's account identifier in either
        scheme; an account with no fitter mapping yields an empty page.
        """
        filters = filters or OrderFilters()
        sort = sort or SortSpec()
        page = page or PageRequest(limit=config.web.default_page_size)

        descriptor = await self.planner.plan(caller, Target.ORDERS, scope, search)

        if fitter_account is not None:
            fitter_id = await self.resolve_fitter_account(fitter_account)
            if fitter_id is None:
                return Page(rows=[], total=0, page=page.page, limit=page.limit)
            filters = replace(filters, fitter_id=fitter_id) if filters.fitter_id is None else filters
            if filters.fitter_id != fitter_id:
                # Conflicting fitter filters select nothing
                return Page(rows=[], total=0, page=page.page, limit=page.limit)

        conditions, params = filters.to_sql()
        return await self._cached_read(
            NAMESPACE_ORDERS, ENRICHED_ORDER_VIEW, descriptor,
            conditions, params, sort, page,
            shape={"filters": filters.cache_fragment()},
        )

    async def resolve_fitter_account(self, account: str) -> Optional[int]:
        """Fitter entity id for an account identifier, or None on a gap."""
        user_id = await self.store.resolve_account(account)
        if user_id is None:
            return None
        return await self.store.find_entity_id("fitters", user_id)

    async def get_order_edit_view(self, caller: Caller, order_id: int) -> Optional[Dict[str, Any]]:
        """
        Edit projection row for one order.

        Returns None when the order does not exist or is outside the
        caller's scope.
        """
        scope = Scope.ALL if caller.is_privileged else Scope.MINE
        descriptor = await self.planner.plan(caller, Target.EDIT, scope)
        result = await self._cached_read(
            NAMESPACE_EDIT, ORDER_EDIT_VIEW, descriptor,
            ["id = ?", "NOT is_deleted"], [order_id],
            SortSpec(order_by="id", direction="ASC"), PageRequest(page=1, limit=1),
            shape={"order_id": order_id},
        )
        if not result.rows:
            return None
        return {
            "data": result.rows[0],
            "source": result.source.value,
            "cached": result.cached,
            "processing_time_ms": result.processing_time_ms,
        }

    async def list_stock(
        self,
        caller: Caller,
        scope: Optional[Scope] = None,
        search: Optional[str] = None,
        page: Optional[PageRequest] = None,
    ) -> Page:
        """Paginated fitter-stock saddles within the caller's scope."""
        page = page or PageRequest(limit=config.web.default_stock_page_size)
        descriptor = await self.planner.plan(caller, Target.STOCK, scope, search)
        return await self._cached_read(
            NAMESPACE_STOCK, ENRICHED_ORDER_VIEW, descriptor,
            list(STOCK_BASE_CONDITIONS), [], STOCK_SORT, page,
            shape={},
        )

    # ─── Write-event hook ────────────────────────────────────────────────────

    async def on_mutation(self, table_name: str, record_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Entry point called by the write layer after every commit.

        Raises:
            ValidationError: If the table is not tracked
        """
        table = validate_table_name(table_name)
        event = MutationEvent(table=table, record_id=record_id)

        if table == "credentials":
            self.store.clear_identity_memo()

        self._invalidation_epoch += 1
        invalidated = await self.cache.invalidate_all(reason=f"mutation:{table}", bus=self.bus)
        self.coordinator.mark_dirty()

        queued = False
        if self.trigger_on_write:
            queued = self.coordinator.enqueue_mutation(event)

        metrics.increment(f"mutation:{table}")
        await self.bus.emit(
            ReadModelEvent.ENTITY_MUTATED,
            {"table": table, "record_id": record_id, "refresh_queued": queued},
        )

        return {
            "table": table,
            "record_id": record_id,
            "invalidated_keys": invalidated,
            "refresh_queued": queued,
        }

    # ─── Lifecycle ───────────────────────────────────────────────────────────

    async def ensure_projections(self) -> Dict[str, Any]:
        """Build any projection that has no generation yet."""
        results = {}
        for name in PROJECTIONS:
            if not self.coordinator.is_available(name):
                results[name] = await self.coordinator.refresh(name, trigger="startup")
        return results

    async def start(self) -> None:
        await self.ensure_projections()
        if self.trigger_on_write:
            await self.coordinator.start_worker()

    async def stop(self) -> None:
        await self.coordinator.stop_worker()


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_service: Optional[ReadModelService] = None
_service_lock = asyncio.Lock()


async def get_service() -> ReadModelService:
    """Get singleton read service instance."""
    global _service
    async with _service_lock:
        if _service is None:
            from orderview.store import get_store
            store = await get_store()
            _service = ReadModelService(store)
    return _service


def reset_service() -> None:
    """Forget the singleton (used on shutdown and in tests)."""
    global _service
    _service = None
