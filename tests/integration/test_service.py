"""
Integration tests for orderview.service

Full read path: planner -> cache -> projection or live join, over a seeded
DuckDB file and the in-memory Redis double.
"""
import asyncio
from unittest.mock import AsyncMock

import duckdb
import pytest

from orderview.events import ReadModelEvent, events
from orderview.exceptions import QueryTimeoutError, ScopeRejected, ValidationError
from orderview.models import OrderFilters, PageRequest, Scope, SortSpec, Source
from orderview.refresh import RefreshCoordinator
from orderview.repositories.identity import opaque_id_for
from orderview.service import ReadModelService
from tests.conftest import FIONA_USER, GARY_USER, ORDER_500_TOTAL, make_settings


def ids(page):
    return [row["id"] for row in page.rows]


class TestReadPathSelection:
    """Projection vs. fallback selection."""

    @pytest.mark.asyncio
    async def test_fallback_before_first_build(self, service, fiona, bus):
        page = await service.list_orders(fiona)

        assert page.source is Source.FALLBACK
        assert ids(page) == [600, 502, 500]
        served = bus.get_history(ReadModelEvent.FALLBACK_SERVED)
        assert served[-1]["data"] == {"projection": "enriched_order_view", "reason": "unavailable"}

    @pytest.mark.asyncio
    async def test_projection_after_build(self, built_service, fiona):
        page = await built_service.list_orders(fiona)
        assert page.source is Source.PROJECTION
        assert page.generation == 1
        assert ids(page) == [600, 502, 500]

    @pytest.mark.asyncio
    async def test_stale_projection_bypassed(self, store, redis_cache, bus, fiona):
        coordinator = RefreshCoordinator(
            store, cache=redis_cache, bus=bus, settings=make_settings(max_staleness_seconds=-1)
        )
        service = ReadModelService(store, cache=redis_cache, bus=bus, coordinator=coordinator,
                                   trigger_on_write=False)
        await service.ensure_projections()
        coordinator.mark_dirty()

        page = await service.list_orders(fiona)
        assert page.source is Source.FALLBACK
        assert bus.get_history(ReadModelEvent.FALLBACK_SERVED)[-1]["data"]["reason"] == "stale"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        QueryTimeoutError("projection enriched_order_view", 0.01),
        duckdb.IOException("disk unavailable"),
    ])
    async def test_projection_query_failure_falls_back(
        self, built_service, fiona, bus, error, monkeypatch
    ):
        monkeypatch.setattr(
            built_service.store, "query_projection_page", AsyncMock(side_effect=error)
        )

        page = await built_service.list_orders(fiona)

        assert page.source is Source.FALLBACK
        assert ids(page) == [600, 502, 500]
        served = bus.get_history(ReadModelEvent.FALLBACK_SERVED)
        assert served[-1]["data"] == {"projection": "enriched_order_view", "reason": "error"}

    @pytest.mark.asyncio
    async def test_paths_return_identical_rows(self, service, admin):
        """The live join is indistinguishable from the projection."""
        sort = SortSpec(order_by="total_price", direction="DESC")
        fallback = await service.list_orders(admin, scope=Scope.ALL, sort=sort)
        await service.cache.invalidate_all()
        await service.ensure_projections()
        projected = await service.list_orders(admin, scope=Scope.ALL, sort=sort)

        assert fallback.source is Source.FALLBACK
        assert projected.source is Source.PROJECTION
        assert fallback.rows == projected.rows
        assert fallback.total == projected.total == 6


class TestCaching:
    """Cache hits and invalidation."""

    @pytest.mark.asyncio
    async def test_second_read_is_cached(self, built_service, fiona):
        first = await built_service.list_orders(fiona)
        second = await built_service.list_orders(fiona)

        assert first.cached is False
        assert second.cached is True
        assert second.source is Source.PROJECTION
        assert second.rows == first.rows

    @pytest.mark.asyncio
    async def test_different_callers_do_not_share_entries(self, built_service, fiona, gary):
        await built_service.list_orders(fiona)
        page = await built_service.list_orders(gary)
        assert page.cached is False
        assert ids(page) == [601, 501]

    @pytest.mark.asyncio
    async def test_mutation_invalidates(self, built_service, fiona):
        await built_service.list_orders(fiona)
        await built_service.list_stock(fiona)

        result = await built_service.on_mutation("orders", 500)
        assert result["invalidated_keys"] == 2

        page = await built_service.list_orders(fiona)
        assert page.cached is False

    @pytest.mark.asyncio
    async def test_read_spanning_mutation_is_not_cached(self, built_service, fiona, monkeypatch):
        """A page read before a mutation is not written back after it."""
        store = built_service.store
        query = store.query_projection_page
        reading = asyncio.Event()
        release = asyncio.Event()

        async def slow_query(*args, **kwargs):
            reading.set()
            await release.wait()
            return await query(*args, **kwargs)

        monkeypatch.setattr(store, "query_projection_page", slow_query)
        read = asyncio.create_task(built_service.list_orders(fiona))
        await asyncio.wait_for(reading.wait(), timeout=5)
        await built_service.on_mutation("orders", 500)
        release.set()
        first = await read
        monkeypatch.undo()

        second = await built_service.list_orders(fiona)
        assert first.cached is False
        assert second.cached is False
        assert second.rows == first.rows

    @pytest.mark.asyncio
    async def test_works_without_redis(self, store, offline_cache, bus, fiona):
        service = ReadModelService(store, cache=offline_cache, bus=bus, trigger_on_write=False)
        await service.list_orders(fiona)
        page = await service.list_orders(fiona)
        assert page.cached is False
        assert ids(page) == [600, 502, 500]


class TestListOrders:
    """Role scoping on the order list."""

    @pytest.mark.asyncio
    async def test_frontline_cannot_request_all(self, built_service, gary):
        with pytest.raises(ScopeRejected):
            await built_service.list_orders(gary, scope=Scope.ALL)

    @pytest.mark.asyncio
    async def test_available_rejected_for_orders(self, built_service, gary):
        with pytest.raises(ValidationError):
            await built_service.list_orders(gary, scope=Scope.AVAILABLE)

    @pytest.mark.asyncio
    async def test_caller_without_entity_gets_empty_page(self, built_service, orphan):
        page = await built_service.list_orders(orphan)
        assert page.rows == []
        assert page.total == 0

    @pytest.mark.asyncio
    async def test_factory_sees_its_orders(self, built_service, factory_caller):
        page = await built_service.list_orders(factory_caller)
        assert ids(page) == [603, 601, 600, 501, 500]

    @pytest.mark.asyncio
    async def test_admin_all_with_filters(self, built_service, admin):
        page = await built_service.list_orders(
            admin, scope=Scope.ALL, filters=OrderFilters(urgent=True)
        )
        assert ids(page) == [500]
        assert page.rows[0]["total_price"] == ORDER_500_TOTAL

    @pytest.mark.asyncio
    async def test_search(self, built_service, admin):
        page = await built_service.list_orders(admin, scope=Scope.ALL, search="CLARA")
        assert ids(page) == [500]

    @pytest.mark.asyncio
    async def test_pagination(self, built_service, admin):
        page = await built_service.list_orders(
            admin, scope=Scope.ALL, page=PageRequest(page=3, limit=2)
        )
        assert ids(page) == [501, 500]
        assert page.total == 6
        assert page.has_next is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("account,expected", [
        (opaque_id_for(FIONA_USER), [600, 502, 500]),
        (str(GARY_USER), [601, 501]),
        ("9999", []),
    ])
    async def test_fitter_account_filter(self, built_service, admin, account, expected):
        """Fitter filter accepts either identifier scheme."""
        page = await built_service.list_orders(admin, scope=Scope.ALL, fitter_account=account)
        assert ids(page) == expected


class TestListStock:
    """Role scoping on fitter stock."""

    @pytest.mark.asyncio
    async def test_mine(self, built_service, fiona):
        page = await built_service.list_stock(fiona)
        assert ids(page) == [600]

    @pytest.mark.asyncio
    async def test_mine_by_legacy_id(self, built_service, gary):
        """Deleted stock (602) is never listed."""
        page = await built_service.list_stock(gary)
        assert ids(page) == [601]

    @pytest.mark.asyncio
    async def test_available_excludes_own(self, built_service, fiona):
        """Unassigned stock counts as available."""
        page = await built_service.list_stock(fiona, scope=Scope.AVAILABLE)
        assert ids(page) == [603, 601]

    @pytest.mark.asyncio
    async def test_admin_all(self, built_service, admin):
        page = await built_service.list_stock(admin, scope=Scope.ALL)
        assert ids(page) == [603, 601, 600]

    @pytest.mark.asyncio
    async def test_newest_stock_id_first(self, built_service, admin):
        """Stock is listed by descending id, not by order time."""
        await built_service.store._execute(
            "UPDATE orders SET order_time = 1800000000 WHERE id = 600"
        )
        await built_service.coordinator.refresh_all(trigger="manual")

        page = await built_service.list_stock(admin, scope=Scope.ALL)
        assert ids(page) == [603, 601, 600]

    @pytest.mark.asyncio
    async def test_search_narrows_scope(self, built_service, admin, fiona):
        page = await built_service.list_stock(admin, scope=Scope.ALL, search="summit")
        assert ids(page) == [601]

        # Fiona's own stock does not contain a Summit saddle
        page = await built_service.list_stock(fiona, scope=Scope.MINE, search="summit")
        assert ids(page) == []

    @pytest.mark.asyncio
    async def test_frontline_all_rejected(self, built_service, fiona):
        with pytest.raises(ScopeRejected):
            await built_service.list_stock(fiona, scope=Scope.ALL)


class TestEditView:
    """Single-row edit projection."""

    @pytest.mark.asyncio
    async def test_own_order(self, built_service, fiona):
        result = await built_service.get_order_edit_view(fiona, 500)
        assert result["data"]["total_price"] == ORDER_500_TOTAL
        assert result["data"]["order_data"] == '{"seat": "17.5"}'
        assert result["source"] == "projection"

    @pytest.mark.asyncio
    async def test_other_fitters_order_hidden(self, built_service, fiona):
        assert await built_service.get_order_edit_view(fiona, 501) is None

    @pytest.mark.asyncio
    async def test_admin_sees_any(self, built_service, admin):
        result = await built_service.get_order_edit_view(admin, 501)
        assert result["data"]["fitter_name"] == "Gary Girth"

    @pytest.mark.asyncio
    async def test_deleted_or_missing(self, built_service, admin):
        assert await built_service.get_order_edit_view(admin, 503) is None
        assert await built_service.get_order_edit_view(admin, 12345) is None


class TestOnMutation:
    """Write-event hook."""

    @pytest.mark.asyncio
    async def test_marks_projections_dirty(self, built_service):
        await built_service.on_mutation("customers", 1)
        assert built_service.coordinator.dirty_age("enriched_order_view") is not None
        assert built_service.coordinator.dirty_age("order_edit_view") is not None

    @pytest.mark.asyncio
    async def test_untracked_table_rejected(self, built_service):
        with pytest.raises(ValidationError):
            await built_service.on_mutation("sessions", 1)

    @pytest.mark.asyncio
    async def test_credentials_clear_identity_memo(self, built_service):
        await built_service.store.resolve_opaque(FIONA_USER)
        assert built_service.store._identity_memo

        await built_service.on_mutation("credentials", GARY_USER)
        assert len(built_service.store._identity_memo) == 0

    @pytest.mark.asyncio
    async def test_invalidation_reported_on_service_bus(self, built_service, fiona, bus):
        await built_service.list_orders(fiona)

        await built_service.on_mutation("orders", 500)

        invalidated = bus.get_history(ReadModelEvent.CACHE_INVALIDATED)
        assert invalidated[-1]["data"]["reason"] == "mutation:orders"
        assert events.get_history(ReadModelEvent.CACHE_INVALIDATED) == []

    @pytest.mark.asyncio
    async def test_queues_refresh_when_worker_running(self, built_service, bus):
        built_service.trigger_on_write = True
        await built_service.coordinator.start_worker()

        result = await built_service.on_mutation("orders", 500)

        assert result["refresh_queued"] is True
        mutated = bus.get_history(ReadModelEvent.ENTITY_MUTATED)[-1]["data"]
        assert mutated == {"table": "orders", "record_id": 500, "refresh_queued": True}

    @pytest.mark.asyncio
    async def test_write_is_reflected_after_refresh(self, built_service, admin):
        await built_service.store._execute(
            "UPDATE orders SET price_saddle = 5500 WHERE id = 500"
        )
        await built_service.on_mutation("orders", 500)
        await built_service.coordinator.refresh_all(trigger="write")

        result = await built_service.get_order_edit_view(admin, 500)
        assert result["data"]["total_price"] == ORDER_500_TOTAL + 1000
        assert built_service.coordinator.dirty_age("order_edit_view") is None
