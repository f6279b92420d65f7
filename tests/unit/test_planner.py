"""
Tests for orderview.planner module.

Uses a mock resolver so scope decisions are tested without DuckDB.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from orderview.exceptions import ScopeRejected, ValidationError
from orderview.models import RoleClass, Scope, Target
from orderview.planner import (
    Caller,
    QueryPlanner,
    ScopeDescriptor,
    classify_role,
    normalize_role,
)


def make_resolver(user_id=11, entity_id=1):
    resolver = MagicMock()
    resolver.resolve_account = AsyncMock(return_value=user_id)
    resolver.find_entity_id = AsyncMock(return_value=entity_id)
    return resolver


class TestRoles:
    """Tests for role normalization and classification."""

    @pytest.mark.parametrize("role", ["admin", "ROLE_ADMIN", "Supervisor", "role_supervisor"])
    def test_privileged(self, role):
        assert classify_role(role) is RoleClass.PRIVILEGED

    @pytest.mark.parametrize("role", ["fitter", "ROLE_FACTORY", "customsaddler", "user", "", None, "unknown"])
    def test_frontline(self, role):
        """Anything not explicitly privileged is frontline."""
        assert classify_role(role) is RoleClass.FRONTLINE

    def test_normalize(self):
        assert normalize_role("  ROLE_Fitter ") == "fitter"

    def test_caller_properties(self):
        caller = Caller(account_id="10", role="ROLE_ADMIN")
        assert caller.role_name == "admin"
        assert caller.is_privileged is True


class TestCheckScope:
    """Tests for QueryPlanner.check_scope."""

    @pytest.mark.parametrize("role", ["fitter", "factory", "customsaddler", "user"])
    @pytest.mark.parametrize("target", [Target.ORDERS, Target.STOCK, Target.EDIT])
    def test_frontline_all_rejected(self, role, target):
        """Frontline roles never get 'all', on any target."""
        planner = QueryPlanner(make_resolver())
        with pytest.raises(ScopeRejected) as exc_info:
            planner.check_scope(Caller("11", role), target, Scope.ALL)
        assert exc_info.value.scope == "all"
        assert exc_info.value.role == role

    def test_privileged_all_allowed(self):
        planner = QueryPlanner(make_resolver())
        planner.check_scope(Caller("10", "admin"), Target.ORDERS, Scope.ALL)

    def test_available_only_for_stock(self):
        planner = QueryPlanner(make_resolver())
        planner.check_scope(Caller("11", "fitter"), Target.STOCK, Scope.AVAILABLE)
        with pytest.raises(ValidationError):
            planner.check_scope(Caller("11", "fitter"), Target.ORDERS, Scope.AVAILABLE)


class TestPlan:
    """Tests for QueryPlanner.plan."""

    @pytest.mark.asyncio
    async def test_default_scope_is_mine(self):
        planner = QueryPlanner(make_resolver(entity_id=7))
        descriptor = await planner.plan(Caller("11", "fitter"), Target.ORDERS)
        assert descriptor.scope is Scope.MINE
        assert descriptor.to_sql() == (["fitter_id = ?"], [7])

    @pytest.mark.asyncio
    async def test_factory_role_uses_factory_column(self):
        resolver = make_resolver(user_id=13, entity_id=1)
        planner = QueryPlanner(resolver)
        descriptor = await planner.plan(Caller("13", "ROLE_FACTORY"), Target.ORDERS, Scope.MINE)
        assert descriptor.holder_column == "factory_id"
        resolver.find_entity_id.assert_awaited_once_with("factories", 13)

    @pytest.mark.asyncio
    async def test_unresolvable_caller_matches_nothing(self):
        """An account with no mapping gets an empty result, not an error."""
        resolver = make_resolver(user_id=None)
        planner = QueryPlanner(resolver)
        descriptor = await planner.plan(Caller("nope", "fitter"), Target.STOCK, Scope.MINE)
        assert descriptor.matches_nothing is True
        assert descriptor.to_sql() == (["FALSE"], [])
        resolver.find_entity_id.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_available_excludes_own_holdings(self):
        planner = QueryPlanner(make_resolver(entity_id=1))
        descriptor = await planner.plan(Caller("11", "fitter"), Target.STOCK, Scope.AVAILABLE)
        assert descriptor.to_sql() == (["fitter_id IS DISTINCT FROM ?"], [1])

    @pytest.mark.asyncio
    async def test_available_without_entity_is_unrestricted(self):
        planner = QueryPlanner(make_resolver(entity_id=None))
        descriptor = await planner.plan(Caller("14", "fitter"), Target.STOCK, Scope.AVAILABLE)
        assert descriptor.matches_nothing is False
        assert descriptor.to_sql() == ([], [])

    @pytest.mark.asyncio
    async def test_all_skips_resolution(self):
        resolver = make_resolver()
        planner = QueryPlanner(resolver)
        descriptor = await planner.plan(Caller("10", "admin"), Target.ORDERS, Scope.ALL)
        assert descriptor.to_sql() == ([], [])
        resolver.resolve_account.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_search_narrows_scope(self):
        """Search is ANDed with the scope predicate, never replacing it."""
        planner = QueryPlanner(make_resolver(entity_id=1))
        descriptor = await planner.plan(Caller("11", "fitter"), Target.STOCK, Scope.MINE, "APEX")
        conditions, params = descriptor.to_sql()
        assert conditions[0] == "fitter_id = ?"
        assert conditions[1].startswith("(contains(lower(serial_number), ?)")
        assert params[0] == 1
        assert params[1:] == ["apex"] * 4

    @pytest.mark.asyncio
    async def test_search_ignored_for_edit_target(self):
        planner = QueryPlanner(make_resolver(entity_id=1))
        descriptor = await planner.plan(Caller("10", "admin"), Target.EDIT, Scope.ALL, "apex")
        assert descriptor.to_sql() == ([], [])


class TestScopeDescriptorCacheFragment:
    """Tests for ScopeDescriptor.cache_fragment."""

    def _descriptor(self, **overrides):
        values = dict(
            target=Target.STOCK,
            scope=Scope.MINE,
            role_class=RoleClass.FRONTLINE,
            holder_column="fitter_id",
            holder_id=1,
            search=None,
        )
        values.update(overrides)
        return ScopeDescriptor(**values)

    def test_different_holders_differ(self):
        """Two fitters must never share a 'mine' cache entry."""
        assert self._descriptor(holder_id=1).cache_fragment() != self._descriptor(holder_id=2).cache_fragment()

    def test_search_case_folded(self):
        assert self._descriptor(search="Apex").cache_fragment() == self._descriptor(search="apex").cache_fragment()
