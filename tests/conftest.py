"""
Pytest configuration and shared fixtures.
"""
import fnmatch
import time
import uuid
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from orderview.cache import RedisCache
from orderview.config import RefreshConfig
from orderview.events import EventBus, events
from orderview.observability import metrics
from orderview.planner import Caller
from orderview.refresh import RefreshCoordinator
from orderview.repositories.identity import opaque_id_for
from orderview.service import ReadModelService
from orderview.store import OrderViewStore


# ═══════════════════════════════════════════════════════════════════════════════
# SEED DATA
# ═══════════════════════════════════════════════════════════════════════════════

ADMIN_USER = 10
FIONA_USER = 11       # fitter 1, migrated
GARY_USER = 12        # fitter 2, no opaque id yet
FACTORY_USER = 13     # factory 1
ORPHAN_USER = 14      # account without a fitter row

FIONA_FITTER = 1
GARY_FITTER = 2
FACTORY_ID = 1

# Prices of order 500: 4500 - 0 - 500 - 0 + 0 + 0 + 0 + 50 + 300 + 0
ORDER_500_PRICES = {
    "price_saddle": 4500,
    "price_tradein": 0,
    "price_deposit": 500,
    "price_discount": 0,
    "price_fittingeval": 0,
    "price_callfee": 0,
    "price_girth": 0,
    "price_shipping": 50,
    "price_tax": 300,
    "price_additional": 0,
}
ORDER_500_TOTAL = 4350


def _order(
    id: int,
    fitter_id: Optional[int] = None,
    customer_id: Optional[int] = None,
    factory_id: Optional[int] = None,
    saddle_id: Optional[int] = None,
    leather_id: Optional[int] = None,
    order_status: int = 1,
    order_time: int = 1700000000,
    serial_number: Optional[str] = None,
    fitter_stock: int = 0,
    rushed: int = 0,
    demo: int = 0,
    deleted: int = 0,
    prices: Optional[Dict[str, int]] = None,
    order_data: Optional[str] = None,
) -> Dict[str, Any]:
    row = {
        "id": id, "fitter_id": fitter_id, "customer_id": customer_id,
        "factory_id": factory_id, "saddle_id": saddle_id, "leather_id": leather_id,
        "order_status": order_status, "order_time": order_time,
        "serial_number": serial_number, "fitter_stock": fitter_stock,
        "rushed": rushed, "demo": demo, "deleted": deleted, "order_data": order_data,
    }
    row.update(prices or {})
    return row


SEED_ORDERS: List[Dict[str, Any]] = [
    _order(500, FIONA_FITTER, 1, FACTORY_ID, 1, 1, order_status=2, order_time=1700000000,
           serial_number="SN-500", rushed=1, prices=ORDER_500_PRICES,
           order_data='{"seat": "17.5"}'),
    _order(501, GARY_FITTER, 2, FACTORY_ID, 2, 2, order_status=1, order_time=1700000100,
           serial_number="SN-501", prices={"price_saddle": 3000}),
    # Dangling customer and status, no factory/saddle/leather
    _order(502, FIONA_FITTER, 999, None, None, None, order_status=99, order_time=1700000200,
           prices={"price_saddle": 1000}),
    _order(503, FIONA_FITTER, 1, FACTORY_ID, 1, 1, order_time=1700000250, deleted=1,
           prices={"price_saddle": 500}),
    # Fitter stock
    _order(600, FIONA_FITTER, None, FACTORY_ID, 1, 1, order_status=0, order_time=1700000300,
           serial_number="STK-600", fitter_stock=1, demo=1),
    _order(601, GARY_FITTER, None, FACTORY_ID, 2, 2, order_status=0, order_time=1700000400,
           serial_number="STK-601", fitter_stock=1),
    _order(602, GARY_FITTER, None, FACTORY_ID, 2, 2, order_status=0, order_time=1700000450,
           serial_number="STK-602", fitter_stock=1, deleted=1),
    _order(603, None, None, FACTORY_ID, 1, 2, order_status=0, order_time=1700000500,
           serial_number="STK-603", fitter_stock=1),
]

VISIBLE_ORDER_IDS = {500, 501, 502, 600, 601, 603}


def seed_base_tables(conn) -> None:
    """Insert a small, fully-known data set into the base tables."""
    conn.executemany(
        "INSERT INTO statuses (id, name, sequence) VALUES (?, ?, ?)",
        [[1, "Ordered", 1], [2, "In production", 2], [3, "Shipped", 3]],
    )
    conn.executemany(
        "INSERT INTO leather_types (id, name) VALUES (?, ?)",
        [[1, "Black calf"], [2, "Havana"]],
    )
    conn.executemany(
        "INSERT INTO saddles (id, brand, model_name, type) VALUES (?, ?, ?, ?)",
        [[1, "Apex", "Jump Pro", 1], [2, "Summit", "Dressage Elite", 2]],
    )
    conn.executemany(
        "INSERT INTO credentials (user_id, opaque_id, user_type, user_name, full_name, supervisor) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        [
            [ADMIN_USER, _uuid(ADMIN_USER), 2, "ada", "Ada Admin", 1],
            [FIONA_USER, _uuid(FIONA_USER), 1, "fiona", "Fiona Fitter", 0],
            [GARY_USER, None, 1, "gary", "Gary Girth", 0],
            [FACTORY_USER, _uuid(FACTORY_USER), 3, "works", "Saddle Works", 0],
            [ORPHAN_USER, _uuid(ORPHAN_USER), 1, "orphan", "Otto Orphan", 0],
        ],
    )
    conn.executemany(
        "INSERT INTO fitters (id, user_id, emailaddress) VALUES (?, ?, ?)",
        [[FIONA_FITTER, FIONA_USER, "fiona@example.com"], [GARY_FITTER, GARY_USER, "gary@example.com"]],
    )
    conn.execute(
        "INSERT INTO factories (id, user_id, emailaddress) VALUES (?, ?, ?)",
        [FACTORY_ID, FACTORY_USER, "works@example.com"],
    )
    conn.executemany(
        "INSERT INTO customers (id, fitter_id, name, horse_name, email) VALUES (?, ?, ?, ?, ?)",
        [[1, FIONA_FITTER, "Clara Customer", "Biscuit", "clara@example.com"],
         [2, GARY_FITTER, "Dan Rider", "Comet", "dan@example.com"]],
    )

    columns = sorted(set().union(*(o.keys() for o in SEED_ORDERS)))
    placeholders = ", ".join("?" for _ in columns)
    conn.executemany(
        f"INSERT INTO orders ({', '.join(columns)}) VALUES ({placeholders})",
        [[_default(o, c) for c in columns] for o in SEED_ORDERS],
    )


def _uuid(user_id: int) -> uuid.UUID:
    return uuid.UUID(opaque_id_for(user_id))


def _default(order: Dict[str, Any], column: str) -> Any:
    if column in order:
        return order[column]
    return 0 if column.startswith("price_") else None


def make_settings(**overrides) -> RefreshConfig:
    """Refresh policy with a short debounce window."""
    values = dict(
        interval_seconds=300,
        trigger_on_write=True,
        debounce_seconds=0.05,
        queue_size=100,
        max_staleness_seconds=600,
        lock_timeout_seconds=30,
        history_size=10,
    )
    values.update(overrides)
    return RefreshConfig(**values)


# ═══════════════════════════════════════════════════════════════════════════════
# REDIS DOUBLE
# ═══════════════════════════════════════════════════════════════════════════════

class FakeLock:
    """Non-blocking lock over a shared dict, mirroring redis.asyncio.lock.Lock."""

    def __init__(self, server: "FakeRedis", name: str):
        self.server = server
        self.name = name

    async def acquire(self) -> bool:
        if self.name in self.server.locks:
            return False
        self.server.locks.add(self.name)
        return True

    async def release(self) -> None:
        self.server.locks.discard(self.name)


class FakeRedis:
    """Just enough of the redis.asyncio client for RedisCache."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.expires: Dict[str, float] = {}
        self.locks = set()
        self.clock = time.monotonic

    def _expire(self) -> None:
        now = self.clock()
        for key in [k for k, deadline in self.expires.items() if deadline <= now]:
            self.data.pop(key, None)
            self.expires.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        self._expire()
        return self.data.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self.data[key] = value
        self.ttls[key] = ttl
        self.expires[key] = self.clock() + ttl
        return True

    async def scan(self, cursor: int = 0, match: str = "*", count: int = 100):
        self._expire()
        return 0, [k for k in self.data if fnmatch.fnmatch(k, match)]

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            self.expires.pop(key, None)
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    def lock(self, name: str, timeout: int = None, blocking: bool = True) -> FakeLock:
        return FakeLock(self, name)

    async def aclose(self) -> None:
        pass


# ═══════════════════════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def reset_globals():
    """Global bus and metrics must not leak between tests."""
    events.clear_handlers()
    events.clear_history()
    metrics.reset()
    yield
    events.clear_handlers()
    events.clear_history()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_cache(fake_redis) -> RedisCache:
    """RedisCache connected to the in-memory double."""
    cache = RedisCache(url="redis://test", enabled=True, default_ttl=60, prefix="test")
    cache._client = fake_redis
    cache._connected = True
    return cache


@pytest.fixture
def offline_cache() -> RedisCache:
    """RedisCache that never connected (every lookup misses)."""
    return RedisCache(url="redis://test", enabled=False, prefix="test")


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest_asyncio.fixture
async def store(tmp_path):
    """Connected store over a seeded DuckDB file; no projections built yet."""
    store = OrderViewStore(db_path=tmp_path / "orders.duckdb", query_timeout=10)
    await store.connect()
    async with store.connection() as conn:
        seed_base_tables(conn)
    yield store
    await store.close()


@pytest.fixture
def admin() -> Caller:
    return Caller(account_id=str(ADMIN_USER), role="ROLE_ADMIN")


@pytest.fixture
def fiona() -> Caller:
    """Fitter addressed by an opaque identifier."""
    return Caller(account_id=opaque_id_for(FIONA_USER), role="fitter")


@pytest.fixture
def gary() -> Caller:
    """Fitter addressed by a legacy identifier."""
    return Caller(account_id=str(GARY_USER), role="fitter")


@pytest.fixture
def factory_caller() -> Caller:
    return Caller(account_id=str(FACTORY_USER), role="factory")


@pytest.fixture
def orphan() -> Caller:
    return Caller(account_id=str(ORPHAN_USER), role="fitter")


@pytest_asyncio.fixture
async def service(store, redis_cache, bus):
    """Read service with no projections built and the refresh worker stopped."""
    coordinator = RefreshCoordinator(store, cache=redis_cache, bus=bus, settings=make_settings())
    service = ReadModelService(
        store, cache=redis_cache, bus=bus, coordinator=coordinator, trigger_on_write=False
    )
    yield service
    await service.stop()


@pytest_asyncio.fixture
async def built_service(service):
    await service.ensure_projections()
    return service
