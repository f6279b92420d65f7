"""
DuckDB store for the enriched order read model.

Holds the normalized base tables, the materialized projection generations
and the refresh audit trail.

Domain-specific query methods are organized into repository mixins:
- IdentityMixin: legacy/opaque identifier resolution and caller entities
- ProjectionsMixin: projection rebuild-and-swap and version tracking
- QueriesMixin: paged reads from a projection or from the live join
"""
import asyncio
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

import duckdb
from cachetools import LRUCache

from orderview.config import config
from orderview.exceptions import QueryTimeoutError
from orderview.observability import get_logger
from orderview.projections import ProjectionState
from orderview.repositories import IdentityMixin, ProjectionsMixin, QueriesMixin
from orderview.repositories.identity import IDENTITY_MEMO_SIZE

logger = get_logger(__name__)

T = TypeVar("T")

IN_MEMORY = ":memory:"


class OrderViewStore(IdentityMixin, ProjectionsMixin, QueriesMixin):
    """
    Async-compatible DuckDB store for the order read model.

    Features:
    - Persistent storage (projections survive restarts)
    - Generation tables swapped behind stable view names
    - Thread offloading to avoid blocking asyncio event loop
    - Query timeouts that interrupt the running statement
    """

    def __init__(
        self,
        db_path: Path = config.database.path,
        query_timeout: float = config.database.query_timeout,
    ):
        self.db_path = db_path
        self.query_timeout = query_timeout
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = asyncio.Lock()  # Serializes all database access

        # Thread pool for offloading blocking DB operations
        self._executor: Optional[ThreadPoolExecutor] = None
        # Projection builds run on their own cursor, outside the lock
        self._build_executor: Optional[ThreadPoolExecutor] = None

        # Current version pointer per projection, replaced as a whole
        self._states: Dict[str, ProjectionState] = {}

        # Bounded identifier memo (cleared when credentials mutate)
        self._identity_memo: LRUCache = LRUCache(maxsize=IDENTITY_MEMO_SIZE)

        # Stats for monitoring
        self._total_queries = 0

    async def connect(self) -> None:
        """Initialize database connection, schema, and thread pool."""
        if str(self.db_path) != IN_MEMORY:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with self._lock:
            if self._connection is None:
                self._connection = duckdb.connect(str(self.db_path))
                self._init_schema(self._connection)

                self._executor = ThreadPoolExecutor(
                    max_workers=1,  # Single worker - DuckDB requires serialized access
                    thread_name_prefix="duckdb"
                )
                self._build_executor = ThreadPoolExecutor(
                    max_workers=1,
                    thread_name_prefix="duckdb-build"
                )
                logger.info(f"DuckDB connected: {self.db_path}")

        await self.load_projection_states()

    async def close(self) -> None:
        """Close database connection and thread pool."""
        async with self._lock:
            # Waits for in-flight queries to finish
            if self._executor:
                self._executor.shutdown(wait=True)
                self._executor = None
            if self._build_executor:
                self._build_executor.shutdown(wait=True)
                self._build_executor = None

            if self._connection:
                self._connection.close()
                self._connection = None
                logger.info("DuckDB connection closed")

    def get_connection_info(self) -> Dict[str, Any]:
        """Get connection info for monitoring."""
        return {
            "status": "active" if self._connection else "not_initialized",
            "total_queries": self._total_queries,
            "db_path": str(self.db_path),
        }

    @asynccontextmanager
    async def connection(self):
        """Get database connection with automatic reconnection.

        Acquires lock to ensure single-threaded DuckDB access.
        DuckDB connections are NOT thread-safe - only one thread can use
        a connection at a time.
        """
        if self._connection is None:
            await self.connect()
        async with self._lock:
            yield self._connection

    # ─── Query Execution with Timeout ────────────────────────────────────────

    async def _run(
        self,
        work: Callable[[duckdb.DuckDBPyConnection], T],
        timeout: Optional[float] = None,
        label: str = "query",
    ) -> T:
        """
        Run a blocking unit of work on the DuckDB thread with a timeout.

        The timeout covers waiting for the store lock as well as the work
        itself. On timeout the running statement is interrupted so the
        worker thread is freed for the next caller.

        Raises:
            QueryTimeoutError: If the work exceeds the timeout
        """
        timeout = timeout or self.query_timeout
        loop = asyncio.get_running_loop()

        async def _locked() -> T:
            async with self.connection() as conn:
                self._total_queries += 1
                try:
                    return await loop.run_in_executor(self._executor, work, conn)
                except asyncio.CancelledError:
                    # Stop the statement before the lock passes to the next caller
                    conn.interrupt()
                    raise

        try:
            return await asyncio.wait_for(_locked(), timeout=timeout)
        except asyncio.TimeoutError:
            raise QueryTimeoutError(label, timeout, f"{label} interrupted")

    async def _run_detached(
        self,
        work: Callable[[duckdb.DuckDBPyConnection], T],
        timeout: Optional[float] = None,
        label: str = "build",
    ) -> T:
        """
        Run long work on a dedicated cursor without holding the store lock.

        DuckDB cursors are independent connections to the same database, so
        reads on the main connection keep running while the work executes.
        Only one detached unit runs at a time.

        Raises:
            QueryTimeoutError: If the work exceeds the timeout
        """
        if self._connection is None:
            await self.connect()
        timeout = timeout or self.query_timeout
        cursor = self._connection.cursor()

        def _work() -> T:
            try:
                return work(cursor)
            finally:
                cursor.close()

        self._total_queries += 1
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self._build_executor, _work),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            try:
                cursor.interrupt()
            except duckdb.ConnectionException:
                pass  # Finished and closed meanwhile
            raise QueryTimeoutError(label, timeout, f"{label} interrupted")

    async def _fetch_one(
        self,
        query: str,
        params: list = None,
        timeout: Optional[float] = None,
    ) -> Optional[tuple]:
        """Execute query and fetch one row."""
        return await self._run(
            lambda conn: conn.execute(query, params or []).fetchone(),
            timeout=timeout,
            label=query,
        )

    async def _fetch_all(
        self,
        query: str,
        params: list = None,
        timeout: Optional[float] = None,
    ) -> List[tuple]:
        """Execute query and fetch all rows."""
        return await self._run(
            lambda conn: conn.execute(query, params or []).fetchall(),
            timeout=timeout,
            label=query,
        )

    async def _execute(
        self,
        query: str,
        params: list = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Execute a statement (INSERT/UPDATE/DELETE)."""
        await self._run(
            lambda conn: conn.execute(query, params or []),
            timeout=timeout,
            label=query,
        )

    async def fetch_dicts(
        self,
        query: str,
        params: list = None,
        timeout: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        """Execute query and return rows as column-name dictionaries."""
        def _work(conn: duckdb.DuckDBPyConnection) -> List[Dict[str, Any]]:
            cursor = conn.execute(query, params or [])
            columns = [d[0] for d in cursor.description]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]

        return await self._run(_work, timeout=timeout, label=query)

    # ─── Schema ──────────────────────────────────────────────────────────────

    @staticmethod
    def _init_schema(conn: duckdb.DuckDBPyConnection) -> None:
        """Create database schema if not exists."""
        schema_sql = """
        -- Reference tables
        CREATE TABLE IF NOT EXISTS statuses (
            id INTEGER PRIMARY KEY,
            name VARCHAR NOT NULL,
            sequence INTEGER DEFAULT 0,
            factory_hidden SMALLINT DEFAULT 0,
            factory_alternative_name VARCHAR
        );

        CREATE TABLE IF NOT EXISTS leather_types (
            id INTEGER PRIMARY KEY,
            name VARCHAR NOT NULL,
            sequence INTEGER DEFAULT 0,
            deleted SMALLINT DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS saddles (
            id INTEGER PRIMARY KEY,
            brand VARCHAR,
            model_name VARCHAR,
            type INTEGER DEFAULT 0,
            active SMALLINT DEFAULT 1,
            deleted SMALLINT DEFAULT 0,
            sequence INTEGER DEFAULT 0
        );

        -- Accounts; opaque_id is filled where the identifier migration ran
        CREATE TABLE IF NOT EXISTS credentials (
            user_id INTEGER PRIMARY KEY,
            opaque_id UUID UNIQUE,
            user_type SMALLINT NOT NULL DEFAULT 1,
            user_name VARCHAR,
            full_name VARCHAR,
            supervisor SMALLINT DEFAULT 0,
            blocked SMALLINT DEFAULT 0,
            deleted SMALLINT DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS fitters (
            id INTEGER PRIMARY KEY,
            user_id INTEGER,
            deleted SMALLINT DEFAULT 0,
            address VARCHAR,
            city VARCHAR,
            state VARCHAR,
            zipcode VARCHAR,
            country VARCHAR,
            phone_no VARCHAR,
            cell_no VARCHAR,
            emailaddress VARCHAR
        );
        CREATE INDEX IF NOT EXISTS idx_fitters_user ON fitters(user_id);

        CREATE TABLE IF NOT EXISTS factories (
            id INTEGER PRIMARY KEY,
            user_id INTEGER,
            deleted SMALLINT DEFAULT 0,
            address VARCHAR,
            city VARCHAR,
            state VARCHAR,
            zipcode VARCHAR,
            country VARCHAR,
            phone_no VARCHAR,
            cell_no VARCHAR,
            emailaddress VARCHAR
        );
        CREATE INDEX IF NOT EXISTS idx_factories_user ON factories(user_id);

        CREATE TABLE IF NOT EXISTS customers (
            id INTEGER PRIMARY KEY,
            fitter_id INTEGER,
            deleted SMALLINT DEFAULT 0,
            name VARCHAR,
            horse_name VARCHAR,
            email VARCHAR,
            address VARCHAR,
            city VARCHAR,
            state VARCHAR,
            zipcode VARCHAR,
            country VARCHAR,
            phone_no VARCHAR,
            cell_no VARCHAR
        );

        -- Canonical write-side orders (prices in whole currency units)
        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY,
            fitter_id INTEGER,
            customer_id INTEGER,
            factory_id INTEGER,
            saddle_id INTEGER,
            leather_id INTEGER,
            order_status INTEGER DEFAULT 0,
            order_time BIGINT,
            payment_time BIGINT,
            order_step SMALLINT DEFAULT 0,
            currency SMALLINT DEFAULT 1,
            fitter_reference VARCHAR,
            special_notes VARCHAR,
            serial_number VARCHAR,
            fitter_stock SMALLINT DEFAULT 0,
            custom_order SMALLINT DEFAULT 0,
            repair SMALLINT DEFAULT 0,
            demo SMALLINT DEFAULT 0,
            sponsored SMALLINT DEFAULT 0,
            rushed SMALLINT DEFAULT 0,
            deleted SMALLINT DEFAULT 0,
            name VARCHAR,
            horse_name VARCHAR,
            price_saddle INTEGER DEFAULT 0,
            price_tradein INTEGER DEFAULT 0,
            price_deposit INTEGER DEFAULT 0,
            price_discount INTEGER DEFAULT 0,
            price_fittingeval INTEGER DEFAULT 0,
            price_callfee INTEGER DEFAULT 0,
            price_girth INTEGER DEFAULT 0,
            price_shipping INTEGER DEFAULT 0,
            price_tax INTEGER DEFAULT 0,
            price_additional INTEGER DEFAULT 0,
            order_data VARCHAR
        );

        -- Generation history of each projection (latest row is current)
        CREATE TABLE IF NOT EXISTS projection_versions (
            name VARCHAR NOT NULL,
            generation INTEGER NOT NULL,
            physical_table VARCHAR NOT NULL,
            built_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
            row_count INTEGER,
            duration_ms DECIMAL(10, 2)
        );

        -- Refresh audit trail
        CREATE SEQUENCE IF NOT EXISTS projection_refresh_seq START 1;
        CREATE TABLE IF NOT EXISTS projection_refreshes (
            id INTEGER PRIMARY KEY DEFAULT (nextval('projection_refresh_seq')),
            refreshed_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
            projection VARCHAR NOT NULL,
            trigger VARCHAR NOT NULL,
            status VARCHAR NOT NULL,
            generation INTEGER,
            row_count INTEGER,
            duration_ms DECIMAL(10, 2),
            error VARCHAR
        );
        CREATE INDEX IF NOT EXISTS idx_projection_refreshes_at ON projection_refreshes(refreshed_at);
        """
        conn.execute(schema_sql)

    async def get_stats(self) -> Dict[str, Any]:
        """Get database statistics."""
        def _work(conn: duckdb.DuckDBPyConnection) -> Dict[str, Any]:
            counts = {}
            for table in ("orders", "customers", "fitters", "factories", "credentials"):
                counts[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            return counts

        stats = await self._run(_work, label="stats")
        stats["projections"] = {name: s.to_dict() for name, s in self._states.items()}
        return stats


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_store_instance: Optional[OrderViewStore] = None
_store_lock = asyncio.Lock()


async def get_store() -> OrderViewStore:
    """Get singleton store instance (coroutine-safe)."""
    global _store_instance
    async with _store_lock:
        if _store_instance is None:
            _store_instance = OrderViewStore()
            await _store_instance.connect()
    return _store_instance


async def close_store() -> None:
    """Close singleton store instance."""
    global _store_instance
    if _store_instance:
        await _store_instance.close()
        _store_instance = None
