"""OrderViewStore projection build-and-swap methods."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from orderview.config import config
from orderview.exceptions import QueryTimeoutError, RefreshFailed
from orderview.projections import (
    PROJECTIONS,
    ProjectionState,
    generation_table,
    get_definition,
)

logger = logging.getLogger(__name__)


class ProjectionsMixin:

    @property
    def projection_states(self) -> Dict[str, ProjectionState]:
        """Snapshot of the current version of every built projection."""
        return dict(self._states)

    def get_projection_state(self, name: str) -> Optional[ProjectionState]:
        return self._states.get(name)

    async def load_projection_states(self) -> Dict[str, ProjectionState]:
        """
        Restore current-version pointers from projection_versions.

        Generations whose physical table no longer exists are skipped, and
        each stable view is re-pointed at its current generation.
        """
        def _work(conn) -> Dict[str, ProjectionState]:
            rows = conn.execute("""
                SELECT name, generation, physical_table, built_at, row_count, duration_ms
                FROM projection_versions
                QUALIFY row_number() OVER (PARTITION BY name ORDER BY generation DESC) = 1
            """).fetchall()
            existing = {
                r[0] for r in conn.execute("SELECT table_name FROM duckdb_tables()").fetchall()
            }

            states = {}
            for name, generation, table, built_at, row_count, duration_ms in rows:
                if name not in PROJECTIONS or table not in existing:
                    continue
                conn.execute(f"CREATE OR REPLACE VIEW {name} AS SELECT * FROM {table}")
                states[name] = ProjectionState(
                    name=name,
                    generation=generation,
                    physical_table=table,
                    built_at=built_at,
                    row_count=row_count,
                    duration_ms=float(duration_ms) if duration_ms is not None else None,
                )
            return states

        self._states = await self._run(_work, label="load_projection_states")
        for state in self._states.values():
            logger.info(
                f"Projection {state.name} at generation {state.generation} "
                f"({state.row_count} rows)"
            )
        return self._states

    async def rebuild_projection(
        self, name: str, timeout: Optional[float] = None
    ) -> ProjectionState:
        """
        Build a new generation of a projection and swap it in.

        The build writes a fresh generation table on a dedicated cursor in
        its own transaction, without taking the store lock; readers keep
        using the previous generation through the stable view meanwhile.
        Only the short swap transaction that re-points the view runs under
        the lock.

        Raises:
            RefreshFailed: If the build or swap fails; the previous
                generation stays current
        """
        definition = get_definition(name)
        timeout = timeout or config.database.rebuild_timeout
        previous = self._states.get(name)
        start = time.perf_counter()

        try:
            generation, table, row_count = await self._run_detached(
                lambda conn: self._build_generation(conn, definition),
                timeout=timeout,
                label=f"build {name}",
            )
        except QueryTimeoutError as e:
            raise RefreshFailed(name, str(e))
        except Exception as e:
            raise RefreshFailed(name, f"build failed: {e}")

        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        state = ProjectionState(
            name=name,
            generation=generation,
            physical_table=table,
            built_at=datetime.now(timezone.utc),
            row_count=row_count,
            duration_ms=duration_ms,
        )

        def _swap(conn) -> List[str]:
            conn.execute("BEGIN TRANSACTION")
            try:
                conn.execute(f"CREATE OR REPLACE VIEW {name} AS SELECT * FROM {table}")
                conn.execute("""
                    INSERT INTO projection_versions
                        (name, generation, physical_table, built_at, row_count, duration_ms)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, [name, generation, table, state.built_at, row_count, duration_ms])

                stale = [
                    r[0] for r in conn.execute(
                        "SELECT table_name FROM duckdb_tables() WHERE starts_with(table_name, ?)",
                        [f"{name}__g"],
                    ).fetchall()
                    if r[0] != table
                ]
                for old in stale:
                    conn.execute(f"DROP TABLE IF EXISTS {old}")
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
            return stale

        try:
            dropped = await self._run(_swap, label=f"swap {name}")
        except Exception as e:
            await self._discard_generation(table)
            raise RefreshFailed(name, f"swap failed: {e}")

        # Single reference assignment publishes the new version
        self._states[name] = state

        logger.info(
            f"Projection {name} swapped to generation {generation}: "
            f"rows={row_count}, duration={duration_ms:.0f}ms, "
            f"previous={previous.generation if previous else None}, dropped={len(dropped)}"
        )
        return state

    def _build_generation(self, conn, definition) -> Tuple[int, str, int]:
        """Write the next generation table of a projection (blocking)."""
        name = definition.name
        generation = conn.execute(
            "SELECT COALESCE(MAX(generation), 0) + 1 FROM projection_versions WHERE name = ?",
            [name],
        ).fetchone()[0]
        table = generation_table(name, generation)

        conn.execute("BEGIN TRANSACTION")
        try:
            # Leftover from an interrupted swap
            conn.execute(f"DROP TABLE IF EXISTS {table}")
            conn.execute(f"""
                CREATE TABLE {table} AS
                SELECT * FROM ({definition.select_sql}) AS p
                ORDER BY id
            """)
            conn.execute(f"CREATE UNIQUE INDEX {table}_pk ON {table}(id)")
            for column in definition.indexed_columns:
                conn.execute(f"CREATE INDEX {table}_{column} ON {table}({column})")
            row_count = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        return generation, table, row_count

    async def _discard_generation(self, table: str) -> None:
        try:
            await self._run(lambda conn: conn.execute(f"DROP TABLE IF EXISTS {table}"))
        except Exception as e:
            logger.warning(f"Could not drop unswapped generation {table}: {e}")

    async def record_refresh(
        self,
        projection: str,
        trigger: str,
        status: str,
        generation: Optional[int] = None,
        row_count: Optional[int] = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
    ) -> None:
        """Append a row to the refresh audit trail."""
        await self._execute("""
            INSERT INTO projection_refreshes
                (refreshed_at, projection, trigger, status, generation, row_count, duration_ms, error)
            VALUES (CURRENT_TIMESTAMP, ?, ?, ?, ?, ?, ?, ?)
        """, [projection, trigger, status, generation, row_count, duration_ms, error])

    async def get_refresh_history(
        self, projection: Optional[str] = None, limit: int = 20
    ) -> List[Dict[str, Any]]:
        """Most recent refresh audit rows, newest first."""
        conditions = ""
        params: List[Any] = []
        if projection:
            conditions = "WHERE projection = ?"
            params.append(projection)
        params.append(limit)

        rows = await self._fetch_all(f"""
            SELECT refreshed_at, projection, trigger, status, generation,
                   row_count, duration_ms, error
            FROM projection_refreshes
            {conditions}
            ORDER BY id DESC
            LIMIT ?
        """, params)

        return [
            {
                "refreshed_at": row[0].isoformat() if row[0] else None,
                "projection": row[1],
                "trigger": row[2],
                "status": row[3],
                "generation": row[4],
                "row_count": row[5],
                "duration_ms": float(row[6]) if row[6] is not None else None,
                "error": row[7],
            }
            for row in rows
        ]
