"""OrderViewStore paged read methods.

Both read paths run the same WHERE/ORDER/LIMIT over a relation aliased
``p``: the stored projection view, or the projection SELECT executed as a
live subquery. Row shape, total price and null-handling are therefore
identical whichever path serves a request.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import duckdb

from orderview.config import config
from orderview.exceptions import (
    FallbackTimeout,
    ProjectionUnavailable,
    QueryTimeoutError,
)
from orderview.models import PageRequest
from orderview.projections import get_definition

logger = logging.getLogger(__name__)


def _where(conditions: List[str]) -> str:
    return f"WHERE {' AND '.join(conditions)}" if conditions else ""


class QueriesMixin:

    def projection_relation(self, name: str) -> str:
        """Relation for the stored projection."""
        get_definition(name)
        return f"{name} AS p"

    def live_relation(self, name: str) -> str:
        """Relation that recomputes the projection at request time."""
        return f"({get_definition(name).select_sql}) AS p"

    async def _page_from(
        self,
        relation: str,
        conditions: List[str],
        params: List[Any],
        order_sql: str,
        page: PageRequest,
        timeout: Optional[float],
        label: str,
    ) -> Tuple[List[Dict[str, Any]], int]:
        where = _where(conditions)

        def _work(conn) -> Tuple[List[Dict[str, Any]], int]:
            total = conn.execute(
                f"SELECT COUNT(*) FROM {relation} {where}", params
            ).fetchone()[0]
            cursor = conn.execute(
                f"SELECT p.* FROM {relation} {where} {order_sql} LIMIT ? OFFSET ?",
                params + [page.limit, page.offset],
            )
            columns = [d[0] for d in cursor.description]
            rows = [dict(zip(columns, r)) for r in cursor.fetchall()]
            return rows, total

        return await self._run(_work, timeout=timeout, label=label)

    async def query_projection_page(
        self,
        name: str,
        conditions: List[str],
        params: List[Any],
        order_sql: str,
        page: PageRequest,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        Read a page from the stored projection.

        Raises:
            ProjectionUnavailable: If no generation has been built
        """
        if name not in self._states:
            raise ProjectionUnavailable(name, "never built")
        try:
            return await self._page_from(
                self.projection_relation(name), conditions, params, order_sql, page,
                timeout=None, label=f"projection {name}",
            )
        except duckdb.CatalogException as e:
            raise ProjectionUnavailable(name, str(e))

    async def query_live_page(
        self,
        name: str,
        conditions: List[str],
        params: List[Any],
        order_sql: str,
        page: PageRequest,
        timeout: Optional[float] = None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        Read a page by running the projection join at request time.

        Raises:
            FallbackTimeout: If the live join exceeds the fallback timeout
        """
        timeout = timeout or config.database.fallback_timeout
        try:
            return await self._page_from(
                self.live_relation(name), conditions, params, order_sql, page,
                timeout=timeout, label=f"live {name}",
            )
        except QueryTimeoutError:
            logger.warning(f"Live join for {name} timed out after {timeout}s")
            raise FallbackTimeout(name, timeout)

    async def fetch_projection_row(
        self, name: str, conditions: List[str], params: List[Any]
    ) -> Optional[Dict[str, Any]]:
        """Single row from the stored projection, or None."""
        rows, _ = await self.query_projection_page(
            name, conditions, params, "ORDER BY id", PageRequest(page=1, limit=1)
        )
        return rows[0] if rows else None

    async def fetch_live_row(
        self,
        name: str,
        conditions: List[str],
        params: List[Any],
        timeout: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]:
        """Single row from the live join, or None."""
        rows, _ = await self.query_live_page(
            name, conditions, params, "ORDER BY id", PageRequest(page=1, limit=1), timeout
        )
        return rows[0] if rows else None
