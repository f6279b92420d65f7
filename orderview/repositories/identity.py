"""OrderViewStore identifier resolution methods.

Accounts exist in two identifier spaces: the legacy sequential
credentials.user_id and the opaque UUID assigned by the identifier
migration. Resolution is total only where the migration produced a
mapping; absence is a normal outcome.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, List, Optional, Tuple, Union

from orderview.exceptions import ResolutionGap

logger = logging.getLogger(__name__)

# Namespace used by the original migration: uuid_generate_v5(uuid_ns_oid(), user_id::text)
OPAQUE_ID_NAMESPACE = uuid.NAMESPACE_OID

# Holder entity tables, looked up by credentials.user_id
ENTITY_TABLES = ("fitters", "factories")

# Most recently used mappings kept in the identifier memo
IDENTITY_MEMO_SIZE = 4096


def opaque_id_for(user_id: int) -> str:
    """Deterministic opaque identifier for a legacy user id."""
    return str(uuid.uuid5(OPAQUE_ID_NAMESPACE, str(user_id)))


def parse_identifier(value: Union[int, str, uuid.UUID, None]) -> Tuple[str, Any]:
    """
    Classify an account identifier by scheme.

    Returns:
        ("legacy", int), ("opaque", uuid.UUID) or ("invalid", value)
    """
    if value is None or isinstance(value, bool):
        return "invalid", value
    if isinstance(value, int):
        return "legacy", value
    if isinstance(value, uuid.UUID):
        return "opaque", value

    text = str(value).strip()
    if text.isdigit():
        return "legacy", int(text)
    try:
        return "opaque", uuid.UUID(text)
    except ValueError:
        return "invalid", value


class IdentityMixin:

    async def resolve_legacy(self, opaque_id: Union[str, uuid.UUID]) -> Optional[int]:
        """Map an opaque identifier to its legacy user id, or None."""
        scheme, parsed = parse_identifier(opaque_id)
        if scheme != "opaque":
            return None

        memo_key = ("legacy", str(parsed))
        memoized = self._memo_get(memo_key)
        if memoized is not None:
            return memoized

        row = await self._fetch_one(
            "SELECT user_id FROM credentials WHERE opaque_id = ?", [parsed]
        )
        result = row[0] if row else None
        self._memo_put(memo_key, result)
        return result

    async def resolve_opaque(self, legacy_id: int) -> Optional[str]:
        """Map a legacy user id to its opaque identifier, or None."""
        memo_key = ("opaque", legacy_id)
        memoized = self._memo_get(memo_key)
        if memoized is not None:
            return memoized

        row = await self._fetch_one(
            "SELECT opaque_id FROM credentials WHERE user_id = ?", [legacy_id]
        )
        result = str(row[0]) if row and row[0] is not None else None
        self._memo_put(memo_key, result)
        return result

    async def resolve_account(self, value: Union[int, str, uuid.UUID, None]) -> Optional[int]:
        """
        Resolve an account identifier in either scheme to a legacy user id.

        Legacy ids must belong to an existing credentials row.
        """
        scheme, parsed = parse_identifier(value)
        if scheme == "opaque":
            return await self.resolve_legacy(parsed)
        if scheme != "legacy":
            return None

        memo_key = ("account", parsed)
        memoized = self._memo_get(memo_key)
        if memoized is not None:
            return memoized

        row = await self._fetch_one(
            "SELECT user_id FROM credentials WHERE user_id = ?", [parsed]
        )
        result = row[0] if row else None
        self._memo_put(memo_key, result)
        return result

    async def require_legacy(self, value: Union[int, str, uuid.UUID, None]) -> int:
        """
        Like resolve_account, for callers that need to distinguish a gap.

        Raises:
            ResolutionGap: If the identifier has no legacy mapping
        """
        user_id = await self.resolve_account(value)
        if user_id is None:
            scheme, _ = parse_identifier(value)
            raise ResolutionGap(value, scheme)
        return user_id

    async def find_entity_id(self, table: str, user_id: int) -> Optional[int]:
        """Non-deleted fitter/factory row owned by an account, or None."""
        if table not in ENTITY_TABLES:
            raise ValueError(f"Not a holder entity table: {table}")

        row = await self._fetch_one(
            f"SELECT id FROM {table} WHERE user_id = ? AND deleted = 0 ORDER BY id LIMIT 1",
            [user_id],
        )
        return row[0] if row else None

    def _memo_get(self, key: tuple) -> Any:
        return self._identity_memo.get(key)

    def _memo_put(self, key: tuple, value: Any) -> None:
        """Memoize a resolved mapping; the LRU cache evicts past its size."""
        if value is None:
            # A gap closes as soon as the migration adds the mapping
            return
        self._identity_memo[key] = value

    def clear_identity_memo(self) -> None:
        """Drop memoized mappings after credentials change."""
        if self._identity_memo:
            logger.debug(f"Clearing {len(self._identity_memo)} memoized identifiers")
        self._identity_memo.clear()

    async def backfill_opaque_ids(self) -> int:
        """
        Assign migration UUIDs to credentials rows that lack one.

        Returns:
            Number of rows updated
        """
        def _work(conn) -> int:
            missing: List[tuple] = conn.execute(
                "SELECT user_id FROM credentials WHERE opaque_id IS NULL ORDER BY user_id"
            ).fetchall()
            if not missing:
                return 0

            conn.execute("BEGIN TRANSACTION")
            try:
                conn.executemany(
                    "UPDATE credentials SET opaque_id = ? WHERE user_id = ?",
                    [[uuid.UUID(opaque_id_for(r[0])), r[0]] for r in missing],
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
            return len(missing)

        updated = await self._run(_work, label="backfill_opaque_ids")
        if updated:
            self.clear_identity_memo()
            logger.info(f"Backfilled opaque ids for {updated} accounts")
        return updated
