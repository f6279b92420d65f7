#!/usr/bin/env python3
"""
Operator tool for the enriched order projections.

Rebuilds projections outside the web process, backfills opaque account
identifiers, and prints refresh status.

Usage:
    python scripts/refresh_views.py                       # Refresh all projections
    python scripts/refresh_views.py --projection order_edit_view
    python scripts/refresh_views.py --backfill-ids
    python scripts/refresh_views.py --status
"""
import asyncio
import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from orderview.cache import cache
from orderview.projections import PROJECTIONS
from orderview.refresh import RefreshCoordinator
from orderview.store import get_store, close_store

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def main(args: argparse.Namespace) -> int:
    store = await get_store()
    # Redis lock keeps this from racing a running web instance
    await cache.connect()
    coordinator = RefreshCoordinator(store, cache=cache)

    try:
        if args.backfill_ids:
            count = await store.backfill_opaque_ids()
            logger.info(f"Assigned opaque ids to {count} accounts")

        if args.status:
            for name, state in store.projection_states.items():
                logger.info(
                    f"{name}: generation {state.generation}, {state.row_count} rows, "
                    f"built {state.built_at.isoformat()} in {state.duration_ms}ms"
                )
            for row in await store.get_refresh_history(limit=args.history):
                logger.info(
                    f"{row['refreshed_at']} {row['projection']} {row['trigger']} "
                    f"{row['status']} {row['error'] or ''}"
                )
            return 0

        if args.backfill_ids and not args.projection and not args.all:
            return 0

        if args.projection:
            result = await coordinator.refresh(args.projection, trigger="cli")
            logger.info(f"Result: {result}")
            return 0 if result["status"] != "error" else 1

        result = await coordinator.refresh_all(trigger="cli")
        for name, outcome in result["projections"].items():
            logger.info(f"{name}: {outcome}")
        return 0 if result["status"] != "error" else 1
    finally:
        await cache.disconnect()
        await close_store()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Refresh enriched order projections")
    parser.add_argument("--projection", choices=list(PROJECTIONS), help="Refresh a single projection")
    parser.add_argument("--all", action="store_true", help="Refresh every projection (default)")
    parser.add_argument("--backfill-ids", action="store_true", help="Assign missing opaque account ids")
    parser.add_argument("--status", action="store_true", help="Print current generations and recent refreshes")
    parser.add_argument("--history", type=int, default=10, help="Refresh audit rows shown with --status")
    args = parser.parse_args()

    sys.exit(asyncio.run(main(args)))
