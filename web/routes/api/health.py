"""Health check, metrics, and cache stats endpoints."""
import asyncio
import time

from fastapi import APIRouter, Depends, Request

from orderview.observability import get_correlation_id, metrics, Timer
from orderview.projections import PROJECTIONS
from orderview.service import ReadModelService
from web.config import VERSION
from web.schemas import HealthResponse
from ._deps import limiter, get_logger, get_read_service, START_TIME

router = APIRouter()
logger = get_logger(__name__)

# Health check stats cache (60 second TTL) with thread-safe lock
_stats_cache: dict = {"data": None, "expires_at": 0}
_stats_cache_lock = asyncio.Lock()
_STATS_CACHE_TTL = 60


@router.get("/health", response_model=HealthResponse)
@limiter.limit("60/minute")
async def health_check(
    request: Request,
    service: ReadModelService = Depends(get_read_service),
):
    """Health check endpoint for Docker/load balancer monitoring."""
    uptime_seconds = int(time.time() - START_TIME)

    now = time.time()
    async with _stats_cache_lock:
        if _stats_cache["data"] and now < _stats_cache["expires_at"]:
            duckdb_stats = _stats_cache["data"]
            duckdb_status = "connected"
            db_latency_ms = 0.0
        else:
            db_latency_ms = None
            try:
                with Timer("health_check_db") as timer:
                    duckdb_stats = await service.store.get_stats()
                duckdb_status = "connected"
                db_latency_ms = round(timer.elapsed_ms, 2)
                _stats_cache["data"] = duckdb_stats
                _stats_cache["expires_at"] = now + _STATS_CACHE_TTL
            except Exception as e:
                duckdb_stats = None
                duckdb_status = f"error: {e}"

    # Projection details are reported by /projections/status
    counts = {k: v for k, v in (duckdb_stats or {}).items() if k != "projections"}
    available = {name: service.coordinator.is_available(name) for name in PROJECTIONS}

    return {
        "status": "healthy" if duckdb_stats else "degraded",
        "version": VERSION,
        "uptime_seconds": uptime_seconds,
        "correlation_id": get_correlation_id(),
        "duckdb": {
            "status": duckdb_status,
            "latency_ms": db_latency_ms,
            **counts,
        },
        "cache_connected": service.cache.is_connected,
        "projections_available": available,
    }


@router.get("/metrics")
@limiter.limit("60/minute")
async def get_metrics_endpoint(request: Request):
    """Get application metrics."""
    return {
        "uptime_seconds": int(time.time() - START_TIME),
        "correlation_id": get_correlation_id(),
        **metrics.get_stats(),
    }


@router.get("/cache/stats")
@limiter.limit("60/minute")
async def get_cache_stats(
    request: Request,
    service: ReadModelService = Depends(get_read_service),
):
    """Redis read cache statistics."""
    return service.cache.get_stats()
