"""
FastAPI web application for the enriched order read model.
"""
import os
from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse, JSONResponse
from starlette.middleware.gzip import GZipMiddleware

from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from web.config import VERSION, WEB_HOST, WEB_PORT
from web.routes import api
from web.routes.api._deps import limiter
from web.middleware import RequestLoggingMiddleware, RequestTimeoutMiddleware
from orderview.cache import cache, register_cache_invalidation_handlers
from orderview.config import validate_config, ConfigurationError
from orderview.exceptions import (
    FallbackTimeout,
    QueryTimeoutError,
    ReadModelError,
    ScopeRejected,
    ValidationError,
)
from orderview.observability import get_correlation_id, setup_logging, get_logger
from orderview.scheduler import start_scheduler, stop_scheduler
from orderview.service import get_service, reset_service
from orderview.store import get_store, close_store

# Configure structured logging
# Use JSON format in production (LOG_FORMAT=json), human-readable otherwise
log_format = os.getenv("LOG_FORMAT", "text")
log_level = os.getenv("LOG_LEVEL", "INFO")
setup_logging(level=log_level, json_format=(log_format == "json"))
logger = get_logger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Enriched Order Read Model",
    description="Role-scoped, paginated reads over denormalized saddle orders",
    version=VERSION,
    default_response_class=ORJSONResponse,
)

# Add rate limiter to app state
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded for {get_remote_address(request)}")
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "detail": "Too many requests. Please try again later.",
            "retry_after": exc.detail
        }
    )


@app.exception_handler(ScopeRejected)
async def scope_rejected_handler(request: Request, exc: ScopeRejected):
    logger.warning(f"Scope rejected: {exc}")
    return JSONResponse(
        status_code=403,
        content={
            "error": exc.message,
            "detail": f"Scope '{exc.scope}' is not available to role '{exc.role}'",
            "correlation_id": get_correlation_id(),
        }
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "error": "Validation failed",
            "detail": exc.message,
            "field": exc.field,
            "correlation_id": get_correlation_id(),
        }
    )


@app.exception_handler(FallbackTimeout)
async def fallback_timeout_handler(request: Request, exc: FallbackTimeout):
    logger.error(f"Fallback timed out: {exc}")
    return JSONResponse(
        status_code=503,
        headers={"Retry-After": str(exc.retry_after)},
        content={
            "error": "Service temporarily unavailable",
            "detail": "The read model is rebuilding. Please retry shortly.",
            "correlation_id": get_correlation_id(),
        }
    )


@app.exception_handler(QueryTimeoutError)
async def query_timeout_handler(request: Request, exc: QueryTimeoutError):
    logger.error(f"Store query timed out: {exc}")
    return JSONResponse(
        status_code=503,
        headers={"Retry-After": str(max(1, int(exc.timeout)))},
        content={
            "error": "Service temporarily unavailable",
            "detail": "The store is busy. Please retry shortly.",
            "correlation_id": get_correlation_id(),
        }
    )


@app.exception_handler(ReadModelError)
async def read_model_error_handler(request: Request, exc: ReadModelError):
    logger.error(f"Unhandled read model error: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal error",
            "correlation_id": get_correlation_id(),
        }
    )


# Add request logging middleware (adds correlation IDs and timing)
app.add_middleware(RequestLoggingMiddleware)

# Add request timeout middleware (prevents long-running requests)
# Must be AFTER logging so correlation_id is set when timeout fires
app.add_middleware(RequestTimeoutMiddleware)

# Add Gzip compression (min 500 bytes to compress)
app.add_middleware(GZipMiddleware, minimum_size=500)

app.include_router(api.router, prefix="/api")

_cache_handlers_registered = False


@app.on_event("startup")
async def startup_event():
    global _cache_handlers_registered
    logger.info("Order read model starting...")

    # Validate configuration early - fail fast with clear errors
    try:
        validate_config()
        logger.info("Configuration validated")
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e}")
        raise SystemExit(1)

    try:
        store = await get_store()
        stats = await store.get_stats()
        logger.info(
            f"DuckDB ready: {stats['orders']} orders, "
            f"{stats['credentials']} accounts, "
            f"{len(stats['projections'])} projections restored"
        )
    except Exception as e:
        logger.error(f"DuckDB initialization failed: {e}", exc_info=True)
        raise  # Fail fast - DuckDB is required

    # Redis is optional; without it every read misses and locks are local
    try:
        if await cache.connect():
            if not _cache_handlers_registered:
                register_cache_invalidation_handlers()
                _cache_handlers_registered = True
            logger.info("Redis cache connected")
        else:
            logger.info("Redis cache not available, running without cache")
    except Exception as e:
        logger.warning(f"Redis cache initialization failed: {e}")

    # Builds missing projections and starts the debounced refresh worker
    service = await get_service()
    await service.start()

    try:
        await start_scheduler(service.coordinator)
        logger.info("Background job scheduler started")
    except Exception as e:
        logger.error(f"Scheduler initialization failed: {e}", exc_info=True)
        # Non-fatal - write-triggered refreshes still run

    logger.info("Read model ready")


@app.on_event("shutdown")
async def shutdown_event():
    try:
        stop_scheduler()
        logger.info("Scheduler stopped")
    except Exception as e:
        logger.warning(f"Error stopping scheduler: {e}")

    try:
        service = await get_service()
        await service.stop()
        reset_service()
    except Exception as e:
        logger.warning(f"Error stopping refresh worker: {e}")

    try:
        await cache.disconnect()
    except Exception as e:
        logger.warning(f"Error disconnecting Redis: {e}")

    try:
        await close_store()
        logger.info("DuckDB closed")
    except Exception as e:
        logger.warning(f"Error closing DuckDB: {e}")
    logger.info("Order read model stopped")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("web.main:app", host=WEB_HOST, port=WEB_PORT, log_config=None)
