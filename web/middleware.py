"""
FastAPI middleware for observability.

Provides:
- Request correlation ID injection
- Request/response logging tagged with the caller's role
- Timing metrics per route
- Request timeout protection (extended for projection rebuilds)
"""
import asyncio
import time
from typing import Callable
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response, JSONResponse

from orderview.observability import (
    get_logger,
    generate_correlation_id,
    set_correlation_id,
    get_correlation_id,
    metrics,
)
from orderview.projections import PROJECTIONS

logger = get_logger(__name__)

# Request timeout settings (seconds)
DEFAULT_REQUEST_TIMEOUT = 30.0
SLOW_ENDPOINT_TIMEOUT = 300.0  # Projection rebuilds can take minutes

# Endpoints that get extended timeout
SLOW_ENDPOINTS = {"/api/projections/refresh"} | {
    f"/api/projections/{name}/refresh" for name in PROJECTIONS
}

QUIET_PATHS = ("/api/health", "/health")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that:
    1. Assigns correlation ID to each request
    2. Logs request start/end with timing and caller role
    3. Records metrics
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get("X-Request-ID") or generate_correlation_id()
        set_correlation_id(correlation_id)

        start_time = time.perf_counter()

        method = request.method
        path = request.url.path
        role = request.headers.get("X-User-Role", "anonymous")

        # Health checks are polled by the load balancer
        quiet = path in QUIET_PATHS

        if not quiet:
            logger.info(
                f"Request started: {method} {path}",
                extra={"method": method, "path": path, "role": role},
            )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                f"Request failed: {method} {path}",
                extra={
                    "method": method,
                    "path": path,
                    "role": role,
                    "duration_ms": round(duration_ms, 2),
                    "error": str(e),
                }
            )
            metrics.record_error(type(e).__name__)
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000

        response.headers["X-Request-ID"] = correlation_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

        if not quiet:
            level_name = "info" if response.status_code < 400 else "warning"
            getattr(logger, level_name)(
                f"Request completed: {method} {path}",
                extra={
                    "method": method,
                    "path": path,
                    "role": role,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 2),
                }
            )

        # Route template keeps per-order paths from exploding the counters
        route = request.scope.get("route")
        endpoint = f"{method} {getattr(route, 'path', path)}"
        metrics.record_request(endpoint)
        metrics.record_timing(endpoint, duration_ms)

        if response.status_code >= 400:
            metrics.record_error(f"HTTP_{response.status_code}")

        return response


class RequestTimeoutMiddleware(BaseHTTPMiddleware):
    """
    Middleware that enforces request timeout.

    Returns 504 Gateway Timeout if a request exceeds its budget. Reads have
    their own DuckDB timeouts below this one.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path

        if path in QUIET_PATHS:
            return await call_next(request)

        timeout = SLOW_ENDPOINT_TIMEOUT if path in SLOW_ENDPOINTS else DEFAULT_REQUEST_TIMEOUT

        try:
            return await asyncio.wait_for(call_next(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Request timeout: {request.method} {path}",
                extra={
                    "method": request.method,
                    "path": path,
                    "timeout": timeout,
                }
            )
            metrics.record_error("REQUEST_TIMEOUT")
            return JSONResponse(
                status_code=504,
                content={
                    "error": "Request Timeout",
                    "detail": f"Request exceeded {timeout}s timeout",
                    "path": path,
                    "correlation_id": get_correlation_id(),
                }
            )
