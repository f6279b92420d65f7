"""
Pydantic models for API requests and responses.

Provides type-safe models with automatic validation and documentation.
Collection endpoints return JSON-LD (hydra) envelopes built as plain dicts.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════════════════════
# HEALTH CHECK
# ═══════════════════════════════════════════════════════════════════════════════

class DuckDBStats(BaseModel):
    """DuckDB statistics."""
    status: str
    latency_ms: Optional[float] = None
    orders: Optional[int] = None
    customers: Optional[int] = None
    fitters: Optional[int] = None
    factories: Optional[int] = None
    credentials: Optional[int] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(description="Service status: healthy or degraded")
    version: str = Field(description="Application version")
    uptime_seconds: int = Field(description="Uptime in seconds")
    correlation_id: Optional[str] = Field(None, description="Request correlation ID")
    duckdb: DuckDBStats
    cache_connected: bool = Field(False, description="Whether Redis is reachable")
    projections_available: Dict[str, bool] = Field(
        default_factory=dict, description="Projection name -> has a built generation"
    )


# ═══════════════════════════════════════════════════════════════════════════════
# COLLECTIONS
# ═══════════════════════════════════════════════════════════════════════════════

class ReadMetadata(BaseModel):
    """How a read was served."""
    queriedAt: str = Field(description="Response time (ISO format)")
    cached: bool = Field(description="Served from the Redis cache")
    source: str = Field(description="cache, projection or fallback path of the original read")
    processingTimeMs: float = Field(description="Server-side processing time")


class PaginationMetadata(BaseModel):
    """Page arithmetic for a collection."""
    totalItems: int
    totalPages: int
    currentPage: int
    itemsPerPage: int
    hasNext: bool
    hasPrevious: bool


# ═══════════════════════════════════════════════════════════════════════════════
# PROJECTIONS
# ═══════════════════════════════════════════════════════════════════════════════

class RefreshResult(BaseModel):
    """Outcome of one projection refresh."""
    status: str = Field(description="success, error or coalesced")
    projection: str
    trigger: str
    ticket_id: Optional[str] = None
    generation: Optional[int] = None
    row_count: Optional[int] = None
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    reason: Optional[str] = None


class RefreshAllResult(BaseModel):
    """Outcome of refreshing every projection."""
    status: str
    trigger: str
    projections: Dict[str, RefreshResult]


# ═══════════════════════════════════════════════════════════════════════════════
# MUTATIONS
# ═══════════════════════════════════════════════════════════════════════════════

class MutationRequest(BaseModel):
    """Committed write reported by the write layer."""
    table: str = Field(description="Base table that was written")
    recordId: Optional[int] = Field(None, description="Primary key of the written row")


class MutationResponse(BaseModel):
    """Effect of a reported write on the read model."""
    table: str
    recordId: Optional[int] = None
    invalidatedKeys: int
    refreshQueued: bool


class ErrorResponse(BaseModel):
    """Error body for domain failures."""
    error: str
    detail: Optional[str] = None
    field: Optional[str] = None
    correlation_id: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None


class JobResponse(BaseModel):
    """Scheduled job state."""
    id: str
    name: str
    description: str
    trigger: str
    next_run: Optional[str] = None
    last_run: Optional[str] = None
    last_status: Optional[str] = None
    run_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None


class ProjectionStatusResponse(BaseModel):
    """Refresh coordinator state plus recent audit rows."""
    projections: Dict[str, Dict[str, Any]]
    worker_running: bool
    queued_events: int
    dropped_events: int
    max_staleness_seconds: float
    history: List[Dict[str, Any]] = Field(default_factory=list)
    jobs: List[JobResponse] = Field(default_factory=list)
