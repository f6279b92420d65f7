"""Operator endpoints: projection refresh, refresh status and job state."""
from fastapi import APIRouter, Depends, Query, Request

from orderview.planner import Caller
from orderview.scheduler import get_scheduler
from orderview.service import ReadModelService
from orderview.validators import validate_projection_name
from web.schemas import ProjectionStatusResponse, RefreshAllResult, RefreshResult
from ._deps import limiter, get_logger, get_read_service, require_privileged

router = APIRouter()
logger = get_logger(__name__)


@router.post("/projections/refresh", response_model=RefreshAllResult)
@limiter.limit("10/minute")
async def refresh_all_projections(
    request: Request,
    caller: Caller = Depends(require_privileged),
    service: ReadModelService = Depends(get_read_service),
):
    """Rebuild every projection. Failures are reported, never raised."""
    logger.info(f"Manual refresh of all projections by {caller.account_id}")
    return await service.coordinator.refresh_all(trigger="manual")


@router.post("/projections/{name}/refresh", response_model=RefreshResult)
@limiter.limit("10/minute")
async def refresh_projection(
    request: Request,
    name: str,
    caller: Caller = Depends(require_privileged),
    service: ReadModelService = Depends(get_read_service),
):
    """Rebuild one projection; concurrent requests are coalesced."""
    validate_projection_name(name)
    logger.info(f"Manual refresh of {name} by {caller.account_id}")
    return await service.coordinator.refresh(name, trigger="manual")


@router.get("/projections/status", response_model=ProjectionStatusResponse)
@limiter.limit("60/minute")
async def get_projection_status(
    request: Request,
    limit: int = Query(20, ge=1, le=200, description="Refresh audit rows to include"),
    caller: Caller = Depends(require_privileged),
    service: ReadModelService = Depends(get_read_service),
):
    """Current generation, staleness and recent refresh outcomes per projection."""
    scheduler = get_scheduler()
    return {
        **service.coordinator.status(),
        "history": await service.store.get_refresh_history(limit=limit),
        "jobs": scheduler.get_jobs() if scheduler else [],
    }


@router.get("/jobs/{job_id}/history")
@limiter.limit("60/minute")
async def get_job_history(
    request: Request,
    job_id: str,
    limit: int = Query(10, ge=1, le=50),
    caller: Caller = Depends(require_privileged),
):
    """Recent executions of a scheduled job."""
    scheduler = get_scheduler()
    return {
        "job_id": job_id,
        "history": scheduler.get_job_history(job_id, limit=limit) if scheduler else [],
    }
