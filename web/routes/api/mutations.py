"""Write-event hook called by the write layer after each commit."""
from fastapi import APIRouter, Depends, Request

from orderview.planner import Caller
from orderview.service import ReadModelService
from web.schemas import MutationRequest, MutationResponse
from ._deps import limiter, get_logger, get_read_service, require_privileged

router = APIRouter()
logger = get_logger(__name__)


@router.post("/mutations", response_model=MutationResponse)
@limiter.limit("600/minute")
async def report_mutation(
    request: Request,
    body: MutationRequest,
    caller: Caller = Depends(require_privileged),
    service: ReadModelService = Depends(get_read_service),
):
    """
    Invalidate cached reads and queue a projection refresh for a committed write.

    The write layer calls this with a privileged service identity.
    """
    result = await service.on_mutation(body.table, body.recordId)
    logger.debug(f"Mutation on {result['table']} reported by {caller.account_id}")
    return {
        "table": result["table"],
        "recordId": result["record_id"],
        "invalidatedKeys": result["invalidated_keys"],
        "refreshQueued": result["refresh_queued"],
    }
