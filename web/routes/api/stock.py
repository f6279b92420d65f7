"""Saddle stock collection endpoint."""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from orderview.models import PageRequest, to_stock_item
from orderview.planner import Caller
from orderview.service import ReadModelService
from orderview.validators import validate_limit, validate_page, validate_scope, validate_search
from web.config import DEFAULT_STOCK_PAGE_SIZE, MAX_PAGE_SIZE, RATE_LIMIT
from ._deps import limiter, get_caller, get_logger, get_read_service, hydra_view, read_metadata

router = APIRouter()
logger = get_logger(__name__)


@router.get("/saddle-stock")
@limiter.limit(RATE_LIMIT)
async def list_saddle_stock(
    request: Request,
    type: Optional[str] = Query(None, description="mine (default), available or all"),
    search: Optional[str] = Query(None, description="Substring of serial, brand, model or holder name"),
    page: Optional[int] = Query(None),
    limit: Optional[int] = Query(None),
    caller: Caller = Depends(get_caller),
    service: ReadModelService = Depends(get_read_service),
):
    """Fitter stock saddles as a hydra collection."""
    scope = validate_scope(type, field="type")
    page_request = PageRequest(
        page=validate_page(page),
        limit=validate_limit(limit, default=DEFAULT_STOCK_PAGE_SIZE, max_value=MAX_PAGE_SIZE),
    )

    result = await service.list_stock(
        caller, scope=scope, search=validate_search(search), page=page_request
    )

    params = {"type": scope.value, "search": search, "limit": page_request.limit}
    return {
        "@context": "/api/contexts/SaddleStock",
        "@id": "/api/saddle-stock",
        "@type": "hydra:Collection",
        "hydra:member": [to_stock_item(row) for row in result.rows],
        "hydra:totalItems": result.total,
        "hydra:view": hydra_view("/api/saddle-stock", params, result),
        "metadata": read_metadata(result),
    }
