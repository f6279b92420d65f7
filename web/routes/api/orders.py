"""Enriched order list and edit view endpoints."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from orderview.models import OrderFilters, PageRequest
from orderview.planner import Caller
from orderview.service import ReadModelService
from orderview.validators import (
    validate_limit,
    validate_page,
    validate_scope,
    validate_search,
    validate_sort,
)
from web.config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, RATE_LIMIT
from ._deps import (
    limiter,
    get_caller,
    get_logger,
    get_read_service,
    hydra_view,
    pagination_metadata,
    read_metadata,
)

router = APIRouter()
logger = get_logger(__name__)

URGENT_VALUES = {"true", "1", "urgent", "yes"}


def _parse_urgent(value: Optional[str]) -> Optional[bool]:
    if value is None or value == "":
        return None
    return value.strip().lower() in URGENT_VALUES


@router.get("/enriched-orders")
@limiter.limit(RATE_LIMIT)
async def list_enriched_orders(
    request: Request,
    search: Optional[str] = Query(None, description="Substring of serial, brand, model, fitter or customer"),
    urgent: Optional[str] = Query(None, description="true/1/urgent for rushed orders only"),
    fitterId: Optional[int] = Query(None),
    fitterUserId: Optional[str] = Query(None, description="Fitter account id (legacy or opaque)"),
    customerId: Optional[int] = Query(None),
    factoryId: Optional[int] = Query(None),
    orderStatus: Optional[int] = Query(None),
    scope: Optional[str] = Query(None, description="mine (default) or all"),
    orderBy: Optional[str] = Query(None),
    orderDirection: Optional[str] = Query(None),
    page: Optional[int] = Query(None),
    limit: Optional[int] = Query(None),
    caller: Caller = Depends(get_caller),
    service: ReadModelService = Depends(get_read_service),
):
    """Paginated enriched orders in a hydra collection envelope."""
    page_request = PageRequest(
        page=validate_page(page),
        limit=validate_limit(limit, default=DEFAULT_PAGE_SIZE, max_value=MAX_PAGE_SIZE),
    )
    sort = validate_sort(orderBy, orderDirection)
    filters = OrderFilters(
        urgent=_parse_urgent(urgent),
        fitter_id=fitterId,
        customer_id=customerId,
        factory_id=factoryId,
        order_status=orderStatus,
    )

    result = await service.list_orders(
        caller,
        filters=filters,
        sort=sort,
        page=page_request,
        scope=validate_scope(scope),
        search=validate_search(search),
        fitter_account=fitterUserId,
    )

    params = {
        "search": search, "urgent": urgent, "fitterId": fitterId,
        "fitterUserId": fitterUserId, "customerId": customerId,
        "factoryId": factoryId, "orderStatus": orderStatus, "scope": scope,
        "orderBy": orderBy, "orderDirection": orderDirection,
        "limit": page_request.limit,
    }
    return {
        "@context": "/api/contexts/EnrichedOrder",
        "@id": "/api/enriched-orders",
        "@type": "hydra:Collection",
        "hydra:member": result.rows,
        "hydra:totalItems": result.total,
        "hydra:view": hydra_view("/api/enriched-orders", params, result),
        "pagination": pagination_metadata(result),
        "metadata": read_metadata(result),
    }


@router.get("/enriched-orders/{order_id}/edit")
@limiter.limit(RATE_LIMIT)
async def get_enriched_order_edit(
    request: Request,
    order_id: int,
    caller: Caller = Depends(get_caller),
    service: ReadModelService = Depends(get_read_service),
):
    """Single edit projection row; 404 when absent or outside the caller's scope."""
    result = await service.get_order_edit_view(caller, order_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id} not found")

    return {
        "data": result["data"],
        "metadata": {
            "cached": result["cached"],
            "source": result["source"],
            "processingTimeMs": result["processing_time_ms"],
        },
    }
