"""Shared dependencies for API route modules."""
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from fastapi import Depends, Header, HTTPException
from slowapi import Limiter
from slowapi.util import get_remote_address

from orderview.models import Page
from orderview.planner import Caller
from orderview.service import ReadModelService, get_service
from web.schemas import PaginationMetadata, ReadMetadata

# Shared limiter instance
limiter = Limiter(key_func=get_remote_address)

# Shared logger factory
def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)

# Track startup time for uptime calculation
START_TIME = time.time()


async def get_read_service() -> ReadModelService:
    """Read service dependency (overridable in tests)."""
    return await get_service()


def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Caller:
    """Caller identity forwarded by the gateway after authentication."""
    if not x_user_id or not x_user_role:
        raise HTTPException(status_code=401, detail="Missing caller identity headers")
    return Caller(account_id=x_user_id, role=x_user_role)


def require_privileged(caller: Caller = Depends(get_caller)) -> Caller:
    """Only admin/supervisor callers may use operator endpoints."""
    if not caller.is_privileged:
        raise HTTPException(status_code=403, detail="Not permitted for this role")
    return caller


def hydra_view(path: str, params: Dict[str, Any], page: Page) -> Dict[str, str]:
    """Partial collection view with first/last/next/previous links."""
    base = {k: v for k, v in params.items() if v is not None and k != "page"}

    def link(number: int) -> str:
        return f"{path}?{urlencode({**base, 'page': number})}"

    last = max(page.total_pages, 1)
    view = {
        "@id": link(page.page),
        "@type": "hydra:PartialCollectionView",
        "hydra:first": link(1),
        "hydra:last": link(last),
    }
    if page.page < last:
        view["hydra:next"] = link(page.page + 1)
    if page.page > 1:
        view["hydra:previous"] = link(page.page - 1)
    return view


def read_metadata(page: Page) -> Dict[str, Any]:
    return ReadMetadata(
        queriedAt=datetime.now(timezone.utc).isoformat(),
        cached=page.cached,
        source=page.source.value,
        processingTimeMs=page.processing_time_ms,
    ).model_dump()


def pagination_metadata(page: Page) -> Dict[str, Any]:
    return PaginationMetadata(**page.pagination()).model_dump()
