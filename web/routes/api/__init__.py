"""
API routes split by domain.

Each sub-module defines its own APIRouter which is composed
into the top-level router exposed by this package.
"""
from fastapi import APIRouter

from .health import router as health_router
from .orders import router as orders_router
from .stock import router as stock_router
from .projections import router as projections_router
from .mutations import router as mutations_router

router = APIRouter(tags=["api"])

router.include_router(health_router)
router.include_router(orders_router)
router.include_router(stock_router)
router.include_router(projections_router)
router.include_router(mutations_router)
