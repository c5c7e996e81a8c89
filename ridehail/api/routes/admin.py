"""
Admin / observability endpoints
===============================

GET /api/v1/admin/health -- liveness plus driver pool occupancy
"""

from fastapi import APIRouter, Depends

from ridehail.api.dependencies import get_dispatcher
from ridehail.api.schemas import HealthResponse, PoolHealth
from ridehail.workers.dispatcher import Dispatcher

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(dispatcher: Dispatcher = Depends(get_dispatcher)):
    return HealthResponse(
        drivers=PoolHealth(
            total=len(dispatcher.pool.all()),
            available=dispatcher.pool.count_available(),
        )
    )
