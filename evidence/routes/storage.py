"""
POST /v1/storage/sweep -- Delete stale temp objects.

Every staged photo already has its own delayed delete. The sweep is for
operators: it removes tracked temp objects older than a threshold right
away, e.g. before a deploy.
"""

from fastapi import APIRouter, Depends, Query

from evidence.dependencies import get_gateway
from evidence.storage.gateway import TempStorageGateway

router = APIRouter()


@router.post(
    "/v1/storage/sweep",
    summary="Delete stale temp objects",
    tags=["Storage"],
)
async def sweep(
    older_than_minutes: float = Query(30, ge=0, description="Age threshold in minutes."),
    gateway: TempStorageGateway = Depends(get_gateway),
) -> dict:
    deleted = await gateway.sweep_stale(older_than_minutes * 60)
    return {"deleted": deleted, "pending": len(gateway.pending_cleanups)}
