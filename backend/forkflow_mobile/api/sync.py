from fastapi import APIRouter, Depends
from typing import List, Optional
from pydantic import BaseModel
import logging
from ..core.deps import get_services
from ..services.container import MobileServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


class StatusResponse(BaseModel):
    is_online: bool
    pending_actions: int
    last_sync: Optional[str]
    sync_in_progress: bool


class PendingActionResponse(BaseModel):
    id: str
    kind: str
    resource_name: str
    enqueued_at: str
    retry_count: int
    status: str
    error_message: Optional[str]


class SyncResultResponse(BaseModel):
    success: bool
    processed: int
    failed: int
    errors: List[str]


class ConnectivityRequest(BaseModel):
    is_online: bool


class VisibilityRequest(BaseModel):
    visible: bool


@router.get("/status", response_model=StatusResponse)
async def get_status(services: MobileServices = Depends(get_services)):
    return StatusResponse(**vars(services.sync_engine.get_status()))


@router.get("/pending", response_model=List[PendingActionResponse])
async def list_pending_actions(services: MobileServices = Depends(get_services)):
    return [
        PendingActionResponse(
            id=a.id,
            kind=a.kind.value,
            resource_name=a.resource_name,
            enqueued_at=a.enqueued_at.isoformat(),
            retry_count=a.retry_count,
            status=a.status.value,
            error_message=a.error_message,
        )
        for a in services.sync_engine.get_pending_actions()
    ]


@router.post("/run", response_model=SyncResultResponse)
async def run_sync(services: MobileServices = Depends(get_services)):
    """Run one sync pass now. Returns immediately with a failure if a pass is already running."""
    result = await services.sync_engine.sync_pending_actions()
    if result.errors:
        logger.info("Sync pass finished with errors: %s", "; ".join(result.errors))
    return SyncResultResponse(**vars(result))


@router.post("/connectivity", response_model=StatusResponse)
async def set_connectivity(
    body: ConnectivityRequest,
    services: MobileServices = Depends(get_services),
):
    services.sync_engine.set_online(body.is_online)
    return StatusResponse(**vars(services.sync_engine.get_status()))


@router.post("/visibility", response_model=StatusResponse)
async def set_visibility(
    body: VisibilityRequest,
    services: MobileServices = Depends(get_services),
):
    services.sync_engine.handle_visibility_change(body.visible)
    return StatusResponse(**vars(services.sync_engine.get_status()))


@router.get("/conflicts/{record_id}")
async def check_conflicts(
    record_id: str,
    services: MobileServices = Depends(get_services),
):
    return {"record_id": record_id, "has_conflicts": services.sync_engine.has_conflicts(record_id)}


@router.delete("/offline-data", response_model=StatusResponse)
async def clear_offline_data(services: MobileServices = Depends(get_services)):
    services.sync_engine.clear_offline_data()
    logger.info("Offline queue and mirror cleared")
    return StatusResponse(**vars(services.sync_engine.get_status()))
