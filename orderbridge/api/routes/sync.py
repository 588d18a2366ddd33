"""
Sync Routes

Operator endpoints: run a cycle now, inspect state, re-initialize a stream
that Rithum reports as gone.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from orderbridge.api.deps import get_job_runner, get_sync_service, require_admin_token
from orderbridge.core.exceptions import OrderBridgeError
from orderbridge.jobs.order_sync_job import OrderSyncJobRunner
from orderbridge.services.order_sync import OrderSyncService

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_token)])


@router.post("/run")
async def run_sync(service: OrderSyncService = Depends(get_sync_service)):
    """
    Run one sync cycle and return its summary.

    409 when a cycle (scheduled or manual) is already in progress.
    """
    if service.is_running:
        raise HTTPException(status_code=409, detail="A sync cycle is already running")

    summary = await service.run_cycle()
    if summary.skipped_overlap:
        raise HTTPException(status_code=409, detail="A sync cycle is already running")
    return summary.to_dict()


@router.get("/status")
async def sync_status(
    service: OrderSyncService = Depends(get_sync_service),
    runner: OrderSyncJobRunner = Depends(get_job_runner),
):
    status = service.status()
    stream_id = service.consumer.stream_id
    checkpoint = await service.store.get(stream_id) if stream_id else None
    status["checkpoint"] = {
        "stream_id": stream_id,
        "position": checkpoint.position if checkpoint else None,
        "updated_at": checkpoint.updated_at.isoformat() if checkpoint and checkpoint.updated_at else None,
    }
    status["job"] = runner.heartbeat()
    return status


@router.post("/reinitialize-stream")
async def reinitialize_stream(service: OrderSyncService = Depends(get_sync_service)):
    """Create a fresh order stream after the configured one was deleted upstream."""
    if service.is_running:
        raise HTTPException(status_code=409, detail="A sync cycle is already running")
    try:
        stream_id = await service.consumer.reinitialize_stream()
    except OrderBridgeError as e:
        logger.error(f"[SYNC] Stream re-initialization failed: {e.message}")
        return JSONResponse(status_code=502, content=e.to_dict())
    return {"stream_id": stream_id}
