"""
Health Routes
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from orderbridge import __version__
from orderbridge.api.deps import get_job_runner, get_sync_service
from orderbridge.core.exceptions import CheckpointError
from orderbridge.core.redis_client import get_redis
from orderbridge.jobs.order_sync_job import OrderSyncJobRunner
from orderbridge.services.order_sync import OrderSyncService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/ping")
async def ping():
    return {"status": "ok"}


@router.get("/health")
async def health_check(
    service: OrderSyncService = Depends(get_sync_service),
    runner: OrderSyncJobRunner = Depends(get_job_runner),
):
    """
    Job heartbeat and checkpoint state. Returns 503 when the checkpoint store
    is unreadable or the job has failed too many cycles in a row.
    """
    health_status = {
        "status": "healthy",
        "version": __version__,
        "job": runner.heartbeat(),
        "checkpoint": None,
        "redis": "not_configured",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    stream_id = service.consumer.stream_id
    try:
        checkpoint = await service.store.get(stream_id) if stream_id else None
        health_status["checkpoint"] = {
            "stream_id": stream_id,
            "position": checkpoint.position if checkpoint else None,
        }
    except (CheckpointError, SQLAlchemyError) as e:
        health_status["checkpoint"] = {"stream_id": stream_id, "error": str(e)[:200]}
        health_status["status"] = "unhealthy"

    if await get_redis() is not None:
        health_status["redis"] = "connected"

    if not health_status["job"]["healthy"]:
        health_status["status"] = "unhealthy"

    if health_status["status"] != "healthy":
        return JSONResponse(status_code=503, content=health_status)
    return health_status
