"""
orderbridge
FastAPI application entry point

- Rithum -> ShipStation order sync (background job + manual trigger)
- ShipStation -> Rithum tracking reconciliation (webhook)
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from orderbridge import __version__
from orderbridge.api.routes import health, sync, webhooks
from orderbridge.core.config import settings
from orderbridge.core.database import dispose_engine, get_engine
from orderbridge.core.exceptions import CheckpointError, OrderBridgeError, UpstreamError
from orderbridge.core.redis_client import close_redis
from orderbridge.jobs.order_sync_job import order_sync_job
from orderbridge.migrations.stream_checkpoints import migrate_stream_checkpoints
from orderbridge.services.checkpoint_store import build_checkpoint_store
from orderbridge.services.order_sync import OrderSyncService
from orderbridge.services.rithum_client import RithumClient
from orderbridge.services.shipstation_client import ShipStationClient
from orderbridge.services.tracking_reconciler import TrackingReconciler

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build the API clients and services once, start the sync job if enabled,
    and close everything on shutdown.
    """
    rithum = RithumClient()
    shipstation = ShipStationClient()
    await rithum.http.init()
    await rithum.token_http.init()
    await shipstation.http.init()

    if settings.CHECKPOINT_BACKEND == "database":
        await migrate_stream_checkpoints(get_engine())

    store = build_checkpoint_store()
    sync_service = OrderSyncService(rithum, shipstation, store=store)
    app.state.sync_service = sync_service
    app.state.reconciler = TrackingReconciler(shipstation, rithum)
    app.state.job_runner = order_sync_job

    if settings.ORDER_SYNC_ENABLED:
        await order_sync_job.start(sync_service)
        logger.info("Order sync job ENABLED")
    else:
        order_sync_job.service = sync_service
        logger.info("Order sync job DISABLED via config; use POST /api/sync/run")

    yield

    await order_sync_job.stop()
    await rithum.close()
    await shipstation.close()
    await close_redis()
    await dispose_engine()
    logger.info("HTTP clients closed")


app = FastAPI(
    lifespan=lifespan,
    title="orderbridge",
    description="Rithum order stream to ShipStation, with tracking relayed back to Rithum.",
    version=__version__,
    openapi_tags=[
        {"name": "Health", "description": "Health check and monitoring endpoints"},
        {"name": "Sync", "description": "Manual sync cycles and stream state"},
        {"name": "Webhooks", "description": "ShipStation shipment notifications"},
    ],
)


@app.exception_handler(OrderBridgeError)
async def orderbridge_error_handler(request: Request, exc: OrderBridgeError):
    if isinstance(exc, UpstreamError):
        status_code = 502
    elif isinstance(exc, CheckpointError):
        status_code = 409
    else:
        status_code = 500
    logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


app.include_router(health.router, tags=["Health"])
app.include_router(sync.router, prefix="/api/sync", tags=["Sync"])
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["Webhooks"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "orderbridge.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
