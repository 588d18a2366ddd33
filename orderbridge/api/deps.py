"""
API dependencies

Long-lived services are built once in the application lifespan and kept on
app.state; routes receive them through these dependencies.
"""
import hmac
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from orderbridge.core.config import settings
from orderbridge.jobs.order_sync_job import OrderSyncJobRunner
from orderbridge.services.order_sync import OrderSyncService
from orderbridge.services.tracking_reconciler import TrackingReconciler


def get_sync_service(request: Request) -> OrderSyncService:
    return request.app.state.sync_service


def get_reconciler(request: Request) -> TrackingReconciler:
    return request.app.state.reconciler


def get_job_runner(request: Request) -> OrderSyncJobRunner:
    return request.app.state.job_runner


async def require_admin_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(HTTPBearer(auto_error=False)),
) -> None:
    """Require ADMIN_API_TOKEN as a bearer token when one is configured."""
    if not settings.ADMIN_API_TOKEN:
        return
    if credentials is None or not hmac.compare_digest(credentials.credentials, settings.ADMIN_API_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token",
        )
