"""
Webhook Routes

ShipStation shipment notifications (FULFILLMENT_SHIPPED_V2, LABEL_CREATED_V2)
trigger tracking reconciliation.
"""
import hashlib
import logging

from fastapi import APIRouter, Depends, Request

from orderbridge.api.deps import get_reconciler
from orderbridge.core.exceptions import UpstreamError
from orderbridge.core.redis_client import is_webhook_processed, mark_webhook_processed
from orderbridge.services.tracking_reconciler import SETTLED_SKIP_REASONS, TrackingReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


def webhook_event_key(body: dict) -> str:
    """Stable key for one notification; ShipStation redelivers the same body."""
    raw = f"{body.get('resource_type') or body.get('event') or ''}|{body.get('resource_url') or ''}"
    return hashlib.sha256(raw.encode()).hexdigest()


@router.post("/shipstation")
async def handle_shipstation_webhook(
    request: Request,
    reconciler: TrackingReconciler = Depends(get_reconciler),
):
    """
    Handle a ShipStation webhook.

    Returns 200 even for processing errors, so ShipStation does not redeliver
    forever; failures and unresolvable shipments are reported in the body.
    """
    try:
        body = await request.json()
    except ValueError as e:
        logger.error(f"[TRACKING] Failed to parse webhook payload: {e}")
        return {"status": "error", "message": "Invalid JSON"}

    if not isinstance(body, dict):
        return {"status": "error", "message": "Expected a JSON object"}

    event_key = webhook_event_key(body)
    if await is_webhook_processed(event_key):
        logger.info(f"[TRACKING] Duplicate webhook delivery {event_key[:12]}, ignoring")
        return {"status": "duplicate"}

    try:
        outcome = await reconciler.handle_webhook(body)
    except UpstreamError as e:
        logger.error(f"[TRACKING] Webhook processing failed: {e.message}")
        return {"status": "error", **e.to_dict()}

    results = outcome.get("results", [])
    settled = all(
        r.get("pushed") or (r.get("skipped") and r.get("reason") in SETTLED_SKIP_REASONS)
        for r in results
    )
    if outcome.get("handled") and settled:
        await mark_webhook_processed(event_key)

    pushed = sum(1 for r in results if r.get("pushed"))
    logger.info(f"[TRACKING] Webhook {outcome.get('event_type')}: {pushed}/{len(results)} pushed")
    return {"status": "ok", **outcome}
