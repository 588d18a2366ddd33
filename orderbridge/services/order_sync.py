"""
Order sync cycle: Rithum event stream -> ShipStation shipments.

    consumer.run(process=...)
        -> OrderMapper.should_process / map
        -> IdempotentCreator.ensure_created (duplicate check, carrier selection, create)
        -> checkpoint held before the first order whose creation failed transiently

Every cycle returns a SyncCycleSummary, including cycles that fail outright,
so the caller can always report what happened.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from orderbridge.core.exceptions import OrderBridgeError, TransientNetworkError, UpstreamError
from orderbridge.services.carrier_selector import CarrierSelector
from orderbridge.services.checkpoint_store import StreamPositionStore, build_checkpoint_store
from orderbridge.services.duplicate_detector import IdempotentCreator
from orderbridge.services.order_mapper import OrderMapper
from orderbridge.services.stream_consumer import ConsumeResult, EventStreamConsumer, FetchedOrder

logger = logging.getLogger(__name__)


def unexpected_error(e: Exception) -> Dict[str, Any]:
    """Summary entry for an exception outside the OrderBridgeError hierarchy."""
    return {
        "error_type": type(e).__name__,
        "code": "UNEXPECTED_ERROR",
        "message": str(e),
        "severity": "P1",
    }


@dataclass
class SyncCycleSummary:
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    stream_id: Optional[str] = None
    events: int = 0
    matched: int = 0
    mapped: int = 0
    created: int = 0
    existing: int = 0
    skipped: int = 0
    failed: int = 0
    creation_failed: int = 0
    fetch_errors: List[Dict[str, Any]] = field(default_factory=list)
    validation_errors: List[Dict[str, Any]] = field(default_factory=list)
    created_shipments: List[Dict[str, Any]] = field(default_factory=list)
    checkpoint_advanced_to: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)
    skipped_overlap: bool = False
    aborted: bool = False

    @property
    def success(self) -> bool:
        return not self.aborted and not self.skipped_overlap

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "skipped_overlap": self.skipped_overlap,
            "aborted": self.aborted,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "stream_id": self.stream_id,
            "events": self.events,
            "matched": self.matched,
            "mapped": self.mapped,
            "created": self.created,
            "existing": self.existing,
            "skipped": self.skipped,
            "failed": self.failed,
            "creation_failed": self.creation_failed,
            "fetch_errors": self.fetch_errors,
            "validation_errors": self.validation_errors,
            "created_shipments": self.created_shipments,
            "checkpoint_advanced_to": self.checkpoint_advanced_to,
            "errors": self.errors,
        }


class OrderSyncService:
    """
    One instance per stream. run_cycle() never overlaps itself: a trigger that
    arrives while a cycle is running gets a summary flagged skipped_overlap.
    """

    def __init__(
        self,
        rithum_client,
        shipstation_client,
        store: Optional[StreamPositionStore] = None,
        consumer: Optional[EventStreamConsumer] = None,
        mapper: Optional[OrderMapper] = None,
        creator: Optional[IdempotentCreator] = None,
        carrier_selector: Optional[CarrierSelector] = None,
    ):
        self.rithum = rithum_client
        self.shipstation = shipstation_client
        self.store = store or build_checkpoint_store()
        self.consumer = consumer or EventStreamConsumer(rithum_client, self.store)
        self.mapper = mapper or OrderMapper()
        self.carrier_selector = carrier_selector or CarrierSelector(shipstation_client)
        self.creator = creator or IdempotentCreator(shipstation_client, carrier_selector=self.carrier_selector)

        self._running = False
        self._current: Optional[SyncCycleSummary] = None
        self.last_summary: Optional[SyncCycleSummary] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_cycle(self) -> SyncCycleSummary:
        if self._running:
            logger.warning("[SYNC] Cycle already in progress, skipping trigger")
            summary = SyncCycleSummary(skipped_overlap=True)
            summary.finished_at = summary.started_at
            return summary

        self._running = True
        summary = SyncCycleSummary()
        self._current = summary
        started = time.monotonic()
        logger.info("[SYNC] Starting order sync cycle")

        try:
            result = await self.consumer.run(process=self._process_batch)
            summary.stream_id = result.stream_id
            summary.checkpoint_advanced_to = result.checkpoint_advanced_to
        except OrderBridgeError as e:
            # Batch-level failure: the checkpoint was not touched
            logger.error(f"[SYNC] Cycle aborted: {e.code} {e.message}")
            summary.stream_id = summary.stream_id or self.consumer.stream_id
            summary.aborted = True
            summary.errors.append(e.to_dict())
        except Exception as e:
            logger.exception(f"[SYNC] Cycle crashed: {e}")
            summary.stream_id = summary.stream_id or self.consumer.stream_id
            summary.aborted = True
            summary.errors.append(unexpected_error(e))
        finally:
            summary.finished_at = datetime.now(timezone.utc)
            summary.duration_seconds = time.monotonic() - started
            self.last_summary = summary
            self._current = None
            self._running = False

        logger.info(
            f"[SYNC] Cycle done in {summary.duration_seconds:.2f}s: events={summary.events} "
            f"mapped={summary.mapped} created={summary.created} existing={summary.existing} "
            f"skipped={summary.skipped} failed={summary.failed} "
            f"creation_failed={summary.creation_failed} fetch_errors={len(summary.fetch_errors)} "
            f"checkpoint={summary.checkpoint_advanced_to}"
        )
        return summary

    async def _process_batch(self, result: ConsumeResult) -> List[str]:
        """Map and create every fetched order. Returns event ids whose creation failed."""
        summary = self._current if self._current is not None else SyncCycleSummary()
        summary.stream_id = result.stream_id
        summary.events = len(result.events)
        summary.matched = len(result.matched_events)
        summary.fetch_errors = [failure.to_dict() for failure in result.fetch_errors]

        held: List[str] = []
        for fetched in result.orders:
            try:
                if await self._process_order(fetched, summary):
                    held.append(fetched.event_id)
            except Exception as e:
                # Not held: a malformed order fails the same way on replay
                logger.exception(f"[SYNC] Unexpected error processing order {fetched.order_id}: {e}")
                summary.failed += 1
                summary.errors.append({
                    "order_id": fetched.order_id,
                    **unexpected_error(e),
                })

        return held

    async def _process_order(self, fetched: FetchedOrder, summary: SyncCycleSummary) -> bool:
        """Map and create one order. Returns True when its event must hold the checkpoint."""
        order = fetched.order
        if not self.mapper.should_process(order):
            summary.skipped += 1
            return False

        mapping = self.mapper.map(order)
        if not mapping.is_valid:
            summary.failed += 1
            summary.validation_errors.append({
                "order_id": fetched.order_id,
                "po_number": order.get("poNumber"),
                "errors": mapping.errors,
            })
            return False
        summary.mapped += 1

        try:
            outcome = await self.creator.ensure_created(mapping.request)
        except UpstreamError as e:
            logger.error(f"[SYNC] Could not create shipment for {fetched.order_id}: {e.message}")
            summary.creation_failed += 1
            summary.errors.append({"order_id": fetched.order_id, **e.to_dict()})
            # A rejected shipment would fail the same way on replay
            return isinstance(e, TransientNetworkError)

        if outcome.created:
            summary.created += 1
            summary.created_shipments.append(outcome.to_dict())
        else:
            summary.existing += 1
        return False

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "consumer": self.consumer.status(),
            "last_summary": self.last_summary.to_dict() if self.last_summary else None,
        }
