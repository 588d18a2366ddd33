"""
Rithum order event stream consumer.

One cycle: Idle -> Fetching -> Filtering -> DetailFetching -> Committing -> Idle.

The checkpoint never moves past an event whose order could not be fetched
(or that the caller reports as failed downstream); those events are re-read
next cycle and duplicate detection makes the replay harmless. Orders that
no longer exist upstream are reported and skipped.

Usage:
    consumer = EventStreamConsumer(rithum_client, checkpoint_store)
    result = await consumer.run(process=handle_orders)
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set

from orderbridge.core.config import settings
from orderbridge.core.exceptions import (
    CheckpointConflictError,
    CheckpointLockError,
    OrderBridgeError,
    OrderNotFoundError,
    StreamNotFoundError,
)
from orderbridge.core.redis_client import StreamLock
from orderbridge.schemas.orders import StreamEvent
from orderbridge.services.checkpoint_store import StreamPositionStore

logger = logging.getLogger(__name__)

# Checkpoint-store key remembering a stream this service created itself
ACTIVE_STREAM_KEY = "orderbridge:active-order-stream"


class ConsumerState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    FILTERING = "filtering"
    DETAIL_FETCHING = "detail_fetching"
    COMMITTING = "committing"


@dataclass
class FetchedOrder:
    event_id: str
    order_id: str
    order: Dict[str, Any]


@dataclass
class FetchFailure:
    event_id: str
    order_id: Optional[str]
    error: str
    code: str = "FETCH_FAILED"
    # False for orders that can never be fetched (deleted upstream)
    blocks_checkpoint: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.event_id,
            "order_id": self.order_id,
            "error": self.error,
            "code": self.code,
            "blocks_checkpoint": self.blocks_checkpoint,
        }


@dataclass
class ConsumeResult:
    stream_id: str
    previous_position: Optional[str]
    events: List[StreamEvent] = field(default_factory=list)
    matched_events: List[StreamEvent] = field(default_factory=list)
    orders: List[FetchedOrder] = field(default_factory=list)
    fetch_errors: List[FetchFailure] = field(default_factory=list)
    next_position: Optional[str] = None
    checkpoint_advanced_to: Optional[str] = None
    details_fetched: bool = True

    @property
    def order_ids(self) -> List[str]:
        return [e.object_id for e in self.matched_events if e.object_id]


ProcessCallback = Callable[[ConsumeResult], Awaitable[Optional[Iterable[str]]]]


def dedupe_events(events: Sequence[StreamEvent]) -> List[StreamEvent]:
    """Drop repeated event ids, keeping first occurrence and order."""
    seen: Set[str] = set()
    unique = []
    for event in events:
        if event.id in seen:
            continue
        seen.add(event.id)
        unique.append(event)
    return unique


def compute_safe_position(
    events: Sequence[StreamEvent],
    failed_event_ids: Set[str],
    next_position: Optional[str],
) -> Optional[str]:
    """
    Furthest position that hides no failed event.

    Walks the batch in stream order and stops at the first failed event; the
    result is the id of the event before it (None when the first event
    failed). With no failures the last event id is used, or the page's
    next position when the batch is empty.
    """
    if not events:
        return next_position

    safe: Optional[str] = None
    for event in events:
        if event.id in failed_event_ids:
            return safe
        safe = event.id
    return safe


class EventStreamConsumer:
    def __init__(
        self,
        rithum_client,
        store: StreamPositionStore,
        stream_id: Optional[str] = None,
        event_reasons: Optional[Sequence[str]] = None,
        lifecycle_filter: Optional[str] = None,
        parallel_limit: Optional[int] = None,
        batch_size: Optional[int] = None,
        batch_delay_seconds: Optional[float] = None,
        lock_factory: Callable[[str], StreamLock] = StreamLock,
    ):
        self.rithum = rithum_client
        self.store = store
        self.stream_id = stream_id or settings.RITHUM_STREAM_ID
        self.event_reasons = set(event_reasons or settings.RITHUM_EVENT_REASONS)
        self.lifecycle_filter = lifecycle_filter if lifecycle_filter is not None else settings.RITHUM_LIFECYCLE_FILTER
        self.parallel_limit = parallel_limit or settings.DETAIL_FETCH_PARALLEL_LIMIT
        self.batch_size = max(10, min(50, batch_size or settings.DETAIL_FETCH_BATCH_SIZE))
        self.batch_delay_seconds = (
            settings.DETAIL_FETCH_BATCH_DELAY_SECONDS if batch_delay_seconds is None else batch_delay_seconds
        )
        self.lock_factory = lock_factory

        self.state = ConsumerState.IDLE
        self.last_result: Optional[ConsumeResult] = None

    # ----- Stream setup -----

    async def ensure_stream(self) -> str:
        """
        Configured stream id, else the one this service created earlier, else
        a newly created stream (recorded in the checkpoint store).
        """
        if self.stream_id:
            return self.stream_id

        existing = await self.store.get_position(ACTIVE_STREAM_KEY)
        if existing:
            self.stream_id = existing
            return existing

        stream = await self.rithum.create_order_stream()
        new_id = stream.get("id")
        if not new_id:
            raise StreamNotFoundError("Rithum did not return an id for the new order stream")
        try:
            await self.store.compare_and_set(ACTIVE_STREAM_KEY, None, new_id)
        except CheckpointConflictError as e:
            # Another instance created one first; use theirs
            logger.warning(f"[STREAM] Stream created concurrently, using {e.actual} instead of {new_id}")
            new_id = e.actual
        self.stream_id = new_id
        logger.warning(f"[STREAM] Using order stream {new_id}; set RITHUM_STREAM_ID to pin it")
        return new_id

    async def reinitialize_stream(self) -> str:
        """Operator action after StreamNotFoundError: create a fresh stream and remember it."""
        previous = await self.store.get_position(ACTIVE_STREAM_KEY)
        stream = await self.rithum.create_order_stream()
        new_id = stream.get("id")
        if not new_id:
            raise StreamNotFoundError("Rithum did not return an id for the new order stream")
        await self.store.compare_and_set(ACTIVE_STREAM_KEY, previous, new_id)
        self.stream_id = new_id
        logger.warning(f"[STREAM] Reinitialized order stream: {previous} -> {new_id}")
        return new_id

    # ----- Cycle -----

    async def poll(self, include_details: bool = True) -> ConsumeResult:
        """One cycle with no downstream processing; commits on fetch outcomes alone."""
        return await self.run(process=None, include_details=include_details)

    async def run(self, process: Optional[ProcessCallback] = None, include_details: bool = True) -> ConsumeResult:
        """
        Fetch, filter, fetch details, hand the batch to ``process`` and commit.

        ``process`` may return event ids whose downstream handling failed;
        the checkpoint is held before the first of them.

        Raises:
            CheckpointLockError: another instance is consuming this stream
            StreamNotFoundError: the stream must be re-initialized
            UpstreamError: the event source could not be reached (checkpoint untouched)
        """
        stream_id = await self.ensure_stream()
        lock = self.lock_factory(stream_id)
        if not await lock.acquire():
            raise CheckpointLockError(f"Stream {stream_id} is being consumed by another instance", stream_id=stream_id)

        try:
            result = await self._fetch(stream_id, include_details)

            held: Set[str] = {f.event_id for f in result.fetch_errors if f.blocks_checkpoint}
            if process is not None:
                downstream_failed = await process(result)
                held.update(downstream_failed or [])

            self.state = ConsumerState.COMMITTING
            await self._commit(result, held)
            self.last_result = result
            return result
        finally:
            self.state = ConsumerState.IDLE
            await lock.release()

    async def _fetch(self, stream_id: str, include_details: bool) -> ConsumeResult:
        self.state = ConsumerState.FETCHING
        stream = await self.rithum.get_stream(stream_id)
        partitions = stream.get("partitions") or []
        if not partitions:
            raise StreamNotFoundError(f"Stream {stream_id} has no partitions", stream_id=stream_id)
        partition = partitions[0]

        stored = await self.store.get_position(stream_id)
        position = stored or partition.get("position") or "0"
        logger.info(f"[STREAM] Reading {stream_id} partition {partition.get('partitionId')} from {position}")

        page = await self.rithum.get_events(stream_id, partition.get("partitionId"), position)
        result = ConsumeResult(
            stream_id=stream_id,
            previous_position=stored,
            events=dedupe_events(page.events),
            next_position=page.next_position,
            details_fetched=include_details,
        )

        self.state = ConsumerState.FILTERING
        result.matched_events = [e for e in result.events if self._matches(e)]
        logger.info(
            f"[STREAM] {len(result.events)} events, {len(result.matched_events)} match "
            f"reasons={sorted(self.event_reasons)} lifecycle={self.lifecycle_filter or '*'}"
        )

        if include_details and result.matched_events:
            self.state = ConsumerState.DETAIL_FETCHING
            await self._fetch_details(result)
        return result

    def _matches(self, event: StreamEvent) -> bool:
        if event.object_type and event.object_type != "order":
            return False
        if not any(reason in self.event_reasons for reason in event.event_reasons):
            return False
        if self.lifecycle_filter:
            return bool(event.payload) and event.payload.get("dscoLifecycle") == self.lifecycle_filter
        return True

    async def _fetch_details(self, result: ConsumeResult) -> None:
        # One fetch per order; repeated events for an order share its outcome
        events_by_order: Dict[str, List[StreamEvent]] = {}
        for event in result.matched_events:
            if not event.object_id:
                result.fetch_errors.append(FetchFailure(
                    event_id=event.id,
                    order_id=None,
                    error="Event carries no order id",
                    code="EVENT_WITHOUT_ORDER_ID",
                    blocks_checkpoint=False,
                ))
                continue
            events_by_order.setdefault(event.object_id, []).append(event)

        order_ids = list(events_by_order)
        if len(order_ids) <= self.parallel_limit:
            outcomes = await asyncio.gather(
                *(self._fetch_one(events_by_order[oid][0]) for oid in order_ids)
            )
        else:
            logger.info(
                f"[STREAM] {len(order_ids)} orders exceeds {self.parallel_limit}, "
                f"fetching in batches of {self.batch_size}"
            )
            outcomes = []
            for start in range(0, len(order_ids), self.batch_size):
                if start:
                    await asyncio.sleep(self.batch_delay_seconds)
                chunk = order_ids[start:start + self.batch_size]
                outcomes.extend(await asyncio.gather(
                    *(self._fetch_one(events_by_order[oid][0]) for oid in chunk)
                ))

        for order_id, outcome in zip(order_ids, outcomes):
            first_event = events_by_order[order_id][0]
            if isinstance(outcome, FetchFailure):
                for event in events_by_order[order_id]:
                    result.fetch_errors.append(FetchFailure(
                        event_id=event.id,
                        order_id=order_id,
                        error=outcome.error,
                        code=outcome.code,
                        blocks_checkpoint=outcome.blocks_checkpoint,
                    ))
            else:
                result.orders.append(FetchedOrder(event_id=first_event.id, order_id=order_id, order=outcome))

        if result.fetch_errors:
            logger.warning(f"[STREAM] {len(result.fetch_errors)} detail fetch failures")

    async def _fetch_one(self, event: StreamEvent):
        """Order body for an event, or a FetchFailure. Never raises for per-order errors."""
        payload = event.payload or {}
        line_items = payload.get("lineItems")
        if isinstance(line_items, list) and line_items:
            return {"id": event.object_id, **payload}

        try:
            order = await self.rithum.get_order(event.object_id)
        except OrderNotFoundError as e:
            logger.warning(f"[STREAM] Order {event.object_id} no longer exists upstream")
            return FetchFailure(event.id, event.object_id, e.message, e.code, blocks_checkpoint=False)
        except OrderBridgeError as e:
            logger.error(f"[STREAM] Failed to fetch order {event.object_id}: {e.message}")
            return FetchFailure(event.id, event.object_id, e.message, e.code)
        except ValueError as e:
            logger.error(f"[STREAM] Unreadable order body for {event.object_id}: {e}")
            return FetchFailure(event.id, event.object_id, str(e), "INVALID_ORDER_BODY")
        return {"id": event.object_id, **order}

    async def _commit(self, result: ConsumeResult, held_event_ids: Set[str]) -> None:
        if result.details_fetched:
            target = compute_safe_position(result.events, held_event_ids, result.next_position)
        else:
            # No fetch outcome is pending in id-only mode
            target = result.events[-1].id if result.events else result.next_position

        current = result.previous_position
        if not target or target == current:
            logger.info(f"[CHECKPOINT] {result.stream_id} unchanged at {current}")
            return

        if held_event_ids:
            logger.warning(
                f"[CHECKPOINT] Holding {result.stream_id} at {target}: "
                f"{len(held_event_ids)} events will be re-read"
            )

        await self.store.compare_and_set(result.stream_id, current, target)
        result.checkpoint_advanced_to = target
        logger.info(f"[CHECKPOINT] {result.stream_id} advanced {current} -> {target}")

    def status(self) -> Dict[str, Any]:
        last = self.last_result
        return {
            "stream_id": self.stream_id,
            "state": self.state.value,
            "last_events": len(last.events) if last else None,
            "last_checkpoint": last.checkpoint_advanced_to if last else None,
        }
