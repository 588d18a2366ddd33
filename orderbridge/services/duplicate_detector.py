"""
Duplicate detection and idempotent shipment creation.

Lookup strategies run in order and stop at the first match:
    1. ExternalIdLookup     - indexed lookup by external_shipment_id
    2. DisplayNumberLookup  - search by shipment_number, exact match on either id
    3. RecentWindowLookup   - newest N shipments, any known identifier or tag

A lookup that cannot reach ShipStation aborts creation for that order:
creating without knowing is how duplicates happen.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from orderbridge.core.exceptions import UpstreamError
from orderbridge.schemas.orders import NormalizedShipmentRequest

logger = logging.getLogger(__name__)

# Shipments remembered per instance (oldest evicted first)
MAX_REMEMBERED_SHIPMENTS = 5000


def _tag_names(shipment: Dict[str, Any]) -> List[str]:
    names = []
    for tag in shipment.get("tags") or []:
        name = tag.get("name") if isinstance(tag, dict) else tag
        if name:
            names.append(str(name))
    return names


class IdentifierLookup(ABC):
    name: str = "lookup"

    def __init__(self, shipstation_client):
        self.shipstation = shipstation_client

    @abstractmethod
    async def find(self, request: NormalizedShipmentRequest) -> Optional[Dict[str, Any]]:
        """Existing downstream shipment for the request, or None."""


class ExternalIdLookup(IdentifierLookup):
    name = "external_id"

    async def find(self, request):
        shipment = await self.shipstation.get_shipment_by_external_id(request.external_id)
        if shipment and str(shipment.get("external_shipment_id") or request.external_id) == request.external_id:
            return shipment
        return None


class DisplayNumberLookup(IdentifierLookup):
    name = "display_number"

    async def find(self, request):
        if not request.display_number:
            return None
        for shipment in await self.shipstation.find_shipments_by_number(request.display_number):
            if (
                str(shipment.get("shipment_number") or "") == request.display_number
                or str(shipment.get("external_shipment_id") or "") == request.external_id
            ):
                return shipment
        return None


class RecentWindowLookup(IdentifierLookup):
    name = "recent_window"

    def __init__(self, shipstation_client, window: int = 100):
        super().__init__(shipstation_client)
        self.window = window

    async def find(self, request):
        identifiers = set(request.identifiers)
        for shipment in await self.shipstation.list_recent_shipments(page_size=self.window):
            if str(shipment.get("external_shipment_id") or "") in identifiers:
                return shipment
            if str(shipment.get("shipment_number") or "") in identifiers:
                return shipment
            if request.external_id in _tag_names(shipment):
                return shipment
        return None


@dataclass
class DuplicateMatch:
    strategy: str
    shipment: Dict[str, Any]

    @property
    def shipment_id(self) -> Optional[str]:
        return self.shipment.get("shipment_id")


class DuplicateDetector:
    def __init__(self, shipstation_client=None, lookups: Optional[Sequence[IdentifierLookup]] = None):
        if lookups is None:
            lookups = [
                ExternalIdLookup(shipstation_client),
                DisplayNumberLookup(shipstation_client),
                RecentWindowLookup(shipstation_client),
            ]
        self.lookups = list(lookups)

    async def find_existing(self, request: NormalizedShipmentRequest) -> Optional[DuplicateMatch]:
        """
        Raises:
            UpstreamError: a lookup failed; the caller must not create
        """
        for lookup in self.lookups:
            shipment = await lookup.find(request)
            if shipment:
                logger.info(
                    f"[DEDUP] {request.external_id} already exists as "
                    f"{shipment.get('shipment_id')} (matched by {lookup.name})"
                )
                return DuplicateMatch(strategy=lookup.name, shipment=shipment)
        return None


class CreationOutcome(str, Enum):
    CREATED = "created"
    EXISTING = "existing"


@dataclass
class CreationResult:
    outcome: CreationOutcome
    external_id: str
    shipment_id: Optional[str] = None
    shipment: Dict[str, Any] = field(default_factory=dict)
    matched_by: Optional[str] = None
    carrier_id: Optional[str] = None
    tag_write_failed: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def created(self) -> bool:
        return self.outcome == CreationOutcome.CREATED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "external_id": self.external_id,
            "shipment_id": self.shipment_id,
            "matched_by": self.matched_by,
            "carrier_id": self.carrier_id,
            "tag_write_failed": self.tag_write_failed,
            "warnings": self.warnings,
        }


class IdempotentCreator:
    """
    ensure_created(request) creates the downstream shipment at most once per
    external id. Calls for the same external id are serialized in-process,
    and shipments created by this instance are remembered so a lagging
    search index cannot cause a second creation.
    """

    def __init__(self, shipstation_client, detector: Optional[DuplicateDetector] = None, carrier_selector=None):
        self.shipstation = shipstation_client
        self.detector = detector or DuplicateDetector(shipstation_client)
        self.carrier_selector = carrier_selector
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._created: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

    @asynccontextmanager
    async def _locked(self, external_id: str):
        """Serialize calls per external id; the lock is dropped once no caller holds or awaits it."""
        lock = self._locks.setdefault(external_id, asyncio.Lock())
        self._lock_users[external_id] = self._lock_users.get(external_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[external_id] -= 1
            if self._lock_users[external_id] == 0:
                del self._lock_users[external_id]
                del self._locks[external_id]

    def _remember(self, external_id: str, shipment: Dict[str, Any]) -> None:
        self._created[external_id] = shipment
        while len(self._created) > MAX_REMEMBERED_SHIPMENTS:
            self._created.popitem(last=False)

    async def ensure_created(self, request: NormalizedShipmentRequest) -> CreationResult:
        """
        Raises:
            UpstreamError: lookup or creation failed; nothing was created
        """
        async with self._locked(request.external_id):
            remembered = self._created.get(request.external_id)
            if remembered is not None:
                logger.info(f"[DEDUP] {request.external_id} was created earlier by this instance")
                return CreationResult(
                    outcome=CreationOutcome.EXISTING,
                    external_id=request.external_id,
                    shipment_id=remembered.get("shipment_id"),
                    shipment=remembered,
                    matched_by="this_instance",
                )

            match = await self.detector.find_existing(request)
            if match is not None:
                return CreationResult(
                    outcome=CreationOutcome.EXISTING,
                    external_id=request.external_id,
                    shipment_id=match.shipment_id,
                    shipment=match.shipment,
                    matched_by=match.strategy,
                )

            carrier_id = None
            if self.carrier_selector is not None:
                carrier_id = await self.carrier_selector.select(
                    request, request.ship_to, request.carrier_preference
                )
                await self.carrier_selector.apply_packaging(request, carrier_id)

            created = await self.shipstation.create_shipment(request, carrier_id)
            self._remember(request.external_id, created)

            result = CreationResult(
                outcome=CreationOutcome.CREATED,
                external_id=request.external_id,
                shipment_id=created.get("shipment_id"),
                shipment=created,
                carrier_id=carrier_id,
            )
            await self._ensure_tags(request, result)
            return result

    async def _ensure_tags(self, request: NormalizedShipmentRequest, result: CreationResult) -> None:
        """
        Re-attach the order-id tags after creation. ShipStation does not
        reliably persist tags sent with create_sales_order, and tracking
        reconciliation reads the order id from them.
        """
        if not result.shipment_id:
            result.tag_write_failed = True
            result.warnings.append("Created shipment has no shipment_id; tags not written")
            logger.warning(f"[DEDUP] {request.external_id}: created shipment has no shipment_id")
            return

        for tag in request.tags:
            try:
                await self.shipstation.add_tag(result.shipment_id, tag)
            except UpstreamError as e:
                result.tag_write_failed = True
                message = f"Tag {tag!r} not written to {result.shipment_id}: {e.message}"
                result.warnings.append(message)
                logger.warning(
                    f"[DEDUP] {message}. Tracking will fall back to weaker order-id lookups."
                )
