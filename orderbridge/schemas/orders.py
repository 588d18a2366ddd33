"""
Order and shipment data types shared by the sync pipeline.

SourceOrder records are plain dicts in Rithum's wire format; everything the
pipeline derives from them is one of the dataclasses below.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

SourceOrder = Dict[str, Any]


@dataclass
class MappedAddress:
    """Ship-to address in ShipStation v2 shape."""
    name: str
    address_line1: str
    city_locality: str
    state_province: str
    postal_code: str
    country_code: str = "US"
    phone: str = ""
    address_residential_indicator: str = "unknown"
    address_line2: Optional[str] = None
    company_name: Optional[str] = None
    email: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "name": self.name,
            "phone": self.phone,
            "address_line1": self.address_line1,
            "city_locality": self.city_locality,
            "state_province": self.state_province,
            "postal_code": self.postal_code,
            "country_code": self.country_code,
            "address_residential_indicator": self.address_residential_indicator,
        }
        if self.address_line2:
            payload["address_line2"] = self.address_line2
        if self.company_name:
            payload["company_name"] = self.company_name
        if self.email:
            payload["email"] = self.email
        return payload


@dataclass
class MappedItem:
    sku: str
    name: str
    quantity: int
    unit_price: float
    external_order_item_id: Optional[str] = None
    personalization: Optional[str] = None
    tax_amount: Optional[float] = None

    def to_payload(self, currency: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "sku": self.sku,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price": {"amount": round(self.unit_price, 2), "currency": currency},
        }
        if self.external_order_item_id:
            payload["external_order_item_id"] = self.external_order_item_id
        if self.personalization:
            payload["options"] = [{"name": "Personalization", "value": self.personalization}]
        if self.tax_amount is not None:
            payload["tax_amount"] = {"amount": round(self.tax_amount, 2), "currency": currency}
        return payload


@dataclass
class CarrierPreference:
    """
    Carrier signals extracted from an upstream order.

    is_required is set when the order explicitly requests a carrier or a
    service level; deviation is then only a last resort.
    """
    requested_carrier: str = ""
    service_code: str = ""
    ship_method: str = ""
    is_required: bool = False


@dataclass
class NormalizedShipmentRequest:
    """Output of OrderMapper: everything needed to create one downstream shipment."""
    external_id: str
    display_number: str
    order_date: datetime
    currency: str
    amount_paid: float
    ship_to: MappedAddress
    items: List[MappedItem]
    weight_oz: int
    package_code: Optional[str] = None
    service_code: Optional[str] = None
    carrier_family: str = ""
    shipping_paid: Optional[float] = None
    tax_paid: Optional[float] = None
    ship_by_date: Optional[str] = None
    is_gift: Optional[bool] = None
    notes_from_buyer: Optional[str] = None
    notes_for_gift: Optional[str] = None
    requested_shipment_service: Optional[str] = None
    carrier_preference: CarrierPreference = field(default_factory=CarrierPreference)
    tags: List[str] = field(default_factory=list)

    @property
    def identifiers(self) -> List[str]:
        """Every identifier a downstream record for this order may carry."""
        ids = [self.external_id]
        if self.display_number and self.display_number not in ids:
            ids.append(self.display_number)
        return ids


@dataclass
class MappingResult:
    request: Optional[NormalizedShipmentRequest]
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.request is not None and not self.errors


@dataclass
class StreamEvent:
    """One entry of the upstream order event stream."""
    id: str
    object_id: Optional[str]
    object_type: str = "order"
    event_reasons: List[str] = field(default_factory=list)
    payload: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None

    @property
    def event_reason(self) -> str:
        return self.event_reasons[0] if self.event_reasons else "unknown"

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "StreamEvent":
        payload = raw.get("payload") or None
        object_id = (payload or {}).get("dscoOrderId") or raw.get("objectId")
        reasons = raw.get("eventReasons")
        if reasons is None and raw.get("eventReason"):
            reasons = [raw["eventReason"]]
        return cls(
            id=str(raw.get("id") or ""),
            object_id=str(object_id) if object_id is not None else None,
            object_type=raw.get("objectType") or "order",
            event_reasons=list(reasons or []),
            payload=payload,
            timestamp=raw.get("timestamp") or raw.get("date"),
        )


@dataclass
class EventPage:
    events: List[StreamEvent]
    next_position: Optional[str] = None


@dataclass
class Checkpoint:
    stream_id: str
    position: Optional[str]
    updated_at: Optional[datetime] = None
    version: int = 0
