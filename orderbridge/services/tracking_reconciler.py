"""
Tracking reconciliation: ShipStation shipment -> Rithum shipment record.

Triggered by ShipStation webhooks (FULFILLMENT_SHIPPED_V2, LABEL_CREATED_V2).
The upstream order id is recovered from what the creator stored on the
shipment, in order:
    1. shipment tag (numeric, containing "dsco", or equal to external_shipment_id)
    2. shipment customField2
    3. linked sales order tags, then its customField2
    4. external_shipment_id, which the creator sets to the order id
    5. numeric shipment_number

Pushing is idempotent: a tracking number already present on the upstream
order (or already pushed by this instance) is reported as skipped.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple
from urllib.parse import parse_qs, urlparse

from orderbridge.core.exceptions import (
    ReconciliationUnresolvable,
    UpstreamError,
    ValidationError,
)
from orderbridge.services.carrier_mapper import (
    RITHUM_SHIPMENT_CODES,
    SHIP_METHOD_NAMES,
    carrier_manifest_id,
    map_to_rithum_shipping_method,
)
from orderbridge.services.field_resolvers import parse_timestamp, to_number

logger = logging.getLogger(__name__)

PUSHABLE_LIFECYCLES = ("acknowledged", "completed")

SHIPPED_EVENTS = ("fulfillment_shipped_v2", "fulfillment_shipped_v1", "fulfillment_shipped")
LABEL_EVENTS = ("label_created_v2",)

ALREADY_PUSHED = "Tracking number already pushed"
ALREADY_ON_ORDER = "Tracking number already exists on order"
# Skips that will not change on redelivery
SETTLED_SKIP_REASONS = (ALREADY_PUSHED, ALREADY_ON_ORDER)

WEIGHT_UNITS = {
    "oz": "OZ", "ounce": "OZ", "ounces": "OZ",
    "lb": "LB", "lbs": "LB", "pound": "LB", "pounds": "LB",
    "g": "G", "gram": "G", "grams": "G",
    "kg": "KG", "kilogram": "KG", "kilograms": "KG",
}

_NUMERIC = re.compile(r"^\d+$")


@dataclass
class TrackingInfo:
    tracking_number: Optional[str]
    carrier_code: Optional[str] = None
    carrier_name: Optional[str] = None
    service_code: Optional[str] = None
    ship_date: Optional[str] = None
    ship_cost: float = 0.0


@dataclass
class ReconcileResult:
    shipment_id: str
    order_id: Optional[str] = None
    tracking_number: Optional[str] = None
    pushed: bool = False
    skipped: bool = False
    reason: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    response: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shipment_id": self.shipment_id,
            "order_id": self.order_id,
            "tracking_number": self.tracking_number,
            "pushed": self.pushed,
            "skipped": self.skipped,
            "reason": self.reason,
            "request_id": self.response.get("requestId"),
        }


def _is_order_id_tag(name: str, external_id: str = "") -> bool:
    if external_id and name == external_id:
        return True
    return bool(_NUMERIC.match(name)) or "dsco" in name.lower()


def _order_id_from_tags(tags: Any, external_id: str = "") -> Optional[str]:
    for tag in tags or []:
        name = str((tag.get("name") if isinstance(tag, dict) else tag) or "")
        if name and _is_order_id_tag(name, external_id):
            return name
    return None


def normalize_ship_date(value: Any, now: Optional[datetime] = None) -> str:
    """ISO ship date; a missing, unparseable or future date becomes now."""
    now = now or datetime.now(timezone.utc)
    parsed = parse_timestamp(value)
    if parsed is None or parsed > now:
        return now.isoformat()
    return parsed.isoformat()


def extract_weight(shipment: Dict[str, Any]) -> Tuple[float, str]:
    """(value, Rithum unit) from total_weight, weight or the first package; default 1 OZ."""
    candidates = [shipment.get("total_weight"), shipment.get("weight")]
    packages = shipment.get("packages") or []
    if packages:
        candidates.append(packages[0].get("weight"))

    for weight in candidates:
        if isinstance(weight, dict):
            value = to_number(weight.get("value", weight.get("amount")))
            unit = weight.get("unit") or "ounce"
        else:
            value = to_number(weight)
            unit = "ounce"
        if value is not None and value > 0:
            return value, WEIGHT_UNITS.get(str(unit).lower(), "OZ")
    return 1.0, "OZ"


def shipment_line_items(shipment: Dict[str, Any], order: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Shipment lines with quantity and at least one of dscoItemId/sku/partnerSku/upc.
    Falls back to the upstream order's own line items.
    """
    lines = []
    for item in shipment.get("items") or []:
        quantity = to_number(item.get("quantity") or item.get("ordered_quantity") or 1)
        if not quantity or quantity <= 0:
            continue
        line: Dict[str, Any] = {"quantity": int(quantity)}
        item_id = item.get("external_order_item_id") or item.get("dscoItemId")
        if item_id:
            line["dscoItemId"] = str(item_id)
        if item.get("sku"):
            line["sku"] = str(item["sku"])
        partner_sku = item.get("partner_sku") or item.get("partnerSku")
        if partner_sku:
            line["partnerSku"] = str(partner_sku)
        if item.get("upc"):
            line["upc"] = str(item["upc"])
        if len(line) > 1:
            lines.append(line)

    if lines or not order:
        return lines

    for item in order.get("lineItems") or []:
        accepted = to_number(item.get("acceptedQuantity"))
        quantity = accepted if accepted and accepted > 0 else to_number(item.get("quantity"))
        if not quantity or quantity <= 0:
            continue
        line = {"quantity": int(quantity)}
        for key in ("dscoItemId", "sku", "partnerSku", "upc"):
            if item.get(key):
                line[key] = str(item[key])
        if len(line) > 1:
            lines.append(line)
    return lines


class TrackingReconciler:
    def __init__(self, shipstation_client, rithum_client):
        self.shipstation = shipstation_client
        self.rithum = rithum_client
        self._pushed: Set[Tuple[str, str]] = set()

    # ----- Webhooks -----

    async def shipment_ids_from_webhook(self, body: Dict[str, Any]) -> List[str]:
        """Shipment ids referenced by a webhook body (resource_url path, query or label batch)."""
        embedded = body.get("shipment") or body.get("data") or {}
        if isinstance(embedded, dict) and embedded.get("shipment_id"):
            return [str(embedded["shipment_id"])]

        resource_url = body.get("resource_url")
        if not resource_url:
            return []

        parsed = urlparse(resource_url)
        match = re.search(r"/shipments/([^/?]+)", parsed.path)
        if match:
            return [match.group(1)]

        query = parse_qs(parsed.query)
        if query.get("shipment_id"):
            return [query["shipment_id"][0]]

        if query.get("batch_id"):
            labels = await self.shipstation.get_labels_for_batch(query["batch_id"][0])
            ids = [str(label["shipment_id"]) for label in labels if label.get("shipment_id")]
            return list(dict.fromkeys(ids))
        return []

    async def handle_webhook(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process one webhook delivery. Per-shipment failures are reported in the
        result, never raised.
        """
        event_type = str(
            body.get("resource_type") or body.get("event") or body.get("type") or ""
        ).lower()
        if event_type not in SHIPPED_EVENTS + LABEL_EVENTS:
            logger.info(f"[TRACKING] Ignoring webhook event {event_type or 'unknown'}")
            return {"event_type": event_type, "handled": False, "results": []}

        shipment_ids = await self.shipment_ids_from_webhook(body)
        if not shipment_ids:
            logger.warning(f"[TRACKING] {event_type} webhook without a shipment reference")
            return {
                "event_type": event_type,
                "handled": False,
                "results": [],
                "error": "No shipment id in webhook payload",
            }

        results = []
        for shipment_id in shipment_ids:
            try:
                result = await self.reconcile(shipment_id)
                results.append(result.to_dict())
            except ReconciliationUnresolvable as e:
                logger.error(f"[TRACKING] {e.message}")
                results.append({"shipment_id": shipment_id, "pushed": False, "unresolvable": True, **e.to_dict()})
            except (UpstreamError, ValidationError) as e:
                logger.error(f"[TRACKING] Failed to reconcile {shipment_id}: {e.message}")
                results.append({"shipment_id": shipment_id, "pushed": False, **e.to_dict()})

        return {"event_type": event_type, "handled": True, "results": results}

    # ----- Reconciliation -----

    async def resolve_order_id(self, shipment: Dict[str, Any]) -> str:
        """
        Raises:
            ReconciliationUnresolvable: no strategy produced an order id
        """
        shipment_id = str(shipment.get("shipment_id") or "")
        external_id = str(shipment.get("external_shipment_id") or "").strip()
        checked = []

        checked.append("tags")
        order_id = _order_id_from_tags(shipment.get("tags"), external_id)
        if order_id:
            return order_id

        checked.append("customField2")
        if shipment.get("customField2"):
            return str(shipment["customField2"])

        sales_order_id = shipment.get("sales_order_id")
        if sales_order_id:
            checked.append("sales_order")
            try:
                sales_order = await self.shipstation.get_sales_order(str(sales_order_id))
            except UpstreamError as e:
                logger.warning(f"[TRACKING] Could not read sales order {sales_order_id}: {e.message}")
                sales_order = {}
            order_id = _order_id_from_tags(sales_order.get("tags"), external_id)
            if order_id:
                return order_id
            if sales_order.get("customField2"):
                return str(sales_order["customField2"])

        checked.append("external_shipment_id")
        if external_id:
            return external_id

        checked.append("shipment_number")
        number = str(shipment.get("shipment_number") or "")
        if _NUMERIC.match(number):
            return number

        raise ReconciliationUnresolvable(
            f"No upstream order id found on shipment {shipment_id}",
            shipment_id=shipment_id,
            checked=checked,
        )

    async def extract_tracking(self, shipment: Dict[str, Any]) -> TrackingInfo:
        """Tracking details from the shipment, completed from its label."""
        tracking_number = shipment.get("tracking_number")
        packages = shipment.get("packages") or []
        if not tracking_number and packages:
            tracking_number = packages[0].get("tracking_number")

        label = None
        try:
            label = await self.shipstation.get_label_for_shipment(str(shipment.get("shipment_id")))
        except UpstreamError as e:
            logger.warning(f"[TRACKING] No label for {shipment.get('shipment_id')}: {e.message}")
        label = label or {}

        cost = to_number((label.get("shipment_cost") or {}).get("amount"))
        if cost is None:
            cost = to_number((shipment.get("shipping_amount") or {}).get("amount")) or 0.0

        return TrackingInfo(
            tracking_number=tracking_number or label.get("tracking_number"),
            carrier_code=label.get("carrier_code") or shipment.get("carrier_code"),
            carrier_name=shipment.get("carrier_name"),
            service_code=label.get("service_code") or shipment.get("service_code"),
            ship_date=label.get("ship_date") or shipment.get("ship_date"),
            ship_cost=cost,
        )

    def build_payload(
        self,
        order_id: str,
        order: Dict[str, Any],
        shipment: Dict[str, Any],
        tracking: TrackingInfo,
    ) -> Dict[str, Any]:
        """
        Raises:
            ValidationError: no shipment line carries an item identifier
        """
        lines = shipment_line_items(shipment, order)
        if not lines:
            raise ValidationError(
                f"Shipment {shipment.get('shipment_id')} has no identifiable line items",
                order_id=order_id,
                errors=["At least one line item needs dscoItemId, sku, partnerSku or upc"],
            )

        requested = order.get("requestedShippingServiceLevelCode")
        if requested in RITHUM_SHIPMENT_CODES:
            level_code = requested
        else:
            level_code = map_to_rithum_shipping_method(
                tracking.carrier_code or tracking.carrier_name, tracking.service_code
            )
        manifest = carrier_manifest_id(tracking.carrier_name, tracking.carrier_code)
        weight, weight_units = extract_weight(shipment)

        payload: Dict[str, Any] = {
            "dscoOrderId": order_id,
            "shipments": [{
                "trackingNumber": tracking.tracking_number,
                "lineItems": lines,
                "shipDate": normalize_ship_date(tracking.ship_date),
                "shipCost": float(tracking.ship_cost or 0),
                "shipWeight": weight,
                "shipWeightUnits": weight_units,
                "carrierManifestId": manifest,
                "shipCarrier": manifest,
                "shippingServiceLevelCode": level_code,
                "shipMethod": SHIP_METHOD_NAMES.get(level_code, "Ground"),
            }],
        }
        if order.get("poNumber"):
            payload["poNumber"] = order["poNumber"]
        return payload

    async def reconcile(self, shipment_id: str) -> ReconcileResult:
        """
        Push tracking for one shipment.

        Raises:
            ReconciliationUnresolvable: no upstream order id on the shipment
            UpstreamError: ShipStation or Rithum unavailable
            ValidationError: shipment lines cannot be identified upstream
        """
        shipment = await self.shipstation.get_shipment(shipment_id)
        shipment.setdefault("shipment_id", shipment_id)
        order_id = await self.resolve_order_id(shipment)
        result = ReconcileResult(shipment_id=shipment_id, order_id=order_id)

        tracking = await self.extract_tracking(shipment)
        result.tracking_number = tracking.tracking_number
        if not tracking.tracking_number:
            return self._skip(result, "No tracking number on shipment or label yet")

        if (order_id, tracking.tracking_number) in self._pushed:
            return self._skip(result, ALREADY_PUSHED)

        order = await self.rithum.find_order(order_id)
        if order is None:
            return self._skip(result, f"Order {order_id} not found upstream")

        lifecycle = order.get("dscoLifecycle")
        if lifecycle not in PUSHABLE_LIFECYCLES:
            return self._skip(result, f"Invalid lifecycle: {lifecycle}")

        existing = {pkg.get("trackingNumber") for pkg in order.get("packages") or []}
        if tracking.tracking_number in existing:
            self._pushed.add((order_id, tracking.tracking_number))
            return self._skip(result, ALREADY_ON_ORDER)

        payload = self.build_payload(order_id, order, shipment, tracking)
        result.payload = payload
        result.response = await self.rithum.push_tracking([payload])
        self._pushed.add((order_id, tracking.tracking_number))
        result.pushed = True
        logger.info(
            f"[TRACKING] Pushed {tracking.tracking_number} for order {order_id} "
            f"({payload['shipments'][0]['shippingServiceLevelCode']})"
        )
        return result

    @staticmethod
    def _skip(result: ReconcileResult, reason: str) -> ReconcileResult:
        result.skipped = True
        result.reason = reason
        logger.info(f"[TRACKING] Skipping shipment {result.shipment_id}: {reason}")
        return result
