"""
Ordered field-resolution rules for Rithum order records.

Each resolver owns one field and documents its precedence. Resolvers never
raise on missing or malformed input; they return a typed default and let the
mapper decide whether that is a validation failure.
"""
import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

RESIDENTIAL_INDICATORS = ("yes", "no", "unknown")


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def first_present(record: Dict[str, Any], keys: Iterable[str]) -> Any:
    """Value of the first key whose value is not None or blank."""
    for key in keys:
        value = record.get(key)
        if not is_blank(value):
            return value
    return None


def to_number(value: Any) -> Optional[float]:
    """Parse a number from int/float/str; None when absent, unparseable or not finite."""
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value) if isinstance(value, (int, float)) else float(str(value).strip())
    except (ValueError, OverflowError):
        return None
    # JSON 1e999 decodes to inf
    return parsed if math.isfinite(parsed) else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed). Naive values are UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ----- Order-level fields -----

ORDER_DATE_FIELDS = ("consumerOrderDate", "retailerCreateDate", "dscoCreateDate")


def resolve_order_date(order: Dict[str, Any], now: Optional[datetime] = None) -> Tuple[datetime, Optional[str]]:
    """
    consumerOrderDate, then retailerCreateDate, then dscoCreateDate, else now.

    An unparseable date falls back to now and returns a warning instead of
    failing the order.
    """
    now = now or datetime.now(timezone.utc)
    raw = first_present(order, ORDER_DATE_FIELDS)
    if raw is None:
        return now, None
    parsed = parse_timestamp(raw)
    if parsed is None:
        return now, f"Invalid order date {raw!r}, using current time"
    return parsed, None


def resolve_currency(order: Dict[str, Any]) -> str:
    """currencyCode, then consumerOrderCurrencyCode, else USD. Always uppercase."""
    raw = first_present(order, ("currencyCode", "consumerOrderCurrencyCode"))
    return str(raw).strip().upper() if raw is not None else "USD"


def resolve_external_id(order: Dict[str, Any]) -> Optional[str]:
    """dscoOrderId only. It is the immutable key used for downstream dedup."""
    raw = order.get("dscoOrderId")
    return None if is_blank(raw) else str(raw).strip()


def resolve_display_number(order: Dict[str, Any]) -> Optional[str]:
    """poNumber, else dscoOrderId."""
    raw = first_present(order, ("poNumber", "dscoOrderId"))
    return None if raw is None else str(raw).strip()


def resolve_amount_paid(order: Dict[str, Any], items_total: float = 0.0) -> float:
    """
    Item-cost total + shippingSurcharge + amountOfSalesTaxCollected.

    The item-cost total is extendedExpectedCostTotal when present, else
    ``items_total`` (sum of mapped quantity x unit price). Each part counts as
    0 when absent. A sum of exactly 0 falls back to orderTotalAmount.
    """
    item_cost = to_number(order.get("extendedExpectedCostTotal"))
    if item_cost is None:
        item_cost = items_total
    amount = item_cost
    amount += to_number(order.get("shippingSurcharge")) or 0.0
    amount += to_number(order.get("amountOfSalesTaxCollected")) or 0.0

    if amount == 0:
        fallback = to_number(order.get("orderTotalAmount"))
        if fallback is not None:
            return round(fallback, 2)
    return round(amount, 2)


def resolve_address_block(order: Dict[str, Any], precedence: Sequence[str]) -> Optional[Dict[str, Any]]:
    """First non-empty address object among ``precedence`` keys (default shipping, shipTo)."""
    for key in precedence:
        block = order.get(key)
        if isinstance(block, dict) and block:
            return block
    return None


# ----- Address fields -----

def resolve_customer_name(address: Optional[Dict[str, Any]]) -> str:
    """name, then "firstName lastName", then firstName, else "Customer"."""
    if not address:
        return "Customer"
    if not is_blank(address.get("name")):
        return str(address["name"]).strip()
    first = address.get("firstName")
    last = address.get("lastName")
    if not is_blank(first) and not is_blank(last):
        return f"{str(first).strip()} {str(last).strip()}"
    if not is_blank(first):
        return str(first).strip()
    return "Customer"


def resolve_residential_indicator(address: Dict[str, Any]) -> str:
    """addressResidentialIndicator when it is yes/no/unknown, else unknown."""
    raw = address.get("addressResidentialIndicator")
    if isinstance(raw, str) and raw.strip().lower() in RESIDENTIAL_INDICATORS:
        return raw.strip().lower()
    return "unknown"


def resolve_phone(address: Dict[str, Any], placeholder: str) -> str:
    """phone, else the placeholder. ShipStation rejects an empty phone."""
    raw = address.get("phone")
    return placeholder if is_blank(raw) else str(raw).strip()


def resolve_address_line2(address: Dict[str, Any]) -> Optional[str]:
    """address2, else the second element of an address[] list."""
    if not is_blank(address.get("address2")):
        return str(address["address2"]).strip()
    lines = address.get("address")
    if isinstance(lines, list) and len(lines) > 1 and not is_blank(lines[1]):
        return str(lines[1]).strip()
    return None


def resolve_state(address: Dict[str, Any]) -> Optional[str]:
    """state, else region."""
    raw = first_present(address, ("state", "region"))
    return None if raw is None else str(raw).strip()


def resolve_company(address: Dict[str, Any]) -> Optional[str]:
    """companyName, else company."""
    raw = first_present(address, ("companyName", "company"))
    return None if raw is None else str(raw).strip()


# ----- Line-item fields -----

def resolve_item_quantity(item: Dict[str, Any]) -> int:
    """
    acceptedQuantity only if it is a positive number, else quantity, else 0.

    New orders carry acceptedQuantity=0 until acknowledged, so 0 is not an
    override.
    """
    accepted = to_number(item.get("acceptedQuantity"))
    if accepted is not None and accepted > 0:
        return int(accepted)
    requested = to_number(item.get("quantity"))
    if requested is not None:
        return int(requested)
    return 0


SKU_FIELDS = ("sku", "partnerSku", "productGroup")


def resolve_item_sku(item: Dict[str, Any], index: int) -> Tuple[str, bool]:
    """
    sku, then partnerSku, then productGroup, else synthesized ``ITEM-{index+1}``.

    Returns (sku, synthesized).
    """
    raw = first_present(item, SKU_FIELDS)
    if raw is not None:
        return str(raw).strip(), False
    return f"ITEM-{index + 1}", True


def has_resolvable_sku(item: Dict[str, Any]) -> bool:
    return first_present(item, SKU_FIELDS) is not None


def resolve_item_price(item: Dict[str, Any], quantity: int) -> float:
    """expectedCost, then consumerPrice, then extendedExpectedCostTotal / quantity, else 0."""
    for key in ("expectedCost", "consumerPrice"):
        value = to_number(item.get(key))
        if value is not None:
            return value
    total = to_number(item.get("extendedExpectedCostTotal"))
    if total is not None:
        return total / quantity if quantity > 0 else total
    return 0.0


# ----- Carrier request fields -----

def resolve_requested_carrier(order: Dict[str, Any]) -> str:
    """requestedShipCarrier, then shipCarrier; lowercase."""
    raw = first_present(order, ("requestedShipCarrier", "shipCarrier"))
    return str(raw).strip().lower() if raw is not None else ""


def resolve_requested_service_level(order: Dict[str, Any]) -> str:
    """requestedShippingServiceLevelCode, then shippingServiceLevelCode; uppercase."""
    raw = first_present(order, ("requestedShippingServiceLevelCode", "shippingServiceLevelCode"))
    return str(raw).strip().upper() if raw is not None else ""


def resolve_requested_ship_method(order: Dict[str, Any]) -> str:
    """requestedShipMethod, then shipMethod; lowercase."""
    raw = first_present(order, ("requestedShipMethod", "shipMethod"))
    return str(raw).strip().lower() if raw is not None else ""


def resolve_line_items(order: Dict[str, Any]) -> List[Dict[str, Any]]:
    items = order.get("lineItems")
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]
