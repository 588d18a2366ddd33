"""
Rithum order -> ShipStation shipment request mapping.

OrderMapper is pure: no I/O beyond the SKU weight table loaded at
construction. Field precedence lives in field_resolvers; package and service
derivation lives in packaging.
"""
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from orderbridge.core.config import settings
from orderbridge.schemas.orders import (
    MappedAddress,
    MappedItem,
    MappingResult,
    NormalizedShipmentRequest,
    SourceOrder,
)
from orderbridge.services import field_resolvers as fr
from orderbridge.services.carrier_mapper import extract_carrier_requirements
from orderbridge.services.packaging import (
    carrier_family,
    derive_package_and_service,
    map_requested_service,
)
from orderbridge.services.sku_weights import SkuWeightTable, to_ounces

logger = logging.getLogger(__name__)

ACCEPTED_LIFECYCLE = "acknowledged"
# Legacy dscoStatus value equivalent to the acknowledged lifecycle
ACCEPTED_LEGACY_STATUS = "shipment_pending"


class OrderMapper:
    """
    Maps Rithum order records to NormalizedShipmentRequest.

    Usage:
        mapper = OrderMapper()
        if mapper.should_process(order):
            result = mapper.map(order)
            if result.is_valid:
                ...
    """

    def __init__(
        self,
        skip_test_orders: Optional[bool] = None,
        address_precedence: Optional[Sequence[str]] = None,
        sku_table: Optional[SkuWeightTable] = None,
        default_item_weight_oz: Optional[float] = None,
        placeholder_phone: Optional[str] = None,
    ):
        self.skip_test_orders = settings.SKIP_TEST_ORDERS if skip_test_orders is None else skip_test_orders
        self.address_precedence = list(address_precedence or settings.ADDRESS_FIELD_PRECEDENCE)
        self.sku_table = sku_table if sku_table is not None else SkuWeightTable.load(settings.SKU_WEIGHTS_PATH)
        self.default_item_weight_oz = (
            settings.DEFAULT_ITEM_WEIGHT_OZ if default_item_weight_oz is None else default_item_weight_oz
        )
        self.placeholder_phone = placeholder_phone or settings.PLACEHOLDER_PHONE

    # ----- Gate -----

    def should_process(self, order: Optional[SourceOrder]) -> bool:
        """
        Only acknowledged orders are synced.

        dscoLifecycle wins when present; otherwise the legacy dscoStatus is
        read, where shipment_pending is the acknowledged equivalent. An order
        with neither field is not synced.
        """
        if not order:
            return False

        order_id = order.get("dscoOrderId")
        lifecycle = order.get("dscoLifecycle")
        legacy_status = order.get("dscoStatus")

        if self.skip_test_orders and order.get("testFlag"):
            logger.info(f"[MAPPER] Skipping test order {order_id}")
            return False

        if lifecycle == "cancelled" or legacy_status == "cancelled":
            logger.info(f"[MAPPER] Skipping cancelled order {order_id}")
            return False

        if lifecycle == "shipped" or legacy_status == "shipped":
            logger.info(f"[MAPPER] Skipping already shipped order {order_id}")
            return False

        if lifecycle:
            if lifecycle != ACCEPTED_LIFECYCLE:
                logger.info(f"[MAPPER] Skipping order {order_id} with lifecycle {lifecycle}")
                return False
            return True

        if legacy_status:
            if legacy_status != ACCEPTED_LEGACY_STATUS:
                logger.info(f"[MAPPER] Skipping order {order_id} with status {legacy_status}")
                return False
            return True

        logger.info(f"[MAPPER] Skipping order {order_id} with no lifecycle or status")
        return False

    # ----- Validation -----

    def validate(self, order: Optional[SourceOrder]) -> List[str]:
        if not order:
            return ["Order object is required"]

        errors: List[str] = []

        if fr.resolve_external_id(order) is None:
            if fr.is_blank(order.get("poNumber")):
                errors.append("Missing poNumber and dscoOrderId")
            errors.append("Missing dscoOrderId (required for order identification)")

        address = fr.resolve_address_block(order, self.address_precedence)
        if address is None:
            errors.append(f"Missing shipping address ({' or '.join(self.address_precedence)} required)")
        else:
            if self._address_line1(address) is None:
                errors.append("Missing address1 (required for address_line1)")
            if fr.is_blank(address.get("city")):
                errors.append("Missing city (required for city_locality)")
            if fr.resolve_state(address) is None:
                errors.append("Missing state or region (required for state_province)")
            if fr.is_blank(address.get("postal")):
                errors.append("Missing postal (required for postal_code)")

        items = fr.resolve_line_items(order)
        if not items:
            errors.append("Missing or empty lineItems array")
        elif not any(fr.resolve_item_quantity(i) > 0 and fr.has_resolvable_sku(i) for i in items):
            errors.append("No line item has both a positive quantity and a SKU (sku, partnerSku or productGroup)")

        return errors

    # ----- Mapping -----

    def map(self, order: Optional[SourceOrder]) -> MappingResult:
        errors = self.validate(order)
        if errors:
            order_id = (order or {}).get("dscoOrderId") or (order or {}).get("poNumber")
            logger.warning(f"[MAPPER] Order {order_id} failed validation: {'; '.join(errors)}")
            return MappingResult(request=None, errors=errors)

        warnings: List[str] = []

        order_date, date_warning = fr.resolve_order_date(order)
        if date_warning:
            warnings.append(date_warning)

        currency = fr.resolve_currency(order)
        external_id = fr.resolve_external_id(order)
        display_number = fr.resolve_display_number(order) or external_id

        address = fr.resolve_address_block(order, self.address_precedence)
        ship_to = self.map_address(address)

        items, item_warnings = self.map_line_items(fr.resolve_line_items(order))
        warnings.extend(item_warnings)

        items_total = sum(item.quantity * item.unit_price for item in items)
        amount_paid = fr.resolve_amount_paid(order, items_total)

        weight_oz = self.compute_weight_oz(fr.resolve_line_items(order))

        preference = extract_carrier_requirements(order)
        package_code, service_code = derive_package_and_service(
            weight_oz,
            preference.requested_carrier,
            preference.service_code,
            preference.ship_method,
        )

        request = NormalizedShipmentRequest(
            external_id=external_id,
            display_number=display_number,
            order_date=order_date,
            currency=currency,
            amount_paid=amount_paid,
            ship_to=ship_to,
            items=items,
            weight_oz=weight_oz,
            package_code=package_code,
            service_code=service_code,
            carrier_family=carrier_family(preference.requested_carrier),
            shipping_paid=fr.to_number(order.get("shippingSurcharge")),
            tax_paid=fr.to_number(order.get("amountOfSalesTaxCollected")),
            ship_by_date=self._optional_str(order.get("shipByDate")),
            is_gift=bool(order["giftFlag"]) if order.get("giftFlag") is not None else None,
            notes_from_buyer=self._optional_str(order.get("shipInstructions")),
            notes_for_gift=self._optional_str(order.get("giftMessage")),
            requested_shipment_service=map_requested_service(
                preference.service_code, preference.requested_carrier, preference.ship_method
            ),
            carrier_preference=preference,
            tags=[external_id],
        )

        for warning in warnings:
            logger.warning(f"[MAPPER] Order {external_id}: {warning}")
        logger.debug(
            f"[MAPPER] Mapped order {external_id}: {len(items)} items, {weight_oz} oz, "
            f"package={package_code} service={service_code}"
        )
        return MappingResult(request=request, errors=[], warnings=warnings)

    def map_address(self, address: Dict[str, Any]) -> MappedAddress:
        return MappedAddress(
            name=fr.resolve_customer_name(address),
            address_line1=self._address_line1(address) or "",
            city_locality=str(address.get("city") or "").strip(),
            state_province=fr.resolve_state(address) or "",
            postal_code=str(address.get("postal") or "").strip(),
            country_code=str(address.get("country") or "US").strip().upper(),
            phone=fr.resolve_phone(address, self.placeholder_phone),
            address_residential_indicator=fr.resolve_residential_indicator(address),
            address_line2=fr.resolve_address_line2(address),
            company_name=fr.resolve_company(address),
            email=self._optional_str(address.get("email")),
        )

    def map_line_items(self, line_items: List[Dict[str, Any]]) -> Tuple[List[MappedItem], List[str]]:
        """Items with a resolved quantity of 0 or less are dropped, not reported."""
        items: List[MappedItem] = []
        warnings: List[str] = []

        for index, item in enumerate(line_items):
            quantity = fr.resolve_item_quantity(item)
            if quantity <= 0:
                continue

            sku, synthesized = fr.resolve_item_sku(item, index)
            if synthesized:
                warnings.append(f"No SKU for line item {index + 1}, using generated SKU {sku}")

            tax = fr.to_number(item.get("taxAmount"))
            items.append(MappedItem(
                sku=sku,
                name=self._optional_str(item.get("title")) or "Unknown Item",
                quantity=quantity,
                unit_price=fr.resolve_item_price(item, quantity),
                external_order_item_id=self._optional_str(item.get("dscoItemId")),
                personalization=self._optional_str(item.get("personalization")),
                tax_amount=tax,
            ))

        return items, warnings

    def compute_weight_oz(self, line_items: List[Dict[str, Any]]) -> int:
        """
        Total shipping weight in whole ounces, rounded up, at least 1.

        Per item: its own weight/weightUnits, else the SKU table entry, else
        the table's defaultWeight, else the configured per-item default.
        """
        total = 0.0
        for item in line_items:
            quantity = fr.resolve_item_quantity(item)
            if quantity <= 0:
                continue
            total += self._item_weight_oz(item) * quantity

        return max(1, math.ceil(total))

    def _item_weight_oz(self, item: Dict[str, Any]) -> float:
        weight = fr.to_number(item.get("weight"))
        if weight is not None and weight > 0:
            return to_ounces(weight, item.get("weightUnits"))

        sku = fr.first_present(item, ("sku", "partnerSku"))
        entry = self.sku_table.lookup(str(sku) if sku is not None else None)
        if entry is not None:
            logger.debug(f"[MAPPER] Using SKU table weight for {sku}: {entry.value} {entry.unit}")
            return entry.ounces

        if self.sku_table.default_weight is not None:
            return self.sku_table.default_weight.ounces
        return self.default_item_weight_oz

    @staticmethod
    def _address_line1(address: Dict[str, Any]) -> Optional[str]:
        if not fr.is_blank(address.get("address1")):
            return str(address["address1"]).strip()
        lines = address.get("address")
        if isinstance(lines, list) and lines and not fr.is_blank(lines[0]):
            return str(lines[0]).strip()
        return None

    @staticmethod
    def _optional_str(value: Any) -> Optional[str]:
        if fr.is_blank(value):
            return None
        if isinstance(value, datetime):
            return value.isoformat()
        return str(value).strip()
