"""
Tests for the per-field resolution rules.
"""
import json
from datetime import datetime, timezone

from orderbridge.services import field_resolvers as fr

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class TestOrderDate:
    def test_precedence(self):
        order = {
            "retailerCreateDate": "2026-01-02T00:00:00Z",
            "dscoCreateDate": "2026-01-03T00:00:00Z",
            "consumerOrderDate": "2026-01-01T00:00:00Z",
        }
        parsed, warning = fr.resolve_order_date(order, now=NOW)
        assert parsed == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert warning is None

    def test_blank_values_are_skipped(self):
        order = {"consumerOrderDate": "  ", "dscoCreateDate": "2026-01-03T10:00:00"}
        parsed, _ = fr.resolve_order_date(order, now=NOW)
        assert parsed == datetime(2026, 1, 3, 10, 0, tzinfo=timezone.utc)

    def test_missing_uses_now(self):
        assert fr.resolve_order_date({}, now=NOW) == (NOW, None)

    def test_invalid_date_warns_instead_of_failing(self):
        parsed, warning = fr.resolve_order_date({"consumerOrderDate": "yesterday"}, now=NOW)
        assert parsed == NOW
        assert "yesterday" in warning


class TestOrderFields:
    def test_currency_defaults_to_usd_and_uppercases(self):
        assert fr.resolve_currency({}) == "USD"
        assert fr.resolve_currency({"consumerOrderCurrencyCode": "cad"}) == "CAD"
        assert fr.resolve_currency({"currencyCode": "eur", "consumerOrderCurrencyCode": "cad"}) == "EUR"

    def test_display_number_falls_back_to_order_id(self):
        assert fr.resolve_display_number({"poNumber": "PO1", "dscoOrderId": "R1"}) == "PO1"
        assert fr.resolve_display_number({"dscoOrderId": "R1"}) == "R1"
        assert fr.resolve_display_number({}) is None

    def test_amount_paid_sums_parts(self):
        order = {"shippingSurcharge": "4.50", "amountOfSalesTaxCollected": 1.25}
        assert fr.resolve_amount_paid(order, items_total=10) == 15.75

    def test_amount_paid_prefers_extended_cost_total(self):
        order = {"extendedExpectedCostTotal": 20}
        assert fr.resolve_amount_paid(order, items_total=10) == 20

    def test_amount_paid_zero_falls_back_to_order_total(self):
        assert fr.resolve_amount_paid({"orderTotalAmount": "42.10"}, items_total=0) == 42.10
        assert fr.resolve_amount_paid({}, items_total=0) == 0

    def test_address_block_precedence_is_configurable(self):
        order = {"shipping": {"city": "A"}, "shipTo": {"city": "B"}}
        assert fr.resolve_address_block(order, ["shipping", "shipTo"])["city"] == "A"
        assert fr.resolve_address_block(order, ["shipTo", "shipping"])["city"] == "B"
        assert fr.resolve_address_block({"shipping": {}}, ["shipping"]) is None


class TestAddressFields:
    def test_customer_name_fallbacks(self):
        assert fr.resolve_customer_name({"name": "Full Name", "firstName": "F"}) == "Full Name"
        assert fr.resolve_customer_name({"firstName": "Jane", "lastName": "Doe"}) == "Jane Doe"
        assert fr.resolve_customer_name({"firstName": "Jane"}) == "Jane"
        assert fr.resolve_customer_name({"lastName": "Doe"}) == "Customer"
        assert fr.resolve_customer_name(None) == "Customer"

    def test_residential_indicator(self):
        assert fr.resolve_residential_indicator({"addressResidentialIndicator": "Yes"}) == "yes"
        assert fr.resolve_residential_indicator({"addressResidentialIndicator": "maybe"}) == "unknown"
        assert fr.resolve_residential_indicator({}) == "unknown"

    def test_phone_placeholder(self):
        assert fr.resolve_phone({}, "000-000-0000") == "000-000-0000"
        assert fr.resolve_phone({"phone": " 555-1234 "}, "000-000-0000") == "555-1234"

    def test_address_line2_from_address_list(self):
        assert fr.resolve_address_line2({"address": ["1 Main St", "Apt 2"]}) == "Apt 2"
        assert fr.resolve_address_line2({"address2": "Suite 9", "address": ["x", "y"]}) == "Suite 9"
        assert fr.resolve_address_line2({"address": ["1 Main St"]}) is None

    def test_state_or_region(self):
        assert fr.resolve_state({"region": "ON"}) == "ON"
        assert fr.resolve_state({"state": "CA", "region": "ON"}) == "CA"


class TestLineItemFields:
    def test_accepted_quantity_only_when_positive(self):
        assert fr.resolve_item_quantity({"acceptedQuantity": 3, "quantity": 5}) == 3
        assert fr.resolve_item_quantity({"acceptedQuantity": 0, "quantity": 5}) == 5
        assert fr.resolve_item_quantity({"acceptedQuantity": "x", "quantity": "2"}) == 2
        assert fr.resolve_item_quantity({}) == 0

    def test_sku_precedence_and_synthesis(self):
        assert fr.resolve_item_sku({"partnerSku": "P", "productGroup": "G"}, 0) == ("P", False)
        assert fr.resolve_item_sku({"productGroup": "G"}, 0) == ("G", False)
        assert fr.resolve_item_sku({}, 2) == ("ITEM-3", True)

    def test_item_price(self):
        assert fr.resolve_item_price({"expectedCost": 5, "consumerPrice": 9}, 1) == 5
        assert fr.resolve_item_price({"consumerPrice": "9.5"}, 1) == 9.5
        assert fr.resolve_item_price({"extendedExpectedCostTotal": 12}, 4) == 3
        assert fr.resolve_item_price({}, 1) == 0.0

    def test_to_number(self):
        assert fr.to_number("1.5") == 1.5
        assert fr.to_number(True) is None
        assert fr.to_number("abc") is None
        assert fr.to_number(float("nan")) is None

    def test_non_finite_numbers_are_absent(self):
        item = json.loads('{"sku": "A1", "quantity": 1e999, "acceptedQuantity": -1e999}')

        assert fr.to_number(item["quantity"]) is None
        assert fr.to_number("inf") is None
        assert fr.to_number(10 ** 400) is None
        assert fr.resolve_item_quantity(item) == 0


class TestCarrierRequestFields:
    def test_requested_fields_win(self):
        order = {
            "requestedShipCarrier": "UPS",
            "shipCarrier": "FedEx",
            "shippingServiceLevelCode": "gcg",
            "shipMethod": "Ground",
        }
        assert fr.resolve_requested_carrier(order) == "ups"
        assert fr.resolve_requested_service_level(order) == "GCG"
        assert fr.resolve_requested_ship_method(order) == "ground"
