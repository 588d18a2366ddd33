"""
Tests for packaging derivation, carrier vocabulary and carrier selection.
"""
from unittest.mock import AsyncMock, patch

import pytest

from conftest import make_order
from orderbridge.core.exceptions import TransientNetworkError
from orderbridge.schemas.orders import CarrierPreference
from orderbridge.services.carrier_mapper import (
    CarrierAccountMapper,
    carrier_manifest_id,
    extract_carrier_requirements,
    map_to_rithum_shipping_method,
)
from orderbridge.services.carrier_selector import CarrierPreferences, CarrierSelector
from orderbridge.services.order_mapper import OrderMapper
from orderbridge.services.packaging import (
    carrier_family,
    derive_package_and_service,
    map_requested_service,
    select_package_code,
)
from orderbridge.services.sku_weights import SkuWeightTable


def map_order(**overrides):
    mapper = OrderMapper(sku_table=SkuWeightTable(), default_item_weight_oz=2)
    return mapper.map(make_order(**overrides)).request


class TestPackaging:
    @pytest.mark.parametrize("carrier,family", [
        ("", "usps"),
        ("generic", "usps"),
        ("Stamps.com", "usps"),
        ("stamps_com", "usps"),
        ("Fed Ex", "fedex"),
        ("ups", "ups"),
        ("DHL Express", "dhl"),
        ("OnTrac", "other"),
    ])
    def test_carrier_family(self, carrier, family):
        assert carrier_family(carrier) == family

    @pytest.mark.parametrize("weight,carrier,expected", [
        (0, "usps", "package"),
        (4, "usps", "thick_envelope"),
        (5, "usps", "package"),
        (60, "usps", "large_package"),
        (8, "fedex", "fedex_envelope"),
        (40, "fedex", "fedex_large_box"),
        (12, "ups", "ups_express_box_small"),
        (12, "ontrac", "package"),
    ])
    def test_package_bands(self, weight, carrier, expected):
        assert select_package_code(weight, carrier) == expected

    def test_priority_uses_flat_rate_bands(self):
        assert select_package_code(10, "usps", "PM") == "small_flat_rate_box"
        assert select_package_code(30, "usps", "", "Priority Mail") == "medium_flat_rate_box"

    def test_flat_rate_forces_priority_mail(self):
        package, service = derive_package_and_service(6, "usps", "GCG", "priority flat rate")
        assert package == "flat_rate_padded_envelope"
        assert service == "usps_priority_mail"

    @pytest.mark.parametrize("carrier,level,method,expected", [
        ("usps", "", "", "usps_ground_advantage"),
        ("fedex", "", "2day am", "fedex_2day_am"),
        ("fedex", "", "overnight priority", "fedex_priority_overnight"),
        ("fedex", "", "home delivery", "fedex_home_delivery"),
        ("ups", "", "next day air saver", "ups_next_day_air_saver"),
        ("ups", "", "3 day select", "ups_3_day_select"),
        ("dhl", "", "", "dhl_express_worldwide"),
        ("ontrac", "", "ground", None),
    ])
    def test_service_codes(self, carrier, level, method, expected):
        _, service = derive_package_and_service(10, carrier, level, method)
        assert service == expected

    def test_requested_service_display(self):
        assert map_requested_service("") is None
        assert map_requested_service("gcp") == "usps_priority_mail"
        assert map_requested_service("XYZ", "generic", "ground") == "usps_ground_advantage"
        assert map_requested_service("XYZ", "UPS", "Express") == "ups_express"


class TestCarrierMapper:
    def test_requirements_binding_only_when_requested(self):
        assert extract_carrier_requirements({"shipCarrier": "UPS"}).is_required is False

        preference = extract_carrier_requirements({"requestedShipCarrier": "UPS", "shipMethod": "Ground"})
        assert preference.is_required is True
        assert preference.requested_carrier == "ups"
        assert preference.ship_method == "ground"

    def test_preferred_ids_service_level_first(self):
        mapper = CarrierAccountMapper()
        preference = CarrierPreference(requested_carrier="ups", service_code="GCG")
        assert mapper.preferred_carrier_ids(preference) == ["se-287927", "se-1015030", "se-733076"]

    def test_express_method_moves_fedex_and_ups_first(self):
        mapper = CarrierAccountMapper()
        preference = CarrierPreference(ship_method="express saver")
        assert mapper.preferred_carrier_ids(preference) == ["se-283655", "se-733076"]

    def test_ground_method_adds_usps(self):
        mapper = CarrierAccountMapper()
        preference = CarrierPreference(requested_carrier="fedex", ship_method="ground")
        assert mapper.preferred_carrier_ids(preference) == ["se-283655", "se-287927"]

    def test_custom_maps(self):
        mapper = CarrierAccountMapper(carrier_map={"UPS": ["se-1"]}, service_map={"gcg": ["se-2"]})
        preference = CarrierPreference(requested_carrier="ups", service_code="GCG")
        assert mapper.preferred_carrier_ids(preference) == ["se-2", "se-1"]

    def test_validate_carrier_choice(self, carriers):
        mapper = CarrierAccountMapper()
        required_ups = CarrierPreference(requested_carrier="ups", is_required=True)

        assert mapper.validate_carrier_choice("se-404", required_ups, carriers).is_valid is False
        assert mapper.validate_carrier_choice("se-999999", required_ups, carriers).is_valid is False

        matching = mapper.validate_carrier_choice("se-733076", required_ups, carriers)
        assert matching.is_valid and matching.satisfies_requirement

        other = mapper.validate_carrier_choice("se-283655", required_ups, carriers)
        assert other.is_valid and not other.satisfies_requirement

        optional_ups = CarrierPreference(requested_carrier="ups")
        assert mapper.validate_carrier_choice("se-283655", optional_ups, carriers).satisfies_requirement

    @pytest.mark.parametrize("carrier,service,expected", [
        ("stamps_com", "usps_ground_advantage", "USGA"),
        ("stamps_com", "usps_priority_mail", "USPM"),
        ("usps", "usps_first_class_mail", "USPM"),
        ("ups", "ups_ground", "UPCG"),
        ("ups", "ups_next_day_air", "UPSV"),
        ("ups", "ups_2nd_day_air", "UPSP"),
        ("fedex", "fedex_home_delivery", "FECG"),
        ("fedex", "fedex_2day", "FEHD"),
        ("fedex", "fedex_priority_overnight", "FESP"),
        ("ontrac", "", "ONCG"),
        (None, "usga", "USGA"),
        ("mystery", "freight", "UPCG"),
    ])
    def test_rithum_shipping_method(self, carrier, service, expected):
        assert map_to_rithum_shipping_method(carrier, service) == expected

    def test_carrier_manifest_id(self):
        assert carrier_manifest_id("USPS", "stamps_com") == "USPS"
        assert carrier_manifest_id(None, "ontrac") == "OnTrac"
        assert carrier_manifest_id("Acme", "acme_freight") == "ACME"
        assert carrier_manifest_id(None, None) == "USPS"


class TestCarrierSelector:
    @pytest.mark.asyncio
    async def test_default_selects_usps(self, mock_shipstation):
        selector = CarrierSelector(mock_shipstation)
        request = map_order()

        carrier_id = await selector.select(request, request.ship_to, request.carrier_preference)

        assert carrier_id == "se-287927"

    @pytest.mark.asyncio
    async def test_high_value_prefers_ups(self, mock_shipstation):
        selector = CarrierSelector(mock_shipstation, high_value_threshold=500)
        request = map_order(lineItems=[{"sku": "A1", "quantity": 2, "expectedCost": 300}])

        carrier_id = await selector.select(request, request.ship_to, request.carrier_preference)

        assert request.amount_paid == 600
        assert carrier_id == "se-733076"

    @pytest.mark.asyncio
    async def test_required_preferred_carrier_skips_scoring(self, mock_shipstation):
        selector = CarrierSelector(mock_shipstation)
        request = map_order(requestedShipCarrier="UPS")

        with patch.object(selector, "find_best_carrier") as find_best:
            carrier_id = await selector.select(request, request.ship_to, request.carrier_preference)

        assert carrier_id == "se-733076"
        find_best.assert_not_called()

    @pytest.mark.asyncio
    async def test_unavailable_required_carrier_falls_back_to_scoring(self, mock_shipstation):
        selector = CarrierSelector(mock_shipstation)
        request = map_order(requestedShipCarrier="DHL")

        carrier_id = await selector.select(request, request.ship_to, request.carrier_preference)

        assert carrier_id == "se-287927"

    @pytest.mark.asyncio
    async def test_carrier_list_cached(self, mock_shipstation):
        selector = CarrierSelector(mock_shipstation, cache_ttl_seconds=300)
        request = map_order()

        await selector.select(request)
        await selector.select(request)
        assert mock_shipstation.get_carriers.await_count == 1

        selector.clear_cache()
        await selector.select(request)
        assert mock_shipstation.get_carriers.await_count == 2

    @pytest.mark.asyncio
    async def test_fetch_failure_uses_fallback(self, mock_shipstation):
        mock_shipstation.get_carriers = AsyncMock(
            side_effect=TransientNetworkError("timeout", service="shipstation")
        )
        selector = CarrierSelector(mock_shipstation, fallback_carrier_id="se-fallback")

        assert await selector.select(map_order()) == "se-fallback"
        assert await selector.validate_carrier("se-287927") is False
        assert await selector.get_carrier_info("se-287927") is None

    @pytest.mark.asyncio
    async def test_empty_carrier_list_uses_fallback(self, mock_shipstation):
        mock_shipstation.get_carriers = AsyncMock(return_value=[])
        selector = CarrierSelector(mock_shipstation, fallback_carrier_id="se-fallback")

        assert await selector.select(map_order()) == "se-fallback"

    @pytest.mark.asyncio
    async def test_validate_carrier(self, mock_shipstation):
        selector = CarrierSelector(mock_shipstation)

        assert await selector.validate_carrier("se-733076") is True
        assert await selector.validate_carrier("se-999999") is False
        assert await selector.validate_carrier("se-404") is False

    @pytest.mark.asyncio
    async def test_apply_packaging_uses_selected_carrier(self, mock_shipstation):
        selector = CarrierSelector(mock_shipstation)
        request = map_order()
        assert request.package_code == "thick_envelope"

        await selector.apply_packaging(request, "se-733076")

        assert request.package_code == "ups_express_pak"
        assert request.service_code == "ups_ground"
        assert request.carrier_family == "ups"

    def test_international_preferences(self):
        selector = CarrierSelector(AsyncMock())
        request = map_order(shipping={
            "name": "A", "address1": "1 Rue", "city": "Paris", "state": "IDF", "postal": "75001",
            "country": "FR",
        })

        prefs = selector.get_carrier_preferences(request, request.ship_to, request.carrier_preference)

        assert prefs.preferred_codes == ["usps", "fedex", "ups"]
        assert prefs.preferred_services[0] == "international"

    def test_score_avoid_and_usps_ground_bonus(self):
        prefs = CarrierPreferences(avoid_codes=["fedex"])
        ground = {"carrier_code": "stamps_com", "name": "USPS Ground Advantage"}
        fedex = {"carrier_code": "fedex", "name": "FedEx"}

        # usps 30 + ground service 15 + Ground Advantage bonus 15
        assert CarrierSelector.score_carrier(ground, prefs) == 60
        assert CarrierSelector.score_carrier(fedex, prefs) == -10
