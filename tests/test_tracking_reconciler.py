"""
Tests for TrackingReconciler: order-id recovery, payload shape and push idempotence.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from conftest import make_order
from orderbridge.core.exceptions import (
    PermanentUpstreamError,
    ReconciliationUnresolvable,
    TransientNetworkError,
)
from orderbridge.services.duplicate_detector import IdempotentCreator
from orderbridge.services.order_mapper import OrderMapper
from orderbridge.services.sku_weights import SkuWeightTable
from orderbridge.services.tracking_reconciler import (
    TrackingReconciler,
    extract_weight,
    normalize_ship_date,
    shipment_line_items,
)

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_shipment(**overrides):
    shipment = {
        "shipment_id": "se-100",
        "external_shipment_id": "1234567",
        "shipment_number": "PO1",
        "tags": [{"name": "1234567"}],
        "tracking_number": "9400TRACK",
        "carrier_code": "stamps_com",
        "service_code": "usps_ground_advantage",
        "items": [{"sku": "A1", "quantity": 2, "external_order_item_id": "111"}],
        "packages": [{"weight": {"value": 4, "unit": "ounce"}}],
    }
    shipment.update(overrides)
    return shipment


@pytest.fixture
def label():
    return {
        "tracking_number": "9400TRACK",
        "carrier_code": "stamps_com",
        "service_code": "usps_ground_advantage",
        "ship_date": "2026-01-02T00:00:00Z",
        "shipment_cost": {"amount": 4.5, "currency": "usd"},
    }


@pytest.fixture
def shipstation(mock_shipstation, label):
    mock_shipstation.get_shipment = AsyncMock(side_effect=lambda shipment_id: make_shipment())
    mock_shipstation.get_label_for_shipment = AsyncMock(return_value=label)
    mock_shipstation.get_sales_order = AsyncMock(return_value={})
    mock_shipstation.get_labels_for_batch = AsyncMock(return_value=[])
    return mock_shipstation


@pytest.fixture
def rithum(mock_rithum):
    mock_rithum.find_order = AsyncMock(return_value=make_order(dscoOrderId="1234567"))
    return mock_rithum


@pytest.fixture
def reconciler(shipstation, rithum):
    return TrackingReconciler(shipstation, rithum)


class TestReconcile:
    @pytest.mark.asyncio
    async def test_pushes_tracking(self, reconciler, rithum):
        result = await reconciler.reconcile("se-100")

        assert result.pushed is True
        assert result.order_id == "1234567"
        assert result.to_dict()["request_id"] == "req-1"

        rithum.push_tracking.assert_awaited_once()
        payload = rithum.push_tracking.await_args.args[0][0]
        assert payload["dscoOrderId"] == "1234567"
        assert payload["poNumber"] == "PO1"

        shipment = payload["shipments"][0]
        assert shipment["trackingNumber"] == "9400TRACK"
        assert shipment["lineItems"] == [{"quantity": 2, "dscoItemId": "111", "sku": "A1"}]
        assert shipment["shipDate"].startswith("2026-01-02")
        assert shipment["shipCost"] == 4.5
        assert shipment["shipWeight"] == 4
        assert shipment["shipWeightUnits"] == "OZ"
        assert shipment["carrierManifestId"] == "USPS"
        assert shipment["shipCarrier"] == "USPS"
        assert shipment["shippingServiceLevelCode"] == "USGA"
        assert shipment["shipMethod"] == "Ground Advantage"

    @pytest.mark.asyncio
    async def test_second_push_is_skipped(self, reconciler, rithum):
        await reconciler.reconcile("se-100")
        again = await reconciler.reconcile("se-100")

        assert again.skipped is True
        assert again.reason == "Tracking number already pushed"
        assert rithum.push_tracking.await_count == 1

    @pytest.mark.asyncio
    async def test_tracking_already_on_order(self, reconciler, rithum):
        rithum.find_order = AsyncMock(return_value=make_order(
            dscoOrderId="1234567", packages=[{"trackingNumber": "9400TRACK"}],
        ))

        result = await reconciler.reconcile("se-100")

        assert result.skipped is True
        assert result.reason == "Tracking number already exists on order"
        rithum.push_tracking.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_lifecycle_skipped(self, reconciler, rithum):
        rithum.find_order = AsyncMock(return_value=make_order(dscoLifecycle="created"))

        result = await reconciler.reconcile("se-100")

        assert result.skipped is True
        assert result.reason == "Invalid lifecycle: created"
        rithum.push_tracking.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_completed_lifecycle_pushed(self, reconciler, rithum):
        rithum.find_order = AsyncMock(return_value=make_order(dscoLifecycle="completed"))

        assert (await reconciler.reconcile("se-100")).pushed is True

    @pytest.mark.asyncio
    async def test_order_missing_upstream(self, reconciler, rithum):
        rithum.find_order = AsyncMock(return_value=None)

        result = await reconciler.reconcile("se-100")

        assert result.skipped is True
        assert "not found" in result.reason

    @pytest.mark.asyncio
    async def test_no_tracking_yet(self, reconciler, shipstation):
        shipstation.get_shipment = AsyncMock(return_value=make_shipment(tracking_number=None))
        shipstation.get_label_for_shipment = AsyncMock(return_value=None)

        result = await reconciler.reconcile("se-100")

        assert result.skipped is True
        assert result.tracking_number is None

    @pytest.mark.asyncio
    async def test_label_lookup_failure_tolerated(self, reconciler, shipstation, rithum):
        shipstation.get_label_for_shipment = AsyncMock(
            side_effect=TransientNetworkError("timeout", service="shipstation")
        )
        shipstation.get_shipment = AsyncMock(return_value=make_shipment(shipping_amount={"amount": 3}))

        result = await reconciler.reconcile("se-100")

        assert result.pushed is True
        assert result.payload["shipments"][0]["shipCost"] == 3

    @pytest.mark.asyncio
    async def test_requested_level_code_kept(self, reconciler, rithum):
        rithum.find_order = AsyncMock(return_value=make_order(requestedShippingServiceLevelCode="UPSP"))

        result = await reconciler.reconcile("se-100")

        shipment = result.payload["shipments"][0]
        assert shipment["shippingServiceLevelCode"] == "UPSP"
        assert shipment["shipMethod"] == "UPS 2nd Day Air"


class TestResolveOrderId:
    @pytest.mark.asyncio
    async def test_tag_wins(self, reconciler):
        shipment = make_shipment(
            tags=[{"name": "Service: usps_ground_advantage"}, {"name": "dsco-55"}],
            customField2="999",
        )
        assert await reconciler.resolve_order_id(shipment) == "dsco-55"

    @pytest.mark.asyncio
    async def test_custom_field(self, reconciler):
        shipment = make_shipment(tags=[], customField2="999")
        assert await reconciler.resolve_order_id(shipment) == "999"

    @pytest.mark.asyncio
    async def test_sales_order_tags_then_custom_field(self, reconciler, shipstation):
        shipment = make_shipment(tags=[], sales_order_id="so-1", external_shipment_id="R1")

        shipstation.get_sales_order = AsyncMock(return_value={"tags": [{"name": "777"}], "customField2": "888"})
        assert await reconciler.resolve_order_id(shipment) == "777"

        shipstation.get_sales_order = AsyncMock(return_value={"tags": [], "customField2": "888"})
        assert await reconciler.resolve_order_id(shipment) == "888"

    @pytest.mark.asyncio
    async def test_sales_order_failure_falls_through(self, reconciler, shipstation):
        shipstation.get_sales_order = AsyncMock(
            side_effect=PermanentUpstreamError("gone", service="shipstation", status_code=404)
        )
        shipment = make_shipment(tags=[], sales_order_id="so-1", external_shipment_id="4242")

        assert await reconciler.resolve_order_id(shipment) == "4242"

    @pytest.mark.asyncio
    async def test_numeric_shipment_number(self, reconciler):
        shipment = make_shipment(tags=[], external_shipment_id="", shipment_number="5150")
        assert await reconciler.resolve_order_id(shipment) == "5150"

    @pytest.mark.asyncio
    async def test_unresolvable(self, reconciler):
        shipment = make_shipment(tags=[{"name": "gift"}], external_shipment_id=None, shipment_number="PO1")

        with pytest.raises(ReconciliationUnresolvable) as exc_info:
            await reconciler.resolve_order_id(shipment)

        assert exc_info.value.shipment_id == "se-100"
        assert exc_info.value.details["checked"] == [
            "tags", "customField2", "external_shipment_id", "shipment_number",
        ]

    @pytest.mark.asyncio
    async def test_non_numeric_external_id(self, reconciler):
        assert await reconciler.resolve_order_id(make_shipment(tags=[], external_shipment_id="R1")) == "R1"
        assert await reconciler.resolve_order_id(
            make_shipment(tags=[{"name": "gift"}, {"name": "R1"}], external_shipment_id="R1")
        ) == "R1"

    @pytest.mark.asyncio
    async def test_shipment_created_here_is_reconciled(self, reconciler, shipstation, rithum):
        mapper = OrderMapper(sku_table=SkuWeightTable(), default_item_weight_oz=2)
        request = mapper.map(make_order()).request
        created = await IdempotentCreator(shipstation).ensure_created(request)

        tags = [{"name": call.args[1]} for call in shipstation.add_tag.await_args_list]
        assert tags == [{"name": "R1"}]
        shipstation.get_shipment = AsyncMock(return_value=make_shipment(
            shipment_id=created.shipment_id,
            external_shipment_id=request.external_id,
            shipment_number=request.display_number,
            tags=tags,
        ))
        rithum.find_order = AsyncMock(return_value=make_order())

        result = await reconciler.reconcile(created.shipment_id)

        assert result.order_id == "R1"
        assert result.pushed is True
        rithum.find_order.assert_awaited_once_with("R1")


class TestWebhooks:
    @pytest.mark.asyncio
    async def test_shipment_id_from_resource_url(self, reconciler):
        body = {"resource_url": "https://api.shipstation.com/v2/shipments/se-100"}
        assert await reconciler.shipment_ids_from_webhook(body) == ["se-100"]

    @pytest.mark.asyncio
    async def test_shipment_id_from_query(self, reconciler):
        body = {"resource_url": "https://api.shipstation.com/v2/labels?shipment_id=se-5"}
        assert await reconciler.shipment_ids_from_webhook(body) == ["se-5"]

    @pytest.mark.asyncio
    async def test_shipment_ids_from_label_batch(self, reconciler, shipstation):
        shipstation.get_labels_for_batch = AsyncMock(return_value=[
            {"shipment_id": "se-1"}, {"shipment_id": "se-1"}, {"shipment_id": "se-2"}, {},
        ])
        body = {"resource_url": "https://api.shipstation.com/v2/labels?batch_id=b1"}

        assert await reconciler.shipment_ids_from_webhook(body) == ["se-1", "se-2"]
        shipstation.get_labels_for_batch.assert_awaited_once_with("b1")

    @pytest.mark.asyncio
    async def test_embedded_shipment(self, reconciler):
        assert await reconciler.shipment_ids_from_webhook({"data": {"shipment_id": "se-9"}}) == ["se-9"]
        assert await reconciler.shipment_ids_from_webhook({}) == []

    @pytest.mark.asyncio
    async def test_handle_shipped_webhook(self, reconciler):
        outcome = await reconciler.handle_webhook({
            "resource_type": "FULFILLMENT_SHIPPED_V2",
            "resource_url": "https://api.shipstation.com/v2/shipments/se-100",
        })

        assert outcome["event_type"] == "fulfillment_shipped_v2"
        assert outcome["handled"] is True
        assert outcome["results"][0]["pushed"] is True

    @pytest.mark.asyncio
    async def test_unknown_event_ignored(self, reconciler, rithum):
        outcome = await reconciler.handle_webhook({"resource_type": "ORDER_NOTIFY"})

        assert outcome["handled"] is False
        rithum.push_tracking.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_webhook_without_shipment(self, reconciler):
        outcome = await reconciler.handle_webhook({"resource_type": "LABEL_CREATED_V2"})

        assert outcome["handled"] is False
        assert outcome["error"] == "No shipment id in webhook payload"

    @pytest.mark.asyncio
    async def test_per_shipment_failures_reported(self, reconciler, shipstation):
        def get_shipment(shipment_id):
            if shipment_id == "se-1":
                return make_shipment(shipment_id="se-1", tags=[], external_shipment_id=None, shipment_number="X")
            if shipment_id == "se-2":
                raise TransientNetworkError("timeout", service="shipstation")
            return make_shipment(shipment_id=shipment_id, items=[{"quantity": 1}])

        shipstation.get_shipment = AsyncMock(side_effect=get_shipment)
        shipstation.get_labels_for_batch = AsyncMock(return_value=[
            {"shipment_id": "se-1"}, {"shipment_id": "se-2"}, {"shipment_id": "se-3"},
        ])
        reconciler.rithum.find_order = AsyncMock(return_value=make_order(lineItems=[{"quantity": 1}]))

        outcome = await reconciler.handle_webhook({
            "resource_type": "LABEL_CREATED_V2",
            "resource_url": "https://api.shipstation.com/v2/labels?batch_id=b1",
        })

        unresolved, unavailable, unidentified = outcome["results"]
        assert unresolved["unresolvable"] is True
        assert unresolved["code"] == "TRACKING_ORDER_UNRESOLVED"
        assert unavailable["code"] == "UPSTREAM_TRANSIENT"
        assert unidentified["code"] == "ORDER_VALIDATION_FAILED"
        assert not any(r["pushed"] for r in outcome["results"])


class TestHelpers:
    def test_ship_date_normalization(self):
        assert normalize_ship_date(None, now=NOW) == NOW.isoformat()
        assert normalize_ship_date("2099-01-01T00:00:00Z", now=NOW) == NOW.isoformat()
        assert normalize_ship_date("2026-01-02T00:00:00Z", now=NOW).startswith("2026-01-02")

    def test_weight_extraction(self):
        assert extract_weight({"total_weight": {"value": 2, "unit": "pound"}}) == (2.0, "LB")
        assert extract_weight({"weight": 0, "packages": [{"weight": {"amount": 3, "unit": "kg"}}]}) == (3.0, "KG")
        assert extract_weight({}) == (1.0, "OZ")

    def test_line_items_fall_back_to_order(self):
        order = {"lineItems": [
            {"sku": "A1", "quantity": 2},
            {"dscoItemId": "9", "acceptedQuantity": 3, "quantity": 5},
            {"quantity": 1},
        ]}
        assert shipment_line_items({"items": []}, order) == [
            {"quantity": 2, "sku": "A1"},
            {"quantity": 3, "dscoItemId": "9"},
        ]
        assert shipment_line_items({"items": [{"quantity": 1}]}, None) == []
