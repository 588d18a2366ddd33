"""
Pytest configuration and fixtures for orderbridge tests.
"""
import json
import os
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

# Set test environment before importing orderbridge modules
os.environ["ENVIRONMENT"] = "development"
os.environ["RITHUM_API_URL"] = "https://rithum.test/api/v3"
os.environ["RITHUM_CLIENT_ID"] = "test-client"
os.environ["RITHUM_CLIENT_SECRET"] = "test-secret"
os.environ["SHIPSTATION_API_URL"] = "https://shipstation.test"
os.environ["SHIPSTATION_API_KEY"] = "test-api-key"
os.environ["HTTP_MAX_RETRIES"] = "1"
os.environ["HTTP_RETRY_BASE_DELAY"] = "0"
os.environ["DETAIL_FETCH_BATCH_DELAY_SECONDS"] = "0"
os.environ["CHECKPOINT_BACKEND"] = "memory"
os.environ.pop("REDIS_URL", None)
os.environ.pop("DATABASE_URL", None)
os.environ.pop("RITHUM_STREAM_ID", None)
os.environ.pop("ADMIN_API_TOKEN", None)

from orderbridge.schemas.orders import EventPage, StreamEvent  # noqa: E402
from orderbridge.services.sku_weights import SkuWeightTable  # noqa: E402


def make_order(**overrides) -> Dict[str, Any]:
    """Acknowledged Rithum order with one line item; override any top-level field."""
    order = {
        "dscoOrderId": "R1",
        "poNumber": "PO1",
        "dscoLifecycle": "acknowledged",
        "shipping": {
            "firstName": "Jane",
            "lastName": "Doe",
            "address1": "1 Main St",
            "city": "X",
            "state": "CA",
            "postal": "90001",
        },
        "lineItems": [{"sku": "A1", "quantity": 2, "expectedCost": 5}],
    }
    order.update(overrides)
    return order


def make_event(event_id: str, order_id: Optional[str], reason: str = "create", payload=None) -> StreamEvent:
    return StreamEvent(
        id=event_id,
        object_id=order_id,
        object_type="order",
        event_reasons=[reason],
        payload=payload,
    )


class FakeLock:
    """StreamLock stand-in that records acquire/release."""

    def __init__(self, stream_id: str, available: bool = True):
        self.stream_id = stream_id
        self.available = available
        self.released = False

    async def acquire(self) -> bool:
        return self.available

    async def release(self) -> None:
        self.released = True


@pytest.fixture
def sku_table() -> SkuWeightTable:
    return SkuWeightTable.from_dict({
        "defaultWeight": {"value": 3, "unit": "oz"},
        "skus": {"HEAVY-1": {"weight": 1, "unit": "lb"}},
    })


@pytest.fixture
def sku_weights_file(tmp_path) -> str:
    path = tmp_path / "sku-weights.json"
    path.write_text(json.dumps({
        "defaultWeight": {"value": 4, "unit": "ounces"},
        "skus": {"BOOK-1": {"weight": 0.5, "unit": "kg"}},
    }))
    return str(path)


@pytest.fixture
def sample_order() -> Dict[str, Any]:
    return make_order()


@pytest.fixture
def carriers() -> List[Dict[str, Any]]:
    """ShipStation carrier list (abridged)."""
    return [
        {
            "carrier_id": "se-287927",
            "carrier_code": "stamps_com",
            "friendly_name": "USPS",
            "is_active": True,
            "services": [
                {"service_code": "usps_ground_advantage", "name": "USPS Ground Advantage", "domestic": True, "international": False},
                {"service_code": "usps_priority_mail", "name": "USPS Priority Mail", "domestic": True, "international": False},
            ],
        },
        {
            "carrier_id": "se-733076",
            "carrier_code": "ups",
            "friendly_name": "UPS",
            "is_active": True,
            "services": [
                {"service_code": "ups_ground", "name": "UPS Ground", "domestic": True, "international": False},
                {"service_code": "ups_next_day_air", "name": "UPS Next Day Air", "domestic": True, "international": False},
            ],
        },
        {
            "carrier_id": "se-283655",
            "carrier_code": "fedex",
            "friendly_name": "FedEx",
            "is_active": True,
            "services": [
                {"service_code": "fedex_ground", "name": "FedEx Ground", "domestic": True, "international": False},
                {"service_code": "fedex_international_priority", "name": "FedEx International Priority", "domestic": False, "international": True},
            ],
        },
        {
            "carrier_id": "se-999999",
            "carrier_code": "ontrac",
            "friendly_name": "OnTrac",
            "is_active": False,
            "services": [],
        },
    ]


@pytest.fixture
def mock_shipstation(carriers) -> AsyncMock:
    """ShipStation client with an empty account: nothing exists yet."""
    client = AsyncMock()
    client.get_carriers = AsyncMock(return_value=carriers)
    client.get_shipment_by_external_id = AsyncMock(return_value=None)
    client.find_shipments_by_number = AsyncMock(return_value=[])
    client.list_recent_shipments = AsyncMock(return_value=[])
    client.create_shipment = AsyncMock(return_value={"shipment_id": "se-100", "external_shipment_id": "R1"})
    client.add_tag = AsyncMock(return_value=True)
    client.close = AsyncMock()
    return client


@pytest.fixture
def mock_rithum() -> AsyncMock:
    client = AsyncMock()
    client.get_stream = AsyncMock(return_value={
        "id": "stream-1",
        "partitions": [{"partitionId": 0, "position": "0"}],
    })
    client.get_events = AsyncMock(return_value=EventPage(events=[], next_position=None))
    client.get_order = AsyncMock(return_value=make_order())
    client.push_tracking = AsyncMock(return_value={"status": "SUCCESS", "requestId": "req-1"})
    client.close = AsyncMock()
    return client
