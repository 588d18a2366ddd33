"""
ShipStation API v2 client.

v2 has no order-create endpoint: orders are created by POSTing a shipment
with create_sales_order=true. Either ship_from or warehouse_id must be set on
every new shipment; the account's first warehouse is the fallback.
"""
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from orderbridge.core.config import settings
from orderbridge.core.exceptions import PermanentUpstreamError
from orderbridge.core.http_client import ResilientHTTPClient, build_retry_config
from orderbridge.schemas.orders import NormalizedShipmentRequest

logger = logging.getLogger(__name__)


class ShipStationClient:
    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        warehouse_id: Optional[str] = None,
        ship_from: Optional[Dict[str, Any]] = None,
    ):
        self.api_url = (api_url or settings.SHIPSTATION_API_URL).rstrip("/")
        if self.api_url.endswith("/v2"):
            self.api_url = self.api_url[:-3]
        self.warehouse_id = warehouse_id or settings.SHIPSTATION_WAREHOUSE_ID
        self.ship_from = ship_from if ship_from is not None else settings.ship_from
        self._default_warehouse_id: Optional[str] = None

        self.http = ResilientHTTPClient(
            service_name="shipstation",
            base_url=self.api_url,
            retry_config=build_retry_config(settings.HTTP_MAX_RETRIES, settings.HTTP_RETRY_BASE_DELAY),
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            default_headers={
                "api-key": api_key if api_key is not None else settings.SHIPSTATION_API_KEY,
                "Content-Type": "application/json",
            },
        )

    async def __aenter__(self):
        await self.http.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.http.close()

    # ----- Carriers / warehouses -----

    async def get_carriers(self) -> List[Dict[str, Any]]:
        response = await self.http.get("/v2/carriers")
        return (response.json() or {}).get("carriers") or []

    async def get_warehouses(self) -> List[Dict[str, Any]]:
        response = await self.http.get("/v2/warehouses")
        return (response.json() or {}).get("warehouses") or []

    async def get_default_warehouse_id(self) -> Optional[str]:
        if self._default_warehouse_id is None:
            warehouses = await self.get_warehouses()
            if warehouses:
                self._default_warehouse_id = warehouses[0].get("warehouse_id")
        return self._default_warehouse_id

    # ----- Shipment creation -----

    def build_shipment(self, request: NormalizedShipmentRequest, carrier_id: Optional[str]) -> Dict[str, Any]:
        currency = request.currency.lower()
        shipment: Dict[str, Any] = {
            "create_sales_order": True,
            "external_shipment_id": request.external_id,
            "shipment_number": request.display_number or request.external_id,
            "ship_to": request.ship_to.to_payload(),
            "items": [item.to_payload(currency) for item in request.items],
            "amount_paid": {"amount": request.amount_paid, "currency": currency},
        }

        if request.shipping_paid is not None:
            shipment["shipping_paid"] = {"amount": request.shipping_paid, "currency": currency}
        if request.tax_paid is not None:
            shipment["tax_paid"] = {"amount": request.tax_paid, "currency": currency}
        if request.ship_by_date:
            shipment["ship_date"] = request.ship_by_date
        if request.is_gift is not None:
            shipment["is_gift"] = request.is_gift
        if request.notes_from_buyer:
            shipment["notes_from_buyer"] = request.notes_from_buyer
        if request.notes_for_gift:
            shipment["notes_for_gift"] = request.notes_for_gift

        tags = [{"name": tag} for tag in request.tags]
        if request.requested_shipment_service:
            shipment["requested_shipment_service"] = request.requested_shipment_service
            tags.append({"name": f"Service: {request.requested_shipment_service}"})
        if tags:
            shipment["tags"] = tags

        package: Dict[str, Any] = {"weight": {"value": request.weight_oz, "unit": "ounce"}}
        if request.package_code:
            package["package_code"] = request.package_code
        shipment["packages"] = [package]

        if request.service_code:
            shipment["service_code"] = request.service_code
        if carrier_id:
            shipment["carrier_id"] = carrier_id

        if self.ship_from:
            shipment["ship_from"] = dict(self.ship_from)
        elif self.warehouse_id:
            shipment["warehouse_id"] = self.warehouse_id
        return shipment

    async def create_shipment(self, request: NormalizedShipmentRequest, carrier_id: Optional[str]) -> Dict[str, Any]:
        """
        Create the shipment and its sales order.

        Raises:
            PermanentUpstreamError: rejected by ShipStation, or no origin available
        """
        shipment = self.build_shipment(request, carrier_id)

        if "ship_from" not in shipment and "warehouse_id" not in shipment:
            warehouse_id = await self.get_default_warehouse_id()
            if not warehouse_id:
                raise PermanentUpstreamError(
                    "ShipStation needs ship_from or warehouse_id: configure SHIPSTATION_SHIP_FROM_* "
                    "or SHIPSTATION_WAREHOUSE_ID",
                    service="shipstation",
                )
            shipment["warehouse_id"] = warehouse_id
            logger.info(f"[SHIPSTATION] Using default warehouse {warehouse_id}")

        response = await self.http.post("/v2/shipments", json={"shipments": [shipment]})
        created_list = (response.json() or {}).get("shipments") or []
        if not created_list:
            raise PermanentUpstreamError(
                f"Unexpected ShipStation response creating {request.external_id}",
                service="shipstation",
                status_code=response.status_code,
            )

        created = created_list[0]
        errors = created.get("errors") or []
        if errors:
            raise PermanentUpstreamError(
                f"ShipStation rejected shipment {request.external_id}: {errors}",
                service="shipstation",
                status_code=response.status_code,
                details={"errors": errors},
            )

        logger.info(
            f"[SHIPSTATION] Created shipment {created.get('shipment_id')} for {request.external_id}"
        )
        return created

    async def add_tag(self, shipment_id: str, tag_name: str) -> bool:
        """
        Attach a tag. Returns False when ShipStation reports it already present.
        """
        path = f"/v2/shipments/{shipment_id}/tags/{quote(str(tag_name), safe='')}"
        try:
            await self.http.post(path)
        except PermanentUpstreamError as e:
            if e.status_code in (400, 409):
                logger.debug(f"[SHIPSTATION] Tag {tag_name!r} may already exist on {shipment_id}")
                return False
            raise
        return True

    # ----- Lookups -----

    async def get_shipment(self, shipment_id: str) -> Dict[str, Any]:
        response = await self.http.get(f"/v2/shipments/{shipment_id}")
        return response.json() or {}

    async def get_shipment_by_external_id(self, external_id: str) -> Optional[Dict[str, Any]]:
        """Shipment with this external_shipment_id, or None."""
        try:
            response = await self.http.get(
                f"/v2/shipments/external_shipment_id/{quote(str(external_id), safe='')}"
            )
        except PermanentUpstreamError as e:
            if e.status_code == 404:
                return None
            raise
        data = response.json()
        return data or None

    async def find_shipments_by_number(self, shipment_number: str, page_size: int = 10) -> List[Dict[str, Any]]:
        response = await self.http.get(
            "/v2/shipments",
            params={"shipment_number": shipment_number, "page_size": page_size},
        )
        return (response.json() or {}).get("shipments") or []

    async def list_recent_shipments(self, page_size: int = 100) -> List[Dict[str, Any]]:
        response = await self.http.get(
            "/v2/shipments",
            params={"page_size": page_size, "sort_by": "created_at", "sort_dir": "desc"},
        )
        return (response.json() or {}).get("shipments") or []

    async def get_label_for_shipment(self, shipment_id: str) -> Optional[Dict[str, Any]]:
        response = await self.http.get("/v2/labels", params={"shipment_id": shipment_id, "page_size": 1})
        labels = (response.json() or {}).get("labels") or []
        return labels[0] if labels else None

    async def get_labels_for_batch(self, batch_id: str) -> List[Dict[str, Any]]:
        response = await self.http.get("/v2/labels", params={"batch_id": batch_id})
        return (response.json() or {}).get("labels") or []

    async def get_sales_order(self, sales_order_id: str) -> Dict[str, Any]:
        response = await self.http.get(f"/v2/orders/{sales_order_id}")
        return response.json() or {}
