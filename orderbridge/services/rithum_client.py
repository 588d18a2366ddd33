"""
Rithum (DSCO) API v3 client.

OAuth2 client-credentials auth with a cached bearer token, order event
streams, order lookup and shipment submission. Transport concerns (retry,
backoff, 429, circuit breaker) live in ResilientHTTPClient.
"""
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from orderbridge.core.config import settings
from orderbridge.core.exceptions import (
    OrderNotFoundError,
    PermanentUpstreamError,
    StreamNotFoundError,
    UpstreamError,
)
from orderbridge.core.http_client import ResilientHTTPClient, build_retry_config
from orderbridge.schemas.orders import EventPage, StreamEvent

logger = logging.getLogger(__name__)

ORDER_INCLUDE = ("lineItems", "shipping", "shipTo", "billTo")


class RithumClient:
    """
    Usage:
        async with RithumClient() as rithum:
            stream = await rithum.get_stream(stream_id)
            page = await rithum.get_events(stream_id, partition_id, position)
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        token_buffer_seconds: Optional[int] = None,
    ):
        self.api_url = (api_url or settings.RITHUM_API_URL).rstrip("/")
        self.client_id = client_id if client_id is not None else settings.RITHUM_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else settings.RITHUM_CLIENT_SECRET
        self.token_buffer_seconds = (
            settings.RITHUM_TOKEN_BUFFER_SECONDS if token_buffer_seconds is None else token_buffer_seconds
        )

        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

        retry_config = build_retry_config(settings.HTTP_MAX_RETRIES, settings.HTTP_RETRY_BASE_DELAY)
        self.http = ResilientHTTPClient(
            service_name="rithum",
            base_url=self.api_url,
            retry_config=retry_config,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            default_headers={"Accept": "application/json"},
            auth_headers=self._auth_headers,
            on_unauthorized=self.refresh_access_token,
        )
        # Token requests must not carry the bearer header they are fetching
        self.token_http = ResilientHTTPClient(
            service_name="rithum-auth",
            base_url=self.api_url,
            retry_config=retry_config,
            timeout=15.0,
        )

    async def __aenter__(self):
        await self.http.init()
        await self.token_http.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.http.close()
        await self.token_http.close()

    # ----- Auth -----

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self.ensure_access_token()
        return {"Authorization": f"Bearer {token}"}

    def _token_valid(self) -> bool:
        return bool(self._access_token) and time.time() < self._token_expires_at

    async def ensure_access_token(self) -> str:
        if self._token_valid():
            return self._access_token
        async with self._token_lock:
            # Another caller may have fetched one while we waited
            if not self._token_valid():
                await self._fetch_access_token()
        return self._access_token

    async def refresh_access_token(self) -> None:
        """Replace a token the API rejected; concurrent 401s share one fetch."""
        rejected = self._access_token
        async with self._token_lock:
            if self._access_token != rejected and self._token_valid():
                return
            await self._fetch_access_token()

    async def _fetch_access_token(self) -> None:
        response = await self.token_http.post(
            "/oauth2/token",
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        data = response.json() or {}
        token = data.get("access_token")
        if not token:
            raise PermanentUpstreamError(
                "Rithum token response did not contain an access_token",
                service="rithum",
                status_code=response.status_code,
            )

        expires_in = int(data.get("expires_in") or 0)
        self._access_token = token
        self._token_expires_at = time.time() + max(0, expires_in - self.token_buffer_seconds)
        logger.info(f"[RITHUM] Access token obtained, expires in {expires_in}s")

    # ----- Streams -----

    async def create_order_stream(self, description: Optional[str] = None) -> Dict[str, Any]:
        response = await self.http.post("/stream", json={
            "objectType": "order",
            "description": description or settings.RITHUM_STREAM_DESCRIPTION,
            "query": {"queryType": "order"},
        })
        stream = response.json() or {}
        logger.info(f"[STREAM] Created order stream {stream.get('id')}")
        return stream

    async def get_stream(self, stream_id: str) -> Dict[str, Any]:
        """
        Raises:
            StreamNotFoundError: the stream no longer exists upstream
        """
        try:
            response = await self.http.get("/stream", params={"id": stream_id})
        except PermanentUpstreamError as e:
            if e.status_code == 404:
                raise StreamNotFoundError(
                    f"Stream {stream_id} not found", stream_id=stream_id, service="rithum", status_code=404
                ) from e
            raise

        data = response.json()
        if isinstance(data, list):
            if data:
                return data[0]
        elif isinstance(data, dict) and data.get("id"):
            return data

        raise StreamNotFoundError(f"Stream {stream_id} not found", stream_id=stream_id, service="rithum")

    async def get_events(self, stream_id: str, partition_id: Any, position: str) -> EventPage:
        """
        Events after ``position`` in one partition.

        Raises:
            StreamNotFoundError: the stream was deleted or rotated (404)
        """
        path = f"/stream/{stream_id}/{partition_id}/{quote(str(position), safe='')}"
        try:
            response = await self.http.get(path)
        except PermanentUpstreamError as e:
            if e.status_code == 404:
                raise StreamNotFoundError(
                    f"Stream {stream_id} partition {partition_id} not found",
                    stream_id=stream_id,
                    service="rithum",
                    status_code=404,
                ) from e
            raise

        data = response.json() or {}
        events = [StreamEvent.from_api(raw) for raw in data.get("events") or [] if isinstance(raw, dict)]
        return EventPage(events=events, next_position=data.get("position"))

    # ----- Orders -----

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        """
        Full order record by dscoOrderId.

        Raises:
            OrderNotFoundError: no such order (deleted upstream before it was fetched)
        """
        try:
            response = await self.http.get("/orders", params={
                "orderKey": "dscoOrderId",
                "value": order_id,
                "include": ",".join(ORDER_INCLUDE),
            })
        except PermanentUpstreamError as e:
            if e.status_code == 404:
                raise OrderNotFoundError(f"Order {order_id} not found", order_id=order_id, service="rithum") from e
            raise

        data = response.json()
        if isinstance(data, list):
            if not data:
                raise OrderNotFoundError(f"Order {order_id} not found", order_id=order_id, service="rithum")
            return data[0]
        if isinstance(data, dict) and isinstance(data.get("order"), dict):
            return data["order"]
        if isinstance(data, dict) and data:
            return data
        raise OrderNotFoundError(f"Order {order_id} not found", order_id=order_id, service="rithum")

    async def find_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        """get_order, or None when the order does not exist."""
        try:
            return await self.get_order(order_id)
        except OrderNotFoundError:
            return None

    # ----- Shipments -----

    async def push_tracking(self, shipments: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Submit per-order shipment payloads; Rithum validates them asynchronously."""
        response = await self.http.post("/order/shipment/batch/small", json=list(shipments))
        data = response.json() if response.content else {}
        if isinstance(data, dict) and data.get("requestId"):
            logger.info(f"[TRACKING] Rithum accepted shipment batch, requestId={data['requestId']}")
        return data if isinstance(data, dict) else {"response": data}

    async def health_check(self) -> Dict[str, Any]:
        try:
            await self.ensure_access_token()
            return {"status": "ok"}
        except UpstreamError as e:
            return {"status": "error", "error": e.message}
