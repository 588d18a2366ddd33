"""
Carrier selection for new shipments.

Usage:
    selector = CarrierSelector(shipstation_client)
    carrier_id = await selector.select(request, request.ship_to, request.carrier_preference)
    await selector.apply_packaging(request, carrier_id)

A required upstream carrier that is present and active wins outright.
Everything else goes through the scoring pass. Carrier-list failures never
block creation: the configured fallback carrier is returned instead.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from orderbridge.core.config import settings
from orderbridge.core.exceptions import UpstreamError
from orderbridge.schemas.orders import CarrierPreference, MappedAddress, NormalizedShipmentRequest
from orderbridge.services.carrier_mapper import CarrierAccountMapper
from orderbridge.services.packaging import carrier_family, derive_package_and_service

logger = logging.getLogger(__name__)

DEFAULT_PREFERRED_CODES = ["usps", "ups", "fedex"]
DEFAULT_PREFERRED_SERVICES = ["ground", "standard", "first_class"]


@dataclass
class CarrierPreferences:
    """Ranked scoring inputs; earlier entries weigh more."""
    preferred_codes: List[str] = field(default_factory=lambda: list(DEFAULT_PREFERRED_CODES))
    preferred_services: List[str] = field(default_factory=lambda: list(DEFAULT_PREFERRED_SERVICES))
    avoid_codes: List[str] = field(default_factory=list)


class CarrierSelector:
    def __init__(
        self,
        shipstation_client,
        account_mapper: Optional[CarrierAccountMapper] = None,
        cache_ttl_seconds: Optional[int] = None,
        fallback_carrier_id: Optional[str] = None,
        high_value_threshold: Optional[float] = None,
    ):
        self.shipstation = shipstation_client
        self.account_mapper = account_mapper or CarrierAccountMapper()
        self.cache_ttl_seconds = (
            settings.CARRIER_CACHE_TTL_SECONDS if cache_ttl_seconds is None else cache_ttl_seconds
        )
        self.fallback_carrier_id = fallback_carrier_id or settings.FALLBACK_CARRIER_ID
        self.high_value_threshold = (
            settings.HIGH_VALUE_ORDER_THRESHOLD if high_value_threshold is None else high_value_threshold
        )

        self._carriers_cache: Optional[List[Dict[str, Any]]] = None
        self._cache_expiry: float = 0.0
        self._refresh_lock = asyncio.Lock()

    # ----- Carrier list cache -----

    def _cache_valid(self) -> bool:
        return self._carriers_cache is not None and time.monotonic() < self._cache_expiry

    async def get_available_carriers(self) -> List[Dict[str, Any]]:
        """
        Cached carrier list. Concurrent callers share a single refresh.

        Raises:
            UpstreamError: the carrier list could not be fetched
        """
        if self._cache_valid():
            return self._carriers_cache

        async with self._refresh_lock:
            # Another caller may have refreshed while we waited
            if self._cache_valid():
                return self._carriers_cache

            logger.info("[CARRIER] Fetching available carriers from ShipStation")
            carriers = await self.shipstation.get_carriers()
            self._carriers_cache = carriers or []
            self._cache_expiry = time.monotonic() + self.cache_ttl_seconds
            logger.info(f"[CARRIER] Cached {len(self._carriers_cache)} carriers")
            return self._carriers_cache

    def clear_cache(self) -> None:
        self._carriers_cache = None
        self._cache_expiry = 0.0
        logger.info("[CARRIER] Carrier cache cleared")

    # ----- Selection -----

    async def select(
        self,
        request: Optional[NormalizedShipmentRequest],
        ship_to: Optional[MappedAddress] = None,
        preference: Optional[CarrierPreference] = None,
    ) -> str:
        """Carrier id for the shipment. Never None."""
        try:
            carriers = await self.get_available_carriers()
        except UpstreamError as e:
            logger.error(f"[CARRIER] Failed to fetch carriers: {e.message}")
            return self.get_fallback_carrier()

        if not carriers:
            logger.warning("[CARRIER] No carriers available")
            return self.get_fallback_carrier()

        if preference is not None:
            for carrier_id in self.account_mapper.preferred_carrier_ids(preference):
                validation = self.account_mapper.validate_carrier_choice(carrier_id, preference, carriers)
                if validation.is_valid and validation.satisfies_requirement:
                    logger.info(f"[CARRIER] Selected preferred carrier {carrier_id}: {validation.reason}")
                    return carrier_id
                if not validation.is_valid:
                    logger.info(f"[CARRIER] Preferred carrier {carrier_id} unavailable: {validation.reason}")
            if preference.is_required:
                logger.warning(
                    "[CARRIER] No required carrier is available, falling back to scored selection"
                )

        active = [
            c for c in carriers
            if c.get("is_active") is not False and c.get("carrier_id") and c.get("carrier_code")
        ]
        preferences = self.get_carrier_preferences(request, ship_to, preference)
        best = self.find_best_carrier(active, preferences)
        if best is None:
            logger.warning("[CARRIER] No suitable active carrier found")
            return self.get_fallback_carrier()

        if preference is not None and preference.is_required:
            validation = self.account_mapper.validate_carrier_choice(best["carrier_id"], preference, carriers)
            if not validation.satisfies_requirement:
                logger.warning(f"[CARRIER] Selected carrier may not satisfy requirement: {validation.reason}")

        logger.info(
            f"[CARRIER] Selected {best['carrier_id']} ({best['carrier_code']}) score={best['score']}"
        )
        return best["carrier_id"]

    def get_carrier_preferences(
        self,
        request: Optional[NormalizedShipmentRequest],
        ship_to: Optional[MappedAddress],
        preference: Optional[CarrierPreference],
    ) -> CarrierPreferences:
        prefs = CarrierPreferences()

        if preference and preference.requested_carrier:
            requested = preference.requested_carrier.lower()
            if requested in ("usps", "generic"):
                prefs.preferred_codes = ["usps", "ups", "fedex"]
            elif requested == "ups":
                prefs.preferred_codes = ["ups", "usps", "fedex"]
            elif requested == "fedex":
                prefs.preferred_codes = ["fedex", "ups", "usps"]

        if preference and preference.service_code:
            service_code = preference.service_code.upper()
            if "EXPRESS" in service_code or "OVERNIGHT" in service_code:
                prefs.preferred_services = ["express", "overnight", "priority"]
                prefs.preferred_codes = ["fedex", "ups", "usps"]
            elif "GROUND" in service_code:
                prefs.preferred_services = ["ground", "standard"]
                if prefs.preferred_codes[0] != "usps":
                    prefs.preferred_codes = ["usps"] + [c for c in prefs.preferred_codes if c != "usps"]

        if ship_to is not None and ship_to.country_code and ship_to.country_code.upper() != "US":
            prefs.preferred_codes = ["usps", "fedex", "ups"]
            prefs.preferred_services = ["international", "priority", "express"]

        order_total = request.amount_paid if request is not None else 0
        if order_total > self.high_value_threshold and not (preference and preference.is_required):
            prefs.preferred_codes = ["ups", "fedex", "usps"]

        return prefs

    @staticmethod
    def score_carrier(carrier: Dict[str, Any], preferences: CarrierPreferences) -> int:
        score = 0
        code = (carrier.get("carrier_code") or "").lower()
        family = carrier_family(code)
        name = (
            carrier.get("name") or carrier.get("service_name") or carrier.get("friendly_name") or ""
        ).lower()

        codes = preferences.preferred_codes
        for index, pref in enumerate(codes):
            if pref in code or pref == family:
                score += (len(codes) - index) * 10

        services = preferences.preferred_services
        for index, pref in enumerate(services):
            if pref in name:
                score += (len(services) - index) * 5

        for avoid in preferences.avoid_codes:
            if avoid in code:
                score -= 20

        # USPS has several accounts; prefer Ground Advantage, then First Class
        if family == "usps":
            if "ground" in name or "advantage" in name:
                score += 15
            elif "first" in name and "class" in name:
                score += 10

        return score

    def find_best_carrier(
        self,
        active_carriers: List[Dict[str, Any]],
        preferences: CarrierPreferences,
    ) -> Optional[Dict[str, Any]]:
        scored = [
            {**carrier, "score": self.score_carrier(carrier, preferences)}
            for carrier in active_carriers
        ]
        # sorted() is stable: ties keep carrier list order
        scored = sorted(scored, key=lambda c: c["score"], reverse=True)

        for rank, carrier in enumerate(scored[:3], start=1):
            logger.debug(
                f"[CARRIER] Candidate {rank}: {carrier['carrier_id']} ({carrier['carrier_code']}) "
                f"score={carrier['score']}"
            )
        return scored[0] if scored else None

    def get_fallback_carrier(self) -> str:
        logger.warning(f"[CARRIER] Using fallback carrier {self.fallback_carrier_id}")
        return self.fallback_carrier_id

    # ----- Lookups -----

    async def validate_carrier(self, carrier_id: str) -> bool:
        """True when the carrier exists and is active."""
        try:
            carriers = await self.get_available_carriers()
        except UpstreamError as e:
            logger.error(f"[CARRIER] Error validating carrier {carrier_id}: {e.message}")
            return False

        carrier = next((c for c in carriers if c.get("carrier_id") == carrier_id), None)
        if carrier is None:
            logger.warning(f"[CARRIER] Carrier {carrier_id} not found")
            return False
        if carrier.get("is_active") is False:
            logger.warning(f"[CARRIER] Carrier {carrier_id} is not active")
            return False
        return True

    async def get_carrier_info(self, carrier_id: str) -> Optional[Dict[str, Any]]:
        try:
            carriers = await self.get_available_carriers()
        except UpstreamError as e:
            logger.error(f"[CARRIER] Error getting carrier info for {carrier_id}: {e.message}")
            return None
        return next((c for c in carriers if c.get("carrier_id") == carrier_id), None)

    # ----- Package/service derivation -----

    async def apply_packaging(self, request: NormalizedShipmentRequest, carrier_id: str) -> None:
        """
        Re-derive package and service codes for the carrier actually selected.

        Falls back to the requested carrier's family when the selected
        carrier's code is unknown.
        """
        info = await self.get_carrier_info(carrier_id)
        carrier_code = (info or {}).get("carrier_code") or request.carrier_preference.requested_carrier
        preference = request.carrier_preference

        package_code, service_code = derive_package_and_service(
            request.weight_oz,
            carrier_code,
            preference.service_code,
            preference.ship_method,
        )
        request.package_code = package_code
        request.service_code = service_code
        request.carrier_family = carrier_family(carrier_code)
        logger.debug(
            f"[CARRIER] {request.external_id}: carrier={carrier_id} ({carrier_code}) "
            f"package={package_code} service={service_code}"
        )
