"""
Rithum <-> ShipStation carrier vocabulary.

Inbound: extracts the buyer's carrier request from a Rithum order and maps it
to the ShipStation carrier accounts that can satisfy it.
Outbound: maps the carrier/service a label was bought with back to the
shipping method codes Rithum accepts on a shipment.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from orderbridge.core.config import settings
from orderbridge.schemas.orders import CarrierPreference
from orderbridge.services.field_resolvers import (
    resolve_requested_carrier,
    resolve_requested_service_level,
    resolve_requested_ship_method,
)

logger = logging.getLogger(__name__)

# Shipping method codes Rithum accepts on a shipment
RITHUM_SHIPMENT_CODES = (
    "ASEE", "ASEP", "ASEL", "ASET", "FECG", "FEHD", "FESP",
    "ONCG", "PSDD", "UPCG", "UPSV", "UPSP", "USGA", "USPM",
)

SHIP_METHOD_NAMES = {
    "USGA": "Ground Advantage",
    "USPM": "Priority Mail",
    "FECG": "FedEx Ground",
    "FEHD": "FedEx 2Day",
    "FESP": "FedEx Express",
    "UPCG": "UPS Ground",
    "UPSV": "UPS Next Day Air",
    "UPSP": "UPS 2nd Day Air",
}

CARRIER_MANIFEST_IDS = {
    "usps": "USPS",
    "stamps_com": "USPS",
    "fedex": "FedEx",
    "fedex_uk": "FedEx",
    "ups": "UPS",
    "dhl_express": "DHL",
    "ontrac": "OnTrac",
}


@dataclass
class CarrierValidation:
    is_valid: bool
    satisfies_requirement: bool
    carrier_info: Optional[Dict[str, Any]]
    reason: str


def extract_carrier_requirements(order: Dict[str, Any]) -> CarrierPreference:
    """
    The requested* fields win over their plain counterparts. Only an explicit
    requestedShipCarrier or requestedShippingServiceLevelCode makes the
    request binding.
    """
    preference = CarrierPreference(
        requested_carrier=resolve_requested_carrier(order),
        service_code=resolve_requested_service_level(order),
        ship_method=resolve_requested_ship_method(order),
        is_required=bool(order.get("requestedShipCarrier") or order.get("requestedShippingServiceLevelCode")),
    )
    logger.debug(
        f"[CARRIER] Requirements: carrier={preference.requested_carrier or 'None'} "
        f"service={preference.service_code or 'None'} method={preference.ship_method or 'None'} "
        f"required={preference.is_required}"
    )
    return preference


class CarrierAccountMapper:
    """Maps carrier requirements to ShipStation carrier ids (account-specific)."""

    def __init__(
        self,
        carrier_map: Optional[Dict[str, List[str]]] = None,
        service_map: Optional[Dict[str, List[str]]] = None,
    ):
        self.carrier_map = {
            k.lower(): list(v) for k, v in (carrier_map or settings.CARRIER_ACCOUNT_MAP).items()
        }
        self.service_map = {
            k.upper(): list(v) for k, v in (service_map or settings.SERVICE_LEVEL_CARRIER_MAP).items()
        }

    def _first_id_for(self, *names: str) -> Optional[str]:
        for name in names:
            ids = self.carrier_map.get(name)
            if ids:
                return ids[0]
        return None

    def preferred_carrier_ids(self, preference: CarrierPreference) -> List[str]:
        """
        Service-level mapping first (most specific), then carrier-name
        mapping, then ship-method hints: ground adds USPS when no USPS
        account is listed, express/overnight moves FedEx and UPS to the front.
        """
        preferred: List[str] = []

        if preference.service_code:
            preferred.extend(self.service_map.get(preference.service_code, []))

        if preference.requested_carrier:
            for carrier_id in self.carrier_map.get(preference.requested_carrier, []):
                if carrier_id not in preferred:
                    preferred.append(carrier_id)

        method = preference.ship_method
        if method:
            usps_ids = self.carrier_map.get("usps", [])
            if "ground" in method:
                if usps_ids and not any(cid in usps_ids for cid in preferred):
                    preferred.append(usps_ids[0])
            elif "express" in method or "overnight" in method:
                fedex_id = self._first_id_for("fedex")
                ups_id = self._first_id_for("ups")
                if fedex_id and fedex_id not in preferred:
                    preferred.insert(0, fedex_id)
                if ups_id and ups_id not in preferred:
                    preferred.insert(1, ups_id)

        # De-duplicate, preserving order
        return list(dict.fromkeys(preferred))

    def validate_carrier_choice(
        self,
        carrier_id: str,
        preference: CarrierPreference,
        available_carriers: List[Dict[str, Any]],
    ) -> CarrierValidation:
        carrier_info = next((c for c in available_carriers if c.get("carrier_id") == carrier_id), None)
        if carrier_info is None:
            return CarrierValidation(False, False, None, f"Carrier {carrier_id} not found in available carriers")

        if carrier_info.get("is_active") is False:
            return CarrierValidation(False, False, carrier_info, f"Carrier {carrier_id} is not active")

        preferred = self.preferred_carrier_ids(preference)
        if not preferred:
            return CarrierValidation(True, True, carrier_info, "No specific carrier requested")
        if carrier_id in preferred:
            return CarrierValidation(True, True, carrier_info, f"Carrier {carrier_id} matches requested carrier")
        if preference.is_required:
            return CarrierValidation(
                True, False, carrier_info,
                f"Carrier {carrier_id} does not match required "
                f"{preference.requested_carrier or '-'}/{preference.service_code or '-'}",
            )
        return CarrierValidation(
            True, True, carrier_info,
            f"Carrier {carrier_id} differs from preference but fallback allowed",
        )


def map_to_rithum_shipping_method(carrier_code: Optional[str], service_code: Optional[str]) -> str:
    """Rithum shipment method code for a ShipStation carrier/service pair (default UPCG)."""
    carrier = (carrier_code or "").strip().lower()
    service = (service_code or "").strip().lower()

    upper_service = (service_code or "").strip().upper()
    if upper_service in RITHUM_SHIPMENT_CODES:
        return upper_service

    if carrier == "usps" or "stamps" in carrier or "usps" in service:
        if "priority" in service or "first" in service or "fcm" in service:
            return "USPM"
        return "USGA"

    if "ups" in carrier or "ups" in service:
        if "ground" in service:
            return "UPCG"
        if "next_day" in service or "nextday" in service or "overnight" in service:
            return "UPSV"
        if "2nd_day" in service or "2day" in service:
            return "UPSP"
        return "UPCG"

    if carrier in ("fedex", "fedex_uk") or "fedex" in service:
        if "ground" in service or "home_delivery" in service:
            return "FECG"
        if "2day" in service or "2_day" in service:
            return "FEHD"
        if "express" in service or "overnight" in service or "priority" in service:
            return "FESP"
        return "FECG"

    if carrier == "ontrac" or "ontrac" in service:
        return "ONCG"

    logger.warning(f"[TRACKING] Unknown carrier/service {carrier}/{service}, defaulting to UPCG")
    return "UPCG"


def carrier_manifest_id(carrier_name: Optional[str], carrier_code: Optional[str]) -> str:
    """Carrier name in the form Rithum expects on carrierManifestId / shipCarrier."""
    for candidate in (carrier_code, carrier_name):
        normalized = (candidate or "").strip().lower()
        if normalized in CARRIER_MANIFEST_IDS:
            return CARRIER_MANIFEST_IDS[normalized]
    return (carrier_name or carrier_code or "USPS").upper()
