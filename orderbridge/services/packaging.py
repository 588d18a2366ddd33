"""
Package and service code derivation.

Package codes come from ounce bands per carrier family; service codes from
keyword matching on the requested service level and ship method. A flat-rate
package forces USPS Priority Mail whatever the keywords say, because
ShipStation rejects flat-rate packaging on any other USPS service.
"""
import logging
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

USPS = "usps"
FEDEX = "fedex"
UPS = "ups"
DHL = "dhl"
OTHER = "other"

# (upper bound in ounces, package code); the last entry has no bound
USPS_FLAT_RATE_BANDS = (
    (8, "flat_rate_padded_envelope"),
    (16, "small_flat_rate_box"),
    (48, "medium_flat_rate_box"),
    (None, "large_flat_rate_box"),
)
USPS_BANDS = (
    (4, "thick_envelope"),
    (48, "package"),
    (None, "large_package"),
)
FEDEX_BANDS = (
    (8, "fedex_envelope"),
    (16, "fedex_small_box"),
    (32, "fedex_medium_box"),
    (None, "fedex_large_box"),
)
UPS_BANDS = (
    (8, "ups_express_pak"),
    (16, "ups_express_box_small"),
    (32, "ups_express_box"),
    (None, "ups_express_box_medium"),
)

# Requested upstream service-level code -> ShipStation service code
REQUESTED_SERVICE_MAP = {
    "GCG": "usps_ground_advantage",
    "GCP": "usps_priority_mail",
    "GCE": "usps_priority_mail_express",
    "FEDEX_GROUND": "fedex_ground",
    "FEDEX_2_DAY": "fedex_2_day",
    "FEDEX_OVERNIGHT": "fedex_overnight",
    "UPS_GROUND": "ups_ground",
    "UPS_2ND_DAY": "ups_2nd_day_air",
    "UPS_NEXT_DAY": "ups_next_day_air",
}


def carrier_family(carrier: Optional[str]) -> str:
    """
    Collapse a carrier name or ShipStation carrier_code into a family.

    Empty and "generic" carriers ship USPS.
    """
    name = (carrier or "").strip().lower()
    if not name or "usps" in name or "postal" in name or "generic" in name or "stamps" in name:
        return USPS
    if "fedex" in name or "fed ex" in name:
        return FEDEX
    if "ups" in name:
        return UPS
    if "dhl" in name:
        return DHL
    return OTHER


def is_priority_or_flat_rate(service_level: str, method: str) -> bool:
    service_level = (service_level or "").strip().lower()
    method = (method or "").strip().lower()
    return service_level == "pm" or "priority" in method or "flat rate" in method


def _band(weight_oz: float, bands) -> str:
    for limit, code in bands:
        if limit is None or weight_oz <= limit:
            return code
    return bands[-1][1]


def select_package_code(
    weight_oz: Optional[float],
    carrier: Optional[str],
    service_level: str = "",
    method: str = "",
) -> str:
    if not weight_oz or weight_oz <= 0:
        return "package"

    family = carrier_family(carrier)
    if family == USPS:
        if is_priority_or_flat_rate(service_level, method):
            return _band(weight_oz, USPS_FLAT_RATE_BANDS)
        return _band(weight_oz, USPS_BANDS)
    if family == FEDEX:
        return _band(weight_oz, FEDEX_BANDS)
    if family == UPS:
        return _band(weight_oz, UPS_BANDS)
    return "package"


def _fedex_service(service_level: str, method: str) -> str:
    if "ground" in method or "gnd" in service_level or "ground" in service_level:
        return "fedex_ground"
    if "home delivery" in method:
        return "fedex_home_delivery"
    if "2day" in method or "2 day" in method:
        return "fedex_2day_am" if "am" in method.split() else "fedex_2day"
    if "overnight" in method or "next day" in method:
        if "first" in method or "early" in method:
            return "fedex_first_overnight"
        if "priority" in method:
            return "fedex_priority_overnight"
        return "fedex_standard_overnight"
    if "express" in method:
        return "fedex_express_saver"
    return "fedex_ground"


def _ups_service(method: str) -> str:
    if "ground" in method:
        return "ups_ground"
    if "3 day" in method or "3day" in method or "three day" in method:
        return "ups_3_day_select"
    if "2nd day" in method or "2 day" in method or "two day" in method:
        return "ups_2nd_day_air_am" if "am" in method.split() else "ups_2nd_day_air"
    if "next day" in method or "overnight" in method:
        if "early" in method or "am" in method.split():
            return "ups_next_day_air_early_am"
        if "saver" in method:
            return "ups_next_day_air_saver"
        return "ups_next_day_air"
    return "ups_ground"


def select_service_code(
    carrier: Optional[str],
    service_level: str = "",
    method: str = "",
    package_code: Optional[str] = None,
) -> Optional[str]:
    """ShipStation service code for a carrier, or None to let ShipStation choose."""
    service_level = (service_level or "").strip().lower()
    method = (method or "").strip().lower()
    family = carrier_family(carrier)

    if family == USPS:
        if package_code and "flat_rate" in package_code:
            return "usps_priority_mail"
        if service_level == "gcg" or "ground" in method:
            return "usps_ground_advantage"
        if service_level == "pm" or "priority" in method:
            return "usps_priority_mail"
        return "usps_ground_advantage"
    if family == FEDEX:
        return _fedex_service(service_level, method)
    if family == UPS:
        return _ups_service(method)
    if family == DHL:
        return "dhl_express_worldwide"
    return None


def derive_package_and_service(
    weight_oz: Optional[float],
    carrier: Optional[str],
    service_level: str = "",
    method: str = "",
) -> Tuple[str, Optional[str]]:
    package_code = select_package_code(weight_oz, carrier, service_level, method)
    service_code = select_service_code(carrier, service_level, method, package_code)
    return package_code, service_code


def map_requested_service(service_level: str, carrier: str = "", method: str = "") -> Optional[str]:
    """
    Display value for the service the buyer asked for.

    Known service-level codes map directly; otherwise "{carrier}_{method}",
    with generic ground read as USPS Ground Advantage.
    """
    if not service_level:
        return None
    mapped = REQUESTED_SERVICE_MAP.get(service_level.strip().upper())
    if mapped:
        return mapped
    carrier_name = (carrier or "generic").strip().lower()
    method_name = (method or "ground").strip().lower()
    if carrier_name == "generic" and method_name == "ground":
        return "usps_ground_advantage"
    return f"{carrier_name}_{method_name}"
