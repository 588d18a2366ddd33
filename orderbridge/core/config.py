"""
Application configuration

Defaults are safe for local development. Production refuses to start
without upstream and downstream credentials (see validate_production_settings).
"""
import json
import logging
from typing import Dict, List, Optional, Union

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_EVENT_REASONS = ["create"]
DEFAULT_ADDRESS_FIELD_PRECEDENCE = ["shipping", "shipTo"]

# Upstream carrier name -> downstream carrier ids, in preference order
DEFAULT_CARRIER_ACCOUNT_MAP = {
    "generic": ["se-287927", "se-1015030"],
    "usps": ["se-287927", "se-1015030"],
    "stamps.com": ["se-287927", "se-1015030"],
    "stamps_com": ["se-287927", "se-1015030"],
    "ups": ["se-733076"],
    "fedex": ["se-283655"],
    "dhl": ["se-782807"],
}

# Upstream service-level code -> downstream carrier ids
DEFAULT_SERVICE_LEVEL_CARRIER_MAP = {
    "GCG": ["se-287927", "se-1015030"],
    "GCP": ["se-287927", "se-1015030"],
    "GCE": ["se-287927", "se-1015030"],
    "FEDEX_GROUND": ["se-283655"],
    "FEDEX_2_DAY": ["se-283655"],
    "FEDEX_OVERNIGHT": ["se-283655"],
    "UPS_GROUND": ["se-733076"],
    "UPS_2ND_DAY": ["se-733076"],
    "UPS_NEXT_DAY": ["se-733076"],
    "USPS_GROUND_ADVANTAGE": ["se-287927", "se-1015030"],
    "USPS_PRIORITY_MAIL": ["se-287927", "se-1015030"],
    "USPS_PRIORITY_MAIL_EXPRESS": ["se-287927", "se-1015030"],
}


def _parse_list(v, default: List[str]) -> List[str]:
    """Accept a JSON array or a comma-separated string."""
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        if not v.strip():
            return list(default)
        if v.startswith("["):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        return [item.strip() for item in v.split(",") if item.strip()]
    return v


class Settings(BaseSettings):
    APP_NAME: str = "orderbridge"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Rithum (upstream order source)
    RITHUM_API_URL: str = "https://api.dsco.io/api/v3"
    RITHUM_CLIENT_ID: str = ""
    RITHUM_CLIENT_SECRET: str = ""
    RITHUM_TOKEN_BUFFER_SECONDS: int = 60
    RITHUM_STREAM_ID: Optional[str] = None
    RITHUM_STREAM_DESCRIPTION: str = "Order stream for ShipStation integration - new orders"
    RITHUM_EVENT_REASONS: Union[str, List[str]] = DEFAULT_EVENT_REASONS
    RITHUM_LIFECYCLE_FILTER: Optional[str] = None

    @field_validator("RITHUM_EVENT_REASONS", mode="before")
    @classmethod
    def parse_event_reasons(cls, v):
        return _parse_list(v, DEFAULT_EVENT_REASONS)

    # ShipStation (downstream shipment platform)
    SHIPSTATION_API_URL: str = "https://api.shipstation.com"
    SHIPSTATION_API_KEY: str = ""
    SHIPSTATION_WAREHOUSE_ID: Optional[str] = None
    SHIPSTATION_SHIP_FROM_NAME: Optional[str] = None
    SHIPSTATION_SHIP_FROM_COMPANY: Optional[str] = None
    SHIPSTATION_SHIP_FROM_PHONE: Optional[str] = None
    SHIPSTATION_SHIP_FROM_ADDRESS1: Optional[str] = None
    SHIPSTATION_SHIP_FROM_ADDRESS2: Optional[str] = None
    SHIPSTATION_SHIP_FROM_CITY: Optional[str] = None
    SHIPSTATION_SHIP_FROM_STATE: Optional[str] = None
    SHIPSTATION_SHIP_FROM_POSTAL: Optional[str] = None
    SHIPSTATION_SHIP_FROM_COUNTRY: str = "US"

    # Outbound HTTP
    HTTP_TIMEOUT_SECONDS: float = 30.0
    HTTP_MAX_RETRIES: int = 3
    HTTP_RETRY_BASE_DELAY: float = 1.0

    # Order mapping
    SKIP_TEST_ORDERS: bool = False
    ADDRESS_FIELD_PRECEDENCE: Union[str, List[str]] = DEFAULT_ADDRESS_FIELD_PRECEDENCE
    SKU_WEIGHTS_PATH: Optional[str] = None
    DEFAULT_ITEM_WEIGHT_OZ: float = 2.0
    PLACEHOLDER_PHONE: str = "000-000-0000"

    @field_validator("ADDRESS_FIELD_PRECEDENCE", mode="before")
    @classmethod
    def parse_address_precedence(cls, v):
        return _parse_list(v, DEFAULT_ADDRESS_FIELD_PRECEDENCE)

    # Carrier selection
    FALLBACK_CARRIER_ID: str = "se-287927"
    CARRIER_CACHE_TTL_SECONDS: int = 300
    HIGH_VALUE_ORDER_THRESHOLD: float = 500.0
    CARRIER_ACCOUNT_MAP: Dict[str, List[str]] = DEFAULT_CARRIER_ACCOUNT_MAP
    SERVICE_LEVEL_CARRIER_MAP: Dict[str, List[str]] = DEFAULT_SERVICE_LEVEL_CARRIER_MAP

    # Event stream consumer
    DETAIL_FETCH_PARALLEL_LIMIT: int = 50
    DETAIL_FETCH_BATCH_SIZE: int = 10
    DETAIL_FETCH_BATCH_DELAY_SECONDS: float = 1.0

    @field_validator("DETAIL_FETCH_BATCH_SIZE", mode="before")
    @classmethod
    def clamp_batch_size(cls, v):
        if v is None or v == "":
            return 10
        return max(10, min(50, int(v)))

    # Checkpoint persistence
    CHECKPOINT_BACKEND: str = "file"  # file | database | memory
    CHECKPOINT_FILE_PATH: str = ".stream-checkpoints.json"
    CHECKPOINT_LOCK_TTL_SECONDS: int = 600
    DATABASE_URL: Optional[str] = None
    REDIS_URL: Optional[str] = None

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def convert_database_url(cls, v):
        """Convert postgres:// URLs to the asyncpg driver form."""
        if not v:
            return v
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql+asyncpg://", 1)
        elif v.startswith("postgresql://") and "+asyncpg" not in v:
            v = v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    @field_validator("CHECKPOINT_BACKEND", mode="before")
    @classmethod
    def normalize_backend(cls, v):
        v = (v or "file").strip().lower()
        if v not in ("file", "database", "memory"):
            raise ValueError(f"Unknown CHECKPOINT_BACKEND: {v}")
        return v

    # Background job
    ORDER_SYNC_ENABLED: bool = False
    ORDER_SYNC_INTERVAL_SECONDS: int = 300

    # Bearer token for the operator endpoints under /api/sync (open when unset)
    ADMIN_API_TOKEN: Optional[str] = None

    @model_validator(mode="after")
    def validate_production_settings(self):
        if self.ENVIRONMENT != "production":
            return self

        errors = []
        if not self.RITHUM_CLIENT_ID or not self.RITHUM_CLIENT_SECRET:
            errors.append("RITHUM_CLIENT_ID and RITHUM_CLIENT_SECRET are required")
        if not self.SHIPSTATION_API_KEY:
            errors.append("SHIPSTATION_API_KEY is required")
        if self.CHECKPOINT_BACKEND == "database" and not self.DATABASE_URL:
            errors.append("DATABASE_URL is required when CHECKPOINT_BACKEND=database")
        if self.CHECKPOINT_BACKEND == "memory":
            errors.append("CHECKPOINT_BACKEND=memory loses the stream position on restart")

        if errors:
            raise ValueError(
                "PRODUCTION CONFIGURATION ERRORS:\n" + "\n".join(f"  - {e}" for e in errors)
            )
        return self

    @property
    def ship_from(self) -> Optional[Dict[str, str]]:
        """ShipStation ship_from block, or None when the address is incomplete."""
        required = (
            self.SHIPSTATION_SHIP_FROM_NAME,
            self.SHIPSTATION_SHIP_FROM_ADDRESS1,
            self.SHIPSTATION_SHIP_FROM_CITY,
            self.SHIPSTATION_SHIP_FROM_STATE,
            self.SHIPSTATION_SHIP_FROM_POSTAL,
        )
        if not all(required):
            return None

        ship_from = {
            "name": self.SHIPSTATION_SHIP_FROM_NAME,
            "phone": self.SHIPSTATION_SHIP_FROM_PHONE or self.PLACEHOLDER_PHONE,
            "address_line1": self.SHIPSTATION_SHIP_FROM_ADDRESS1,
            "city_locality": self.SHIPSTATION_SHIP_FROM_CITY,
            "state_province": self.SHIPSTATION_SHIP_FROM_STATE,
            "postal_code": self.SHIPSTATION_SHIP_FROM_POSTAL,
            "country_code": self.SHIPSTATION_SHIP_FROM_COUNTRY,
        }
        if self.SHIPSTATION_SHIP_FROM_COMPANY:
            ship_from["company_name"] = self.SHIPSTATION_SHIP_FROM_COMPANY
        if self.SHIPSTATION_SHIP_FROM_ADDRESS2:
            ship_from["address_line2"] = self.SHIPSTATION_SHIP_FROM_ADDRESS2
        return ship_from

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
