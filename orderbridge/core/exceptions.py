"""
orderbridge Exception Hierarchy

Every error carries a code, message and details so a sync cycle summary or a
webhook response can report it without consulting raw logs.

Exception Hierarchy:
    OrderBridgeError
    ├── ValidationError
    ├── UpstreamError
    │   ├── TransientNetworkError
    │   └── PermanentUpstreamError
    │       ├── OrderNotFoundError
    │       └── StreamNotFoundError
    ├── ReconciliationUnresolvable
    └── CheckpointError
        ├── CheckpointConflictError
        └── CheckpointLockError

A duplicate shipment is not an error; it is reported as
CreationOutcome.EXISTING by the idempotent creator.
"""
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class OrderBridgeError(Exception):
    """
    Base exception for all orderbridge errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code
        details: Additional context for the cycle summary
        severity: P0-P3
    """

    default_code: str = "ORDERBRIDGE_ERROR"
    default_severity: str = "P2"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# ORDER ERRORS
# =============================================================================

class ValidationError(OrderBridgeError):
    """Order is structurally unprocessable. Skipped and reported, never retried."""
    default_code = "ORDER_VALIDATION_FAILED"
    default_severity = "P3"

    def __init__(
        self,
        message: str,
        order_id: Optional[str] = None,
        errors: Optional[List[str]] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "order_id": order_id,
            "errors": list(errors or []),
        })
        super().__init__(message, details=details, **kwargs)
        self.order_id = order_id
        self.errors = list(errors or [])


# =============================================================================
# UPSTREAM / DOWNSTREAM API ERRORS
# =============================================================================

class UpstreamError(OrderBridgeError):
    """Base exception for failed calls to Rithum or ShipStation."""
    default_code = "UPSTREAM_ERROR"
    default_severity = "P2"

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "service": service,
            "status_code": status_code,
            "url": url,
        })
        super().__init__(message, details=details, **kwargs)
        self.service = service
        self.status_code = status_code


class TransientNetworkError(UpstreamError):
    """Timeout, connection failure, 5xx or 429 after the retry budget is spent."""
    default_code = "UPSTREAM_TRANSIENT"
    default_severity = "P2"


class PermanentUpstreamError(UpstreamError):
    """Non-retryable rejection (4xx other than 429)."""
    default_code = "UPSTREAM_PERMANENT"
    default_severity = "P2"


class OrderNotFoundError(PermanentUpstreamError):
    """A specific order does not exist upstream (deleted before it was fetched)."""
    default_code = "ORDER_NOT_FOUND"
    default_severity = "P3"

    def __init__(self, message: str, order_id: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["order_id"] = order_id
        kwargs.setdefault("status_code", 404)
        super().__init__(message, details=details, **kwargs)
        self.order_id = order_id


class StreamNotFoundError(PermanentUpstreamError):
    """The event stream was deleted or rotated. An operator must re-initialize it."""
    default_code = "STREAM_NOT_FOUND"
    default_severity = "P0"

    def __init__(self, message: str, stream_id: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["stream_id"] = stream_id
        super().__init__(message, details=details, **kwargs)
        self.stream_id = stream_id


# =============================================================================
# TRACKING RECONCILIATION ERRORS
# =============================================================================

class ReconciliationUnresolvable(OrderBridgeError):
    """Shipment webhook with no discoverable upstream order id. Needs manual handling."""
    default_code = "TRACKING_ORDER_UNRESOLVED"
    default_severity = "P1"

    def __init__(
        self,
        message: str,
        shipment_id: Optional[str] = None,
        checked: Optional[List[str]] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "shipment_id": shipment_id,
            "checked": list(checked or []),
        })
        super().__init__(message, details=details, **kwargs)
        self.shipment_id = shipment_id


# =============================================================================
# CHECKPOINT ERRORS
# =============================================================================

class CheckpointError(OrderBridgeError):
    """Base exception for stream position persistence."""
    default_code = "CHECKPOINT_ERROR"
    default_severity = "P1"


class CheckpointConflictError(CheckpointError):
    """Compare-and-swap lost: another writer advanced the stream first."""
    default_code = "CHECKPOINT_CONFLICT"
    default_severity = "P1"

    def __init__(
        self,
        message: str,
        stream_id: Optional[str] = None,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "stream_id": stream_id,
            "expected": expected,
            "actual": actual,
        })
        super().__init__(message, details=details, **kwargs)
        self.stream_id = stream_id
        self.expected = expected
        self.actual = actual


class CheckpointLockError(CheckpointError):
    """The single-writer lock for a stream is held by another instance."""
    default_code = "CHECKPOINT_LOCKED"
    default_severity = "P2"

    def __init__(self, message: str, stream_id: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["stream_id"] = stream_id
        super().__init__(message, details=details, **kwargs)
        self.stream_id = stream_id


# =============================================================================
# EXCEPTION CATALOG
# =============================================================================

EXCEPTION_CATALOG = {
    "ORDER_VALIDATION_FAILED": {"class": ValidationError, "severity": "P3"},
    "UPSTREAM_TRANSIENT": {"class": TransientNetworkError, "severity": "P2"},
    "UPSTREAM_PERMANENT": {"class": PermanentUpstreamError, "severity": "P2"},
    "ORDER_NOT_FOUND": {"class": OrderNotFoundError, "severity": "P3"},
    "STREAM_NOT_FOUND": {"class": StreamNotFoundError, "severity": "P0"},
    "TRACKING_ORDER_UNRESOLVED": {"class": ReconciliationUnresolvable, "severity": "P1"},
    "CHECKPOINT_CONFLICT": {"class": CheckpointConflictError, "severity": "P1"},
    "CHECKPOINT_LOCKED": {"class": CheckpointLockError, "severity": "P2"},
}
