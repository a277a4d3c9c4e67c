from __future__ import annotations

from typing import Any, Dict, Optional


class StorefrontError(Exception):
    """Base class for user-facing order failures.

    `reason` is the stable machine-readable code, `message` the human text and
    `vendor` the panel's own text when the failure came from upstream.
    """

    reason = "StorefrontError"
    status_code = 500

    def __init__(self, message: str, *, vendor: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.vendor = vendor

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"reason": self.reason, "message": self.message}
        if self.vendor is not None:
            body["vendor"] = self.vendor
        return body


class InvalidInput(StorefrontError):
    reason = "InvalidInput"
    status_code = 400


class UserNotFound(StorefrontError):
    reason = "UserNotFound"
    status_code = 401


class ServiceNotFound(StorefrontError):
    reason = "ServiceNotFound"
    status_code = 404


class InvalidServiceRate(StorefrontError):
    reason = "InvalidServiceRate"
    status_code = 400


class QuantityOutOfRange(StorefrontError):
    reason = "QuantityOutOfRange"
    status_code = 400

    def __init__(self, minimum: int, maximum: int) -> None:
        super().__init__(f"Quantity must be between {minimum} and {maximum}")
        self.minimum = minimum
        self.maximum = maximum


class InsufficientBalance(StorefrontError):
    reason = "InsufficientBalance"
    status_code = 400


class VendorRequestFailed(StorefrontError):
    reason = "VendorRequestFailed"
    status_code = 502


class StorageFailure(StorefrontError):
    reason = "StorageFailure"
    status_code = 500

    def __init__(self, message: str, *, api_order_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.api_order_id = api_order_id

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.api_order_id is not None:
            body["apiOrderId"] = self.api_order_id
        return body


# -----------------------------
# Vendor gateway failures
# -----------------------------
class VendorError(Exception):
    """Raised by the panel adapter; `vendor_message` is the panel's own text."""

    def __init__(self, vendor_message: str, payload: Any = None) -> None:
        super().__init__(vendor_message)
        self.vendor_message = vendor_message
        self.payload = payload


class VendorProtocolError(VendorError):
    pass


class VendorRejected(VendorError):
    pass


class VendorTransportError(VendorError):
    pass
