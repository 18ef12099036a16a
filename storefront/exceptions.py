"""Error taxonomy shared by the services and the HTTP layer."""
from __future__ import annotations

from typing import Any, Dict, Optional


class StorefrontError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        payload.update(self.details)
        return payload


class ValidationError(StorefrontError, ValueError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(StorefrontError, LookupError):
    status_code = 404
    code = "NOT_FOUND"


class DropEndedError(StorefrontError):
    status_code = 400
    code = "DROP_ENDED"

    def __init__(self, message: str = "This drop has ended") -> None:
        super().__init__(message)


class InsufficientInventoryError(StorefrontError):
    status_code = 409
    code = "INSUFFICIENT_INVENTORY"

    def __init__(
        self,
        available: int,
        requested: int,
        variant_id: Optional[int] = None,
        message: str = "Not enough inventory available",
    ) -> None:
        details: Dict[str, Any] = {"available": max(0, available), "requested": requested}
        if variant_id is not None:
            details["variantId"] = variant_id
        super().__init__(message, details)
        self.available = max(0, available)
        self.requested = requested
        self.variant_id = variant_id


class TransactionFailure(StorefrontError):
    """Commit failed and was rolled back; nothing persisted, safe for the client to retry."""

    status_code = 500
    code = "TRANSACTION_FAILED"


class PaymentError(StorefrontError):
    status_code = 400
    code = "PAYMENT_ERROR"

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code
