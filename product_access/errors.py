"""
Entitlement error hierarchy.

Provides:
- EntitlementError: base for all entitlement failures
- InvalidTrialConfigurationError: trial metering misuse (not retried)
- StoreUnavailableError: entitlement store transport failure
- EntitlementNotFoundError / ProductNotFoundError: admin lookups that miss
- AdminPermissionError: actor lacks a staff role

A missing entitlement row is never an error for gate checks; it evaluates to
the ``locked`` decision.
"""

from typing import Optional


class EntitlementError(Exception):
    """Base exception for entitlement-related failures."""

    error_code = "ENTITLEMENT_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class InvalidTrialConfigurationError(EntitlementError):
    """Raised when usage metering or a trial grant does not match the trial type."""

    error_code = "INVALID_TRIAL_CONFIGURATION"

    def __init__(self, message: str, product_id: Optional[str] = None, field: Optional[str] = None):
        self.product_id = product_id
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict:
        d = super().to_dict()
        if self.product_id is not None:
            d["product_id"] = self.product_id
        if self.field is not None:
            d["field"] = self.field
        return d


class StoreUnavailableError(EntitlementError):
    """
    Raised when the entitlement store cannot be reached or a call times out.

    Gate checks translate this into a fail-closed decision; admin mutations
    let it propagate so the caller can decide whether to retry.
    """

    error_code = "ENTITLEMENT_STORE_UNAVAILABLE"

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Entitlement store unavailable during {operation}{detail}")


class EntitlementNotFoundError(EntitlementError):
    error_code = "ENTITLEMENT_NOT_FOUND"

    def __init__(self, user_id: str, product_id: str):
        self.user_id = user_id
        self.product_id = product_id
        super().__init__(f"No entitlement for user {user_id} and product {product_id}")


class ProductNotFoundError(EntitlementError):
    error_code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Unknown product: {product_id}")


class AdminPermissionError(EntitlementError):
    error_code = "ADMIN_PERMISSION_DENIED"
