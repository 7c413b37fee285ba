"""Custom exceptions for the checkout pipeline."""
import enum


class ReasonCode(str, enum.Enum):
    """Machine-readable reason attached to every surfaced error."""
    # Input shape
    INVALID_QUANTITY = 'INVALID_QUANTITY'
    INVALID_PAYLOAD = 'INVALID_PAYLOAD'
    IDEMPOTENCY_KEY_REUSED = 'IDEMPOTENCY_KEY_REUSED'

    # Lookups
    NOT_FOUND = 'NOT_FOUND'
    VARIANT_NOT_FOUND = 'VARIANT_NOT_FOUND'
    ADDRESS_NOT_FOUND = 'ADDRESS_NOT_FOUND'
    ORDER_NOT_FOUND = 'ORDER_NOT_FOUND'

    # Business rules
    VARIANT_INACTIVE = 'VARIANT_INACTIVE'
    EMPTY_CART = 'EMPTY_CART'
    COUPON_NOT_FOUND = 'COUPON_NOT_FOUND'
    COUPON_INACTIVE = 'COUPON_INACTIVE'
    COUPON_NOT_YET_VALID = 'COUPON_NOT_YET_VALID'
    COUPON_EXPIRED = 'COUPON_EXPIRED'
    COUPON_USAGE_LIMIT_REACHED = 'COUPON_USAGE_LIMIT_REACHED'
    COUPON_BELOW_MINIMUM_ORDER = 'COUPON_BELOW_MINIMUM_ORDER'
    COUPON_NO_LONGER_VALID = 'COUPON_NO_LONGER_VALID'
    INVALID_STATUS_TRANSITION = 'INVALID_STATUS_TRANSITION'

    # Conflicts
    INSUFFICIENT_STOCK = 'INSUFFICIENT_STOCK'
    CHECKOUT_IN_PROGRESS = 'CHECKOUT_IN_PROGRESS'
    CART_MODIFIED = 'CART_MODIFIED'
    RESERVATION_EXPIRED = 'RESERVATION_EXPIRED'

    # External collaborators
    PAYMENT_DECLINED = 'PAYMENT_DECLINED'
    PAYMENT_TIMEOUT = 'PAYMENT_TIMEOUT'
    PAYMENT_UNAVAILABLE = 'PAYMENT_UNAVAILABLE'

    # Storage
    COMMIT_FAILED = 'COMMIT_FAILED'

    # Anything else that aborted a checkout
    INTERNAL_ERROR = 'INTERNAL_ERROR'


class CheckoutError(Exception):
    """Base exception for all application errors."""
    def __init__(self, message="An internal error occurred", status_code=500, reason=None, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.reason = reason
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['status'] = 'error'
        if self.reason is not None:
            rv['reason'] = self.reason.value if isinstance(self.reason, ReasonCode) else str(self.reason)
        return rv


class ValidationError(CheckoutError):
    """Bad input shape (negative quantity, missing fields)."""
    def __init__(self, message, reason=ReasonCode.INVALID_PAYLOAD, payload=None):
        super().__init__(message, 400, reason, payload)


class NotFoundError(CheckoutError):
    """Exception raised when a resource is not found."""
    def __init__(self, message="Resource not found", reason=ReasonCode.NOT_FOUND, payload=None):
        super().__init__(message, 404, reason, payload)


class BusinessRuleViolation(CheckoutError):
    """Inactive variant, rejected coupon, empty cart and similar."""
    def __init__(self, message, reason, payload=None):
        super().__init__(message, 422, reason, payload)


class ResourceConflict(CheckoutError):
    """Lost a race for a shared resource (stock, coupon, cart, attempt)."""
    def __init__(self, message, reason, payload=None):
        super().__init__(message, 409, reason, payload)


class InsufficientStockError(ResourceConflict):
    """Raised when a reservation can not be satisfied."""
    def __init__(self, variant_id, requested, available=None):
        self.variant_id = variant_id
        self.requested = requested
        self.available = available
        message = f"Insufficient stock for variant {variant_id}: requested {requested}"
        if available is not None:
            message += f", available {available}"
        super().__init__(
            message,
            ReasonCode.INSUFFICIENT_STOCK,
            payload={'variant_id': variant_id},
        )


class ExternalFailure(CheckoutError):
    """Payment authorization declined or unreachable."""
    def __init__(self, message, reason=ReasonCode.PAYMENT_DECLINED, payload=None):
        super().__init__(message, 402, reason, payload)


class FatalError(CheckoutError):
    """Storage layer unavailable while committing."""
    def __init__(self, message="Order could not be committed", reason=ReasonCode.COMMIT_FAILED, payload=None):
        super().__init__(message, 503, reason, payload)
