"""Exceptions raised by the store engines and mapped to HTTP responses in main."""

from typing import Dict, Optional


class StoreError(Exception):
    """Base exception for all store errors."""

    status_code = 500

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        self.message = message
        self.errors = errors
        super().__init__(message)


class BadRequestError(StoreError):
    status_code = 400


class ValidationFailedError(BadRequestError):
    """Raised with field-level detail, e.g. {"discount_value": "..."}."""

    def __init__(self, errors: Dict[str, str]):
        message = "; ".join(f"{field}: {msg}" for field, msg in errors.items())
        super().__init__(message, errors=errors)


class InsufficientStockError(BadRequestError):
    """Raised when a product cannot cover the requested quantity."""

    def __init__(self, product_name: str, available: int, requested: int):
        self.product_name = product_name
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for product: {product_name} "
            f"(available {available}, requested {requested})"
        )


class InvalidTransitionError(BadRequestError):
    """Raised when a status change is not allowed from the current status."""

    def __init__(self, current: str, target: str, subject: str = "order"):
        self.current = current
        self.target = target
        super().__init__(f"Invalid {subject} status transition from {current} to {target}.")


class CouponError(BadRequestError):
    pass


class InvalidSignatureError(BadRequestError):
    def __init__(self):
        super().__init__("Invalid signature")


class UnauthorizedError(StoreError):
    status_code = 401


class ForbiddenError(StoreError):
    status_code = 403


class NotFoundError(StoreError):
    status_code = 404


class ConflictError(StoreError):
    status_code = 409


class PaymentGatewayError(StoreError):
    status_code = 502
