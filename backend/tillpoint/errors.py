# Overview: Error kinds shared by the sale, payment and sync services.

from __future__ import annotations


class PosError(Exception):
    """Base for expected, domain-level failures."""

    code = "POS_ERROR"
    http_status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


class ValidationError(PosError):
    """400-level input problem (malformed cart, quantity, payment method)."""

    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(PosError):
    code = "NOT_FOUND"
    http_status = 404


class ConflictError(PosError):
    """409-level illegal state transition (e.g. voiding a voided sale)."""

    code = "CONFLICT"
    http_status = 409


class InsufficientStock(PosError):
    """
    Requested quantity exceeds available stock.

    Kept distinct from ValidationError so clients can offer a reduced quantity.
    """

    code = "INSUFFICIENT_STOCK"
    http_status = 409

    def __init__(self, product_id: int, requested: int, available: int, message: str | None = None):
        super().__init__(
            message or f"Insufficient stock for product {product_id}",
            details={
                "product_id": product_id,
                "requested_quantity": requested,
                "available_quantity": available,
            },
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class GatewayError(PosError):
    """Push payment could not be initiated (network, auth or gateway rejection)."""

    code = "GATEWAY_ERROR"
    http_status = 502


class RetryExhausted(PosError):
    """A sync queue item failed on every attempt and was dead-lettered."""

    code = "RETRY_EXHAUSTED"
    http_status = 500


def error_response(err: PosError) -> tuple[dict, int]:
    """Map a domain error to a JSON body and HTTP status."""
    return err.to_dict(), err.http_status
