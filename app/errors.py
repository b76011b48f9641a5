"""
Payment error taxonomy.

Every error carries the HTTP status it maps to; `app.main` renders them as
`{"status": "error", "code": ..., "message": ...}`.
"""

from typing import Optional


class PaymentError(Exception):
    """Base class for all payment/order domain errors."""

    status_code: int = 500
    code: str = "payment_error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class ValidationError(PaymentError):
    """Missing or malformed fields, or a rejected transition."""

    status_code = 400
    code = "validation_error"


class AmountMismatch(ValidationError):
    code = "amount_mismatch"


class Unauthorized(PaymentError):
    status_code = 401
    code = "unauthorized"


class Forbidden(PaymentError):
    status_code = 403
    code = "forbidden"


class NotFound(PaymentError):
    status_code = 404
    code = "not_found"


class OrderNotFound(NotFound):
    code = "order_not_found"


class PaymentNotFound(NotFound):
    code = "payment_not_found"


class GatewayError(PaymentError):
    """Gateway unreachable, timed out or returned something unusable."""

    status_code = 500
    code = "gateway_error"


class InvalidSignature(PaymentError):
    status_code = 400
    code = "invalid_signature"


class SessionExpired(PaymentError):
    status_code = 400
    code = "session_expired"


class AlreadyProcessed(PaymentError):
    status_code = 400
    code = "already_processed"


class StoreUnavailable(PaymentError):
    """Transient local storage failure; webhook callers should retry."""

    status_code = 503
    code = "store_unavailable"
