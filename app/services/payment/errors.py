"""
Payment Errors
Exceptions raised by the payment services; routes turn them into error_response
"""
from typing import Optional


class PaymentError(Exception):
    """Base error with an HTTP status for the route layer"""
    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class BadRequest(PaymentError):
    status_code = 400
    error_code = "BAD_REQUEST"


class Forbidden(PaymentError):
    status_code = 403
    error_code = "FORBIDDEN"


class NotFound(PaymentError):
    status_code = 404
    error_code = "NOT_FOUND"


class Conflict(PaymentError):
    status_code = 409
    error_code = "CONFLICT"


class AlreadyPaid(Conflict):
    error_code = "ALREADY_PAID"

    def __init__(self, message: str = "Payment already completed for this appointment"):
        super().__init__(message)


class PaymentConflict(Conflict):
    """Another active payment holds the appointment slot"""
    error_code = "PAYMENT_CONFLICT"


class Misconfigured(BadRequest):
    error_code = "MISCONFIGURED"


class PaymentInitiationFailed(BadRequest):
    error_code = "PAYMENT_INITIATION_FAILED"


class UpstreamUnavailable(PaymentError):
    status_code = 502
    error_code = "UPSTREAM_UNAVAILABLE"


class InvalidTransition(PaymentError):
    error_code = "INVALID_TRANSITION"


# Discount engine

class InvalidCode(BadRequest):
    error_code = "INVALID_CODE"

    def __init__(self, message: str = "Invalid redeem code"):
        super().__init__(message)


class CodeNotValid(BadRequest):
    error_code = "CODE_NOT_VALID"


class UserLimitExceeded(BadRequest):
    error_code = "USER_LIMIT_EXCEEDED"

    def __init__(self, message: str = "You have already used this redeem code maximum number of times"):
        super().__init__(message)


class BelowMinimum(BadRequest):
    error_code = "BELOW_MINIMUM"
