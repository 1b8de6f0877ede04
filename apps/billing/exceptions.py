"""
Payment engine error taxonomy.

Every error carries a machine-readable code, a human-readable message and a
retryable flag so callers and the API layer can decide what to do next.
"""

from __future__ import annotations

from typing import Any, ClassVar


class PaymentEngineError(Exception):
    """Base exception for payment and subscription engine errors"""

    default_code: ClassVar[str] = "INTERNAL_ERROR"
    default_retryable: ClassVar[bool] = False
    http_status: ClassVar[int] = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.code = code or self.default_code
        self.retryable = self.default_retryable if retryable is None else retryable
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class ValidationError(PaymentEngineError):
    """Bad input: unknown plan/service, non-positive amount, unsupported currency"""

    default_code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(PaymentEngineError):
    """A referenced entity (order, dog, partner, subscription) does not exist"""

    default_code = "NOT_FOUND"
    http_status = 404


class SignatureError(PaymentEngineError):
    """Payment or webhook signature did not match"""

    default_code = "SIGNATURE_MISMATCH"
    http_status = 400


class GatewayError(PaymentEngineError):
    """Remote gateway call failed or timed out"""

    default_code = "GATEWAY_ERROR"
    default_retryable = True
    http_status = 502


class StateConflictError(PaymentEngineError):
    """Operation not allowed in the current state"""

    default_code = "STATE_CONFLICT"
    http_status = 409


class PaymentRequiredError(StateConflictError):
    """An outstanding payment must be settled first"""

    default_code = "PAYMENT_REQUIRED"
    http_status = 402


class InternalError(PaymentEngineError):
    """Persistence failure; the whole operation was rolled back and is safe to redeliver"""

    default_code = "INTERNAL_ERROR"
    default_retryable = True
    http_status = 500


__all__ = [
    "GatewayError",
    "InternalError",
    "NotFoundError",
    "PaymentEngineError",
    "PaymentRequiredError",
    "SignatureError",
    "StateConflictError",
    "ValidationError",
]
