"""
Error taxonomy shared by the gateway client, the ledger and the webhook path.

- InvalidRequestError: caller error, fail fast, never retried
- GatewayError: the gateway rejected the operation, surfaced to the caller
- TransientError: network/timeout/rate limit, bounded retry at the call site
- LedgerConflictError: a concurrent insert won the race, retried once
- SignatureVerificationError: webhook payload rejected outright
"""
from enum import Enum
from typing import Any, Dict, Optional


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class PaymentLedgerError(Exception):
    """Base exception for the payment ledger."""

    pass


class InvalidRequestError(PaymentLedgerError):
    """Raised when required fields are missing or invalid, before any gateway call."""

    pass


class NotFoundError(PaymentLedgerError):
    """Raised when a transaction, invoice or account does not exist."""

    pass


class GatewayError(PaymentLedgerError):
    """Raised when the payment gateway rejects an operation."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        raw: Optional[Dict[str, Any]] = None,
        error_type: GatewayErrorType = GatewayErrorType.PERMANENT,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            code: Gateway error code (e.g. 'card_declined')
            raw: Raw error body returned by the gateway
            error_type: Classification of error
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.raw = raw or {}
        self.error_type = error_type

    def to_dict(self) -> Dict[str, Any]:
        """Structured form stored on failed transactions."""
        return {
            "code": self.code,
            "message": self.message,
            "type": self.raw.get("type"),
            "param": self.raw.get("param"),
        }


class TransientError(GatewayError):
    """Raised for network failures, timeouts and rate limiting."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        raw: Optional[Dict[str, Any]] = None,
        error_type: GatewayErrorType = GatewayErrorType.TRANSIENT,
    ):
        super().__init__(message, code=code, raw=raw, error_type=error_type)


class LedgerConflictError(PaymentLedgerError):
    """Raised when a concurrent writer already inserted the same gateway identifier."""

    pass


class SignatureVerificationError(PaymentLedgerError):
    """Raised when a webhook payload fails signature verification."""

    pass


class MalformedEventError(PaymentLedgerError):
    """Raised when a verified webhook payload cannot be decoded."""

    pass
