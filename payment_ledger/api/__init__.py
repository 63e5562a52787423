"""FastAPI application and routes."""
from .main import app
from .schemas import (
    PaymentResponse,
    ProcessPaymentRequest,
    RefundRequest,
    TransactionResponse,
)

__all__ = [
    "app",
    "PaymentResponse",
    "ProcessPaymentRequest",
    "RefundRequest",
    "TransactionResponse",
]
