"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

RefundReasonLiteral = Literal["duplicate", "fraudulent", "requested_by_customer"]


def _upper_currency(v: str) -> str:
    if len(v) != 3 or not v.isalpha():
        raise ValueError("Currency must be a 3-letter code")
    return v.upper()


class ProcessPaymentRequest(BaseModel):
    """Request schema for creating a payment."""

    amount: Decimal = Field(..., gt=0, decimal_places=2, description="Amount in major units")
    currency: str = Field(default="USD", description="Currency code (e.g., USD)")
    client_id: str = Field(..., min_length=1, description="Paying client")
    invoice_id: Optional[int] = Field(default=None, description="Invoice being paid")
    customer_id: Optional[str] = Field(default=None, description="Gateway customer ID")
    payment_method_id: Optional[str] = Field(
        default=None, description="Confirm immediately with this payment method"
    )
    description: Optional[str] = Field(default=None, max_length=500)
    receipt_email: Optional[str] = Field(default=None, description="Receipt address")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Optional metadata")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        return _upper_currency(v)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "amount": "150.00",
                    "currency": "USD",
                    "client_id": "client_42",
                    "invoice_id": 7,
                    "description": "Invoice INV-2024-007",
                }
            ]
        }
    }


class ConfirmPaymentRequest(BaseModel):
    """Request schema for confirming a payment intent."""

    payment_intent_id: str = Field(..., min_length=1, description="Gateway payment intent ID")
    payment_method_id: Optional[str] = Field(default=None, description="Payment method to use")


class CancelPaymentRequest(BaseModel):
    """Request schema for cancelling a payment intent."""

    payment_intent_id: str = Field(..., min_length=1, description="Gateway payment intent ID")
    reason: Optional[
        Literal["duplicate", "fraudulent", "requested_by_customer", "abandoned"]
    ] = Field(default=None, description="Cancellation reason")


class RefundRequest(BaseModel):
    """Request schema for refunding a payment."""

    transaction_id: str = Field(..., min_length=1, description="Original payment transaction")
    amount: Optional[Decimal] = Field(
        default=None, gt=0, description="Amount to refund (remaining refundable if omitted)"
    )
    reason: Optional[RefundReasonLiteral] = Field(default=None, description="Refund reason")
    idempotency_key: Optional[str] = Field(default=None, description="Caller idempotency key")


class PayoutRequest(BaseModel):
    """Request schema for paying out to a consultant."""

    consultant_id: str = Field(..., min_length=1, description="Consultant receiving funds")
    amount: Decimal = Field(..., gt=0, description="Amount in major units")
    currency: str = Field(default="USD", description="Currency code")
    destination_account_ref: Optional[str] = Field(
        default=None, description="Connected account ID (looked up when omitted)"
    )
    description: Optional[str] = Field(default=None, max_length=500)
    idempotency_key: Optional[str] = Field(default=None, description="Caller idempotency key")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        return _upper_currency(v)


class ConnectSetupRequest(BaseModel):
    """Request schema for payout account onboarding."""

    consultant_id: str = Field(..., min_length=1, description="Consultant identifier")
    email: str = Field(..., min_length=3, description="Consultant email")
    country: str = Field(default="US", min_length=2, max_length=2, description="ISO country")
    refresh_url: Optional[str] = Field(default=None, description="Onboarding refresh URL")
    return_url: Optional[str] = Field(default=None, description="Onboarding return URL")


class CheckoutRequest(BaseModel):
    """Request schema for hosted invoice checkout."""

    client_id: str = Field(..., min_length=1, description="Client paying the invoice")
    success_url: Optional[str] = Field(default=None, description="Redirect after payment")
    cancel_url: Optional[str] = Field(default=None, description="Redirect after cancel")


class AddPaymentMethodRequest(BaseModel):
    """Request schema for saving a client payment method."""

    client_id: str = Field(..., min_length=1, description="Client saving the method")
    payment_method_id: Optional[str] = Field(
        default=None, description="Existing gateway payment method to attach"
    )
    card: Optional[Dict[str, Any]] = Field(
        default=None, description="Tokenised card details, e.g. {\"token\": \"tok_visa\"}"
    )
    billing_details: Optional[Dict[str, Any]] = Field(default=None)
    email: Optional[str] = Field(default=None, description="Used when creating the customer")
    name: Optional[str] = Field(default=None, description="Used when creating the customer")
    set_as_default: bool = Field(default=False)

    @model_validator(mode="after")
    def check_source(self) -> "AddPaymentMethodRequest":
        """Exactly one of payment_method_id and card."""
        if bool(self.payment_method_id) == bool(self.card):
            raise ValueError("Provide either payment_method_id or card")
        return self


class SetDefaultPaymentMethodRequest(BaseModel):
    """Request schema for choosing the default payment method."""

    client_id: str = Field(..., min_length=1, description="Client owning the method")


class TransactionResponse(BaseModel):
    """Ledger transaction as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    transaction_id: str
    type: str
    method: str
    status: str
    amount: Decimal
    currency: str
    description: Optional[str] = None
    provider: str
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    refund_id: Optional[str] = None
    transfer_id: Optional[str] = None
    receipt_url: Optional[str] = None
    invoice_id: Optional[int] = None
    client_id: Optional[str] = None
    consultant_id: Optional[str] = None
    payment_method: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    refund_reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("extra_metadata", "metadata")
    )
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TransactionListResponse(BaseModel):
    """Paginated transaction listing."""

    items: List[TransactionResponse]
    total: int = Field(..., description="Total matching transactions")
    limit: int
    offset: int


class PaymentResponse(BaseModel):
    """Response schema for payment creation, confirmation and cancellation."""

    transaction: TransactionResponse
    payment_intent_id: Optional[str] = Field(default=None, description="Gateway payment intent ID")
    client_secret: Optional[str] = Field(
        default=None, description="Client secret for client-side confirmation"
    )
    gateway_status: Optional[str] = Field(default=None, description="Gateway intent status")


class CheckoutSessionResponse(BaseModel):
    """Response schema for hosted checkout."""

    session_id: str
    url: Optional[str] = None
    amount: Decimal
    currency: str
    expires_at: datetime


class ConnectSetupResponse(BaseModel):
    """Response schema for payout account onboarding."""

    consultant_id: str
    account_id: str
    status: str
    payouts_enabled: bool
    charges_enabled: bool
    onboarding_url: Optional[str] = Field(
        default=None, description="Hosted onboarding link (absent once the account is active)"
    )


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")


class PaymentMethodResponse(BaseModel):
    """Saved card summary."""

    id: str
    type: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    is_default: bool = False


class PaymentMethodListResponse(BaseModel):
    """A client's saved payment methods."""

    items: List[PaymentMethodResponse]
    default_payment_method_id: Optional[str] = None


class RemovePaymentMethodResponse(BaseModel):
    """Result of removing a saved payment method."""

    removed: str
    default_payment_method_id: Optional[str] = None
