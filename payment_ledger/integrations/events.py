"""
Typed gateway events.

Verified webhook payloads are decoded into a closed set of event models.
Anything the ledger does not act on becomes UnrecognizedEvent, which is
acknowledged without touching the ledger.
"""
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from payment_ledger.errors import MalformedEventError


class GatewayObject(BaseModel):
    """Common shape of gateway objects; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _null_metadata(cls, v: Any) -> Any:
        return v or {}


class RefundObject(GatewayObject):
    """A refund against a charge."""

    amount: int = Field(..., ge=0)
    currency: str
    status: Optional[str] = None
    charge: Optional[str] = None
    payment_intent: Optional[str] = None
    reason: Optional[str] = None
    failure_reason: Optional[str] = None


class ChargeObject(GatewayObject):
    """A charge, the settled leg of a payment intent."""

    amount: int = Field(..., ge=0)
    amount_refunded: int = 0
    currency: str
    payment_intent: Optional[str] = None
    refunded: bool = False
    receipt_url: Optional[str] = None
    payment_method_details: Optional[Dict[str, Any]] = None
    billing_details: Optional[Dict[str, Any]] = None
    refunds: Optional[Dict[str, Any]] = None

    def refund_list(self) -> Optional[List[RefundObject]]:
        """Refunds embedded in the charge, or None when the gateway omitted them."""
        if not self.refunds or self.refunds.get("data") is None:
            return None
        return [
            RefundObject.model_validate({"currency": self.currency, "charge": self.id, **r})
            for r in self.refunds["data"]
        ]


class PaymentIntentObject(GatewayObject):
    """A payment intent."""

    amount: int = Field(..., ge=0)
    amount_received: Optional[int] = None
    currency: str
    status: str
    customer: Optional[str] = None
    description: Optional[str] = None
    receipt_email: Optional[str] = None
    latest_charge: Optional[Union[str, Dict[str, Any]]] = None
    charges: Optional[Dict[str, Any]] = None
    last_payment_error: Optional[Dict[str, Any]] = None
    cancellation_reason: Optional[str] = None

    def charge(self) -> Optional[Dict[str, Any]]:
        """The settled charge when the payload carries it expanded."""
        if self.charges and self.charges.get("data"):
            return self.charges["data"][0]
        if isinstance(self.latest_charge, dict):
            return self.latest_charge
        return None

    @property
    def charge_id(self) -> Optional[str]:
        charge = self.charge()
        if charge is not None:
            return charge.get("id")
        if isinstance(self.latest_charge, str):
            return self.latest_charge
        return None


class AccountObject(GatewayObject):
    """A connected payout account."""

    email: Optional[str] = None
    country: Optional[str] = None
    payouts_enabled: bool = False
    charges_enabled: bool = False
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    requirements: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("capabilities", "requirements", mode="before")
    @classmethod
    def _null_dict(cls, v: Any) -> Any:
        return v or {}

    @property
    def disabled_reason(self) -> Optional[str]:
        return self.requirements.get("disabled_reason")


class TransferObject(GatewayObject):
    """A transfer to a connected account."""

    amount: int = Field(..., ge=0)
    currency: str
    destination: Optional[str] = None
    description: Optional[str] = None
    reversed: bool = False
    amount_reversed: int = 0


class BaseEvent(BaseModel):
    """Envelope fields shared by every event."""

    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False


class PaymentSucceeded(BaseEvent):
    type: Literal["payment_intent.succeeded"]
    payment_intent: PaymentIntentObject


class PaymentFailed(BaseEvent):
    type: Literal["payment_intent.payment_failed"]
    payment_intent: PaymentIntentObject


class PaymentCanceled(BaseEvent):
    type: Literal["payment_intent.canceled"]
    payment_intent: PaymentIntentObject


class ChargeRefunded(BaseEvent):
    type: Literal["charge.refunded"]
    charge: ChargeObject


class RefundUpdated(BaseEvent):
    type: Literal["refund.created", "refund.updated", "refund.failed", "charge.refund.updated"]
    refund: RefundObject


class AccountUpdated(BaseEvent):
    type: Literal["account.updated"]
    account: AccountObject


class TransferEvent(BaseEvent):
    type: Literal["transfer.created", "transfer.updated", "transfer.reversed"]
    transfer: TransferObject


class UnrecognizedEvent(BaseEvent):
    data: Dict[str, Any] = Field(default_factory=dict)


GatewayEvent = Union[
    PaymentSucceeded,
    PaymentFailed,
    PaymentCanceled,
    ChargeRefunded,
    RefundUpdated,
    AccountUpdated,
    TransferEvent,
    UnrecognizedEvent,
]

# event type -> (model, name of the field holding data.object)
_EVENT_TYPES: Dict[str, tuple] = {
    "payment_intent.succeeded": (PaymentSucceeded, "payment_intent"),
    "payment_intent.payment_failed": (PaymentFailed, "payment_intent"),
    "payment_intent.canceled": (PaymentCanceled, "payment_intent"),
    "charge.refunded": (ChargeRefunded, "charge"),
    "refund.created": (RefundUpdated, "refund"),
    "refund.updated": (RefundUpdated, "refund"),
    "refund.failed": (RefundUpdated, "refund"),
    "charge.refund.updated": (RefundUpdated, "refund"),
    "account.updated": (AccountUpdated, "account"),
    "transfer.created": (TransferEvent, "transfer"),
    "transfer.updated": (TransferEvent, "transfer"),
    "transfer.reversed": (TransferEvent, "transfer"),
}


def decode_event(payload: Dict[str, Any]) -> GatewayEvent:
    """
    Decode a verified webhook payload into a typed event.

    Args:
        payload: Parsed JSON event body

    Returns:
        GatewayEvent: Typed event, UnrecognizedEvent for types not handled

    Raises:
        MalformedEventError: If the envelope or a handled object is invalid
    """
    if not isinstance(payload, dict):
        raise MalformedEventError("Event payload must be a JSON object")

    event_type = payload.get("type")
    data = payload.get("data")
    envelope = {
        "id": payload.get("id"),
        "type": event_type,
        "created": payload.get("created"),
        "livemode": payload.get("livemode", False),
    }

    try:
        handled = _EVENT_TYPES.get(event_type) if isinstance(event_type, str) else None
        if handled is None:
            return UnrecognizedEvent.model_validate(
                {**envelope, "data": data if isinstance(data, dict) else {}}
            )

        model, field = handled
        if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
            raise MalformedEventError(f"Event {envelope['id']} has no data.object")
        return model.model_validate({**envelope, field: data["object"]})
    except ValidationError as e:
        raise MalformedEventError(f"Invalid {event_type} event: {e.error_count()} errors") from e
