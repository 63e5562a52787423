"""SQLAlchemy database models for the payment ledger."""
import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from payment_ledger.core.money import quantize

logger = structlog.get_logger(__name__)

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY
PKType = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class TransactionType(str, enum.Enum):
    """Kind of money movement."""

    PAYMENT = "payment"
    REFUND = "refund"
    PAYOUT = "payout"


class TransactionMethod(str, enum.Enum):
    """How the money moved."""

    STRIPE = "stripe"
    BANK_TRANSFER = "bank_transfer"
    WALLET = "wallet"
    OTHER = "other"


class TransactionStatus(str, enum.Enum):
    """Transaction lifecycle. Only pending moves to anything else."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RefundReason(str, enum.Enum):
    """Refund reasons recognised by the gateway."""

    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"
    REQUESTED_BY_CUSTOMER = "requested_by_customer"
    ABANDONED = "abandoned"
    OTHER = "other"


class InvoiceStatus(str, enum.Enum):
    """Invoice payment state."""

    DRAFT = "draft"
    PENDING = "pending"
    SENT = "sent"
    PARTIAL = "partial"
    PAID = "paid"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class ConnectAccountStatus(str, enum.Enum):
    """Consultant payout account onboarding state."""

    PENDING_ONBOARDING = "pending_onboarding"
    ACTIVE = "active"
    DISABLED = "disabled"


class LedgerEntryKind(str, enum.Enum):
    """Direction of an invoice ledger entry."""

    PAYMENT = "payment"
    REFUND = "refund"


_LIVE_PAYMENT = "type = 'payment' AND status NOT IN ('failed', 'cancelled')"


def _in_clause(column: str, values: type[enum.Enum]) -> str:
    quoted = ", ".join(f"'{member.value}'" for member in values)
    return f"{column} IN ({quoted})"


class Transaction(Base):
    """
    Ledger transaction records.

    One row per payment, refund or payout. Rows are never deleted; a refund is
    a new row pointing at the same invoice. Gateway identifiers are unique per
    provider so concurrent find-or-create attempts collide on insert.
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    method: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionMethod.STRIPE.value
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.PENDING.value, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Gateway bundle
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="stripe")
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    charge_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    refund_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    transfer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    receipt_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    invoice_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("invoices.id"), nullable=True, index=True
    )
    client_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    consultant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # Snapshots taken at settlement
    payment_method: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    billing_details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    error: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    refund_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    extra_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="txn_positive_amount"),
        CheckConstraint(_in_clause("type", TransactionType), name="txn_valid_type"),
        CheckConstraint(_in_clause("method", TransactionMethod), name="txn_valid_method"),
        CheckConstraint(_in_clause("status", TransactionStatus), name="txn_valid_status"),
        CheckConstraint("length(currency) = 3", name="txn_valid_currency"),
        # At most one live payment per intent; failed or cancelled attempts do not count
        Index(
            "uq_txn_live_payment_intent",
            "provider",
            "payment_intent_id",
            unique=True,
            postgresql_where=text(_LIVE_PAYMENT),
            sqlite_where=text(_LIVE_PAYMENT),
        ),
        Index("idx_txn_payment_intent", "provider", "payment_intent_id"),
        UniqueConstraint("provider", "refund_id", name="uq_txn_refund"),
        UniqueConstraint("provider", "transfer_id", name="uq_txn_transfer"),
        Index("idx_txn_client_status", "client_id", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        """Whether the transaction left pending."""
        return self.status != TransactionStatus.PENDING.value

    def gateway_snapshot(self) -> Dict[str, Any]:
        """Gateway identifiers as a plain dict (for API responses and logs)."""
        return {
            "provider": self.provider,
            "payment_intent_id": self.payment_intent_id,
            "charge_id": self.charge_id,
            "refund_id": self.refund_id,
            "transfer_id": self.transfer_id,
            "receipt_url": self.receipt_url,
        }

    def __repr__(self) -> str:
        """String representation of Transaction."""
        return (
            f"<Transaction(transaction_id={self.transaction_id}, type={self.type}, "
            f"amount={self.amount}, status={self.status})>"
        )


class Invoice(Base):
    """
    Invoices billed to clients.

    amount_paid only grows, amount_refunded never exceeds amount_paid, and
    the net collected never exceeds total.
    """

    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    invoice_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    consultant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=InvoiceStatus.PENDING.value, index=True
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    amount_refunded: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("total >= 0", name="inv_non_negative_total"),
        CheckConstraint("amount_paid >= 0", name="inv_non_negative_paid"),
        CheckConstraint("amount_refunded <= amount_paid", name="inv_refund_within_paid"),
        CheckConstraint(_in_clause("status", InvoiceStatus), name="inv_valid_status"),
    )

    @property
    def net_paid(self) -> Decimal:
        """Amount collected after refunds."""
        return quantize(self.amount_paid or 0) - quantize(self.amount_refunded or 0)

    @property
    def balance_due(self) -> Decimal:
        """Outstanding amount still owed, net of refunds."""
        remaining = quantize(self.total) - self.net_paid
        return remaining if remaining > 0 else Decimal("0.00")

    def add_payment(self, amount: Decimal, transaction_id: str) -> Decimal:
        """
        Credit a payment against this invoice.

        Credit beyond the outstanding balance (net of refunds) is capped and
        logged. A payment after a refund re-collects the refunded part.

        Args:
            amount: Payment amount in major units
            transaction_id: Transaction being applied

        Returns:
            Decimal: Amount actually credited
        """
        amount = quantize(amount)
        paid = quantize(self.amount_paid or 0)
        credited = min(amount, self.balance_due)
        if credited < amount:
            logger.warning(
                "reconciliation_anomaly",
                kind="invoice_overpayment",
                invoice_id=self.id,
                transaction_id=transaction_id,
                amount=str(amount),
                credited=str(credited),
            )

        self.amount_paid = paid + credited
        if self.net_paid >= quantize(self.total):
            self.status = InvoiceStatus.PAID.value
        else:
            self.status = InvoiceStatus.PARTIAL.value
        return credited

    def refund(self, amount: Decimal, transaction_id: str) -> Decimal:
        """
        Record a refund against this invoice.

        Args:
            amount: Refund amount in major units
            transaction_id: Refund transaction being applied

        Returns:
            Decimal: Amount actually recorded
        """
        amount = quantize(amount)
        paid = quantize(self.amount_paid or 0)
        refunded = quantize(self.amount_refunded or 0)
        recorded = min(amount, paid - refunded)
        if recorded < amount:
            logger.warning(
                "reconciliation_anomaly",
                kind="invoice_over_refund",
                invoice_id=self.id,
                transaction_id=transaction_id,
                amount=str(amount),
                recorded=str(recorded),
            )

        self.amount_refunded = refunded + recorded
        if self.amount_refunded >= paid:
            self.status = InvoiceStatus.REFUNDED.value
        else:
            self.status = InvoiceStatus.PARTIALLY_REFUNDED.value
        return recorded

    def __repr__(self) -> str:
        """String representation of Invoice."""
        return (
            f"<Invoice(invoice_number={self.invoice_number}, total={self.total}, "
            f"paid={self.amount_paid}, status={self.status})>"
        )


class InvoiceLedgerEntry(Base):
    """
    Applied invoice credits and refunds.

    The unique constraint guarantees a transaction is applied to an invoice
    at most once.
    """

    __tablename__ = "invoice_ledger_entries"

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("invoice_id", "transaction_id", name="uq_ledger_entry"),
        CheckConstraint(_in_clause("kind", LedgerEntryKind), name="ledger_valid_kind"),
    )


class ConnectAccount(Base):
    """Consultant payout accounts on the gateway."""

    __tablename__ = "connect_accounts"

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    consultant_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    external_account_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=ConnectAccountStatus.PENDING_ONBOARDING.value
    )
    capabilities: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    country: Mapped[str] = mapped_column(String(2), nullable=False, default="US")
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    charges_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint(_in_clause("status", ConnectAccountStatus), name="acct_valid_status"),
    )

    def __repr__(self) -> str:
        """String representation of ConnectAccount."""
        return (
            f"<ConnectAccount(consultant_id={self.consultant_id}, "
            f"external_account_id={self.external_account_id}, status={self.status})>"
        )


class ClientBillingProfile(Base):
    """
    A paying client's gateway customer.

    Saved payment methods live on the gateway; only the customer reference
    and the client's default method are kept here.
    """

    __tablename__ = "client_billing_profiles"

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    client_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="stripe")
    external_customer_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    default_payment_method_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        """String representation of ClientBillingProfile."""
        return (
            f"<ClientBillingProfile(client_id={self.client_id}, "
            f"customer={self.external_customer_id})>"
        )
