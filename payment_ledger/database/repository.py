"""
Ledger repository.

Query and persistence access to transactions, invoices, connect accounts and
client billing profiles, bound to a single AsyncSession (one unit of work).
The repository never commits; the caller owns the transaction boundary.
"""
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payment_ledger.core.money import quantize
from payment_ledger.database.models import (
    ClientBillingProfile,
    ConnectAccount,
    Invoice,
    InvoiceLedgerEntry,
    LedgerEntryKind,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from payment_ledger.errors import InvalidRequestError, LedgerConflictError

logger = structlog.get_logger(__name__)

_DEAD_STATUSES = (TransactionStatus.FAILED.value, TransactionStatus.CANCELLED.value)


class LedgerRepository:
    """Ledger rows, invoices, connect accounts and billing profiles for one unit of work."""

    def __init__(self, session: AsyncSession):
        """
        Initialize repository.

        Args:
            session: Database session owning the unit of work
        """
        self.session = session

    # Transactions

    async def find_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Find a transaction by its internal ID."""
        stmt = select(Transaction).where(Transaction.transaction_id == transaction_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_transaction_by_gateway_id(
        self,
        provider: str,
        *,
        payment_intent_id: Optional[str] = None,
        charge_id: Optional[str] = None,
        refund_id: Optional[str] = None,
        transfer_id: Optional[str] = None,
    ) -> Optional[Transaction]:
        """
        Find a transaction by exactly one gateway identifier.

        Lookups by payment intent only consider payment rows and prefer the
        live (pending or completed) one, then the most recent dead attempt.

        Args:
            provider: Gateway name
            payment_intent_id: Payment intent ID
            charge_id: Charge ID
            refund_id: Refund ID
            transfer_id: Transfer ID

        Returns:
            Optional[Transaction]: Matching transaction, if any

        Raises:
            InvalidRequestError: If not exactly one identifier was given
        """
        given = [
            (column, value)
            for column, value in (
                (Transaction.payment_intent_id, payment_intent_id),
                (Transaction.charge_id, charge_id),
                (Transaction.refund_id, refund_id),
                (Transaction.transfer_id, transfer_id),
            )
            if value is not None
        ]
        if len(given) != 1:
            raise InvalidRequestError("Exactly one gateway identifier is required")

        column, value = given[0]
        stmt = select(Transaction).where(Transaction.provider == provider, column == value)

        if payment_intent_id is not None or charge_id is not None:
            stmt = stmt.where(Transaction.type == TransactionType.PAYMENT.value)
            # Live payment first, then the newest dead attempt
            stmt = stmt.order_by(
                Transaction.status.in_(_DEAD_STATUSES).asc(),
                Transaction.id.desc(),
            )

        result = await self.session.execute(stmt.limit(1))
        return result.scalars().first()

    async def upsert_transaction(self, txn: Transaction) -> Transaction:
        """
        Persist a new or modified transaction.

        Flushes immediately so unique-index violations surface here.

        Raises:
            LedgerConflictError: If a concurrent writer already inserted the
                same gateway identifier
        """
        self.session.add(txn)
        try:
            await self.session.flush()
        except IntegrityError as e:
            logger.warning(
                "ledger_conflict",
                transaction_id=txn.transaction_id,
                payment_intent_id=txn.payment_intent_id,
                refund_id=txn.refund_id,
                transfer_id=txn.transfer_id,
                error=str(e.orig),
            )
            raise LedgerConflictError(
                f"Concurrent write for transaction {txn.transaction_id}"
            ) from e
        return txn

    async def list_transactions(
        self,
        *,
        client_id: Optional[str] = None,
        consultant_id: Optional[str] = None,
        invoice_id: Optional[int] = None,
        type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Transaction], int]:
        """
        List transactions with filters and pagination, newest first.

        Returns:
            Tuple[List[Transaction], int]: Page of transactions and total count
        """
        conditions = []
        if client_id is not None:
            conditions.append(Transaction.client_id == client_id)
        if consultant_id is not None:
            conditions.append(Transaction.consultant_id == consultant_id)
        if invoice_id is not None:
            conditions.append(Transaction.invoice_id == invoice_id)
        if type is not None:
            conditions.append(Transaction.type == type)
        if status is not None:
            conditions.append(Transaction.status == status)

        count_stmt = select(func.count()).select_from(Transaction).where(*conditions)
        total = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(Transaction)
            .where(*conditions)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all()), total

    async def refunded_total_for_charge(self, provider: str, charge_id: str) -> Decimal:
        """Sum of non-failed refund amounts recorded against a charge."""
        stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.provider == provider,
            Transaction.charge_id == charge_id,
            Transaction.type == TransactionType.REFUND.value,
            Transaction.status.in_(
                [TransactionStatus.COMPLETED.value, TransactionStatus.PENDING.value]
            ),
        )
        total = (await self.session.execute(stmt)).scalar_one()
        return quantize(total)

    async def refunds_for_payment(self, original: Transaction) -> Sequence[Transaction]:
        """Refund rows recorded against the original payment's charge or intent."""
        links = []
        if original.charge_id is not None:
            links.append(Transaction.charge_id == original.charge_id)
        if original.payment_intent_id is not None:
            links.append(Transaction.payment_intent_id == original.payment_intent_id)
        if not links:
            return []
        stmt = select(Transaction).where(
            Transaction.provider == original.provider,
            Transaction.type == TransactionType.REFUND.value,
            or_(*links),
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    # Invoices

    async def find_invoice(self, invoice_id: int, *, for_update: bool = True) -> Optional[Invoice]:
        """
        Find an invoice, row-locked for the rest of the unit of work.

        SQLite ignores FOR UPDATE; the invoice lock serializes writers there.
        """
        stmt = select(Invoice).where(Invoice.id == invoice_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_invoice(self, invoice: Invoice) -> Invoice:
        """Insert a new invoice."""
        self.session.add(invoice)
        await self.session.flush()
        return invoice

    async def _has_entry(self, invoice_id: int, transaction_id: str) -> bool:
        stmt = select(InvoiceLedgerEntry.id).where(
            InvoiceLedgerEntry.invoice_id == invoice_id,
            InvoiceLedgerEntry.transaction_id == transaction_id,
        )
        return (await self.session.execute(stmt)).first() is not None

    async def _apply(
        self, invoice: Invoice, amount: Decimal, transaction_id: str, kind: LedgerEntryKind
    ) -> bool:
        if await self._has_entry(invoice.id, transaction_id):
            logger.info(
                "invoice_entry_already_applied",
                invoice_id=invoice.id,
                transaction_id=transaction_id,
                kind=kind.value,
            )
            return False

        if kind is LedgerEntryKind.PAYMENT:
            applied = invoice.add_payment(amount, transaction_id)
        else:
            applied = invoice.refund(amount, transaction_id)

        self.session.add(
            InvoiceLedgerEntry(
                invoice_id=invoice.id,
                transaction_id=transaction_id,
                kind=kind.value,
                amount=quantize(amount),
            )
        )
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise LedgerConflictError(
                f"Transaction {transaction_id} already applied to invoice {invoice.id}"
            ) from e

        logger.info(
            "invoice_entry_applied",
            invoice_id=invoice.id,
            transaction_id=transaction_id,
            kind=kind.value,
            amount=str(applied),
            invoice_status=invoice.status,
        )
        return True

    async def apply_payment(self, invoice: Invoice, amount: Decimal, transaction_id: str) -> bool:
        """
        Credit a payment to an invoice exactly once.

        Returns:
            bool: False when this transaction was already applied
        """
        return await self._apply(invoice, amount, transaction_id, LedgerEntryKind.PAYMENT)

    async def apply_refund(self, invoice: Invoice, amount: Decimal, transaction_id: str) -> bool:
        """
        Record a refund against an invoice exactly once.

        Returns:
            bool: False when this transaction was already applied
        """
        return await self._apply(invoice, amount, transaction_id, LedgerEntryKind.REFUND)

    # Connect accounts

    async def find_connect_account(
        self,
        *,
        consultant_id: Optional[str] = None,
        external_account_id: Optional[str] = None,
    ) -> Optional[ConnectAccount]:
        """Find a connect account by consultant or gateway account ID."""
        if consultant_id is None and external_account_id is None:
            raise InvalidRequestError("consultant_id or external_account_id is required")
        stmt = select(ConnectAccount)
        if consultant_id is not None:
            stmt = stmt.where(ConnectAccount.consultant_id == consultant_id)
        if external_account_id is not None:
            stmt = stmt.where(ConnectAccount.external_account_id == external_account_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_connect_account(self, account: ConnectAccount) -> ConnectAccount:
        """
        Insert a connect account.

        Raises:
            LedgerConflictError: If the consultant already has an account
        """
        self.session.add(account)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise LedgerConflictError(
                f"Connect account already exists for consultant {account.consultant_id}"
            ) from e
        return account

    # Client billing profiles

    async def find_billing_profile(
        self, client_id: str, for_update: bool = False
    ) -> Optional[ClientBillingProfile]:
        """Find a client's gateway customer record."""
        stmt = select(ClientBillingProfile).where(ClientBillingProfile.client_id == client_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_billing_profile(self, profile: ClientBillingProfile) -> ClientBillingProfile:
        """
        Insert a client billing profile.

        Raises:
            LedgerConflictError: If the client already has a gateway customer
        """
        self.session.add(profile)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise LedgerConflictError(
                f"Billing profile already exists for client {profile.client_id}"
            ) from e
        return profile
