"""
Client-initiated payment flows.

Orchestrates the synchronous path:
1. Validate input
2. Write the eager pending transaction (committed before any gateway call)
3. Call the gateway with the transaction ID as idempotency key
4. Link the returned intent to the transaction under the intent lock
5. Hand terminal gateway objects to the reconciliation engine

Webhooks for the same intent run the same engine handlers, so whichever
arrives second is a no-op.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_ledger.config import Settings, get_settings
from payment_ledger.core.money import quantize, to_decimal
from payment_ledger.core.payment_methods import PaymentMethodService
from payment_ledger.core.reconciliation import (
    COMPLETED,
    PENDING,
    ReconciliationEngine,
    new_transaction_id,
)
from payment_ledger.core.retry import call_with_retry
from payment_ledger.database.models import (
    Invoice,
    Transaction,
    TransactionMethod,
    TransactionStatus,
    TransactionType,
)
from payment_ledger.database.repository import LedgerRepository
from payment_ledger.errors import (
    GatewayError,
    InvalidRequestError,
    NotFoundError,
    TransientError,
)
from payment_ledger.integrations.events import PaymentIntentObject, RefundObject
from payment_ledger.integrations.gateway_client import GatewayClient
from payment_ledger.monitoring.logging import ledger_context

logger = structlog.get_logger(__name__)

_REFUNDABLE_STATUSES = (TransactionStatus.COMPLETED.value, TransactionStatus.PENDING.value)


@dataclass
class PaymentResult:
    """Outcome of a synchronous payment call."""

    transaction: Transaction
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    gateway_status: Optional[str] = None


class PaymentService:
    """
    Payment orchestrator for the synchronous path.

    Handles eager transaction creation, gateway calls with bounded retry and
    hand-off to the reconciliation engine.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: GatewayClient,
        engine: ReconciliationEngine,
        settings: Optional[Settings] = None,
        payment_methods: Optional[PaymentMethodService] = None,
    ):
        """
        Initialize payment service.

        Args:
            session_factory: Factory for database sessions
            gateway: Gateway client
            engine: Reconciliation engine shared with the webhook path
            settings: Optional settings (defaults to environment)
            payment_methods: Creates the client's gateway customer on first payment
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.engine = engine
        self.settings = settings or get_settings()
        self.payment_methods = payment_methods
        self.provider = engine.provider

    @staticmethod
    def _validate_payment_request(amount: Decimal, currency: str, client_id: str) -> None:
        """
        Validate payment request parameters.

        Raises:
            InvalidRequestError: If validation fails
        """
        if not client_id:
            raise InvalidRequestError("client_id is required")
        if amount <= 0:
            raise InvalidRequestError("amount must be greater than zero")
        if not currency or len(currency) != 3 or not currency.isalpha():
            raise InvalidRequestError(f"Invalid currency code: {currency}")

    async def _load(self, transaction_id: str) -> Transaction:
        async with self.session_factory() as session:
            txn = await LedgerRepository(session).find_transaction(transaction_id)
        if txn is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return txn

    async def _load_by_intent(self, payment_intent_id: str) -> Optional[Transaction]:
        async with self.session_factory() as session:
            return await LedgerRepository(session).find_transaction_by_gateway_id(
                self.provider, payment_intent_id=payment_intent_id
            )

    async def _reconcile_intent(self, payment_intent: Dict[str, Any]) -> None:
        outcome = await self.engine.handle_payment_intent(
            PaymentIntentObject.model_validate(payment_intent)
        )
        if outcome is not None:
            self.engine.schedule_notifications(outcome)

    async def process_payment(
        self,
        amount: Decimal,
        currency: str,
        client_id: str,
        invoice_id: Optional[int] = None,
        customer_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        description: Optional[str] = None,
        receipt_email: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentResult:
        """
        Create a payment and its gateway intent.

        Args:
            amount: Amount in major units
            currency: Currency code (e.g. 'USD')
            client_id: Paying client
            invoice_id: Optional invoice being paid
            customer_id: Optional gateway customer (the client's own is used when omitted)
            payment_method_id: Charge immediately with this payment method
            description: Optional description
            receipt_email: Optional receipt address
            metadata: Extra metadata stored on the transaction

        Returns:
            PaymentResult: Transaction plus client secret for client-side confirmation.
                The transaction stays pending when the gateway was unreachable.

        Raises:
            InvalidRequestError: If validation fails
            NotFoundError: If the invoice does not exist
            GatewayError: If the gateway rejected the payment (transaction marked failed)
        """
        amount = quantize(to_decimal(amount))
        currency = (currency or "").upper()
        self._validate_payment_request(amount, currency, client_id)

        if customer_id is None and self.payment_methods is not None:
            profile = await self.payment_methods.ensure_customer(client_id, email=receipt_email)
            customer_id = profile.external_customer_id

        transaction_id = new_transaction_id(TransactionType.PAYMENT)
        with ledger_context(
            transaction_id=transaction_id, client_id=client_id, invoice_id=invoice_id
        ):
            logger.info("payment_creation_started", amount=str(amount), currency=currency)

            # Eager record, committed before the gateway sees anything
            async with self.session_factory() as session, session.begin():
                repo = LedgerRepository(session)
                if invoice_id is not None:
                    invoice = await repo.find_invoice(invoice_id, for_update=False)
                    if invoice is None:
                        raise NotFoundError(f"Invoice {invoice_id} not found")
                await repo.upsert_transaction(
                    Transaction(
                        transaction_id=transaction_id,
                        type=TransactionType.PAYMENT.value,
                        method=TransactionMethod.STRIPE.value,
                        status=PENDING,
                        amount=amount,
                        currency=currency,
                        description=description,
                        provider=self.provider,
                        invoice_id=invoice_id,
                        client_id=client_id,
                        extra_metadata=metadata or {},
                    )
                )

            gateway_metadata = {"transactionId": transaction_id, "clientId": client_id}
            if invoice_id is not None:
                gateway_metadata["invoiceId"] = str(invoice_id)

            try:
                payment_intent = await call_with_retry(
                    self.gateway.create_payment_intent,
                    amount=amount,
                    currency=currency,
                    idempotency_key=transaction_id,
                    metadata=gateway_metadata,
                    customer_id=customer_id,
                    payment_method_id=payment_method_id,
                    description=description,
                    receipt_email=receipt_email,
                    confirm=payment_method_id is not None,
                    settings=self.settings,
                )
            except TransientError as e:
                # The intent may exist; its webhook will settle the pending row
                logger.warning("payment_left_pending", error=str(e), error_code=e.code)
                return PaymentResult(transaction=await self._load(transaction_id))
            except GatewayError as e:
                logger.warning("payment_rejected", error_code=e.code, error=e.message)
                await self.engine.fail_pending(transaction_id, e.to_dict())
                raise

            await self.engine.attach_payment_intent(transaction_id, payment_intent["id"])
            await self._reconcile_intent(payment_intent)

            logger.info(
                "payment_creation_completed",
                payment_intent_id=payment_intent["id"],
                gateway_status=payment_intent.get("status"),
            )
            return PaymentResult(
                transaction=await self._load(transaction_id),
                payment_intent_id=payment_intent["id"],
                client_secret=payment_intent.get("client_secret"),
                gateway_status=payment_intent.get("status"),
            )

    async def confirm_payment(
        self, payment_intent_id: str, payment_method_id: Optional[str] = None
    ) -> PaymentResult:
        """
        Confirm an intent and apply the result.

        Raises:
            InvalidRequestError: If payment_intent_id is missing
            NotFoundError: If no transaction tracks the intent
            GatewayError: If confirmation fails
        """
        payment_intent = await self.gateway.confirm_payment_intent(
            payment_intent_id, payment_method_id
        )
        await self._reconcile_intent(payment_intent)

        txn = await self._load_by_intent(payment_intent_id)
        if txn is None:
            raise NotFoundError(f"No transaction for payment intent {payment_intent_id}")
        return PaymentResult(
            transaction=txn,
            payment_intent_id=payment_intent_id,
            client_secret=payment_intent.get("client_secret"),
            gateway_status=payment_intent.get("status"),
        )

    async def cancel_payment(
        self, payment_intent_id: str, reason: Optional[str] = None
    ) -> PaymentResult:
        """Cancel an intent that has not succeeded and mark its payment cancelled."""
        payment_intent = await self.gateway.cancel_payment_intent(payment_intent_id, reason)
        await self._reconcile_intent(payment_intent)

        txn = await self._load_by_intent(payment_intent_id)
        if txn is None:
            raise NotFoundError(f"No transaction for payment intent {payment_intent_id}")
        return PaymentResult(
            transaction=txn,
            payment_intent_id=payment_intent_id,
            gateway_status=payment_intent.get("status"),
        )

    async def process_refund(
        self,
        transaction_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Transaction:
        """
        Refund all or part of a completed payment.

        Args:
            transaction_id: Original payment transaction
            amount: Refund amount in major units (remaining refundable when omitted)
            reason: Refund reason (duplicate, fraudulent, requested_by_customer)
            idempotency_key: Optional caller key; a fresh one per call otherwise

        Returns:
            Transaction: The refund transaction

        Raises:
            NotFoundError: If the transaction does not exist
            InvalidRequestError: If the payment is not refundable or the amount is invalid
            GatewayError: If the gateway rejects the refund
        """
        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            original = await repo.find_transaction(transaction_id)
            if original is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            if original.type != TransactionType.PAYMENT.value or original.status != COMPLETED:
                raise InvalidRequestError("Only completed payments can be refunded")
            if original.payment_intent_id is None:
                raise InvalidRequestError("Payment has no gateway reference to refund")

            already = sum(
                (
                    r.amount
                    for r in await repo.refunds_for_payment(original)
                    if r.status in _REFUNDABLE_STATUSES
                ),
                Decimal("0.00"),
            )

        refundable = quantize(original.amount) - quantize(already)
        refund_amount = quantize(to_decimal(amount)) if amount is not None else refundable
        if refund_amount <= 0 or refund_amount > refundable:
            raise InvalidRequestError(
                f"Invalid refund amount {refund_amount}; refundable {refundable}"
            )

        logger.info(
            "refund_requested",
            transaction_id=transaction_id,
            amount=str(refund_amount),
            refundable=str(refundable),
        )

        refund = await call_with_retry(
            self.gateway.create_refund,
            payment_intent_id=original.payment_intent_id,
            idempotency_key=idempotency_key or f"refund:{transaction_id}:{uuid.uuid4().hex}",
            amount=refund_amount,
            currency=original.currency,
            reason=reason,
            metadata={"originalTransactionId": transaction_id},
            settings=self.settings,
        )

        refund_obj = RefundObject.model_validate(
            {"currency": original.currency.lower(), **refund}
        )
        outcome = await self.engine.refund_updated(refund_obj)
        self.engine.schedule_notifications(outcome)

        async with self.session_factory() as session:
            return await LedgerRepository(session).find_transaction_by_gateway_id(
                self.provider, refund_id=refund_obj.id
            )

    async def create_invoice_checkout_session(
        self,
        invoice_id: int,
        client_id: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Hosted checkout for an invoice's outstanding balance.

        Returns:
            Dict[str, Any]: session_id, url and expiry

        Raises:
            NotFoundError: If the invoice does not exist
            InvalidRequestError: If the client does not own the invoice or nothing is owed
        """
        async with self.session_factory() as session:
            invoice: Optional[Invoice] = await LedgerRepository(session).find_invoice(
                invoice_id, for_update=False
            )
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        if invoice.client_id != client_id:
            raise InvalidRequestError("Invoice does not belong to this client")
        balance = invoice.balance_due
        if balance <= 0:
            raise InvalidRequestError(f"Invoice {invoice.invoice_number} has nothing outstanding")

        app_url = self.settings.app_url.rstrip("/")
        metadata = {
            "invoiceId": str(invoice.id),
            "invoiceNumber": invoice.invoice_number,
            "clientId": client_id,
        }
        if invoice.consultant_id:
            metadata["consultantId"] = invoice.consultant_id

        session_obj = await call_with_retry(
            self.gateway.create_checkout_session,
            amount=balance,
            currency=invoice.currency,
            product_name=f"Invoice {invoice.invoice_number}",
            success_url=success_url
            or f"{app_url}/dashboard/invoices/{invoice.id}/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=cancel_url or f"{app_url}/dashboard/invoices/{invoice.id}?canceled=true",
            idempotency_key=f"checkout:{invoice.id}:{balance}:{uuid.uuid4().hex}",
            metadata=metadata,
            settings=self.settings,
        )
        logger.info(
            "invoice_checkout_created",
            invoice_id=invoice.id,
            session_id=session_obj["id"],
            amount=str(balance),
        )
        expires_at = session_obj.get("expires_at")
        return {
            "session_id": session_obj["id"],
            "url": session_obj.get("url"),
            "amount": balance,
            "currency": invoice.currency,
            "expires_at": (
                datetime.fromtimestamp(expires_at, tz=timezone.utc)
                if expires_at
                else datetime.now(timezone.utc) + timedelta(hours=24)
            ),
        }

    async def get_transaction(self, transaction_id: str) -> Transaction:
        """Fetch one transaction or raise NotFoundError."""
        return await self._load(transaction_id)

    async def list_transactions(self, **filters: Any) -> Tuple[List[Transaction], int]:
        """Filtered, paginated transaction listing."""
        async with self.session_factory() as session:
            return await LedgerRepository(session).list_transactions(**filters)
