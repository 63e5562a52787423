"""
Reconciliation engine for applying gateway state to the ledger.

Every gateway observation, whether it arrives by webhook or as the return
value of a synchronous gateway call, goes through the handlers here. Each
handler runs as one unit of work:

1. Acquire the per-key lock for the gateway identifier
2. Begin a database transaction
3. Find-or-create the transaction row and apply the transition
4. Lock and credit/refund the linked invoice exactly once
5. Commit, then release the locks

Any exception rolls back the whole unit, so the ledger is left exactly as it
was before the event. Applying the same observation twice is a no-op.
"""
import uuid
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_ledger.core.locks import (
    LockManager,
    charge_key,
    invoice_key,
    payment_intent_key,
)
from payment_ledger.core.money import from_minor_units, to_minor_units
from payment_ledger.core.notifications import BackgroundTasks, LogNotifier, Notifier
from payment_ledger.database.models import (
    RefundReason,
    Transaction,
    TransactionMethod,
    TransactionStatus,
    TransactionType,
)
from payment_ledger.database.repository import LedgerRepository
from payment_ledger.errors import LedgerConflictError
from payment_ledger.integrations.events import (
    ChargeObject,
    ChargeRefunded,
    GatewayEvent,
    PaymentCanceled,
    PaymentFailed,
    PaymentIntentObject,
    PaymentSucceeded,
    RefundObject,
    RefundUpdated,
)
from payment_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PENDING = TransactionStatus.PENDING.value
COMPLETED = TransactionStatus.COMPLETED.value
FAILED = TransactionStatus.FAILED.value
CANCELLED = TransactionStatus.CANCELLED.value

REFUND_STATUS_MAP = {
    "succeeded": COMPLETED,
    "pending": PENDING,
    "requires_action": PENDING,
    "failed": FAILED,
    "canceled": CANCELLED,
}

_REFUND_REASONS = {reason.value for reason in RefundReason}


def new_transaction_id(kind: TransactionType) -> str:
    """Internal transaction IDs: pay_/ref_/po_ followed by 32 hex chars."""
    prefix = {
        TransactionType.PAYMENT: "pay",
        TransactionType.REFUND: "ref",
        TransactionType.PAYOUT: "po",
    }[kind]
    return f"{prefix}_{uuid.uuid4().hex}"


def map_refund_reason(reason: Optional[str]) -> str:
    """Gateway refund reason to ledger reason; missing means customer request."""
    if reason is None:
        return RefundReason.REQUESTED_BY_CUSTOMER.value
    return reason if reason in _REFUND_REASONS else RefundReason.OTHER.value


def _metadata_value(metadata: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = metadata.get(key)
        if value not in (None, ""):
            return str(value)
    return None


@dataclass
class ReconciliationOutcome:
    """Result of applying one gateway observation."""

    status: str  # created, updated, unchanged, ignored
    transaction_id: Optional[str] = None
    message: str = ""
    anomalies: List[str] = field(default_factory=list)
    transaction_ids: List[str] = field(default_factory=list)
    notifications: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "transaction_id": self.transaction_id,
            "transaction_ids": self.transaction_ids,
            "message": self.message,
            "anomalies": self.anomalies,
        }


class UnitOfWork:
    """Repository plus the locks held for one reconciliation unit."""

    def __init__(
        self,
        repository: LedgerRepository,
        locks: AsyncExitStack,
        lock_manager: LockManager,
        held: Set[str],
    ):
        self.repository = repository
        self._locks = locks
        self._lock_manager = lock_manager
        self._held = held

    async def lock(self, key: str) -> None:
        """Acquire an extra lock, held until the unit commits or rolls back."""
        if key in self._held:
            return
        await self._locks.enter_async_context(self._lock_manager.acquire(key))
        self._held.add(key)


class ReconciliationEngine:
    """
    Applies idempotent gateway state transitions to the ledger.

    Collaborators are injected so tests can substitute an in-memory store,
    a local lock manager and a recording notifier.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_manager: LockManager,
        repository_factory: Callable[[AsyncSession], LedgerRepository] = LedgerRepository,
        notifier: Optional[Notifier] = None,
        provider: str = "stripe",
    ):
        """
        Initialize reconciliation engine.

        Args:
            session_factory: Factory for database sessions
            lock_manager: Per-key lock manager
            repository_factory: Builds a repository for a session
            notifier: Sink for post-commit notifications
            provider: Gateway name stored on every transaction
        """
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.repository_factory = repository_factory
        self.notifier = notifier or LogNotifier()
        self.provider = provider
        self.background = BackgroundTasks()

    async def _run(
        self,
        handler: str,
        lock_key: str,
        operation: Callable[[UnitOfWork], Awaitable[ReconciliationOutcome]],
    ) -> ReconciliationOutcome:
        """
        Run operation as one locked, transactional unit.

        A LedgerConflictError means another process inserted the same gateway
        identifier between our read and our write; the whole unit is retried
        once, at which point the find step sees the winner's row.
        """
        for attempt in (1, 2):
            try:
                async with AsyncExitStack() as locks:
                    await locks.enter_async_context(self.lock_manager.acquire(lock_key))
                    async with self.session_factory() as session, session.begin():
                        uow = UnitOfWork(
                            self.repository_factory(session),
                            locks,
                            self.lock_manager,
                            {lock_key},
                        )
                        outcome = await operation(uow)
            except LedgerConflictError:
                metrics.record_ledger_conflict(handler)
                if attempt == 2:
                    logger.error("reconciliation_conflict_unresolved", handler=handler, lock_key=lock_key)
                    raise
                logger.warning("reconciliation_conflict_retry", handler=handler, lock_key=lock_key)
                continue

            metrics.record_reconciliation(handler, outcome.status)
            for kind in outcome.anomalies:
                metrics.record_anomaly(kind)
            logger.info(
                "reconciliation_applied",
                handler=handler,
                outcome=outcome.status,
                transaction_id=outcome.transaction_id,
                anomalies=outcome.anomalies,
            )
            return outcome
        raise AssertionError("unreachable")

    async def publish(self, outcome: ReconciliationOutcome) -> None:
        """Deliver an outcome's notifications. Failures are logged, never raised."""
        for kind, payload in outcome.notifications:
            try:
                await self.notifier.notify(kind, payload)
            except Exception:
                logger.exception("notification_failed", kind=kind, **payload)

    def schedule_notifications(self, outcome: ReconciliationOutcome) -> None:
        """Publish an outcome in the background, after the caller has responded."""
        if outcome.notifications:
            self.background.schedule(self.publish(outcome))

    # Dispatch

    async def handle_event(self, event: GatewayEvent) -> ReconciliationOutcome:
        """
        Apply a decoded ledger event.

        Connect and transfer events belong to the payout lifecycle; anything
        else not listed here is acknowledged without touching the ledger.
        """
        if isinstance(event, PaymentSucceeded):
            return await self.payment_succeeded(event.payment_intent)
        if isinstance(event, PaymentFailed):
            return await self.payment_failed(event.payment_intent)
        if isinstance(event, PaymentCanceled):
            return await self.payment_canceled(event.payment_intent)
        if isinstance(event, ChargeRefunded):
            return await self.charge_refunded(event.charge)
        if isinstance(event, RefundUpdated):
            return await self.refund_updated(event.refund)

        logger.info("reconciliation_event_ignored", event_id=event.id, event_type=event.type)
        metrics.record_reconciliation("unrecognized", "ignored")
        return ReconciliationOutcome(status="ignored", message=f"Ignored {event.type}")

    async def handle_payment_intent(
        self, payment_intent: PaymentIntentObject
    ) -> Optional[ReconciliationOutcome]:
        """
        Apply a payment intent returned by a synchronous gateway call.

        Returns:
            Optional[ReconciliationOutcome]: None while the intent is not terminal
        """
        if payment_intent.status == "succeeded":
            return await self.payment_succeeded(payment_intent)
        if payment_intent.status == "canceled":
            return await self.payment_canceled(payment_intent)
        if payment_intent.last_payment_error:
            return await self.payment_failed(payment_intent)
        return None

    # Payment intents

    async def _find_payment(
        self, uow: UnitOfWork, payment_intent: PaymentIntentObject
    ) -> Optional[Transaction]:
        """
        Find the payment row for an intent.

        Falls back to the eager row named by metadata.transactionId, adopting it
        when it has not been linked to an intent yet.
        """
        repo = uow.repository
        txn = await repo.find_transaction_by_gateway_id(
            self.provider, payment_intent_id=payment_intent.id
        )
        if txn is not None:
            return txn

        eager_id = _metadata_value(payment_intent.metadata, "transactionId", "transaction_id")
        if eager_id is None:
            return None
        eager = await repo.find_transaction(eager_id)
        if (
            eager is None
            or eager.type != TransactionType.PAYMENT.value
            or eager.provider != self.provider
            or eager.payment_intent_id is not None
        ):
            return None

        eager.payment_intent_id = payment_intent.id
        logger.info(
            "eager_transaction_adopted",
            transaction_id=eager.transaction_id,
            payment_intent_id=payment_intent.id,
        )
        return eager

    @staticmethod
    def _card_snapshot(charge: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not charge:
            return None
        details = charge.get("payment_method_details") or {}
        card = details.get("card")
        if not card:
            return None
        return {
            "type": details.get("type", "card"),
            "brand": card.get("brand"),
            "last4": card.get("last4"),
            "exp_month": card.get("exp_month"),
            "exp_year": card.get("exp_year"),
            "fingerprint": card.get("fingerprint"),
        }

    def _fill_settlement(self, txn: Transaction, payment_intent: PaymentIntentObject) -> bool:
        """Fill settlement fields that are still null. Never overwrites."""
        charge = payment_intent.charge()
        values = {
            "charge_id": payment_intent.charge_id,
            "receipt_url": charge.get("receipt_url") if charge else None,
            "payment_method": self._card_snapshot(charge),
            "billing_details": charge.get("billing_details") if charge else None,
            "client_id": _metadata_value(payment_intent.metadata, "clientId", "client_id"),
        }
        changed = False
        for attr, value in values.items():
            if value is not None and getattr(txn, attr) is None:
                setattr(txn, attr, value)
                changed = True
        return changed

    @staticmethod
    def _payment_error(payment_intent: PaymentIntentObject) -> Dict[str, Any]:
        error = payment_intent.last_payment_error or {}
        return {
            "code": error.get("code"),
            "message": error.get("message"),
            "type": error.get("type"),
            "param": error.get("param"),
        }

    async def _linked_invoice_id(
        self, uow: UnitOfWork, payment_intent: PaymentIntentObject, anomalies: List[str]
    ) -> Optional[int]:
        raw = _metadata_value(payment_intent.metadata, "invoiceId", "invoice_id")
        if raw is None:
            return None
        invoice = None
        if raw.isdigit():
            invoice = await uow.repository.find_invoice(int(raw), for_update=False)
        if invoice is None:
            anomalies.append("unknown_invoice")
            logger.warning(
                "reconciliation_anomaly",
                kind="unknown_invoice",
                payment_intent_id=payment_intent.id,
                invoice_id=raw,
            )
            return None
        return invoice.id

    async def _new_payment(
        self,
        uow: UnitOfWork,
        payment_intent: PaymentIntentObject,
        status: str,
        anomalies: List[str],
    ) -> Transaction:
        """Build a payment row from the gateway's view of an intent."""
        repo = uow.repository
        transaction_id = _metadata_value(payment_intent.metadata, "transactionId", "transaction_id")
        if transaction_id is None or await repo.find_transaction(transaction_id) is not None:
            transaction_id = new_transaction_id(TransactionType.PAYMENT)

        amount_minor = payment_intent.amount
        if status == COMPLETED and payment_intent.amount_received:
            amount_minor = payment_intent.amount_received

        txn = Transaction(
            transaction_id=transaction_id,
            type=TransactionType.PAYMENT.value,
            method=TransactionMethod.STRIPE.value,
            status=status,
            amount=from_minor_units(amount_minor, payment_intent.currency),
            currency=payment_intent.currency.upper(),
            description=payment_intent.description,
            provider=self.provider,
            payment_intent_id=payment_intent.id,
            invoice_id=await self._linked_invoice_id(uow, payment_intent, anomalies),
            extra_metadata=dict(payment_intent.metadata),
        )
        self._fill_settlement(txn, payment_intent)
        return txn

    async def _credit_invoice(
        self, uow: UnitOfWork, txn: Transaction, anomalies: List[str]
    ) -> None:
        if txn.invoice_id is None or txn.status != COMPLETED:
            return
        await uow.lock(invoice_key(txn.invoice_id))
        invoice = await uow.repository.find_invoice(txn.invoice_id)
        if invoice is None:
            anomalies.append("unknown_invoice")
            logger.warning(
                "reconciliation_anomaly",
                kind="unknown_invoice",
                transaction_id=txn.transaction_id,
                invoice_id=txn.invoice_id,
            )
            return
        if txn.amount > invoice.balance_due:
            anomalies.append("invoice_overpayment")
        await uow.repository.apply_payment(invoice, txn.amount, txn.transaction_id)

    async def payment_succeeded(self, payment_intent: PaymentIntentObject) -> ReconciliationOutcome:
        """
        Record a settled payment intent.

        - pending row: complete it, fill settlement details, credit the invoice
        - completed row: fill null fields only, never credit twice
        - failed/cancelled row or none: new completed row from the gateway payload
        """

        async def operation(uow: UnitOfWork) -> ReconciliationOutcome:
            anomalies: List[str] = []
            txn = await self._find_payment(uow, payment_intent)

            if txn is not None and txn.status == PENDING:
                txn.status = COMPLETED
                txn.error = None
                self._fill_settlement(txn, payment_intent)
                await uow.repository.upsert_transaction(txn)
                await self._credit_invoice(uow, txn, anomalies)
                status = "updated"
            elif txn is not None and txn.status == COMPLETED:
                if self._fill_settlement(txn, payment_intent):
                    await uow.repository.upsert_transaction(txn)
                logger.info(
                    "payment_already_completed",
                    transaction_id=txn.transaction_id,
                    payment_intent_id=payment_intent.id,
                )
                return ReconciliationOutcome(
                    status="unchanged",
                    transaction_id=txn.transaction_id,
                    message="Payment already completed",
                )
            else:
                if txn is not None:
                    logger.info(
                        "payment_succeeded_after_terminal_attempt",
                        previous_transaction_id=txn.transaction_id,
                        previous_status=txn.status,
                        payment_intent_id=payment_intent.id,
                    )
                txn = await self._new_payment(uow, payment_intent, COMPLETED, anomalies)
                await uow.repository.upsert_transaction(txn)
                await self._credit_invoice(uow, txn, anomalies)
                status = "created"

            return ReconciliationOutcome(
                status=status,
                transaction_id=txn.transaction_id,
                message="Payment completed",
                anomalies=anomalies,
                notifications=[
                    (
                        "payment_completed",
                        {
                            "transaction_id": txn.transaction_id,
                            "amount": str(txn.amount),
                            "currency": txn.currency,
                            "invoice_id": txn.invoice_id,
                            "client_id": txn.client_id,
                        },
                    )
                ],
            )

        return await self._run(
            "payment_succeeded", payment_intent_key(self.provider, payment_intent.id), operation
        )

    async def payment_failed(self, payment_intent: PaymentIntentObject) -> ReconciliationOutcome:
        """
        Record a failed payment attempt. Never touches the invoice.

        A failure reported after the payment completed is stale and ignored.
        """

        async def operation(uow: UnitOfWork) -> ReconciliationOutcome:
            error = self._payment_error(payment_intent)
            txn = await self._find_payment(uow, payment_intent)

            if txn is None:
                txn = await self._new_payment(uow, payment_intent, FAILED, [])
                txn.error = error
                await uow.repository.upsert_transaction(txn)
                status = "created"
            elif txn.status == PENDING:
                txn.status = FAILED
                txn.error = error
                self._fill_settlement(txn, payment_intent)
                await uow.repository.upsert_transaction(txn)
                status = "updated"
            elif txn.status == COMPLETED:
                logger.warning(
                    "reconciliation_anomaly",
                    kind="stale_failure",
                    transaction_id=txn.transaction_id,
                    payment_intent_id=payment_intent.id,
                )
                return ReconciliationOutcome(
                    status="unchanged",
                    transaction_id=txn.transaction_id,
                    message="Failure reported for a completed payment; ignored",
                    anomalies=["stale_failure"],
                )
            else:
                changed = False
                if txn.status == FAILED and txn.error is None:
                    txn.error = error
                    changed = True
                changed = self._fill_settlement(txn, payment_intent) or changed
                if changed:
                    await uow.repository.upsert_transaction(txn)
                return ReconciliationOutcome(
                    status="unchanged",
                    transaction_id=txn.transaction_id,
                    message=f"Payment already {txn.status}",
                )

            return ReconciliationOutcome(
                status=status,
                transaction_id=txn.transaction_id,
                message="Payment failed",
                notifications=[
                    (
                        "payment_failed",
                        {
                            "transaction_id": txn.transaction_id,
                            "client_id": txn.client_id,
                            "error_code": error.get("code"),
                        },
                    )
                ],
            )

        return await self._run(
            "payment_failed", payment_intent_key(self.provider, payment_intent.id), operation
        )

    async def payment_canceled(self, payment_intent: PaymentIntentObject) -> ReconciliationOutcome:
        """Cancel a pending payment; other states are left as they are."""

        async def operation(uow: UnitOfWork) -> ReconciliationOutcome:
            txn = await self._find_payment(uow, payment_intent)
            if txn is None:
                logger.info("payment_canceled_untracked", payment_intent_id=payment_intent.id)
                return ReconciliationOutcome(status="ignored", message="No matching payment")
            if txn.status != PENDING:
                return ReconciliationOutcome(
                    status="unchanged",
                    transaction_id=txn.transaction_id,
                    message=f"Payment already {txn.status}",
                )

            txn.status = CANCELLED
            if payment_intent.cancellation_reason:
                txn.error = {
                    "code": "canceled",
                    "message": payment_intent.cancellation_reason,
                    "type": None,
                    "param": None,
                }
            await uow.repository.upsert_transaction(txn)
            return ReconciliationOutcome(
                status="updated",
                transaction_id=txn.transaction_id,
                message="Payment cancelled",
            )

        return await self._run(
            "payment_canceled", payment_intent_key(self.provider, payment_intent.id), operation
        )

    # Refunds

    async def _find_original(
        self, uow: UnitOfWork, charge_id: Optional[str], payment_intent_id: Optional[str]
    ) -> Optional[Transaction]:
        repo = uow.repository
        original = None
        if charge_id:
            original = await repo.find_transaction_by_gateway_id(self.provider, charge_id=charge_id)
        if original is None and payment_intent_id:
            original = await repo.find_transaction_by_gateway_id(
                self.provider, payment_intent_id=payment_intent_id
            )
            if original is not None and original.charge_id is None and charge_id:
                original.charge_id = charge_id
        return original

    async def _apply_refund_to_invoice(
        self, uow: UnitOfWork, refund_txn: Transaction, anomalies: List[str]
    ) -> None:
        if refund_txn.invoice_id is None or refund_txn.status != COMPLETED:
            return
        await uow.lock(invoice_key(refund_txn.invoice_id))
        invoice = await uow.repository.find_invoice(refund_txn.invoice_id)
        if invoice is None:
            anomalies.append("unknown_invoice")
            return
        if refund_txn.amount > invoice.amount_paid - invoice.amount_refunded:
            anomalies.append("invoice_over_refund")
        await uow.repository.apply_refund(invoice, refund_txn.amount, refund_txn.transaction_id)

    async def _record_refund(
        self,
        uow: UnitOfWork,
        refund: RefundObject,
        original: Optional[Transaction],
        anomalies: List[str],
    ) -> Tuple[str, Transaction]:
        """Find-or-create the refund row for one gateway refund."""
        repo = uow.repository
        status = REFUND_STATUS_MAP.get(refund.status or "succeeded", PENDING)

        existing = await repo.find_transaction_by_gateway_id(self.provider, refund_id=refund.id)
        if existing is not None:
            if existing.status != PENDING or status == PENDING:
                return "unchanged", existing
            existing.status = status
            if status == FAILED:
                existing.error = {
                    "code": refund.failure_reason,
                    "message": "Refund failed",
                    "type": None,
                    "param": None,
                }
            await repo.upsert_transaction(existing)
            await self._apply_refund_to_invoice(uow, existing, anomalies)
            return "updated", existing

        if original is None:
            anomalies.append("orphan_refund")
            logger.warning(
                "reconciliation_anomaly",
                kind="orphan_refund",
                refund_id=refund.id,
                charge_id=refund.charge,
                payment_intent_id=refund.payment_intent,
            )

        metadata = dict(refund.metadata)
        if original is not None:
            metadata.setdefault("originalTransactionId", original.transaction_id)

        txn = Transaction(
            transaction_id=new_transaction_id(TransactionType.REFUND),
            type=TransactionType.REFUND.value,
            method=TransactionMethod.STRIPE.value,
            status=status,
            amount=from_minor_units(refund.amount, refund.currency),
            currency=refund.currency.upper(),
            description=(
                f"Refund for {original.transaction_id}" if original is not None else "Refund"
            ),
            provider=self.provider,
            refund_id=refund.id,
            charge_id=refund.charge or (original.charge_id if original else None),
            payment_intent_id=refund.payment_intent
            or (original.payment_intent_id if original else None),
            invoice_id=original.invoice_id if original else None,
            client_id=original.client_id if original else None,
            refund_reason=map_refund_reason(refund.reason),
            extra_metadata=metadata,
        )
        if status == FAILED:
            txn.error = {
                "code": refund.failure_reason,
                "message": "Refund failed",
                "type": None,
                "param": None,
            }
        await repo.upsert_transaction(txn)
        await self._apply_refund_to_invoice(uow, txn, anomalies)
        return "created", txn

    @staticmethod
    def _summarize(
        results: List[Tuple[str, Transaction]], anomalies: List[str]
    ) -> ReconciliationOutcome:
        if not results:
            return ReconciliationOutcome(
                status="unchanged", message="Refunds already recorded", anomalies=anomalies
            )
        statuses = {status for status, _ in results}
        if "created" in statuses:
            status = "created"
        elif "updated" in statuses:
            status = "updated"
        else:
            status = "unchanged"

        notifications = [
            (
                "refund_completed",
                {
                    "transaction_id": txn.transaction_id,
                    "amount": str(txn.amount),
                    "currency": txn.currency,
                    "invoice_id": txn.invoice_id,
                },
            )
            for result, txn in results
            if result != "unchanged" and txn.status == COMPLETED
        ]
        return ReconciliationOutcome(
            status=status,
            transaction_id=results[-1][1].transaction_id,
            transaction_ids=[txn.transaction_id for _, txn in results],
            message=f"{len(results)} refund(s) reconciled",
            anomalies=anomalies,
            notifications=notifications,
        )

    async def charge_refunded(self, charge: ChargeObject) -> ReconciliationOutcome:
        """
        Record every refund listed on a charge.

        When the gateway omits the refund list, the part of amount_refunded not
        yet recorded is stored under a synthetic refund ID derived from the
        charge and its cumulative refunded amount.
        """

        async def operation(uow: UnitOfWork) -> ReconciliationOutcome:
            anomalies: List[str] = []
            original = await self._find_original(uow, charge.id, charge.payment_intent)

            refunds = charge.refund_list()
            if refunds is None:
                recorded = await uow.repository.refunded_total_for_charge(self.provider, charge.id)
                delta = from_minor_units(charge.amount_refunded, charge.currency) - recorded
                refunds = []
                if delta > Decimal("0"):
                    refunds.append(
                        RefundObject(
                            id=f"{charge.id}:cumulative:{charge.amount_refunded}",
                            amount=to_minor_units(delta, charge.currency),
                            currency=charge.currency,
                            status="succeeded",
                            charge=charge.id,
                            payment_intent=charge.payment_intent,
                        )
                    )

            results = []
            for refund in refunds:
                if refund.amount <= 0:
                    continue
                results.append(await self._record_refund(uow, refund, original, anomalies))
            return self._summarize(results, anomalies)

        return await self._run("charge_refunded", charge_key(self.provider, charge.id), operation)

    async def refund_updated(self, refund: RefundObject) -> ReconciliationOutcome:
        """Find-or-create a single refund, completing it when the gateway says so."""

        async def operation(uow: UnitOfWork) -> ReconciliationOutcome:
            anomalies: List[str] = []
            original = await self._find_original(uow, refund.charge, refund.payment_intent)
            if refund.amount <= 0:
                return ReconciliationOutcome(status="ignored", message="Zero-amount refund")
            result = await self._record_refund(uow, refund, original, anomalies)
            return self._summarize([result], anomalies)

        lock_key = (
            charge_key(self.provider, refund.charge)
            if refund.charge
            else f"{self.provider}:refund:{refund.id}"
        )
        return await self._run("refund_updated", lock_key, operation)

    # Synchronous path helpers

    async def attach_payment_intent(
        self, transaction_id: str, payment_intent_id: str
    ) -> ReconciliationOutcome:
        """
        Link an eager payment row to the intent created for it.

        A webhook may have adopted the row first; then this is a no-op.
        """

        async def operation(uow: UnitOfWork) -> ReconciliationOutcome:
            txn = await uow.repository.find_transaction(transaction_id)
            if txn is None:
                return ReconciliationOutcome(status="ignored", message="Unknown transaction")
            if txn.payment_intent_id is None:
                txn.payment_intent_id = payment_intent_id
                await uow.repository.upsert_transaction(txn)
                return ReconciliationOutcome(status="updated", transaction_id=transaction_id)
            return ReconciliationOutcome(status="unchanged", transaction_id=transaction_id)

        return await self._run(
            "attach_payment_intent", payment_intent_key(self.provider, payment_intent_id), operation
        )

    async def fail_pending(self, transaction_id: str, error: Dict[str, Any]) -> ReconciliationOutcome:
        """Mark an eager payment failed after the gateway rejected its creation."""

        async def operation(uow: UnitOfWork) -> ReconciliationOutcome:
            txn = await uow.repository.find_transaction(transaction_id)
            if txn is None or txn.status != PENDING:
                return ReconciliationOutcome(status="unchanged", transaction_id=transaction_id)
            txn.status = FAILED
            txn.error = error
            await uow.repository.upsert_transaction(txn)
            return ReconciliationOutcome(
                status="updated",
                transaction_id=transaction_id,
                message="Payment rejected by gateway",
            )

        return await self._run("fail_pending", f"txn:{transaction_id}", operation)
