"""
Consultant payout lifecycle.

Connected accounts move pending_onboarding -> active -> disabled as the
gateway reports their state. Transfers to those accounts are recorded as
payout transactions keyed by the gateway transfer ID, so the synchronous
call and the transfer.* webhooks converge on the same row.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_ledger.config import Settings, get_settings
from payment_ledger.core.locks import LockManager, account_key, transfer_key
from payment_ledger.core.money import from_minor_units, to_decimal
from payment_ledger.core.reconciliation import (
    COMPLETED,
    ReconciliationOutcome,
    new_transaction_id,
)
from payment_ledger.core.retry import call_with_retry
from payment_ledger.database.models import (
    ConnectAccount,
    ConnectAccountStatus,
    Transaction,
    TransactionMethod,
    TransactionType,
)
from payment_ledger.database.repository import LedgerRepository
from payment_ledger.errors import InvalidRequestError, LedgerConflictError, NotFoundError
from payment_ledger.integrations.events import AccountObject, TransferObject
from payment_ledger.integrations.gateway_client import GatewayClient
from payment_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def derive_account_status(account: AccountObject) -> str:
    """
    Map the gateway's view of an account to its onboarding status.

    A disabled reason wins over everything; otherwise payouts_enabled decides.
    """
    if account.disabled_reason:
        return ConnectAccountStatus.DISABLED.value
    if account.payouts_enabled:
        return ConnectAccountStatus.ACTIVE.value
    return ConnectAccountStatus.PENDING_ONBOARDING.value


class PayoutService:
    """Provisions payout accounts and records transfers to them."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: GatewayClient,
        lock_manager: LockManager,
        settings: Optional[Settings] = None,
        provider: str = "stripe",
    ):
        """
        Initialize payout service.

        Args:
            session_factory: Factory for database sessions
            gateway: Gateway client
            lock_manager: Per-key lock manager
            settings: Optional settings (defaults to environment)
            provider: Gateway name stored on payout rows
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.lock_manager = lock_manager
        self.settings = settings or get_settings()
        self.provider = provider

    async def provision_account(
        self, consultant_id: str, country: str, email: str
    ) -> ConnectAccount:
        """
        Return the consultant's payout account, creating it on first use.

        The gateway call carries an idempotency key derived from the
        consultant, so a crash between the call and the insert cannot create
        a second gateway account.

        Raises:
            InvalidRequestError: If required fields are missing
            GatewayError: If the gateway rejects account creation
        """
        if not consultant_id:
            raise InvalidRequestError("consultant_id is required")

        async with self.lock_manager.acquire(f"consultant:{consultant_id}"):
            async with self.session_factory() as session:
                existing = await LedgerRepository(session).find_connect_account(
                    consultant_id=consultant_id
                )
            if existing is not None:
                logger.info(
                    "connect_account_exists",
                    consultant_id=consultant_id,
                    account_id=existing.external_account_id,
                )
                return existing

            created = await call_with_retry(
                self.gateway.create_connect_account,
                email=email,
                country=country,
                idempotency_key=f"connect-account:{consultant_id}",
                metadata={"consultantId": consultant_id},
                settings=self.settings,
            )

            account = ConnectAccount(
                consultant_id=consultant_id,
                external_account_id=created["id"],
                status=derive_account_status(AccountObject.model_validate(created)),
                capabilities=created.get("capabilities") or {},
                email=email,
                country=country.upper(),
                payouts_enabled=bool(created.get("payouts_enabled")),
                charges_enabled=bool(created.get("charges_enabled")),
            )
            async with self.session_factory() as session, session.begin():
                await LedgerRepository(session).add_connect_account(account)

        logger.info(
            "connect_account_provisioned",
            consultant_id=consultant_id,
            account_id=account.external_account_id,
            status=account.status,
        )
        return account

    async def create_onboarding_link(
        self,
        account_ref: str,
        refresh_url: Optional[str] = None,
        return_url: Optional[str] = None,
    ) -> str:
        """
        Hosted onboarding URL for a connected account.

        Redirects default to the application's settings pages.
        """
        app_url = self.settings.app_url.rstrip("/")
        link = await self.gateway.create_account_link(
            account_ref,
            refresh_url=refresh_url or f"{app_url}/settings/payments/refresh",
            return_url=return_url or f"{app_url}/settings/payments/complete",
        )
        return link["url"]

    async def _account_for(
        self, repo: LedgerRepository, consultant_id: str
    ) -> ConnectAccount:
        account = await repo.find_connect_account(consultant_id=consultant_id)
        if account is None:
            raise NotFoundError(f"No payout account for consultant {consultant_id}")
        return account

    async def record_transfer(
        self,
        consultant_id: str,
        amount: Decimal,
        destination_account_ref: Optional[str] = None,
        description: Optional[str] = None,
        currency: str = "USD",
        idempotency_key: Optional[str] = None,
    ) -> Transaction:
        """
        Transfer funds to a consultant and record the payout.

        Args:
            consultant_id: Consultant receiving the payout
            amount: Amount in major units
            destination_account_ref: Connected account ID (looked up when omitted)
            description: Optional description
            currency: Currency code
            idempotency_key: Optional caller key; a fresh one per call otherwise

        Returns:
            Transaction: Payout transaction keyed by the transfer ID

        Raises:
            InvalidRequestError: If amount is not positive
            NotFoundError: If the consultant has no payout account
            GatewayError: If the transfer is rejected
        """
        amount = to_decimal(amount)
        if amount <= 0:
            raise InvalidRequestError("amount must be greater than zero")

        if destination_account_ref is None:
            async with self.session_factory() as session:
                account = await self._account_for(LedgerRepository(session), consultant_id)
            if account.status != ConnectAccountStatus.ACTIVE.value:
                raise InvalidRequestError(
                    f"Payout account for consultant {consultant_id} is {account.status}"
                )
            destination_account_ref = account.external_account_id

        transaction_id = new_transaction_id(TransactionType.PAYOUT)
        transfer = await call_with_retry(
            self.gateway.create_transfer,
            amount=amount,
            currency=currency,
            destination=destination_account_ref,
            idempotency_key=idempotency_key or transaction_id,
            description=description,
            metadata={"consultantId": consultant_id, "transactionId": transaction_id},
            settings=self.settings,
        )

        outcome = await self._upsert_payout(
            TransferObject.model_validate(transfer), consultant_id, transaction_id
        )
        async with self.session_factory() as session:
            txn = await LedgerRepository(session).find_transaction(outcome.transaction_id)
        return txn

    async def _upsert_payout(
        self,
        transfer: TransferObject,
        consultant_id: Optional[str],
        transaction_id: Optional[str] = None,
    ) -> ReconciliationOutcome:
        """Find-or-create the payout row for a transfer under its lock."""
        for attempt in (1, 2):
            try:
                async with self.lock_manager.acquire(transfer_key(self.provider, transfer.id)):
                    async with self.session_factory() as session, session.begin():
                        return await self._upsert_payout_in(
                            LedgerRepository(session), transfer, consultant_id, transaction_id
                        )
            except LedgerConflictError:
                metrics.record_ledger_conflict("transfer")
                if attempt == 2:
                    raise
                logger.warning("payout_conflict_retry", transfer_id=transfer.id)
        raise AssertionError("unreachable")

    async def _upsert_payout_in(
        self,
        repo: LedgerRepository,
        transfer: TransferObject,
        consultant_id: Optional[str],
        transaction_id: Optional[str],
    ) -> ReconciliationOutcome:
        existing = await repo.find_transaction_by_gateway_id(
            self.provider, transfer_id=transfer.id
        )
        if existing is not None:
            if existing.consultant_id is None and consultant_id is not None:
                existing.consultant_id = consultant_id
                await repo.upsert_transaction(existing)
            return ReconciliationOutcome(
                status="unchanged",
                transaction_id=existing.transaction_id,
                message="Payout already recorded",
            )

        anomalies = []
        if consultant_id is None:
            anomalies.append("unattributed_payout")
            logger.warning(
                "reconciliation_anomaly",
                kind="unattributed_payout",
                transfer_id=transfer.id,
                destination=transfer.destination,
            )

        txn = Transaction(
            transaction_id=transaction_id
            or transfer.metadata.get("transactionId")
            or new_transaction_id(TransactionType.PAYOUT),
            type=TransactionType.PAYOUT.value,
            method=TransactionMethod.STRIPE.value,
            status=COMPLETED,
            amount=from_minor_units(transfer.amount, transfer.currency),
            currency=transfer.currency.upper(),
            description=transfer.description,
            provider=self.provider,
            transfer_id=transfer.id,
            consultant_id=consultant_id,
            extra_metadata=dict(transfer.metadata),
        )
        await repo.upsert_transaction(txn)
        logger.info(
            "payout_recorded",
            transaction_id=txn.transaction_id,
            transfer_id=transfer.id,
            consultant_id=consultant_id,
            amount=str(txn.amount),
        )
        for kind in anomalies:
            metrics.record_anomaly(kind)
        return ReconciliationOutcome(
            status="created",
            transaction_id=txn.transaction_id,
            message="Payout recorded",
            anomalies=anomalies,
            notifications=[
                (
                    "payout_recorded",
                    {
                        "transaction_id": txn.transaction_id,
                        "consultant_id": consultant_id,
                        "amount": str(txn.amount),
                        "currency": txn.currency,
                    },
                )
            ],
        )

    async def handle_account_updated(self, account: AccountObject) -> ReconciliationOutcome:
        """
        Sync a connected account's status and capabilities from the gateway.

        Unknown accounts are logged and left alone.
        """
        async with self.lock_manager.acquire(account_key(self.provider, account.id)):
            async with self.session_factory() as session, session.begin():
                repo = LedgerRepository(session)
                record = await repo.find_connect_account(external_account_id=account.id)
                if record is None:
                    logger.warning("connect_account_unknown", account_id=account.id)
                    return ReconciliationOutcome(status="ignored", message="Unknown account")

                previous = record.status
                record.status = derive_account_status(account)
                record.payouts_enabled = account.payouts_enabled
                record.charges_enabled = account.charges_enabled
                record.capabilities = account.capabilities
                if account.email and record.email is None:
                    record.email = account.email

        logger.info(
            "connect_account_updated",
            account_id=account.id,
            consultant_id=record.consultant_id,
            previous_status=previous,
            status=record.status,
        )
        metrics.record_reconciliation("account_updated", "updated")
        return ReconciliationOutcome(
            status="updated" if previous != record.status else "unchanged",
            message=f"Account {record.status}",
        )

    async def handle_transfer_event(
        self, transfer: TransferObject, event_type: str
    ) -> ReconciliationOutcome:
        """
        Converge the ledger on a transfer.* event.

        created/updated find-or-create the payout row; reversed is acknowledged
        and logged for manual follow-up.
        """
        if event_type == "transfer.reversed":
            logger.warning(
                "transfer_reversed",
                transfer_id=transfer.id,
                amount_reversed=transfer.amount_reversed,
                destination=transfer.destination,
            )
            metrics.record_reconciliation("transfer", "acknowledged")
            return ReconciliationOutcome(status="unchanged", message="Transfer reversal logged")

        consultant_id = transfer.metadata.get("consultantId") or transfer.metadata.get(
            "consultant_id"
        )
        if consultant_id is None and transfer.destination:
            async with self.session_factory() as session:
                account = await LedgerRepository(session).find_connect_account(
                    external_account_id=transfer.destination
                )
            if account is not None:
                consultant_id = account.consultant_id

        outcome = await self._upsert_payout(transfer, consultant_id)
        metrics.record_reconciliation("transfer", outcome.status)
        return outcome

    def describe(self, account: ConnectAccount) -> Dict[str, Any]:
        """Account fields returned by the API."""
        return {
            "consultant_id": account.consultant_id,
            "account_id": account.external_account_id,
            "status": account.status,
            "payouts_enabled": account.payouts_enabled,
            "charges_enabled": account.charges_enabled,
        }
