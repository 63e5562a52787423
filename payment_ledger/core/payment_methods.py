"""
Client payment methods.

Each paying client gets one gateway customer, created on first use with an
idempotency key derived from the client. Saved cards live on that customer;
the ledger keeps only the customer reference and the client's default.
"""
import uuid
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_ledger.config import Settings, get_settings
from payment_ledger.core.locks import LockManager, client_key
from payment_ledger.core.retry import call_with_retry
from payment_ledger.database.models import ClientBillingProfile
from payment_ledger.database.repository import LedgerRepository
from payment_ledger.errors import InvalidRequestError, LedgerConflictError, NotFoundError
from payment_ledger.integrations.gateway_client import GatewayClient

logger = structlog.get_logger(__name__)


def describe_payment_method(
    payment_method: Dict[str, Any], default_payment_method_id: Optional[str]
) -> Dict[str, Any]:
    """Card summary safe to return to the client."""
    card = payment_method.get("card") or {}
    return {
        "id": payment_method["id"],
        "type": payment_method.get("type", "card"),
        "brand": card.get("brand"),
        "last4": card.get("last4"),
        "exp_month": card.get("exp_month"),
        "exp_year": card.get("exp_year"),
        "is_default": payment_method["id"] == default_payment_method_id,
    }


class PaymentMethodService:
    """Gateway customers and saved payment methods for paying clients."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: GatewayClient,
        lock_manager: LockManager,
        settings: Optional[Settings] = None,
        provider: str = "stripe",
    ):
        """
        Initialize payment method service.

        Args:
            session_factory: Factory for database sessions
            gateway: Gateway client
            lock_manager: Per-key lock manager
            settings: Optional settings (defaults to environment)
            provider: Gateway name stored on billing profiles
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.lock_manager = lock_manager
        self.settings = settings or get_settings()
        self.provider = provider

    async def _profile(self, client_id: str) -> Optional[ClientBillingProfile]:
        async with self.session_factory() as session:
            return await LedgerRepository(session).find_billing_profile(client_id)

    async def _require_profile(self, client_id: str) -> ClientBillingProfile:
        profile = await self._profile(client_id)
        if profile is None:
            raise NotFoundError(f"No payment methods on file for client {client_id}")
        return profile

    async def _gateway_methods(self, profile: ClientBillingProfile) -> List[Dict[str, Any]]:
        return await call_with_retry(
            self.gateway.list_payment_methods,
            profile.external_customer_id,
            settings=self.settings,
        )

    async def _save_default(
        self, profile: ClientBillingProfile, payment_method_id: Optional[str]
    ) -> None:
        await call_with_retry(
            self.gateway.set_default_payment_method,
            profile.external_customer_id,
            payment_method_id,
            settings=self.settings,
        )
        async with self.session_factory() as session, session.begin():
            stored = await LedgerRepository(session).find_billing_profile(
                profile.client_id, for_update=True
            )
            stored.default_payment_method_id = payment_method_id
        profile.default_payment_method_id = payment_method_id
        logger.info(
            "default_payment_method_changed",
            client_id=profile.client_id,
            payment_method_id=payment_method_id,
        )

    async def ensure_customer(
        self,
        client_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> ClientBillingProfile:
        """
        Return the client's gateway customer, creating it on first use.

        Raises:
            InvalidRequestError: If client_id is missing
            GatewayError: If the gateway rejects customer creation
        """
        if not client_id:
            raise InvalidRequestError("client_id is required")

        async with self.lock_manager.acquire(client_key(client_id)):
            existing = await self._profile(client_id)
            if existing is not None:
                return existing

            customer = await call_with_retry(
                self.gateway.create_customer,
                idempotency_key=f"customer:{client_id}",
                email=email,
                name=name,
                metadata={"clientId": client_id},
                settings=self.settings,
            )
            profile = ClientBillingProfile(
                client_id=client_id,
                provider=self.provider,
                external_customer_id=customer["id"],
                email=email,
            )
            try:
                async with self.session_factory() as session, session.begin():
                    await LedgerRepository(session).add_billing_profile(profile)
            except LedgerConflictError:
                # Another process won the insert with the same gateway customer
                existing = await self._profile(client_id)
                if existing is None:
                    raise
                return existing

        logger.info(
            "gateway_customer_created",
            client_id=client_id,
            customer_id=profile.external_customer_id,
        )
        return profile

    async def list_methods(self, client_id: str) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """
        List the client's saved cards.

        Returns:
            Tuple of card summaries and the default payment method ID; empty
            when the client has no gateway customer yet
        """
        profile = await self._profile(client_id)
        if profile is None:
            return [], None
        methods = await self._gateway_methods(profile)
        default_id = profile.default_payment_method_id
        return [describe_payment_method(m, default_id) for m in methods], default_id

    async def add_method(
        self,
        client_id: str,
        payment_method_id: Optional[str] = None,
        card: Optional[Dict[str, Any]] = None,
        billing_details: Optional[Dict[str, Any]] = None,
        email: Optional[str] = None,
        name: Optional[str] = None,
        set_as_default: bool = False,
    ) -> Dict[str, Any]:
        """
        Save a payment method for the client.

        Either attaches an existing gateway payment method or creates one from
        tokenised card details. The first saved method becomes the default.

        Raises:
            InvalidRequestError: If neither or both sources are given
            GatewayError: If the gateway rejects the payment method
        """
        if bool(payment_method_id) == bool(card):
            raise InvalidRequestError("Provide either payment_method_id or card details")

        profile = await self.ensure_customer(client_id, email=email, name=name)

        if not payment_method_id:
            created = await call_with_retry(
                self.gateway.create_payment_method,
                "card",
                idempotency_key=f"pm:{client_id}:{uuid.uuid4().hex}",
                details=card,
                billing_details=billing_details,
                settings=self.settings,
            )
            payment_method_id = created["id"]

        attached = await call_with_retry(
            self.gateway.attach_payment_method,
            payment_method_id,
            profile.external_customer_id,
            settings=self.settings,
        )
        logger.info(
            "payment_method_added",
            client_id=client_id,
            payment_method_id=attached["id"],
        )

        if set_as_default or profile.default_payment_method_id is None:
            await self._save_default(profile, attached["id"])
        return describe_payment_method(attached, profile.default_payment_method_id)

    async def remove_method(self, client_id: str, payment_method_id: str) -> Optional[str]:
        """
        Detach a saved payment method.

        When the default is removed, the next remaining card becomes the
        default (or none when nothing is left).

        Returns:
            Optional[str]: The client's default payment method afterwards

        Raises:
            NotFoundError: If the client or the payment method is unknown
        """
        profile = await self._require_profile(client_id)
        methods = await self._gateway_methods(profile)
        if payment_method_id not in {m["id"] for m in methods}:
            raise NotFoundError(f"Payment method {payment_method_id} not found for this client")

        await call_with_retry(
            self.gateway.detach_payment_method, payment_method_id, settings=self.settings
        )
        logger.info(
            "payment_method_removed", client_id=client_id, payment_method_id=payment_method_id
        )

        if profile.default_payment_method_id == payment_method_id:
            remaining = [m["id"] for m in methods if m["id"] != payment_method_id]
            await self._save_default(profile, remaining[0] if remaining else None)
        return profile.default_payment_method_id

    async def set_default(self, client_id: str, payment_method_id: str) -> Dict[str, Any]:
        """
        Make a saved payment method the client's default.

        Raises:
            NotFoundError: If the client or the payment method is unknown
        """
        profile = await self._require_profile(client_id)
        methods = {m["id"]: m for m in await self._gateway_methods(profile)}
        if payment_method_id not in methods:
            raise NotFoundError(f"Payment method {payment_method_id} not found for this client")

        await self._save_default(profile, payment_method_id)
        return describe_payment_method(methods[payment_method_id], payment_method_id)
