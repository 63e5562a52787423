"""
Tests for gateway customers and saved payment methods.
"""
import asyncio
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import select

from payment_ledger.core.payment_methods import PaymentMethodService
from payment_ledger.database.models import ClientBillingProfile
from payment_ledger.errors import InvalidRequestError, NotFoundError

from factories import saved_card


async def billing_profiles(session_factory: Any) -> list:
    async with session_factory() as session:
        return list((await session.execute(select(ClientBillingProfile))).scalars().all())


class TestCustomers:
    """Test suite for gateway customer creation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_customer_is_created_once_per_client(
        self, payment_methods: PaymentMethodService, gateway: Any, session_factory: Any
    ) -> None:
        first = await payment_methods.ensure_customer("client_1", email="a@example.com")
        second = await payment_methods.ensure_customer("client_1")

        assert first.external_customer_id == "cus_1"
        assert second.external_customer_id == "cus_1"
        gateway.create_customer.assert_awaited_once()
        kwargs = gateway.create_customer.await_args.kwargs
        assert kwargs["idempotency_key"] == "customer:client_1"
        assert kwargs["metadata"] == {"clientId": "client_1"}
        [profile] = await billing_profiles(session_factory)
        assert profile.client_id == "client_1"
        assert profile.email == "a@example.com"

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_first_use_creates_one_customer(
        self, payment_methods: PaymentMethodService, gateway: Any, session_factory: Any
    ) -> None:
        profiles = await asyncio.gather(
            *[payment_methods.ensure_customer("client_1") for _ in range(4)]
        )

        assert {p.external_customer_id for p in profiles} == {"cus_1"}
        gateway.create_customer.assert_awaited_once()
        assert len(await billing_profiles(session_factory)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_client_is_rejected(
        self, payment_methods: PaymentMethodService, gateway: Any
    ) -> None:
        with pytest.raises(InvalidRequestError):
            await payment_methods.ensure_customer("")

        gateway.create_customer.assert_not_awaited()


class TestAddPaymentMethod:
    """Test suite for saving payment methods."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_saved_method_becomes_default(
        self, payment_methods: PaymentMethodService, gateway: Any, session_factory: Any
    ) -> None:
        gateway.attach_payment_method.return_value = saved_card("pm_1")

        method = await payment_methods.add_method("client_1", payment_method_id="pm_1")

        assert method["id"] == "pm_1"
        assert method["brand"] == "visa"
        assert method["last4"] == "4242"
        assert method["is_default"] is True
        gateway.attach_payment_method.assert_awaited_once_with("pm_1", "cus_1")
        gateway.set_default_payment_method.assert_awaited_once_with("cus_1", "pm_1")
        [profile] = await billing_profiles(session_factory)
        assert profile.default_payment_method_id == "pm_1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_method_keeps_existing_default(
        self, payment_methods: PaymentMethodService, gateway: Any, session_factory: Any
    ) -> None:
        gateway.attach_payment_method.return_value = saved_card("pm_1")
        await payment_methods.add_method("client_1", payment_method_id="pm_1")
        gateway.attach_payment_method.return_value = saved_card("pm_2", last4="0005")

        method = await payment_methods.add_method("client_1", payment_method_id="pm_2")

        assert method["is_default"] is False
        [profile] = await billing_profiles(session_factory)
        assert profile.default_payment_method_id == "pm_1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_set_as_default_overrides_existing_default(
        self, payment_methods: PaymentMethodService, gateway: Any
    ) -> None:
        gateway.attach_payment_method.return_value = saved_card("pm_1")
        await payment_methods.add_method("client_1", payment_method_id="pm_1")
        gateway.attach_payment_method.return_value = saved_card("pm_2")

        method = await payment_methods.add_method(
            "client_1", payment_method_id="pm_2", set_as_default=True
        )

        assert method["is_default"] is True
        gateway.set_default_payment_method.assert_awaited_with("cus_1", "pm_2")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_details_are_created_then_attached(
        self, payment_methods: PaymentMethodService, gateway: Any
    ) -> None:
        gateway.create_payment_method.return_value = saved_card("pm_new", customer=None)
        gateway.attach_payment_method.return_value = saved_card("pm_new")

        method = await payment_methods.add_method(
            "client_1", card={"token": "tok_visa"}, billing_details={"name": "Acme"}
        )

        assert method["id"] == "pm_new"
        args = gateway.create_payment_method.await_args
        assert args.args == ("card",)
        assert args.kwargs["details"] == {"token": "tok_visa"}
        assert args.kwargs["billing_details"] == {"name": "Acme"}
        assert args.kwargs["idempotency_key"].startswith("pm:client_1:")
        gateway.attach_payment_method.assert_awaited_once_with("pm_new", "cus_1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "source", [{}, {"payment_method_id": "pm_1", "card": {"token": "tok_visa"}}]
    )
    async def test_exactly_one_source_is_required(
        self, payment_methods: PaymentMethodService, gateway: Any, source: dict
    ) -> None:
        with pytest.raises(InvalidRequestError):
            await payment_methods.add_method("client_1", **source)

        gateway.create_customer.assert_not_awaited()
        gateway.attach_payment_method.assert_not_awaited()


class TestListAndRemove:
    """Test suite for listing, removing and defaulting saved methods."""

    @pytest_asyncio.fixture
    async def two_cards(self, payment_methods: PaymentMethodService, gateway: Any) -> None:
        gateway.attach_payment_method.return_value = saved_card("pm_1")
        await payment_methods.add_method("client_1", payment_method_id="pm_1")
        gateway.attach_payment_method.return_value = saved_card("pm_2", last4="0005")
        await payment_methods.add_method("client_1", payment_method_id="pm_2")
        gateway.list_payment_methods.return_value = [
            saved_card("pm_1"),
            saved_card("pm_2", last4="0005"),
        ]
        gateway.set_default_payment_method.reset_mock()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_client_without_customer_has_no_methods(
        self, payment_methods: PaymentMethodService, gateway: Any
    ) -> None:
        items, default_id = await payment_methods.list_methods("client_1")

        assert items == []
        assert default_id is None
        gateway.list_payment_methods.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_marks_default(
        self, payment_methods: PaymentMethodService, gateway: Any, two_cards: None
    ) -> None:
        items, default_id = await payment_methods.list_methods("client_1")

        assert default_id == "pm_1"
        assert [(m["id"], m["is_default"]) for m in items] == [("pm_1", True), ("pm_2", False)]
        gateway.list_payment_methods.assert_awaited_once_with("cus_1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_removing_default_promotes_next_method(
        self,
        payment_methods: PaymentMethodService,
        gateway: Any,
        session_factory: Any,
        two_cards: None,
    ) -> None:
        default_id = await payment_methods.remove_method("client_1", "pm_1")

        assert default_id == "pm_2"
        gateway.detach_payment_method.assert_awaited_once_with("pm_1")
        gateway.set_default_payment_method.assert_awaited_once_with("cus_1", "pm_2")
        [profile] = await billing_profiles(session_factory)
        assert profile.default_payment_method_id == "pm_2"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_removing_last_method_clears_default(
        self, payment_methods: PaymentMethodService, gateway: Any, session_factory: Any
    ) -> None:
        gateway.attach_payment_method.return_value = saved_card("pm_1")
        await payment_methods.add_method("client_1", payment_method_id="pm_1")
        gateway.list_payment_methods.return_value = [saved_card("pm_1")]

        default_id = await payment_methods.remove_method("client_1", "pm_1")

        assert default_id is None
        [profile] = await billing_profiles(session_factory)
        assert profile.default_payment_method_id is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_removing_non_default_keeps_default(
        self, payment_methods: PaymentMethodService, gateway: Any, two_cards: None
    ) -> None:
        default_id = await payment_methods.remove_method("client_1", "pm_2")

        assert default_id == "pm_1"
        gateway.set_default_payment_method.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_another_clients_method_cannot_be_removed(
        self, payment_methods: PaymentMethodService, gateway: Any, two_cards: None
    ) -> None:
        with pytest.raises(NotFoundError):
            await payment_methods.remove_method("client_1", "pm_someone_else")

        gateway.detach_payment_method.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_client_cannot_remove(
        self, payment_methods: PaymentMethodService, gateway: Any
    ) -> None:
        with pytest.raises(NotFoundError):
            await payment_methods.remove_method("client_9", "pm_1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_set_default(
        self,
        payment_methods: PaymentMethodService,
        gateway: Any,
        session_factory: Any,
        two_cards: None,
    ) -> None:
        method = await payment_methods.set_default("client_1", "pm_2")

        assert method["id"] == "pm_2"
        assert method["is_default"] is True
        gateway.set_default_payment_method.assert_awaited_once_with("cus_1", "pm_2")
        [profile] = await billing_profiles(session_factory)
        assert profile.default_payment_method_id == "pm_2"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_set_default_requires_ownership(
        self, payment_methods: PaymentMethodService, gateway: Any, two_cards: None
    ) -> None:
        with pytest.raises(NotFoundError):
            await payment_methods.set_default("client_1", "pm_someone_else")

        gateway.set_default_payment_method.assert_not_awaited()
