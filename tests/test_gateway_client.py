"""
Unit tests for the Stripe gateway client.
"""
import asyncio
import time
from decimal import Decimal
from typing import Any

import pytest
import stripe

from payment_ledger.core.retry import call_with_retry
from payment_ledger.errors import GatewayError, InvalidRequestError, TransientError
from payment_ledger.integrations.gateway_client import CircuitBreaker, GatewayClient
from payment_ledger.monitoring.metrics import metrics


@pytest.fixture
def client(settings: Any) -> GatewayClient:
    return GatewayClient(settings, CircuitBreaker(failure_threshold=2, timeout=60))


class TestGatewayClient:
    """Test suite for GatewayClient."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_payment_intent_converts_to_minor_units(
        self, client: GatewayClient, mocker: Any
    ) -> None:
        create = mocker.patch(
            "stripe.PaymentIntent.create",
            return_value={"id": "pi_1", "status": "requires_payment_method", "client_secret": "s"},
        )

        result = await client.create_payment_intent(
            amount=Decimal("150.00"),
            currency="USD",
            idempotency_key="pay_abc",
            metadata={"transactionId": "pay_abc"},
        )

        assert result["id"] == "pi_1"
        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 15000
        assert kwargs["currency"] == "usd"
        assert kwargs["idempotency_key"] == "pay_abc"
        assert kwargs["metadata"] == {"transactionId": "pay_abc"}
        assert kwargs["automatic_payment_methods"] == {"enabled": True}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_with_payment_method(
        self, client: GatewayClient, mocker: Any
    ) -> None:
        create = mocker.patch(
            "stripe.PaymentIntent.create", return_value={"id": "pi_2", "status": "succeeded"}
        )

        await client.create_payment_intent(
            amount=Decimal("10.00"),
            currency="usd",
            idempotency_key="pay_x",
            payment_method_id="pm_card_visa",
            confirm=True,
        )

        kwargs = create.call_args.kwargs
        assert kwargs["payment_method"] == "pm_card_visa"
        assert kwargs["confirm"] is True
        assert "automatic_payment_methods" not in kwargs

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"amount": Decimal("0")},
            {"amount": Decimal("-5.00")},
            {"currency": "US"},
            {"currency": "U$D"},
            {"idempotency_key": ""},
            {"confirm": True},
        ],
    )
    async def test_validation_fails_before_network(
        self, client: GatewayClient, mocker: Any, overrides: dict
    ) -> None:
        create = mocker.patch("stripe.PaymentIntent.create")
        params = {"amount": Decimal("10.00"), "currency": "USD", "idempotency_key": "k"}
        params.update(overrides)

        with pytest.raises(InvalidRequestError):
            await client.create_payment_intent(**params)

        create.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_error_maps_to_permanent_gateway_error(
        self, client: GatewayClient, mocker: Any
    ) -> None:
        mocker.patch(
            "stripe.PaymentIntent.create",
            side_effect=stripe.CardError("Your card was declined.", None, "card_declined"),
        )

        with pytest.raises(GatewayError) as exc_info:
            await client.create_payment_intent(Decimal("10.00"), "USD", "k")

        assert not isinstance(exc_info.value, TransientError)
        assert exc_info.value.code == "card_declined"
        assert exc_info.value.to_dict()["code"] == "card_declined"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            stripe.RateLimitError("Too many requests"),
            stripe.APIConnectionError("Network unreachable"),
        ],
    )
    async def test_transient_errors(
        self, client: GatewayClient, mocker: Any, error: Exception
    ) -> None:
        mocker.patch("stripe.PaymentIntent.create", side_effect=error)

        with pytest.raises(TransientError):
            await client.create_payment_intent(Decimal("10.00"), "USD", "k")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_circuit_opens_after_repeated_failures(
        self, client: GatewayClient, mocker: Any
    ) -> None:
        create = mocker.patch(
            "stripe.PaymentIntent.create",
            side_effect=stripe.APIConnectionError("Network unreachable"),
        )

        for _ in range(2):
            with pytest.raises(TransientError):
                await client.create_payment_intent(Decimal("10.00"), "USD", "k")

        with pytest.raises(TransientError) as exc_info:
            await client.create_payment_intent(Decimal("10.00"), "USD", "k")

        assert exc_info.value.code == "circuit_open"
        assert create.call_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_errors_do_not_trip_circuit(
        self, client: GatewayClient, mocker: Any
    ) -> None:
        mocker.patch(
            "stripe.PaymentIntent.create",
            side_effect=stripe.CardError("Declined", None, "card_declined"),
        )

        for _ in range(3):
            with pytest.raises(GatewayError):
                await client.create_payment_intent(Decimal("10.00"), "USD", "k")

        assert client.circuit_breaker.state == "closed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_refund_amount(self, client: GatewayClient, mocker: Any) -> None:
        create = mocker.patch(
            "stripe.Refund.create", return_value={"id": "re_1", "status": "succeeded"}
        )

        await client.create_refund(
            "pi_1", idempotency_key="refund:pay_1:abc", amount=Decimal("50.00"), reason="duplicate"
        )

        kwargs = create.call_args.kwargs
        assert kwargs["payment_intent"] == "pi_1"
        assert kwargs["amount"] == 5000
        assert kwargs["reason"] == "duplicate"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_refund_sends_no_amount(self, client: GatewayClient, mocker: Any) -> None:
        create = mocker.patch(
            "stripe.Refund.create", return_value={"id": "re_1", "status": "succeeded"}
        )

        await client.create_refund("pi_1", idempotency_key="refund:pay_1:abc")

        assert "amount" not in create.call_args.kwargs

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_account_link_requires_urls(self, client: GatewayClient, mocker: Any) -> None:
        create = mocker.patch("stripe.AccountLink.create")

        with pytest.raises(InvalidRequestError):
            await client.create_account_link("acct_1", "not-a-url", "https://example.com/ok")

        create.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_checkout_session_copies_metadata_to_intent(
        self, client: GatewayClient, mocker: Any
    ) -> None:
        create = mocker.patch(
            "stripe.checkout.Session.create",
            return_value={"id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1"},
        )

        await client.create_checkout_session(
            amount=Decimal("150.00"),
            currency="USD",
            product_name="Invoice INV-1",
            success_url="https://app.example.com/ok",
            cancel_url="https://app.example.com/cancel",
            idempotency_key="checkout:1",
            metadata={"invoiceId": "1"},
        )

        kwargs = create.call_args.kwargs
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 15000
        assert kwargs["payment_intent_data"]["metadata"] == {"invoiceId": "1"}


class TestCircuitBreaker:
    """Test suite for breaker state shared by gateway worker threads."""

    @staticmethod
    def failing() -> None:
        raise stripe.APIConnectionError("Network unreachable")

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_failures_are_all_counted(self) -> None:
        breaker = CircuitBreaker(failure_threshold=10_000, timeout=60)

        results = await asyncio.gather(
            *(asyncio.to_thread(breaker.call, self.failing) for _ in range(400)),
            return_exceptions=True,
        )

        assert all(isinstance(r, stripe.APIConnectionError) for r in results)
        assert breaker.failure_count == 400
        assert breaker.state == "closed"

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_failures_open_circuit_once(self, mocker: Any) -> None:
        set_state = mocker.patch.object(metrics, "set_circuit_breaker_state")
        breaker = CircuitBreaker(failure_threshold=5, timeout=60)

        results = await asyncio.gather(
            *(asyncio.to_thread(breaker.call, self.failing) for _ in range(200)),
            return_exceptions=True,
        )

        assert breaker.state == "open"
        set_state.assert_called_once_with("open")
        rejected = [r for r in results if isinstance(r, TransientError)]
        assert all(r.code == "circuit_open" for r in rejected)
        assert breaker.failure_count + len(rejected) == 200

    @pytest.mark.unit
    def test_failed_trial_call_reopens_circuit(self) -> None:
        breaker = CircuitBreaker(failure_threshold=3, timeout=60)
        for _ in range(3):
            with pytest.raises(stripe.APIConnectionError):
                breaker.call(self.failing)
        breaker.last_failure_time = time.time() - 61

        with pytest.raises(stripe.APIConnectionError):
            breaker.call(self.failing)

        assert breaker.state == "open"
        with pytest.raises(TransientError):
            breaker.call(lambda: "ok")

    @pytest.mark.unit
    def test_successful_trial_calls_close_circuit(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=60, success_threshold=2)
        with pytest.raises(stripe.APIConnectionError):
            breaker.call(self.failing)
        breaker.last_failure_time = time.time() - 61

        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.state == "half_open"
        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.state == "closed"
        assert breaker.failure_count == 0


class TestIntentLifecycle:
    """Retrieve, capture and cancel on existing payment intents."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retrieve_expands_latest_charge(
        self, client: GatewayClient, mocker: Any
    ) -> None:
        retrieve = mocker.patch(
            "stripe.PaymentIntent.retrieve", return_value={"id": "pi_1", "status": "succeeded"}
        )

        result = await client.retrieve_payment_intent("pi_1")

        assert result["status"] == "succeeded"
        retrieve.assert_called_once_with("pi_1", expand=["latest_charge"])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_capture_in_minor_units(
        self, client: GatewayClient, mocker: Any
    ) -> None:
        capture = mocker.patch(
            "stripe.PaymentIntent.capture", return_value={"id": "pi_1", "status": "succeeded"}
        )

        await client.capture_payment_intent("pi_1", amount=Decimal("42.50"), currency="USD")

        assert capture.call_args.kwargs["amount_to_capture"] == 4250

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_passes_reason(self, client: GatewayClient, mocker: Any) -> None:
        cancel = mocker.patch(
            "stripe.PaymentIntent.cancel", return_value={"id": "pi_1", "status": "canceled"}
        )

        await client.cancel_payment_intent("pi_1", reason="abandoned")

        cancel.assert_called_once_with("pi_1", cancellation_reason="abandoned")


class TestCustomersAndPaymentMethods:
    """Test suite for customer and payment method operations."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_customer(self, client: GatewayClient, mocker: Any) -> None:
        create = mocker.patch("stripe.Customer.create", return_value={"id": "cus_1"})

        result = await client.create_customer(
            "customer:client_42", email="client@example.com", name="Acme"
        )

        assert result["id"] == "cus_1"
        kwargs = create.call_args.kwargs
        assert kwargs["email"] == "client@example.com"
        assert kwargs["name"] == "Acme"
        assert kwargs["idempotency_key"] == "customer:client_42"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_customer_requires_idempotency_key(
        self, client: GatewayClient, mocker: Any
    ) -> None:
        create = mocker.patch("stripe.Customer.create")

        with pytest.raises(InvalidRequestError):
            await client.create_customer("", email="client@example.com")

        create.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_set_and_clear_default_payment_method(
        self, client: GatewayClient, mocker: Any
    ) -> None:
        modify = mocker.patch("stripe.Customer.modify", return_value={"id": "cus_1"})

        await client.set_default_payment_method("cus_1", "pm_1")
        await client.set_default_payment_method("cus_1", None)

        first, second = modify.call_args_list
        assert first.kwargs["invoice_settings"] == {"default_payment_method": "pm_1"}
        assert second.kwargs["invoice_settings"] == {"default_payment_method": ""}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_card_payment_method(
        self, client: GatewayClient, mocker: Any
    ) -> None:
        create = mocker.patch("stripe.PaymentMethod.create", return_value={"id": "pm_1"})

        await client.create_payment_method(
            "card", idempotency_key="pm:1", details={"token": "tok_visa"}
        )

        kwargs = create.call_args.kwargs
        assert kwargs["type"] == "card"
        assert kwargs["card"] == {"token": "tok_visa"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_attach_and_detach(self, client: GatewayClient, mocker: Any) -> None:
        attach = mocker.patch("stripe.PaymentMethod.attach", return_value={"id": "pm_1"})
        detach = mocker.patch("stripe.PaymentMethod.detach", return_value={"id": "pm_1"})

        await client.attach_payment_method("pm_1", "cus_1")
        await client.detach_payment_method("pm_1")

        attach.assert_called_once_with("pm_1", customer="cus_1")
        detach.assert_called_once_with("pm_1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_payment_methods_returns_plain_dicts(
        self, client: GatewayClient, mocker: Any
    ) -> None:
        mocker.patch(
            "stripe.PaymentMethod.list",
            return_value={"data": [{"id": "pm_1"}, {"id": "pm_2"}]},
        )

        methods = await client.list_payment_methods("cus_1")

        assert [m["id"] for m in methods] == ["pm_1", "pm_2"]


class TestRetry:
    """Test suite for bounded retry of transient failures."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, mocker: Any, settings: Any) -> None:
        fn = mocker.AsyncMock(side_effect=[TransientError("timeout"), {"id": "pi_1"}])

        result = await call_with_retry(fn, amount=1, settings=settings)

        assert result == {"id": "pi_1"}
        assert fn.call_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, mocker: Any, settings: Any) -> None:
        fn = mocker.AsyncMock(side_effect=TransientError("timeout"))

        with pytest.raises(TransientError):
            await call_with_retry(fn, settings=settings)

        assert fn.call_count == settings.gateway_retry_max_attempts

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self, mocker: Any, settings: Any) -> None:
        fn = mocker.AsyncMock(side_effect=GatewayError("declined", code="card_declined"))

        with pytest.raises(GatewayError):
            await call_with_retry(fn, settings=settings)

        assert fn.call_count == 1
