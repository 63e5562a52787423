"""
Tests for log processors and ledger context binding.
"""
from decimal import Decimal
from typing import Any, Dict

import pytest
import structlog

from payment_ledger.core.payments import PaymentService
from payment_ledger.integrations.webhook_dispatcher import WebhookDispatcher
from payment_ledger.monitoring.logging import (
    REDACTED,
    ledger_context,
    redact_sensitive_fields,
    setup_logging,
    stringify_ledger_ids,
)

from factories import event, payment_intent, signed


class TestProcessors:
    """Test suite for the ledger log processors."""

    @pytest.mark.unit
    def test_secrets_are_redacted_at_any_depth(self) -> None:
        event_dict = {
            "event": "gateway_error",
            "client_secret": "pi_1_secret_abc",
            "raw": {
                "payment_method": {"card": {"number": "4242424242424242", "cvc": "123"}},
                "items": [{"api_key": "sk_test_x"}],
            },
            "transaction_id": "pay_1",
        }

        result = redact_sensitive_fields(None, "info", event_dict)

        assert result["client_secret"] == REDACTED
        assert result["raw"]["payment_method"]["card"] == {"number": REDACTED, "cvc": REDACTED}
        assert result["raw"]["items"] == [{"api_key": REDACTED}]
        assert result["transaction_id"] == "pay_1"
        assert result["event"] == "gateway_error"

    @pytest.mark.unit
    def test_missing_secret_stays_none(self) -> None:
        result = redact_sensitive_fields(None, "info", {"event": "x", "client_secret": None})

        assert result["client_secret"] is None

    @pytest.mark.unit
    def test_ledger_ids_render_as_strings(self) -> None:
        result = stringify_ledger_ids(
            None, "info", {"event": "x", "invoice_id": 42, "client_id": None, "amount": 10}
        )

        assert result["invoice_id"] == "42"
        assert result["client_id"] is None
        assert result["amount"] == 10

    @pytest.mark.unit
    def test_setup_installs_ledger_processors(self) -> None:
        setup_logging()

        processors = structlog.get_config()["processors"]
        assert stringify_ledger_ids in processors
        assert redact_sensitive_fields in processors
        assert processors.index(redact_sensitive_fields) < len(processors) - 1


class TestLedgerContext:
    """Test suite for binding ledger identifiers to log context."""

    @pytest.mark.unit
    def test_ids_are_bound_inside_block_only(self) -> None:
        with ledger_context(event_id="evt_1", transaction_id="pay_1", invoice_id=None):
            bound = structlog.contextvars.get_contextvars()

        assert bound["event_id"] == "evt_1"
        assert bound["transaction_id"] == "pay_1"
        assert "invoice_id" not in bound
        assert "event_id" not in structlog.contextvars.get_contextvars()

    @pytest.mark.unit
    def test_unknown_keys_are_rejected(self) -> None:
        with pytest.raises(ValueError):
            with ledger_context(card_number="4242"):
                pass

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_webhook_handling_carries_event_id(
        self, dispatcher: WebhookDispatcher, settings: Any, mocker: Any
    ) -> None:
        seen: Dict[str, Any] = {}
        handle_event = dispatcher.engine.handle_event

        async def recording(evt: Any) -> Any:
            seen.update(structlog.contextvars.get_contextvars())
            return await handle_event(evt)

        mocker.patch.object(dispatcher.engine, "handle_event", side_effect=recording)
        body, header = signed(
            event("payment_intent.succeeded", payment_intent(), event_id="evt_ctx"),
            settings.stripe_webhook_secret,
        )

        result = await dispatcher.handle(body, header)

        assert result.http_status == 200
        assert seen["event_id"] == "evt_ctx"
        assert seen["event_type"] == "payment_intent.succeeded"
        assert "event_id" not in structlog.contextvars.get_contextvars()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_creation_carries_transaction_id(
        self, payments: PaymentService, gateway: Any
    ) -> None:
        seen: Dict[str, Any] = {}

        async def create(**kwargs: Any) -> Dict[str, Any]:
            seen.update(structlog.contextvars.get_contextvars())
            return payment_intent(status="succeeded", metadata=kwargs["metadata"])

        gateway.create_payment_intent.side_effect = create

        result = await payments.process_payment(
            amount=Decimal("150.00"), currency="USD", client_id="client_1"
        )

        assert seen["transaction_id"] == result.transaction.transaction_id
        assert seen["client_id"] == "client_1"
        assert "invoice_id" not in seen
