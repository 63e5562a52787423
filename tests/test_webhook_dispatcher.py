"""
Tests for webhook verification, deduplication and dispatch.
"""
import json
import time
from decimal import Decimal
from typing import Any

import pytest

from payment_ledger.integrations.webhook_dispatcher import WebhookDispatcher

from factories import all_transactions, card_declined, event, payment_intent, signed


@pytest.fixture
def secret(settings: Any) -> str:
    return settings.stripe_webhook_secret


class TestSignatureVerification:
    """Test suite for webhook signature checks."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_valid_signature_is_processed(
        self, dispatcher: WebhookDispatcher, secret: str, session_factory: Any
    ) -> None:
        body, header = signed(event("payment_intent.succeeded", payment_intent()), secret)

        result = await dispatcher.handle(body, header)

        assert result.http_status == 200
        assert result.body["status"] == "processed"
        assert result.body["result"]["status"] == "created"
        [txn] = await all_transactions(session_factory)
        assert txn.amount == Decimal("150.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_wrong_secret_is_rejected(
        self, dispatcher: WebhookDispatcher, session_factory: Any
    ) -> None:
        body, header = signed(
            event("payment_intent.succeeded", payment_intent()), "whsec_someone_else"
        )

        result = await dispatcher.handle(body, header)

        assert result.http_status == 400
        assert result.body["error"] == "invalid_signature"
        assert await all_transactions(session_factory) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_signature_is_rejected(self, dispatcher: WebhookDispatcher) -> None:
        body = json.dumps(event("payment_intent.succeeded", payment_intent())).encode()

        result = await dispatcher.handle(body, None)

        assert result.http_status == 400

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tampered_body_is_rejected(
        self, dispatcher: WebhookDispatcher, secret: str
    ) -> None:
        body, header = signed(event("payment_intent.succeeded", payment_intent()), secret)
        tampered = body.replace(b"15000", b"99999")

        result = await dispatcher.handle(tampered, header)

        assert result.http_status == 400

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_timestamp_is_rejected(
        self, dispatcher: WebhookDispatcher, secret: str
    ) -> None:
        body, header = signed(
            event("payment_intent.succeeded", payment_intent()),
            secret,
            timestamp=int(time.time()) - 3600,
        )

        result = await dispatcher.handle(body, header)

        assert result.http_status == 400

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verified_but_malformed_event_is_rejected(
        self, dispatcher: WebhookDispatcher, secret: str
    ) -> None:
        broken = {"id": "pi_1", "object": "payment_intent", "status": "succeeded"}
        body, header = signed(event("payment_intent.succeeded", broken), secret)

        result = await dispatcher.handle(body, header)

        assert result.http_status == 400
        assert result.body["error"] == "malformed_event"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [[{"id": "evt_1"}], "evt_1", 42, None])
    async def test_signed_json_that_is_not_an_object_is_rejected(
        self, dispatcher: WebhookDispatcher, secret: str, session_factory: Any, payload: Any
    ) -> None:
        body, header = signed(payload, secret)

        result = await dispatcher.handle(body, header)

        assert result.http_status == 400
        assert result.body["error"] == "malformed_event"
        assert await all_transactions(session_factory) == []


class TestDeduplication:
    """Test suite for event deduplication."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redelivery_is_acknowledged_as_duplicate(
        self, dispatcher: WebhookDispatcher, secret: str, fake_redis: Any, session_factory: Any
    ) -> None:
        body, header = signed(
            event("payment_intent.succeeded", payment_intent(), event_id="evt_1"), secret
        )

        first = await dispatcher.handle(body, header)
        second = await dispatcher.handle(body, header)

        assert first.body["status"] == "processed"
        assert second.http_status == 200
        assert second.body["status"] == "duplicate"
        assert "webhook:processed:evt_1" in fake_redis.store
        assert len(await all_transactions(session_factory)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_without_redis_replay_is_still_idempotent(
        self,
        reconciliation_engine: Any,
        payouts: Any,
        settings: Any,
        secret: str,
        session_factory: Any,
    ) -> None:
        dispatcher = WebhookDispatcher(reconciliation_engine, payouts, None, settings)
        body, header = signed(event("payment_intent.succeeded", payment_intent()), secret)

        await dispatcher.handle(body, header)
        second = await dispatcher.handle(body, header)

        assert second.body["status"] == "processed"
        assert second.body["result"]["status"] == "unchanged"
        assert len(await all_transactions(session_factory)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_errors_do_not_block_processing(
        self, dispatcher: WebhookDispatcher, secret: str, fake_redis: Any
    ) -> None:
        fake_redis.exists.side_effect = ConnectionError("redis down")
        fake_redis.setex.side_effect = ConnectionError("redis down")
        body, header = signed(event("payment_intent.succeeded", payment_intent()), secret)

        result = await dispatcher.handle(body, header)

        assert result.http_status == 200
        assert result.body["status"] == "processed"


class TestDispatch:
    """Test suite for routing and failure reporting."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_handler_failure_returns_500_and_allows_redelivery(
        self,
        dispatcher: WebhookDispatcher,
        secret: str,
        fake_redis: Any,
        mocker: Any,
        session_factory: Any,
    ) -> None:
        body, header = signed(
            event("payment_intent.succeeded", payment_intent(), event_id="evt_fail"), secret
        )
        original = dispatcher.engine.handle_event
        mocker.patch.object(
            dispatcher.engine, "handle_event", side_effect=RuntimeError("database unavailable")
        )

        failed = await dispatcher.handle(body, header)

        assert failed.http_status == 500
        assert "webhook:processed:evt_fail" not in fake_redis.store

        dispatcher.engine.handle_event = original
        retried = await dispatcher.handle(body, header)

        assert retried.http_status == 200
        assert retried.body["status"] == "processed"
        assert len(await all_transactions(session_factory)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unrecognized_event_is_acknowledged(
        self, dispatcher: WebhookDispatcher, secret: str, session_factory: Any
    ) -> None:
        body, header = signed(event("invoice.finalized", {"id": "in_1"}), secret)

        result = await dispatcher.handle(body, header)

        assert result.http_status == 200
        assert result.body["status"] == "ignored"
        assert await all_transactions(session_factory) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_failed_event(
        self, dispatcher: WebhookDispatcher, secret: str, session_factory: Any
    ) -> None:
        body, header = signed(
            event(
                "payment_intent.payment_failed",
                payment_intent(status="requires_payment_method", last_payment_error=card_declined()),
            ),
            secret,
        )

        result = await dispatcher.handle(body, header)

        assert result.http_status == 200
        [txn] = await all_transactions(session_factory)
        assert txn.status == "failed"
        assert txn.error["code"] == "card_declined"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_account_events_go_to_payouts(
        self, dispatcher: WebhookDispatcher, secret: str, mocker: Any
    ) -> None:
        handler = mocker.patch.object(
            dispatcher.payouts,
            "handle_account_updated",
            return_value=mocker.MagicMock(
                status="updated", notifications=[], to_dict=lambda: {"status": "updated"}
            ),
        )
        body, header = signed(
            event("account.updated", {"id": "acct_1", "payouts_enabled": True}), secret
        )

        result = await dispatcher.handle(body, header)

        assert result.http_status == 200
        handler.assert_awaited_once()
        assert handler.await_args.args[0].id == "acct_1"
