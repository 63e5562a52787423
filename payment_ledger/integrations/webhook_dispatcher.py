"""
Gateway webhook dispatcher with signature verification and event deduplication.

Implements:
- Webhook signature verification over the raw request body
- Decoding into typed events
- Event deduplication using Redis
- Routing to the reconciliation engine or the payout lifecycle
- Status codes that make the gateway redeliver on failure
"""
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import stripe
import structlog

from payment_ledger.config import Settings, get_settings
from payment_ledger.core.payouts import PayoutService
from payment_ledger.core.reconciliation import ReconciliationEngine, ReconciliationOutcome
from payment_ledger.errors import MalformedEventError, SignatureVerificationError
from payment_ledger.integrations.events import (
    AccountUpdated,
    GatewayEvent,
    TransferEvent,
    UnrecognizedEvent,
    decode_event,
)
from payment_ledger.monitoring.logging import ledger_context
from payment_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class WebhookResult:
    """HTTP status and body to return to the gateway."""

    http_status: int
    body: Dict[str, Any] = field(default_factory=dict)


class WebhookDispatcher:
    """
    Handles gateway webhook events with deduplication and processing.

    Features:
    - Signature verification using the webhook signing secret
    - Event deduplication (processed event IDs stored in Redis)
    - 500 on handler failure so the gateway retries
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        payouts: PayoutService,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize webhook dispatcher.

        Args:
            engine: Reconciliation engine for payment and refund events
            payouts: Payout lifecycle for account and transfer events
            redis_client: Optional Redis client for event deduplication
            settings: Optional settings (defaults to environment)
        """
        self.engine = engine
        self.payouts = payouts
        self.redis_client = redis_client
        self.settings = settings or get_settings()

        logger.info("webhook_dispatcher_initialized", dedup_enabled=redis_client is not None)

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify webhook signature and parse the payload.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value

        Returns:
            Dict[str, Any]: Parsed event body

        Raises:
            SignatureVerificationError: If signature verification fails
            MalformedEventError: If the verified body is not a JSON object
        """
        if not signature:
            logger.error("webhook_signature_verification_failed", error="missing signature header")
            raise SignatureVerificationError("Missing signature header")

        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                text,
                signature,
                self.settings.stripe_webhook_secret,
                self.settings.stripe_webhook_tolerance,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise SignatureVerificationError(f"Invalid webhook signature: {e}") from e

        try:
            body = json.loads(text)
        except ValueError as e:
            logger.error("webhook_payload_invalid_json", error=str(e))
            raise MalformedEventError(f"Webhook payload is not valid JSON: {e}") from e

        if not isinstance(body, dict):
            logger.error("webhook_payload_not_an_object", payload_type=type(body).__name__)
            raise MalformedEventError("Webhook payload must be a JSON object")
        return body

    async def is_event_processed(self, event_id: str) -> bool:
        """
        Check if webhook event has already been processed.

        Args:
            event_id: Gateway event ID

        Returns:
            bool: True if event already processed, False otherwise
        """
        if self.redis_client is None:
            return False
        try:
            exists = await self.redis_client.exists(f"webhook:processed:{event_id}")
            return bool(exists)
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            # If Redis is down, process the event anyway; handlers are idempotent
            return False

    async def mark_event_processed(self, event_id: str) -> None:
        """
        Mark webhook event as processed.

        Args:
            event_id: Gateway event ID
        """
        if self.redis_client is None:
            return
        try:
            await self.redis_client.setex(
                f"webhook:processed:{event_id}", self.settings.webhook_dedup_ttl, "1"
            )
            logger.info("webhook_marked_processed", event_id=event_id)
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    async def dispatch(self, event: GatewayEvent) -> ReconciliationOutcome:
        """Route a decoded event to the component that owns it."""
        if isinstance(event, AccountUpdated):
            return await self.payouts.handle_account_updated(event.account)
        if isinstance(event, TransferEvent):
            return await self.payouts.handle_transfer_event(event.transfer, event.type)
        return await self.engine.handle_event(event)

    async def handle(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookResult:
        """
        Process one webhook delivery end to end.

        Args:
            raw_body: Raw request body, exactly as received
            signature_header: Stripe-Signature header value

        Returns:
            WebhookResult: 400 for rejected payloads, 500 when processing failed
                (the gateway will redeliver), 200 otherwise
        """
        started = time.perf_counter()

        try:
            payload = self.verify_signature(raw_body, signature_header)
        except SignatureVerificationError as e:
            metrics.record_webhook_event("unknown", "rejected", time.perf_counter() - started)
            return WebhookResult(400, {"error": "invalid_signature", "message": str(e)})
        except MalformedEventError as e:
            metrics.record_webhook_event("unknown", "rejected", time.perf_counter() - started)
            return WebhookResult(400, {"error": "malformed_event", "message": str(e)})

        try:
            event = decode_event(payload)
        except MalformedEventError as e:
            logger.error("webhook_event_malformed", error=str(e), event_id=payload.get("id"))
            metrics.record_webhook_event(
                str(payload.get("type", "unknown")), "rejected", time.perf_counter() - started
            )
            return WebhookResult(400, {"error": "malformed_event", "message": str(e)})

        with ledger_context(event_id=event.id, event_type=event.type):
            return await self._process(event, started)

    async def _process(self, event: GatewayEvent, started: float) -> WebhookResult:
        logger.info("processing_webhook_event")

        if await self.is_event_processed(event.id):
            logger.info("webhook_event_already_processed")
            metrics.record_webhook_event(event.type, "duplicate", time.perf_counter() - started)
            return WebhookResult(
                200, {"status": "duplicate", "event_id": event.id, "message": "Event already processed"}
            )

        try:
            outcome = await self.dispatch(event)
        except Exception as e:
            logger.exception("webhook_event_processing_failed", error=str(e))
            metrics.record_webhook_event(event.type, "failed", time.perf_counter() - started)
            return WebhookResult(
                500, {"status": "error", "event_id": event.id, "message": "Processing failed"}
            )

        await self.mark_event_processed(event.id)
        self.engine.schedule_notifications(outcome)

        status = "ignored" if isinstance(event, UnrecognizedEvent) else "processed"
        metrics.record_webhook_event(event.type, status, time.perf_counter() - started)
        logger.info("webhook_event_processed_successfully", outcome=outcome.status)
        return WebhookResult(
            200,
            {
                "status": status,
                "event_id": event.id,
                "event_type": event.type,
                "result": outcome.to_dict(),
            },
        )
