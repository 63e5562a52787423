"""
Stripe gateway client with circuit breaker and error classification.

Implements:
- Local validation before any network call
- Major to minor unit conversion at a single boundary
- Idempotency keys on every creation call
- Circuit breaker pattern
- Error classification into GatewayError / TransientError

The client never retries. Callers that hold an idempotency key decide
whether a TransientError is worth another attempt.
"""
import asyncio
import threading
import time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

import stripe
import structlog

from payment_ledger.config import Settings, get_settings
from payment_ledger.core.money import to_minor_units
from payment_ledger.errors import (
    GatewayError,
    GatewayErrorType,
    InvalidRequestError,
    TransientError,
)
from payment_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Amount = Union[Decimal, int, float, str]


class CircuitBreaker:
    """
    Circuit breaker for gateway API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold. Gateway calls run in worker threads,
    so every read and write of the breaker state holds ``_lock``.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open
        self._lock = threading.Lock()

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Execute function with circuit breaker protection.

        Args:
            func: Function to execute
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Function result

        Raises:
            TransientError: If circuit is open
        """
        with self._lock:
            if self.state == "open":
                if (
                    self.last_failure_time
                    and time.time() - self.last_failure_time > self.timeout
                ):
                    self.state = "half_open"
                    self.success_count = 0
                    metrics.set_circuit_breaker_state(self.state)
                    logger.info("circuit_breaker_half_open")
                else:
                    raise TransientError("Circuit breaker is open", code="circuit_open")

        # The gateway call itself runs outside the lock
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if not isinstance(e, (stripe.CardError, stripe.InvalidRequestError)):
                self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        with self._lock:
            self.failure_count = 0
            if self.state == "half_open":
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self.state = "closed"
                    metrics.set_circuit_breaker_state(self.state)
                    logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call. A failed trial call reopens a half-open circuit."""
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.time()
            if self.state == "open":
                return
            if self.state == "half_open" or self.failure_count >= self.failure_threshold:
                self.state = "open"
                metrics.set_circuit_breaker_state(self.state)
                logger.warning(
                    "circuit_breaker_opened",
                    failure_count=self.failure_count,
                )


def _plain(obj: Any) -> Dict[str, Any]:
    """Gateway objects as plain dicts."""
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    return obj.to_dict()


def _require(value: Any, name: str) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InvalidRequestError(f"{name} is required")


def _require_url(value: Optional[str], name: str) -> None:
    _require(value, name)
    if not value.startswith(("http://", "https://")):
        raise InvalidRequestError(f"{name} must be an http(s) URL")


def _require_amount(amount: Optional[Amount], currency: str) -> int:
    _require(amount, "amount")
    minor = to_minor_units(amount, currency)
    if minor <= 0:
        raise InvalidRequestError("amount must be greater than zero")
    return minor


def _require_currency(currency: Optional[str]) -> str:
    _require(currency, "currency")
    if len(currency) != 3 or not currency.isalpha():
        raise InvalidRequestError(f"Invalid currency code: {currency}")
    return currency.lower()


class GatewayClient:
    """
    Wrapper for the Stripe API with production-grade error handling.

    Every method is async; the blocking SDK call runs in a worker thread.
    Amounts are taken in major units and sent in minor units.
    """

    provider = "stripe"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """Initialize gateway client."""
        settings = settings or get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "gateway_client_initialized",
            provider=self.provider,
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> GatewayErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            GatewayErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return GatewayErrorType.RATE_LIMIT
        if isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return GatewayErrorType.TRANSIENT
        if isinstance(error, (stripe.CardError, stripe.InvalidRequestError)):
            return GatewayErrorType.PERMANENT
        status = getattr(error, "http_status", None)
        if status is not None and status >= 500:
            return GatewayErrorType.TRANSIENT
        return GatewayErrorType.PERMANENT

    def _map_stripe_error(self, operation: str, error: stripe.StripeError) -> GatewayError:
        """
        Translate a Stripe SDK error into the ledger error taxonomy.

        Args:
            operation: Gateway operation name
            error: Stripe error

        Returns:
            GatewayError: TransientError for retryable failures
        """
        error_type = self._classify_error(error)
        body = getattr(error, "json_body", None) or {}
        raw = body.get("error", {}) if isinstance(body, dict) else {}
        code = getattr(error, "code", None) or raw.get("code")
        message = getattr(error, "user_message", None) or str(error)

        metrics.record_gateway_error(error_type.value)
        logger.error(
            "gateway_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=code,
            error_message=message,
        )

        if error_type is GatewayErrorType.PERMANENT:
            return GatewayError(message, code=code, raw=raw, error_type=error_type)
        return TransientError(message, code=code, raw=raw, error_type=error_type)

    async def _call(self, operation: str, fn: Callable[[], Any]) -> Any:
        started = time.perf_counter()
        try:
            result = await asyncio.to_thread(self.circuit_breaker.call, fn)
        except stripe.StripeError as e:
            metrics.record_gateway_call(operation, "error", time.perf_counter() - started)
            raise self._map_stripe_error(operation, e) from e
        except TransientError:
            metrics.record_gateway_call(operation, "circuit_open", time.perf_counter() - started)
            logger.warning("gateway_circuit_open", operation=operation)
            raise
        metrics.record_gateway_call(operation, "success", time.perf_counter() - started)
        return _plain(result)

    # Payment intents

    async def create_payment_intent(
        self,
        amount: Amount,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
        customer_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        description: Optional[str] = None,
        receipt_email: Optional[str] = None,
        confirm: bool = False,
    ) -> Dict[str, Any]:
        """
        Create a PaymentIntent with idempotency.

        Args:
            amount: Amount in major units (150.00 -> 15000 cents)
            currency: Currency code (e.g., 'USD')
            idempotency_key: Idempotency key for preventing duplicates
            metadata: Optional metadata echoed back on webhooks
            customer_id: Optional gateway customer ID
            payment_method_id: Optional payment method to charge
            description: Optional description
            receipt_email: Optional receipt address
            confirm: Confirm immediately (requires a payment method)

        Returns:
            Dict[str, Any]: Created payment intent

        Raises:
            InvalidRequestError: If local validation fails
            GatewayError: If the gateway rejects the request
        """
        stripe_currency = _require_currency(currency)
        amount_minor = _require_amount(amount, currency)
        _require(idempotency_key, "idempotency_key")
        if confirm:
            _require(payment_method_id, "payment_method_id")

        logger.info(
            "creating_payment_intent",
            amount_minor=amount_minor,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        params: Dict[str, Any] = {
            "amount": amount_minor,
            "currency": stripe_currency,
            "metadata": metadata or {},
            "statement_descriptor_suffix": self.settings.statement_descriptor[:22],
        }
        if customer_id:
            params["customer"] = customer_id
        if payment_method_id:
            params["payment_method"] = payment_method_id
            params["confirm"] = confirm
        else:
            params["automatic_payment_methods"] = {"enabled": True}
        if description:
            params["description"] = description
        if receipt_email:
            params["receipt_email"] = receipt_email

        payment_intent = await self._call(
            "create_payment_intent",
            lambda: stripe.PaymentIntent.create(idempotency_key=idempotency_key, **params),
        )
        logger.info(
            "payment_intent_created",
            payment_intent_id=payment_intent["id"],
            status=payment_intent["status"],
        )
        return payment_intent

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        """
        Retrieve a PaymentIntent by ID, with its latest charge expanded.

        Raises:
            InvalidRequestError: If payment_intent_id is missing
            GatewayError: If retrieval fails
        """
        _require(payment_intent_id, "payment_intent_id")
        payment_intent = await self._call(
            "retrieve_payment_intent",
            lambda: stripe.PaymentIntent.retrieve(
                payment_intent_id, expand=["latest_charge"]
            ),
        )
        return payment_intent

    async def confirm_payment_intent(
        self, payment_intent_id: str, payment_method_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Confirm a PaymentIntent.

        Args:
            payment_intent_id: Stripe PaymentIntent ID
            payment_method_id: Optional payment method ID

        Returns:
            Dict[str, Any]: Confirmed payment intent

        Raises:
            InvalidRequestError: If payment_intent_id is missing
            GatewayError: If confirmation fails
        """
        _require(payment_intent_id, "payment_intent_id")
        logger.info("confirming_payment_intent", payment_intent_id=payment_intent_id)

        kwargs: Dict[str, Any] = {"expand": ["latest_charge"]}
        if payment_method_id:
            kwargs["payment_method"] = payment_method_id

        payment_intent = await self._call(
            "confirm_payment_intent",
            lambda: stripe.PaymentIntent.confirm(payment_intent_id, **kwargs),
        )
        logger.info(
            "payment_intent_confirmed",
            payment_intent_id=payment_intent["id"],
            status=payment_intent["status"],
        )
        return payment_intent

    async def capture_payment_intent(
        self,
        payment_intent_id: str,
        amount: Optional[Amount] = None,
        currency: str = "USD",
    ) -> Dict[str, Any]:
        """Capture an authorized PaymentIntent, optionally for less than authorized."""
        _require(payment_intent_id, "payment_intent_id")
        kwargs: Dict[str, Any] = {"expand": ["latest_charge"]}
        if amount is not None:
            kwargs["amount_to_capture"] = _require_amount(amount, currency)

        payment_intent = await self._call(
            "capture_payment_intent",
            lambda: stripe.PaymentIntent.capture(payment_intent_id, **kwargs),
        )
        logger.info(
            "payment_intent_captured",
            payment_intent_id=payment_intent["id"],
            status=payment_intent["status"],
        )
        return payment_intent

    async def cancel_payment_intent(
        self, payment_intent_id: str, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """Cancel a PaymentIntent that has not succeeded."""
        _require(payment_intent_id, "payment_intent_id")
        kwargs: Dict[str, Any] = {}
        if reason:
            kwargs["cancellation_reason"] = reason

        payment_intent = await self._call(
            "cancel_payment_intent",
            lambda: stripe.PaymentIntent.cancel(payment_intent_id, **kwargs),
        )
        logger.info(
            "payment_intent_canceled",
            payment_intent_id=payment_intent["id"],
            reason=reason,
        )
        return payment_intent

    # Customers and payment methods

    async def create_customer(
        self,
        idempotency_key: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Create a gateway customer."""
        _require(idempotency_key, "idempotency_key")

        params: Dict[str, Any] = {"metadata": metadata or {}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name

        customer = await self._call(
            "create_customer",
            lambda: stripe.Customer.create(idempotency_key=idempotency_key, **params),
        )
        logger.info("customer_created", customer_id=customer["id"])
        return customer

    async def set_default_payment_method(
        self, customer_id: str, payment_method_id: Optional[str]
    ) -> Dict[str, Any]:
        """
        Set (or clear, with None) the customer's default payment method.

        Raises:
            InvalidRequestError: If customer_id is missing
            GatewayError: If the update fails
        """
        _require(customer_id, "customer_id")
        customer = await self._call(
            "set_default_payment_method",
            lambda: stripe.Customer.modify(
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id or ""},
            ),
        )
        logger.info(
            "customer_default_payment_method_set",
            customer_id=customer_id,
            payment_method_id=payment_method_id,
        )
        return customer

    async def create_payment_method(
        self,
        type: str,
        idempotency_key: str,
        details: Dict[str, Any],
        billing_details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Create a payment method from tokenised details.

        Args:
            type: Payment method type (e.g. 'card')
            idempotency_key: Idempotency key
            details: Type-specific parameters (e.g. {'token': 'tok_visa'})
            billing_details: Optional billing details
        """
        _require(type, "type")
        _require(idempotency_key, "idempotency_key")
        _require(details, "details")

        params: Dict[str, Any] = {"type": type, type: details}
        if billing_details:
            params["billing_details"] = billing_details

        payment_method = await self._call(
            "create_payment_method",
            lambda: stripe.PaymentMethod.create(idempotency_key=idempotency_key, **params),
        )
        logger.info("payment_method_created", payment_method_id=payment_method["id"])
        return payment_method

    async def attach_payment_method(
        self, payment_method_id: str, customer_id: str
    ) -> Dict[str, Any]:
        """Attach a payment method to a customer."""
        _require(payment_method_id, "payment_method_id")
        _require(customer_id, "customer_id")
        payment_method = await self._call(
            "attach_payment_method",
            lambda: stripe.PaymentMethod.attach(payment_method_id, customer=customer_id),
        )
        logger.info(
            "payment_method_attached",
            payment_method_id=payment_method_id,
            customer_id=customer_id,
        )
        return payment_method

    async def detach_payment_method(self, payment_method_id: str) -> Dict[str, Any]:
        """Detach a payment method from its customer."""
        _require(payment_method_id, "payment_method_id")
        payment_method = await self._call(
            "detach_payment_method",
            lambda: stripe.PaymentMethod.detach(payment_method_id),
        )
        logger.info("payment_method_detached", payment_method_id=payment_method_id)
        return payment_method

    async def list_payment_methods(
        self, customer_id: str, type: str = "card", limit: int = 10
    ) -> List[Dict[str, Any]]:
        """List a customer's payment methods of one type."""
        _require(customer_id, "customer_id")
        result = await self._call(
            "list_payment_methods",
            lambda: stripe.PaymentMethod.list(customer=customer_id, type=type, limit=limit),
        )
        return [_plain(pm) for pm in _plain(result).get("data", [])]

    # Refunds

    async def create_refund(
        self,
        payment_intent_id: str,
        idempotency_key: str,
        amount: Optional[Amount] = None,
        currency: str = "USD",
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Create a refund for a payment.

        Args:
            payment_intent_id: Stripe PaymentIntent ID
            idempotency_key: Idempotency key
            amount: Optional partial refund amount in major units
            currency: Currency of the original payment
            reason: Optional refund reason
            metadata: Optional metadata

        Returns:
            Dict[str, Any]: Created refund

        Raises:
            InvalidRequestError: If local validation fails
            GatewayError: If refund creation fails
        """
        _require(payment_intent_id, "payment_intent_id")
        _require(idempotency_key, "idempotency_key")

        params: Dict[str, Any] = {
            "payment_intent": payment_intent_id,
            "metadata": metadata or {},
        }
        if amount is not None:
            params["amount"] = _require_amount(amount, currency)
        if reason:
            params["reason"] = reason

        logger.info(
            "creating_refund",
            payment_intent_id=payment_intent_id,
            amount_minor=params.get("amount"),
        )

        refund = await self._call(
            "create_refund",
            lambda: stripe.Refund.create(idempotency_key=idempotency_key, **params),
        )
        logger.info(
            "refund_created",
            refund_id=refund["id"],
            status=refund["status"],
        )
        return refund

    # Connect

    async def create_connect_account(
        self,
        email: str,
        country: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Create an Express connected account for payouts."""
        _require(email, "email")
        _require(country, "country")
        _require(idempotency_key, "idempotency_key")

        account = await self._call(
            "create_connect_account",
            lambda: stripe.Account.create(
                idempotency_key=idempotency_key,
                type="express",
                country=country.upper(),
                email=email,
                capabilities={
                    "card_payments": {"requested": True},
                    "transfers": {"requested": True},
                },
                metadata=metadata or {},
            ),
        )
        logger.info("connect_account_created", account_id=account["id"])
        return account

    async def create_account_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> Dict[str, Any]:
        """Create a hosted onboarding link for a connected account."""
        _require(account_id, "account_id")
        _require_url(refresh_url, "refresh_url")
        _require_url(return_url, "return_url")

        link = await self._call(
            "create_account_link",
            lambda: stripe.AccountLink.create(
                account=account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
            ),
        )
        return link

    async def create_transfer(
        self,
        amount: Amount,
        currency: str,
        destination: str,
        idempotency_key: str,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Transfer funds to a connected account."""
        stripe_currency = _require_currency(currency)
        amount_minor = _require_amount(amount, currency)
        _require(destination, "destination")
        _require(idempotency_key, "idempotency_key")

        params: Dict[str, Any] = {
            "amount": amount_minor,
            "currency": stripe_currency,
            "destination": destination,
            "metadata": metadata or {},
        }
        if description:
            params["description"] = description

        transfer = await self._call(
            "create_transfer",
            lambda: stripe.Transfer.create(idempotency_key=idempotency_key, **params),
        )
        logger.info(
            "transfer_created",
            transfer_id=transfer["id"],
            destination=destination,
            amount_minor=amount_minor,
        )
        return transfer

    # Checkout

    async def create_checkout_session(
        self,
        amount: Amount,
        currency: str,
        product_name: str,
        success_url: str,
        cancel_url: str,
        idempotency_key: str,
        customer_email: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Create a hosted checkout session for a single line item.

        The metadata is copied onto the resulting PaymentIntent so webhook
        handling can link the payment back to its invoice.
        """
        stripe_currency = _require_currency(currency)
        amount_minor = _require_amount(amount, currency)
        _require(product_name, "product_name")
        _require_url(success_url, "success_url")
        _require_url(cancel_url, "cancel_url")
        _require(idempotency_key, "idempotency_key")

        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": stripe_currency,
                        "product_data": {"name": product_name},
                        "unit_amount": amount_minor,
                    },
                    "quantity": 1,
                }
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata or {},
            "payment_intent_data": {"metadata": metadata or {}},
        }
        if customer_email:
            params["customer_email"] = customer_email

        session = await self._call(
            "create_checkout_session",
            lambda: stripe.checkout.Session.create(idempotency_key=idempotency_key, **params),
        )
        logger.info("checkout_session_created", session_id=session["id"])
        return session
