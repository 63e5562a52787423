"""
API routes for the payment ledger.
"""
from typing import Any, Dict, NoReturn, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from payment_ledger.core.payment_methods import PaymentMethodService
from payment_ledger.core.payments import PaymentResult, PaymentService
from payment_ledger.core.payouts import PayoutService
from payment_ledger.database.models import TransactionStatus
from payment_ledger.errors import (
    GatewayError,
    InvalidRequestError,
    NotFoundError,
    PaymentLedgerError,
    TransientError,
)
from payment_ledger.integrations.webhook_dispatcher import WebhookDispatcher
from payment_ledger.monitoring.health import HealthCheck

from .dependencies import (
    get_health_check,
    get_payment_method_service,
    get_payment_service,
    get_payout_service,
    get_webhook_dispatcher,
)
from .schemas import (
    AddPaymentMethodRequest,
    CancelPaymentRequest,
    CheckoutRequest,
    CheckoutSessionResponse,
    ConfirmPaymentRequest,
    ConnectSetupRequest,
    ConnectSetupResponse,
    HealthCheckResponse,
    PaymentMethodListResponse,
    PaymentMethodResponse,
    PaymentResponse,
    PayoutRequest,
    ProcessPaymentRequest,
    RefundRequest,
    RemovePaymentMethodResponse,
    SetDefaultPaymentMethodRequest,
    TransactionListResponse,
    TransactionResponse,
)

logger = structlog.get_logger(__name__)

payment_router = APIRouter(prefix="/payments", tags=["payments"])
monitoring_router = APIRouter(tags=["monitoring"])

SUPPORTED_PROVIDERS = {"stripe"}


def _raise_http(event: str, exc: PaymentLedgerError) -> NoReturn:
    """Map the error taxonomy onto HTTP status codes."""
    if isinstance(exc, InvalidRequestError):
        logger.warning(event, error=str(exc))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, NotFoundError):
        logger.warning(event, error=str(exc))
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, TransientError):
        logger.error(event, error=str(exc), error_code=exc.code)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment gateway temporarily unavailable",
        )
    if isinstance(exc, GatewayError):
        logger.warning(event, error=exc.message, error_code=exc.code)
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"code": exc.code, "message": exc.message},
        )
    logger.error(event, error=str(exc))
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _payment_response(result: PaymentResult) -> PaymentResponse:
    return PaymentResponse(
        transaction=TransactionResponse.model_validate(result.transaction),
        payment_intent_id=result.payment_intent_id,
        client_secret=result.client_secret,
        gateway_status=result.gateway_status,
    )


@payment_router.post(
    "/webhook/{provider}",
    summary="Gateway webhook",
    description="Verify, deduplicate and reconcile a gateway webhook delivery",
)
async def gateway_webhook(
    provider: str,
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
) -> JSONResponse:
    """
    Handle a gateway webhook.

    The raw body is verified before parsing. Failures return 500 so the
    gateway redelivers; handlers are idempotent so redelivery is safe.
    """
    if provider not in SUPPORTED_PROVIDERS:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown provider: {provider}"
        )

    payload = await request.body()
    result = await dispatcher.handle(payload, stripe_signature)
    return JSONResponse(status_code=result.http_status, content=result.body)


@payment_router.post(
    "/process",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment",
)
async def process_payment(
    request: ProcessPaymentRequest,
    response: Response,
    payments: PaymentService = Depends(get_payment_service),
) -> PaymentResponse:
    """
    Create a payment and its gateway intent.

    Returns 202 when the gateway could not be reached; the pending
    transaction settles when the gateway's webhook arrives.
    """
    logger.info(
        "api_process_payment_request",
        client_id=request.client_id,
        amount=str(request.amount),
        currency=request.currency,
    )
    try:
        result = await payments.process_payment(
            amount=request.amount,
            currency=request.currency,
            client_id=request.client_id,
            invoice_id=request.invoice_id,
            customer_id=request.customer_id,
            payment_method_id=request.payment_method_id,
            description=request.description,
            receipt_email=request.receipt_email,
            metadata=request.metadata,
        )
    except PaymentLedgerError as e:
        _raise_http("api_process_payment_error", e)

    if result.payment_intent_id is None:
        response.status_code = status.HTTP_202_ACCEPTED
    return _payment_response(result)


@payment_router.post("/confirm", response_model=PaymentResponse, summary="Confirm a payment")
async def confirm_payment(
    request: ConfirmPaymentRequest,
    payments: PaymentService = Depends(get_payment_service),
) -> PaymentResponse:
    try:
        result = await payments.confirm_payment(
            request.payment_intent_id, request.payment_method_id
        )
    except PaymentLedgerError as e:
        _raise_http("api_confirm_payment_error", e)
    return _payment_response(result)


@payment_router.post("/cancel", response_model=PaymentResponse, summary="Cancel a payment")
async def cancel_payment(
    request: CancelPaymentRequest,
    payments: PaymentService = Depends(get_payment_service),
) -> PaymentResponse:
    try:
        result = await payments.cancel_payment(request.payment_intent_id, request.reason)
    except PaymentLedgerError as e:
        _raise_http("api_cancel_payment_error", e)
    return _payment_response(result)


@payment_router.post(
    "/refund",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Refund a payment",
)
async def refund_payment(
    request: RefundRequest,
    payments: PaymentService = Depends(get_payment_service),
) -> TransactionResponse:
    """Refund all or part of a completed payment."""
    logger.info(
        "api_refund_request",
        transaction_id=request.transaction_id,
        amount=str(request.amount) if request.amount is not None else None,
    )
    try:
        refund = await payments.process_refund(
            request.transaction_id,
            amount=request.amount,
            reason=request.reason,
            idempotency_key=request.idempotency_key,
        )
    except PaymentLedgerError as e:
        _raise_http("api_refund_error", e)
    return TransactionResponse.model_validate(refund)


@payment_router.post(
    "/payout",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Pay out to a consultant",
)
async def create_payout(
    request: PayoutRequest,
    payouts: PayoutService = Depends(get_payout_service),
) -> TransactionResponse:
    try:
        payout = await payouts.record_transfer(
            request.consultant_id,
            request.amount,
            destination_account_ref=request.destination_account_ref,
            description=request.description,
            currency=request.currency,
            idempotency_key=request.idempotency_key,
        )
    except PaymentLedgerError as e:
        _raise_http("api_payout_error", e)
    return TransactionResponse.model_validate(payout)


@payment_router.get(
    "/transactions/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get a transaction",
)
async def get_transaction(
    transaction_id: str,
    payments: PaymentService = Depends(get_payment_service),
) -> TransactionResponse:
    try:
        txn = await payments.get_transaction(transaction_id)
    except PaymentLedgerError as e:
        _raise_http("api_get_transaction_error", e)
    return TransactionResponse.model_validate(txn)


@payment_router.get(
    "/transactions",
    response_model=TransactionListResponse,
    summary="List transactions",
)
async def list_transactions(
    client_id: Optional[str] = Query(default=None),
    consultant_id: Optional[str] = Query(default=None),
    invoice_id: Optional[int] = Query(default=None),
    type: Optional[str] = Query(default=None, description="payment, refund or payout"),
    status_filter: Optional[TransactionStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    payments: PaymentService = Depends(get_payment_service),
) -> TransactionListResponse:
    items, total = await payments.list_transactions(
        client_id=client_id,
        consultant_id=consultant_id,
        invoice_id=invoice_id,
        type=type,
        status=status_filter.value if status_filter else None,
        limit=limit,
        offset=offset,
    )
    return TransactionListResponse(
        items=[TransactionResponse.model_validate(t) for t in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@payment_router.post(
    "/connect/setup",
    response_model=ConnectSetupResponse,
    summary="Provision a payout account",
)
async def connect_setup(
    request: ConnectSetupRequest,
    payouts: PayoutService = Depends(get_payout_service),
) -> ConnectSetupResponse:
    """
    Provision (or return) the consultant's payout account.

    An onboarding link is included until the account can receive payouts.
    """
    try:
        account = await payouts.provision_account(
            request.consultant_id, request.country, request.email
        )
        onboarding_url = None
        if not account.payouts_enabled:
            onboarding_url = await payouts.create_onboarding_link(
                account.external_account_id,
                refresh_url=request.refresh_url,
                return_url=request.return_url,
            )
    except PaymentLedgerError as e:
        _raise_http("api_connect_setup_error", e)
    return ConnectSetupResponse(**payouts.describe(account), onboarding_url=onboarding_url)


@payment_router.post(
    "/checkout/invoice/{invoice_id}",
    response_model=CheckoutSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Hosted checkout for an invoice",
)
async def invoice_checkout(
    invoice_id: int,
    request: CheckoutRequest,
    payments: PaymentService = Depends(get_payment_service),
) -> Dict[str, Any]:
    try:
        return await payments.create_invoice_checkout_session(
            invoice_id,
            request.client_id,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
        )
    except PaymentLedgerError as e:
        _raise_http("api_invoice_checkout_error", e)


@payment_router.get(
    "/methods",
    response_model=PaymentMethodListResponse,
    summary="List saved payment methods",
)
async def list_payment_methods(
    client_id: str = Query(..., min_length=1),
    payment_methods: PaymentMethodService = Depends(get_payment_method_service),
) -> PaymentMethodListResponse:
    try:
        items, default_id = await payment_methods.list_methods(client_id)
    except PaymentLedgerError as e:
        _raise_http("api_list_payment_methods_error", e)
    return PaymentMethodListResponse(
        items=[PaymentMethodResponse(**item) for item in items],
        default_payment_method_id=default_id,
    )


@payment_router.post(
    "/methods",
    response_model=PaymentMethodResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Save a payment method",
)
async def add_payment_method(
    request: AddPaymentMethodRequest,
    payment_methods: PaymentMethodService = Depends(get_payment_method_service),
) -> PaymentMethodResponse:
    """
    Save a card for the client.

    Creates the client's gateway customer on first use. The first saved
    method becomes the default.
    """
    try:
        method = await payment_methods.add_method(
            request.client_id,
            payment_method_id=request.payment_method_id,
            card=request.card,
            billing_details=request.billing_details,
            email=request.email,
            name=request.name,
            set_as_default=request.set_as_default,
        )
    except PaymentLedgerError as e:
        _raise_http("api_add_payment_method_error", e)
    return PaymentMethodResponse(**method)


@payment_router.delete(
    "/methods/{payment_method_id}",
    response_model=RemovePaymentMethodResponse,
    summary="Remove a saved payment method",
)
async def remove_payment_method(
    payment_method_id: str,
    client_id: str = Query(..., min_length=1),
    payment_methods: PaymentMethodService = Depends(get_payment_method_service),
) -> RemovePaymentMethodResponse:
    try:
        default_id = await payment_methods.remove_method(client_id, payment_method_id)
    except PaymentLedgerError as e:
        _raise_http("api_remove_payment_method_error", e)
    return RemovePaymentMethodResponse(
        removed=payment_method_id, default_payment_method_id=default_id
    )


@payment_router.post(
    "/methods/{payment_method_id}/default",
    response_model=PaymentMethodResponse,
    summary="Set the default payment method",
)
async def set_default_payment_method(
    payment_method_id: str,
    request: SetDefaultPaymentMethodRequest,
    payment_methods: PaymentMethodService = Depends(get_payment_method_service),
) -> PaymentMethodResponse:
    try:
        method = await payment_methods.set_default(request.client_id, payment_method_id)
    except PaymentLedgerError as e:
        _raise_http("api_set_default_payment_method_error", e)
    return PaymentMethodResponse(**method)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
)
async def health(
    response: Response,
    health_check: HealthCheck = Depends(get_health_check),
) -> Dict[str, Any]:
    result = await health_check.check_all()
    if result["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get("/metrics", summary="Prometheus metrics")
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
