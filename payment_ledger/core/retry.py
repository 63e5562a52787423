"""Bounded retry for transient gateway failures."""
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from payment_ledger.config import Settings, get_settings
from payment_ledger.errors import TransientError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "gateway_call_retrying",
        attempt=retry_state.attempt_number,
        error=str(exc),
    )


async def call_with_retry(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    settings: Optional[Settings] = None,
    **kwargs: Any,
) -> T:
    """
    Await fn, retrying TransientError with exponential backoff.

    Only use for gateway calls that carry an idempotency key, so a retry
    cannot create a second object on the gateway.

    Raises:
        TransientError: If every attempt failed transiently
        GatewayError: Permanent errors are raised on the first attempt
    """
    settings = settings or get_settings()
    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(TransientError),
        stop=stop_after_attempt(settings.gateway_retry_max_attempts),
        wait=wait_exponential(
            multiplier=settings.gateway_retry_base_delay,
            max=settings.gateway_retry_max_delay,
        ),
        before_sleep=_log_retry,
        reraise=True,
    ):
        with attempt:
            return await fn(*args, **kwargs)
    raise AssertionError("unreachable")
