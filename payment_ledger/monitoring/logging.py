"""
Structured logging configuration.

Uses structlog for JSON-formatted logs. Request IDs are bound per request by
the API middleware; ledger identifiers (event, transaction, gateway objects)
are bound per unit of work with ``ledger_context`` so that every line logged
while handling a webhook or payment carries them.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Mapping

import structlog
from pythonjsonlogger import jsonlogger

from payment_ledger.config import get_settings

REDACTED = "[redacted]"

LEDGER_CONTEXT_KEYS = frozenset(
    {
        "event_id",
        "event_type",
        "transaction_id",
        "payment_intent_id",
        "charge_id",
        "refund_id",
        "transfer_id",
        "invoice_id",
        "client_id",
        "consultant_id",
    }
)

# Never rendered, at any nesting depth
SENSITIVE_KEYS = frozenset(
    {
        "client_secret",
        "cvc",
        "number",
        "card_number",
        "stripe_secret_key",
        "stripe_webhook_secret",
        "api_key",
        "authorization",
        "stripe_signature",
    }
)


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Add application context to log events.

    Args:
        logger: Logger instance
        method_name: Log method name
        event_dict: Event dictionary

    Returns:
        dict[str, Any]: Enhanced event dictionary
    """
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    return event_dict


def _redact(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            k: REDACTED if k in SENSITIVE_KEYS and v is not None else _redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(v) for v in value]
    return value


def redact_sensitive_fields(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Mask client secrets, raw card fields and credentials.

    Gateway payloads are sometimes logged whole (error bodies, event
    objects); nested dictionaries are scanned as well.
    """
    return _redact(event_dict)


def stringify_ledger_ids(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Render ledger identifiers as strings.

    Invoice IDs are integers in the database but strings in gateway metadata;
    log queries match on one form only.
    """
    for key in LEDGER_CONTEXT_KEYS.intersection(event_dict):
        value = event_dict[key]
        if value is not None and not isinstance(value, str):
            event_dict[key] = str(value)
    return event_dict


@contextmanager
def ledger_context(**ids: Any) -> Iterator[None]:
    """
    Bind ledger identifiers to every log line emitted inside the block.

    Values that are None are skipped. The binding is carried into tasks
    created inside the block and removed on exit.

    Raises:
        ValueError: If a key is not a ledger identifier
    """
    unknown = set(ids) - LEDGER_CONTEXT_KEYS
    if unknown:
        raise ValueError(f"Not ledger context keys: {sorted(unknown)}")
    bound = {key: value for key, value in ids.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def setup_logging() -> None:
    """
    Configure structured logging with JSON formatter.

    Sets up:
    - JSON-formatted logs
    - Request ID and ledger ID tracking via contextvars
    - Redaction of secrets and card data
    """
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_app_context,
            stringify_ledger_ids,
            redact_sensitive_fields,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        rename_fields={
            "timestamp": "@timestamp",
            "level": "level",
            "name": "logger",
            "message": "message",
        },
    )
    json_handler.setFormatter(formatter)
    root_logger.addHandler(json_handler)

    # Suppress noisy loggers
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.INFO)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    logger = structlog.get_logger(__name__)
    logger.info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
