"""
Pytest configuration and fixtures.
"""
import os

os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_ledger_fake_key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_ledger_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GATEWAY_RETRY_BASE_DELAY", "0.001")
os.environ.setdefault("GATEWAY_RETRY_MAX_DELAY", "0.005")
os.environ.setdefault("APP_ENV", "test")
os.environ.pop("REDIS_URL", None)

from decimal import Decimal  # noqa: E402
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Tuple  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from payment_ledger.config import Settings, get_settings  # noqa: E402
from payment_ledger.core.locks import LockManager  # noqa: E402
from payment_ledger.core.payment_methods import PaymentMethodService  # noqa: E402
from payment_ledger.core.payments import PaymentService  # noqa: E402
from payment_ledger.core.payouts import PayoutService  # noqa: E402
from payment_ledger.core.reconciliation import ReconciliationEngine  # noqa: E402
from payment_ledger.database.connection import create_session_factory, init_db  # noqa: E402
from payment_ledger.database.models import Invoice, InvoiceStatus  # noqa: E402
from payment_ledger.database.repository import LedgerRepository  # noqa: E402
from payment_ledger.integrations.gateway_client import GatewayClient  # noqa: E402
from payment_ledger.integrations.webhook_dispatcher import WebhookDispatcher  # noqa: E402

get_settings.cache_clear()


class RecordingNotifier:
    """Collects notifications instead of delivering them."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, Dict[str, Any]]] = []

    async def notify(self, kind: str, payload: Dict[str, Any]) -> None:
        self.sent.append((kind, payload))


@pytest.fixture
def settings() -> Settings:
    """Test settings (from the environment set above)."""
    return get_settings()


@pytest_asyncio.fixture
async def db_engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """Fresh SQLite ledger store per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        poolclass=NullPool,
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest.fixture
def lock_manager() -> LockManager:
    return LockManager()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def reconciliation_engine(
    session_factory: async_sessionmaker[AsyncSession],
    lock_manager: LockManager,
    notifier: RecordingNotifier,
) -> ReconciliationEngine:
    return ReconciliationEngine(session_factory, lock_manager, notifier=notifier)


@pytest.fixture
def gateway(mocker: Any) -> Any:
    """Gateway client double; every method is an AsyncMock."""
    return mocker.AsyncMock(spec=GatewayClient)


@pytest.fixture
def payouts(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: Any,
    lock_manager: LockManager,
    settings: Settings,
) -> PayoutService:
    return PayoutService(session_factory, gateway, lock_manager, settings)


@pytest.fixture
def payment_methods(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: Any,
    lock_manager: LockManager,
    settings: Settings,
) -> PaymentMethodService:
    gateway.create_customer.return_value = {"id": "cus_1", "object": "customer"}
    return PaymentMethodService(session_factory, gateway, lock_manager, settings)


@pytest.fixture
def payments(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: Any,
    reconciliation_engine: ReconciliationEngine,
    settings: Settings,
) -> PaymentService:
    return PaymentService(session_factory, gateway, reconciliation_engine, settings)


@pytest.fixture
def fake_redis(mocker: Any) -> Any:
    """Dict-backed stand-in for the few Redis calls used for event dedup."""
    store: Dict[str, str] = {}

    async def setex(key: str, ttl: int, value: str) -> bool:
        store[key] = value
        return True

    client = mocker.AsyncMock()
    client.exists.side_effect = lambda key: int(key in store)
    client.setex.side_effect = setex
    client.store = store
    return client


@pytest.fixture
def dispatcher(
    reconciliation_engine: ReconciliationEngine,
    payouts: PayoutService,
    fake_redis: Any,
    settings: Settings,
) -> WebhookDispatcher:
    return WebhookDispatcher(reconciliation_engine, payouts, fake_redis, settings)


@pytest.fixture
def make_invoice(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Invoice]]:
    """Insert an unpaid invoice."""

    async def _make(
        total: str = "150.00",
        client_id: str = "client_1",
        consultant_id: str | None = "consultant_1",
        currency: str = "USD",
    ) -> Invoice:
        invoice = Invoice(
            invoice_number=f"INV-{uuid4().hex[:8]}",
            client_id=client_id,
            consultant_id=consultant_id,
            status=InvoiceStatus.SENT.value,
            currency=currency,
            total=Decimal(total),
            amount_paid=Decimal("0.00"),
            amount_refunded=Decimal("0.00"),
        )
        async with session_factory() as session, session.begin():
            await LedgerRepository(session).add_invoice(invoice)
        return invoice

    return _make
