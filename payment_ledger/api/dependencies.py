"""
Service wiring for the API.

Routes depend on ``get_services``; tests swap the whole graph through
``app.dependency_overrides[get_services]``.
"""
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import redis.asyncio as aioredis
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_ledger.config import Settings, get_settings
from payment_ledger.core.locks import LockManager
from payment_ledger.core.payment_methods import PaymentMethodService
from payment_ledger.core.payments import PaymentService
from payment_ledger.core.payouts import PayoutService
from payment_ledger.core.reconciliation import ReconciliationEngine
from payment_ledger.database.connection import get_session_factory
from payment_ledger.integrations.gateway_client import GatewayClient
from payment_ledger.integrations.webhook_dispatcher import WebhookDispatcher
from payment_ledger.monitoring.health import HealthCheck


@dataclass
class Services:
    """Everything a request handler can reach."""

    session_factory: async_sessionmaker[AsyncSession]
    engine: ReconciliationEngine
    payments: PaymentService
    payouts: PayoutService
    payment_methods: PaymentMethodService
    dispatcher: WebhookDispatcher
    health: HealthCheck
    redis_client: Optional[aioredis.Redis] = None


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: GatewayClient,
    redis_client: Optional[aioredis.Redis] = None,
    settings: Optional[Settings] = None,
) -> Services:
    """Wire the service graph around one session factory and gateway client."""
    settings = settings or get_settings()
    lock_manager = LockManager(redis_client, settings.redis_lock_timeout)
    engine = ReconciliationEngine(session_factory, lock_manager)
    payouts = PayoutService(session_factory, gateway, lock_manager, settings)
    payment_methods = PaymentMethodService(session_factory, gateway, lock_manager, settings)
    return Services(
        session_factory=session_factory,
        engine=engine,
        payments=PaymentService(session_factory, gateway, engine, settings, payment_methods),
        payouts=payouts,
        payment_methods=payment_methods,
        dispatcher=WebhookDispatcher(engine, payouts, redis_client, settings),
        health=HealthCheck(session_factory, redis_client),
        redis_client=redis_client,
    )


@lru_cache
def get_services() -> Services:
    """Process-wide service graph built from environment settings."""
    settings = get_settings()
    redis_client = (
        aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        if settings.redis_url
        else None
    )
    return build_services(get_session_factory(), GatewayClient(settings), redis_client, settings)


def get_payment_service(services: Services = Depends(get_services)) -> PaymentService:
    return services.payments


def get_payout_service(services: Services = Depends(get_services)) -> PayoutService:
    return services.payouts


def get_webhook_dispatcher(services: Services = Depends(get_services)) -> WebhookDispatcher:
    return services.dispatcher


def get_health_check(services: Services = Depends(get_services)) -> HealthCheck:
    return services.health


def get_payment_method_service(
    services: Services = Depends(get_services),
) -> PaymentMethodService:
    return services.payment_methods
