"""
Per-key locking for reconciliation.

Find-or-create by gateway identifier must be serialized per key. Within one
process an asyncio.Lock per key does that; across processes a Redis lock is
layered on top when Redis is configured. Unique indexes in the ledger store
remain the last line of defence either way.
"""
import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError, RedisError

from payment_ledger.config import get_settings
from payment_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class LockAcquisitionError(Exception):
    """Raised when a distributed lock cannot be acquired in time."""

    pass


def payment_intent_key(provider: str, payment_intent_id: str) -> str:
    return f"{provider}:pi:{payment_intent_id}"


def charge_key(provider: str, charge_id: str) -> str:
    return f"{provider}:charge:{charge_id}"


def transfer_key(provider: str, transfer_id: str) -> str:
    return f"{provider}:transfer:{transfer_id}"


def account_key(provider: str, account_id: str) -> str:
    return f"{provider}:account:{account_id}"


def client_key(client_id: str) -> str:
    return f"client:{client_id}"


def invoice_key(invoice_id: int) -> str:
    return f"invoice:{invoice_id}"


class LockManager:
    """
    Hands out per-key async locks.

    Local locks are reference counted and dropped once nobody holds or waits
    on them, so the table does not grow with every gateway ID ever seen.
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        lock_timeout: Optional[int] = None,
    ):
        """
        Initialize lock manager.

        Args:
            redis_client: Optional Redis client for cross-process locks
            lock_timeout: Lock expiry and acquisition timeout in seconds
        """
        settings = get_settings()
        self.redis_client = redis_client
        self.lock_timeout = lock_timeout or settings.redis_lock_timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        """
        Hold the lock for key for the duration of the block.

        Args:
            key: Lock key, e.g. "stripe:pi:pi_123"

        Raises:
            LockAcquisitionError: If the Redis lock times out
        """
        started = time.perf_counter()
        local = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with local:
                if self.redis_client is None:
                    metrics.record_lock("local", "acquired", time.perf_counter() - started)
                    yield
                    return

                async with self._distributed(key, started):
                    yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    @asynccontextmanager
    async def _distributed(self, key: str, started: float) -> AsyncIterator[None]:
        lock = self.redis_client.lock(
            f"lock:{key}",
            timeout=self.lock_timeout,
            blocking_timeout=self.lock_timeout,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            # Redis down: the local lock plus unique indexes still hold
            logger.warning("distributed_lock_unavailable", lock_key=key, error=str(e))
            acquired = None

        if acquired is None:
            metrics.record_lock("local", "acquired", time.perf_counter() - started)
            yield
            return

        if not acquired:
            metrics.record_lock("redis", "timeout", time.perf_counter() - started)
            logger.warning("lock_acquisition_timeout", lock_key=key)
            raise LockAcquisitionError(f"Timed out acquiring lock {key}")

        metrics.record_lock("redis", "acquired", time.perf_counter() - started)
        try:
            yield
        finally:
            try:
                await lock.release()
            except (LockError, RedisError) as e:
                # Expired while held; the unit of work already committed or rolled back
                logger.warning("lock_release_failed", lock_key=key, error=str(e))
