"""
Short-lived mutual exclusion per order line and per order.

Two delivery ticks for the same (order, line) must never call the provider
at the same time, and only one tick per order may settle its card hold.
Both locks are a single ``SET key value NX EX ttl``: there is no waiting and
no queueing, a caller that loses the race simply stops. The TTL is the
recovery path for a crashed holder.
"""
import uuid
from typing import Optional

import redis.asyncio as aioredis
import structlog

from topup_fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class AttemptLock:
    """Redis-backed attempt lock keyed by ``topup:lock:{order_id}:{line_id}``."""

    KEY_TEMPLATE = "topup:lock:{order_id}:{line_id}"
    ORDER_KEY_TEMPLATE = "topup:lock:{order_id}:settle"

    def __init__(self, redis_client: aioredis.Redis, ttl_seconds: int = 120):
        """
        Initialize the attempt lock.

        Args:
            redis_client: Shared Redis client
            ttl_seconds: Default expiry for an acquired lock
        """
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def key(cls, order_id: uuid.UUID | str, line_id: uuid.UUID | str) -> str:
        return cls.KEY_TEMPLATE.format(order_id=order_id, line_id=line_id)

    @classmethod
    def order_key(cls, order_id: uuid.UUID | str) -> str:
        return cls.ORDER_KEY_TEMPLATE.format(order_id=order_id)

    async def _acquire(self, key: str, ttl_seconds: Optional[int]) -> bool:
        acquired = await self.redis.set(key, "1", nx=True, ex=ttl_seconds or self.ttl_seconds)
        if acquired:
            metrics.record_attempt_lock("acquired")
            logger.debug("attempt_lock_acquired", lock_key=key)
            return True

        metrics.record_attempt_lock("contended")
        logger.info("attempt_lock_contended", lock_key=key)
        return False

    async def acquire(
        self,
        order_id: uuid.UUID | str,
        line_id: uuid.UUID | str,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        """
        Try once to take the lock.

        Returns:
            bool: True if this caller now holds the lock
        """
        return await self._acquire(self.key(order_id, line_id), ttl_seconds)

    async def release(self, order_id: uuid.UUID | str, line_id: uuid.UUID | str) -> None:
        key = self.key(order_id, line_id)
        await self.redis.delete(key)
        logger.debug("attempt_lock_released", lock_key=key)

    async def is_locked(self, order_id: uuid.UUID | str, line_id: uuid.UUID | str) -> bool:
        return bool(await self.redis.exists(self.key(order_id, line_id)))

    async def acquire_order(
        self, order_id: uuid.UUID | str, ttl_seconds: Optional[int] = None
    ) -> bool:
        """Try once to become the tick that settles the order's card hold."""
        return await self._acquire(self.order_key(order_id), ttl_seconds)

    async def release_order(self, order_id: uuid.UUID | str) -> None:
        key = self.order_key(order_id)
        await self.redis.delete(key)
        logger.debug("attempt_lock_released", lock_key=key)
