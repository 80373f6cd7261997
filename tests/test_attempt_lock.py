"""
Tests for the per-line attempt lock.
"""
import asyncio
import uuid
from typing import Any

import pytest

from topup_fulfillment.core.attempt_lock import AttemptLock


class TestAttemptLock:
    """Test suite for AttemptLock."""

    @pytest.mark.unit
    def test_key_format(self) -> None:
        order_id, line_id = uuid.uuid4(), uuid.uuid4()
        assert AttemptLock.key(order_id, line_id) == f"topup:lock:{order_id}:{line_id}"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_acquire_is_rejected(self, redis_client: Any) -> None:
        lock = AttemptLock(redis_client, ttl_seconds=45)
        order_id, line_id = uuid.uuid4(), uuid.uuid4()

        assert await lock.acquire(order_id, line_id) is True
        assert await lock.acquire(order_id, line_id) is False
        assert await lock.is_locked(order_id, line_id) is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_release_allows_reacquire(self, redis_client: Any) -> None:
        lock = AttemptLock(redis_client)
        order_id, line_id = uuid.uuid4(), uuid.uuid4()

        await lock.acquire(order_id, line_id)
        await lock.release(order_id, line_id)

        assert await lock.is_locked(order_id, line_id) is False
        assert await lock.acquire(order_id, line_id) is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lock_carries_ttl(self, redis_client: Any) -> None:
        lock = AttemptLock(redis_client, ttl_seconds=45)
        order_id, line_id = uuid.uuid4(), uuid.uuid4()

        await lock.acquire(order_id, line_id)
        ttl = await redis_client.ttl(AttemptLock.key(order_id, line_id))

        assert 0 < ttl <= 45

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lines_lock_independently(self, redis_client: Any) -> None:
        lock = AttemptLock(redis_client)
        order_id = uuid.uuid4()

        assert await lock.acquire(order_id, uuid.uuid4()) is True
        assert await lock.acquire(order_id, uuid.uuid4()) is True

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_acquire_has_single_winner(self, redis_client: Any) -> None:
        """Only one of many concurrent callers may hold the lock."""
        lock = AttemptLock(redis_client)
        order_id, line_id = uuid.uuid4(), uuid.uuid4()

        results = await asyncio.gather(*(lock.acquire(order_id, line_id) for _ in range(20)))

        assert results.count(True) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_order_lock_is_separate_from_line_locks(self, redis_client: Any) -> None:
        lock = AttemptLock(redis_client)
        order_id, line_id = uuid.uuid4(), uuid.uuid4()
        await lock.acquire(order_id, line_id)

        assert AttemptLock.order_key(order_id) == f"topup:lock:{order_id}:settle"
        assert await lock.acquire_order(order_id) is True
        assert await lock.acquire_order(order_id) is False

        await lock.release_order(order_id)
        assert await lock.acquire_order(order_id) is True
        assert await lock.is_locked(order_id, line_id) is True
