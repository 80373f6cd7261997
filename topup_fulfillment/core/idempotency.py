"""
Request idempotency for API handlers.

``idempotent`` wraps an async handler: the first call for a key runs the
handler and caches its return value in Redis, repeated calls get the cached
value back without running the handler again. A short in-flight marker
rejects a concurrent duplicate while the first call is still running.
"""
import functools
import json
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


class IdempotencyError(Exception):
    """Base exception for idempotency failures."""

    pass


class IdempotencyConflictError(IdempotencyError):
    """Raised when a request with the same key is still being processed."""

    def __init__(self, scope: str, key: str):
        super().__init__(f"request {scope}:{key} is already in progress")
        self.scope = scope
        self.key = key


def _jsonable(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return value


class IdempotencyStore:
    """Redis-backed cache of handler results keyed by ``idempotency:{scope}:{key}``."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        ttl_seconds: int = 86400,
        in_flight_ttl_seconds: int = 60,
    ):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.in_flight_ttl_seconds = in_flight_ttl_seconds

    @staticmethod
    def key(scope: str, idempotency_key: str) -> str:
        return f"idempotency:{scope}:{idempotency_key}"

    async def get(self, scope: str, idempotency_key: str) -> Optional[Any]:
        raw = await self.redis.get(self.key(scope, idempotency_key))
        if raw is None:
            return None
        return json.loads(raw)

    async def put(self, scope: str, idempotency_key: str, value: Any) -> None:
        await self.redis.set(
            self.key(scope, idempotency_key),
            json.dumps(_jsonable(value), default=str),
            ex=self.ttl_seconds,
        )

    async def claim(self, scope: str, idempotency_key: str) -> bool:
        return bool(
            await self.redis.set(
                self.key(scope, idempotency_key) + ":in_flight",
                "1",
                nx=True,
                ex=self.in_flight_ttl_seconds,
            )
        )

    async def release(self, scope: str, idempotency_key: str) -> None:
        await self.redis.delete(self.key(scope, idempotency_key) + ":in_flight")


def idempotent(
    scope: str,
    store_getter: Callable[[Dict[str, Any]], IdempotencyStore],
    key_getter: Callable[[Dict[str, Any]], Optional[str]],
) -> Callable[[F], F]:
    """
    Make an async handler idempotent.

    Args:
        scope: Namespace for the keys of this handler
        store_getter: Returns the store, given the handler's keyword arguments
        key_getter: Returns the idempotency key, given the handler's keyword
            arguments; a falsy key disables caching for that call

    The handler must be called with keyword arguments (FastAPI does) and
    return something JSON-serializable or a pydantic model.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            key = key_getter(kwargs)
            if not key:
                return await func(*args, **kwargs)

            store = store_getter(kwargs)
            cached = await store.get(scope, key)
            if cached is not None:
                logger.info("idempotency_cache_hit", scope=scope, idempotency_key=key)
                return cached

            if not await store.claim(scope, key):
                raise IdempotencyConflictError(scope, key)
            try:
                result = await func(*args, **kwargs)
                await store.put(scope, key, result)
            finally:
                await store.release(scope, key)

            logger.info("idempotency_result_cached", scope=scope, idempotency_key=key)
            return result

        return wrapper  # type: ignore[return-value]

    return decorator
