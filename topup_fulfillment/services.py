"""
Service container.

Every connection the pipeline uses is created here, once per process, and
handed to the components that need it. Nothing is created on import.
"""
from dataclasses import dataclass
from typing import Optional

import httpx
import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from topup_fulfillment.config import Settings
from topup_fulfillment.core.attempt_lock import AttemptLock
from topup_fulfillment.core.currency import StaticRateConverter
from topup_fulfillment.core.fulfillment import FulfillmentOrchestrator
from topup_fulfillment.core.idempotency import IdempotencyStore
from topup_fulfillment.core.job_queue import RedisJobQueue
from topup_fulfillment.core.recurring import (
    RECURRING_RUN_QUEUE,
    RecurringRunner,
    RecurringScanner,
)
from topup_fulfillment.core.retry_scheduler import TOPUP_QUEUE, RetryScheduler
from topup_fulfillment.database.connection import create_engine, create_session_factory
from topup_fulfillment.integrations.awcc_client import AwccDeliveryProvider
from topup_fulfillment.integrations.delivery import DeliveryProvider, ProviderRegistry
from topup_fulfillment.integrations.stripe_client import PaymentGateway, StripeClient
from topup_fulfillment.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Wired-up pipeline components sharing one set of connections."""

    settings: Settings
    redis: aioredis.Redis
    engine: Optional[AsyncEngine]
    session_factory: async_sessionmaker[AsyncSession]
    http_client: Optional[httpx.AsyncClient]
    payment_gateway: PaymentGateway
    providers: ProviderRegistry
    attempt_lock: AttemptLock
    topup_queue: RedisJobQueue
    recurring_queue: RedisJobQueue
    retry_scheduler: RetryScheduler
    orchestrator: FulfillmentOrchestrator
    recurring_scanner: RecurringScanner
    recurring_runner: RecurringRunner
    idempotency: IdempotencyStore
    health: HealthCheck

    async def aclose(self) -> None:
        """Close every connection the container owns."""
        if self.http_client is not None:
            await self.http_client.aclose()
        await self.redis.aclose()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("services_closed")


def wire_services(
    settings: Settings,
    redis_client: aioredis.Redis,
    session_factory: async_sessionmaker[AsyncSession],
    payment_gateway: PaymentGateway,
    delivery_provider: DeliveryProvider,
    engine: Optional[AsyncEngine] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Services:
    """Assemble the components around already-open connections."""
    attempt_lock = AttemptLock(redis_client, ttl_seconds=settings.attempt_lock_ttl_seconds)
    topup_queue = RedisJobQueue(
        redis_client,
        TOPUP_QUEUE,
        prefix=settings.queue_prefix,
        completed_retention_seconds=settings.completed_job_retention_seconds,
    )
    recurring_queue = RedisJobQueue(
        redis_client,
        RECURRING_RUN_QUEUE,
        prefix=settings.queue_prefix,
        completed_retention_seconds=settings.completed_job_retention_seconds,
    )
    retry_scheduler = RetryScheduler(
        topup_queue,
        max_tries=settings.topup_max_tries,
        base_delay_ms=settings.topup_retry_base_delay_ms,
    )
    providers = ProviderRegistry(default=delivery_provider)
    orchestrator = FulfillmentOrchestrator(
        session_factory=session_factory,
        providers=providers,
        payment_gateway=payment_gateway,
        attempt_lock=attempt_lock,
        retry_scheduler=retry_scheduler,
        settings=settings,
    )

    return Services(
        settings=settings,
        redis=redis_client,
        engine=engine,
        session_factory=session_factory,
        http_client=http_client,
        payment_gateway=payment_gateway,
        providers=providers,
        attempt_lock=attempt_lock,
        topup_queue=topup_queue,
        recurring_queue=recurring_queue,
        retry_scheduler=retry_scheduler,
        orchestrator=orchestrator,
        recurring_scanner=RecurringScanner(
            session_factory, recurring_queue, batch_size=settings.recurring_scan_batch_size
        ),
        recurring_runner=RecurringRunner(
            session_factory=session_factory,
            orchestrator=orchestrator,
            payment_gateway=payment_gateway,
            converter=StaticRateConverter(settings.fx_rates_to_usd),
            settings=settings,
        ),
        idempotency=IdempotencyStore(redis_client, ttl_seconds=settings.idempotency_cache_ttl),
        health=HealthCheck(session_factory, redis_client),
    )


def build_services(settings: Settings) -> Services:
    """Open production connections and wire the pipeline."""
    redis_client = aioredis.from_url(
        settings.redis_url, encoding="utf-8", decode_responses=True
    )
    engine = create_engine(settings)
    http_client = httpx.AsyncClient(timeout=settings.delivery_timeout_seconds)

    services = wire_services(
        settings=settings,
        redis_client=redis_client,
        session_factory=create_session_factory(engine),
        payment_gateway=StripeClient(settings),
        delivery_provider=AwccDeliveryProvider(settings, http_client),
        engine=engine,
        http_client=http_client,
    )
    logger.info("services_initialized", env=settings.app_env)
    return services
