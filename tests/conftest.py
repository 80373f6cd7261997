"""
Pytest configuration and fixtures.
"""
import asyncio
import uuid
from datetime import datetime
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Union

import fakeredis
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from topup_fulfillment.config import Settings
from topup_fulfillment.core.order_state import OrderStatus, PaymentStatus
from topup_fulfillment.database.connection import create_engine, create_session_factory, init_db
from topup_fulfillment.database.models import (
    Order,
    OrderLine,
    PaymentAuthorization,
    ProductVariant,
    RecurringSchedule,
)
from topup_fulfillment.integrations.delivery import (
    DeliveryErrorCode,
    DeliveryOutcome,
    DeliveryStatus,
)
from topup_fulfillment.integrations.stripe_client import IntentResult, PaymentGatewayError
from topup_fulfillment.services import Services, wire_services

# Far enough ahead that every delayed job is due
FAR_FUTURE_MS = 10**13


def accepted() -> DeliveryOutcome:
    return DeliveryOutcome(status=DeliveryStatus.ACCEPTED, provider_transaction_id="txn-1")


def failed(code: str = DeliveryErrorCode.NETWORK, message: str = "connect timeout") -> DeliveryOutcome:
    return DeliveryOutcome.failure(code, message)


class ScriptedProvider:
    """Delivery provider that plays back a list of outcomes (the last one repeats)."""

    name = "scripted"

    def __init__(
        self,
        outcomes: Optional[List[Union[DeliveryOutcome, Exception]]] = None,
        delay: float = 0.0,
    ):
        self.outcomes = outcomes or [accepted()]
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def attempt_delivery(
        self, order: Order, line: OrderLine, variant: ProductVariant, external_attempt_id: str
    ) -> DeliveryOutcome:
        index = min(len(self.calls), len(self.outcomes) - 1)
        self.calls.append(
            {
                "order_id": order.id,
                "line_id": line.id,
                "external_attempt_id": external_attempt_id,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.outcomes[index]
        if isinstance(result, Exception):
            raise result
        return result


class FakeGateway:
    """Payment gateway that records calls instead of talking to Stripe."""

    def __init__(
        self,
        authorize_status: str = "requires_capture",
        authorize_error: Optional[PaymentGatewayError] = None,
        capture_error: Optional[PaymentGatewayError] = None,
        cancel_error: Optional[PaymentGatewayError] = None,
        delay: float = 0.0,
    ):
        self.authorize_status = authorize_status
        self.authorize_error = authorize_error
        self.capture_error = capture_error
        self.cancel_error = cancel_error
        self.delay = delay
        self.authorized: List[Dict[str, Any]] = []
        self.captured: List[str] = []
        self.cancelled: List[str] = []

    async def authorize(
        self,
        amount_minor: int,
        currency: str,
        idempotency_key: str,
        customer_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> IntentResult:
        self.authorized.append(
            {
                "amount_minor": amount_minor,
                "currency": currency,
                "idempotency_key": idempotency_key,
                "customer_id": customer_id,
                "payment_method_id": payment_method_id,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.authorize_error:
            raise self.authorize_error
        return IntentResult(
            provider_ref=f"pi_{len(self.authorized)}",
            intent_status=self.authorize_status,
            amount_minor=amount_minor,
            currency=currency,
        )

    async def capture(self, provider_ref: str) -> IntentResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.capture_error:
            raise self.capture_error
        self.captured.append(provider_ref)
        return IntentResult(provider_ref, "succeeded", 0, "USD")

    async def cancel(self, provider_ref: str) -> IntentResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.cancel_error:
            raise self.cancel_error
        self.cancelled.append(provider_ref)
        return IntentResult(provider_ref, "canceled", 0, "USD")


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        stripe_secret_key="sk_test_fake_key_for_testing",
        database_url=f"sqlite+aiosqlite:///{tmp_path}/topup_test.db",
        redis_url="redis://localhost:6379/1",
        awcc_soap_endpoint="https://awcc.example.test/efill",
        app_name="topup-fulfillment-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[Any, Any]:
    """In-memory Redis."""
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def session_factory(
    test_settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Session factory over a fresh SQLite database file."""
    engine = create_engine(test_settings)
    await init_db(engine)

    yield create_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def services(
    test_settings: Settings,
    redis_client: Any,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: FakeGateway,
    provider: ScriptedProvider,
) -> Services:
    """Pipeline wired to fakes."""
    return wire_services(
        settings=test_settings,
        redis_client=redis_client,
        session_factory=session_factory,
        payment_gateway=gateway,
        delivery_provider=provider,
    )


@pytest_asyncio.fixture
async def variant(session_factory: async_sessionmaker[AsyncSession]) -> ProductVariant:
    async with session_factory() as db:
        entry = ProductVariant(
            id=uuid.uuid4(),
            name="AWCC 100 AFN",
            operator_id=uuid.uuid4(),
            amount_minor=100,
            currency="AFN",
        )
        db.add(entry)
        await db.commit()
    return entry


SeedOrder = Callable[..., Any]


@pytest.fixture
def seed_order(session_factory: async_sessionmaker[AsyncSession], variant: ProductVariant) -> SeedOrder:
    """Create an order with lines and a pending card hold; returns (order_id, line_ids, ref)."""

    async def _seed(
        lines: int = 1,
        status: str = OrderStatus.CREATED.value,
        payment_status: Optional[str] = PaymentStatus.PENDING.value,
        provider_ref: str = "pi_checkout_1",
    ) -> tuple[uuid.UUID, List[uuid.UUID], Optional[str]]:
        async with session_factory() as db:
            order = Order(
                id=uuid.uuid4(),
                user_id=uuid.uuid4(),
                status=status,
                total_minor=100 * lines,
                currency="AFN",
            )
            db.add(order)
            line_ids = []
            for index in range(lines):
                line = OrderLine(
                    id=uuid.uuid4(),
                    order_id=order.id,
                    product_variant_id=variant.id,
                    operator_id=variant.operator_id,
                    msisdn=f"9370000000{index}",
                    quantity=1,
                    unit_price_minor=100,
                    currency="AFN",
                )
                db.add(line)
                line_ids.append(line.id)
            ref = None
            if payment_status is not None:
                ref = provider_ref
                db.add(
                    PaymentAuthorization(
                        id=uuid.uuid4(),
                        order_id=order.id,
                        user_id=order.user_id,
                        provider="stripe",
                        amount_minor=142,
                        currency="USD",
                        status=payment_status,
                        provider_ref=provider_ref,
                    )
                )
            await db.commit()
        return order.id, line_ids, ref

    return _seed


@pytest.fixture
def seed_schedule(
    session_factory: async_sessionmaker[AsyncSession], variant: ProductVariant
) -> SeedOrder:
    """Create a recurring schedule; keyword arguments override the defaults."""

    async def _seed(**overrides: Any) -> uuid.UUID:
        values: Dict[str, Any] = dict(
            id=uuid.uuid4(),
            user_id=uuid.uuid4(),
            product_variant_id=variant.id,
            operator_id=variant.operator_id,
            msisdn="93700000099",
            amount_minor=100,
            amount_usd_minor=142,
            currency="AFN",
            cadence="monthly",
            next_run_at=datetime.fromisoformat("2024-01-31T00:00:00+00:00"),
            active=True,
            times_run=0,
            stripe_customer_id="cus_1",
            stripe_payment_method_id="pm_1",
        )
        values.update(overrides)
        async with session_factory() as db:
            db.add(RecurringSchedule(**values))
            await db.commit()
        return values["id"]

    return _seed
