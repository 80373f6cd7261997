"""
Tests for the recurring top-up scanner and runner.
"""
import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, List, Tuple

import pytest
from sqlalchemy import select

from topup_fulfillment.core.recurring import (
    RecurringRunResult,
    RecurringScanner,
    run_job_id,
)
from topup_fulfillment.database.models import Order, PaymentAuthorization, RecurringSchedule
from topup_fulfillment.integrations.stripe_client import PaymentErrorType, PaymentGatewayError
from topup_fulfillment.services import Services
from topup_fulfillment.timeutils import ensure_utc, to_epoch_ms
from topup_fulfillment.workers.recurring_worker import make_run_handler

from conftest import FAR_FUTURE_MS, FakeGateway, ScriptedProvider, failed

JAN_31 = datetime(2024, 1, 31, tzinfo=timezone.utc)
FEB_29 = datetime(2024, 2, 29, tzinfo=timezone.utc)
NOW = datetime(2024, 2, 1, 6, 0, tzinfo=timezone.utc)


async def load_schedule(services: Services, schedule_id: uuid.UUID) -> RecurringSchedule:
    async with services.session_factory() as db:
        return await db.get(RecurringSchedule, schedule_id)


async def load_orders(
    services: Services, user_id: uuid.UUID
) -> List[Tuple[Order, List[PaymentAuthorization]]]:
    async with services.session_factory() as db:
        orders = (
            await db.execute(select(Order).where(Order.user_id == user_id))
        ).scalars().all()
        result = []
        for order in orders:
            payments = (
                await db.execute(
                    select(PaymentAuthorization).where(PaymentAuthorization.order_id == order.id)
                )
            ).scalars().all()
            result.append((order, list(payments)))
    return result


class TestRecurringScanner:
    """Test suite for RecurringScanner."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_enqueues_only_due_active_schedules(
        self, services: Services, seed_schedule: Any
    ) -> None:
        due = await seed_schedule()
        await seed_schedule(active=False)
        await seed_schedule(next_run_at=datetime(2024, 3, 1, tzinfo=timezone.utc))

        created = await services.recurring_scanner.scan(now=NOW)

        assert created == 1
        (job,) = await services.recurring_queue.get_jobs()
        assert job.id == run_job_id(due, JAN_31)
        assert job.data == {"schedule_id": str(due), "due_at_ms": to_epoch_ms(JAN_31)}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_overlapping_scans_do_not_duplicate(
        self, services: Services, seed_schedule: Any
    ) -> None:
        await seed_schedule()

        assert await services.recurring_scanner.scan(now=NOW) == 1
        assert await services.recurring_scanner.scan(now=NOW) == 0
        assert await services.recurring_queue.count_pending() == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_batch_takes_soonest_first(
        self, services: Services, seed_schedule: Any
    ) -> None:
        later = await seed_schedule(next_run_at=datetime(2024, 1, 31, 12, tzinfo=timezone.utc))
        sooner = await seed_schedule(next_run_at=datetime(2024, 1, 15, tzinfo=timezone.utc))
        scanner = RecurringScanner(
            services.session_factory, services.recurring_queue, batch_size=1
        )

        assert await scanner.scan(now=NOW) == 1
        (job,) = await services.recurring_queue.get_jobs()
        assert job.data["schedule_id"] == str(sooner)
        assert job.data["schedule_id"] != str(later)


class TestRecurringRunner:
    """Test suite for RecurringRunner."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_successful_run_delivers_and_advances(
        self,
        services: Services,
        seed_schedule: Any,
        provider: ScriptedProvider,
        gateway: FakeGateway,
    ) -> None:
        user_id = uuid.uuid4()
        schedule_id = await seed_schedule(user_id=user_id)

        result = await services.recurring_runner.run(
            schedule_id, due_at_ms=to_epoch_ms(JAN_31), now=NOW
        )

        assert result == RecurringRunResult.DELIVERED
        assert len(provider.calls) == 1
        assert gateway.authorized[0]["amount_minor"] == 142
        assert gateway.authorized[0]["currency"] == "USD"
        assert gateway.authorized[0]["customer_id"] == "cus_1"
        assert gateway.authorized[0]["payment_method_id"] == "pm_1"
        assert gateway.authorized[0]["idempotency_key"].startswith(f"recurring:{schedule_id}:")
        assert gateway.captured == ["pi_1"]

        schedule = await load_schedule(services, schedule_id)
        assert schedule.times_run == 1
        assert schedule.last_error is None
        assert ensure_utc(schedule.last_run_at) == NOW
        assert ensure_utc(schedule.next_run_at) == FEB_29
        assert schedule.active is True

        ((order, payments),) = await load_orders(services, user_id)
        assert order.status == "fulfilled"
        assert order.total_minor == 100
        assert payments[0].status == "succeeded"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_declined_hold_skips_delivery(
        self,
        services: Services,
        seed_schedule: Any,
        provider: ScriptedProvider,
        gateway: FakeGateway,
    ) -> None:
        gateway.authorize_status = "requires_payment_method"
        user_id = uuid.uuid4()
        schedule_id = await seed_schedule(user_id=user_id)

        result = await services.recurring_runner.run(schedule_id, now=NOW)

        assert result == RecurringRunResult.AUTHORIZATION_FAILED
        assert provider.calls == []
        assert await services.topup_queue.count_pending() == 0

        schedule = await load_schedule(services, schedule_id)
        assert schedule.last_error == "authorization_failed:requires_payment_method"
        assert schedule.times_run == 0
        assert ensure_utc(schedule.next_run_at) == FEB_29

        ((order, payments),) = await load_orders(services, user_id)
        assert order.status == "cancelled"
        assert payments[0].status == "failed"
        assert payments[0].provider_ref == "pi_1"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_error_is_recorded(
        self,
        services: Services,
        seed_schedule: Any,
        provider: ScriptedProvider,
        gateway: FakeGateway,
    ) -> None:
        gateway.authorize_error = PaymentGatewayError(
            "Your card was declined.", PaymentErrorType.PERMANENT, code="card_declined"
        )
        schedule_id = await seed_schedule()

        result = await services.recurring_runner.run(schedule_id, now=NOW)

        schedule = await load_schedule(services, schedule_id)
        assert result == RecurringRunResult.AUTHORIZATION_FAILED
        assert provider.calls == []
        assert schedule.last_error == "authorization_failed:card_declined"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_delivery_goes_to_retry_pipeline(
        self, services: Services, seed_schedule: Any, provider: ScriptedProvider
    ) -> None:
        provider.outcomes = [failed()]
        schedule_id = await seed_schedule()

        result = await services.recurring_runner.run(schedule_id, now=NOW)

        assert result == RecurringRunResult.DELIVERY_PENDING
        (job,) = await services.retry_scheduler.list_pending()
        assert job.next_try == 1
        assert job.payment_provider_ref == "pi_1"

        schedule = await load_schedule(services, schedule_id)
        assert schedule.last_error == "connect timeout"
        assert schedule.times_run == 0
        assert ensure_utc(schedule.next_run_at) == FEB_29

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_one_off_schedule_retires(
        self, services: Services, seed_schedule: Any
    ) -> None:
        schedule_id = await seed_schedule(cadence="date", scheduled_date=JAN_31)

        result = await services.recurring_runner.run(schedule_id, now=NOW)

        schedule = await load_schedule(services, schedule_id)
        assert result == RecurringRunResult.DELIVERED
        assert schedule.active is False
        assert await services.recurring_scanner.scan(now=NOW) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_one_off_schedule_retires_after_failed_delivery(
        self, services: Services, seed_schedule: Any, provider: ScriptedProvider
    ) -> None:
        provider.outcomes = [failed()]
        schedule_id = await seed_schedule(cadence="date", scheduled_date=JAN_31)

        result = await services.recurring_runner.run(schedule_id, now=NOW)

        schedule = await load_schedule(services, schedule_id)
        assert result == RecurringRunResult.DELIVERY_PENDING
        assert schedule.active is False
        assert schedule.last_error == "connect timeout"
        assert await services.recurring_scanner.scan(now=NOW) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_one_off_schedule_retires_after_declined_hold(
        self,
        services: Services,
        seed_schedule: Any,
        provider: ScriptedProvider,
        gateway: FakeGateway,
    ) -> None:
        gateway.authorize_status = "requires_payment_method"
        schedule_id = await seed_schedule(cadence="date", scheduled_date=JAN_31)

        result = await services.recurring_runner.run(schedule_id, now=NOW)

        schedule = await load_schedule(services, schedule_id)
        assert result == RecurringRunResult.AUTHORIZATION_FAILED
        assert provider.calls == []
        assert schedule.active is False
        assert schedule.last_error == "authorization_failed:requires_payment_method"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_variant(
        self, services: Services, seed_schedule: Any, gateway: FakeGateway
    ) -> None:
        user_id = uuid.uuid4()
        schedule_id = await seed_schedule(user_id=user_id, product_variant_id=uuid.uuid4())

        result = await services.recurring_runner.run(schedule_id, now=NOW)

        schedule = await load_schedule(services, schedule_id)
        assert result == RecurringRunResult.VARIANT_NOT_FOUND
        assert schedule.last_error == "variant_not_found"
        assert ensure_utc(schedule.next_run_at) == JAN_31
        assert gateway.authorized == []
        assert await load_orders(services, user_id) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_zero_amount_is_rejected(
        self, services: Services, seed_schedule: Any, gateway: FakeGateway
    ) -> None:
        user_id = uuid.uuid4()
        schedule_id = await seed_schedule(user_id=user_id, amount_usd_minor=0)

        result = await services.recurring_runner.run(schedule_id, now=NOW)

        schedule = await load_schedule(services, schedule_id)
        assert result == RecurringRunResult.INVALID_AMOUNT
        assert gateway.authorized == []
        assert schedule.last_error == "invalid_amount"
        assert ensure_utc(schedule.next_run_at) == FEB_29
        ((order, _),) = await load_orders(services, user_id)
        assert order.status == "cancelled"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_charge_is_converted_when_no_usd_amount(
        self, services: Services, seed_schedule: Any, gateway: FakeGateway
    ) -> None:
        schedule_id = await seed_schedule(amount_minor=10_000, amount_usd_minor=None)

        await services.recurring_runner.run(schedule_id, now=NOW)

        assert gateway.authorized[0]["amount_minor"] == 142

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inactive_or_unknown_schedule_is_skipped(
        self, services: Services, seed_schedule: Any, gateway: FakeGateway
    ) -> None:
        schedule_id = await seed_schedule(active=False)

        assert await services.recurring_runner.run(schedule_id) == RecurringRunResult.SKIPPED
        assert await services.recurring_runner.run(uuid.uuid4()) == RecurringRunResult.SKIPPED
        assert gateway.authorized == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stale_occurrence_is_skipped(
        self, services: Services, seed_schedule: Any, gateway: FakeGateway
    ) -> None:
        schedule_id = await seed_schedule()

        result = await services.recurring_runner.run(
            schedule_id, due_at_ms=to_epoch_ms(datetime(2023, 12, 31, tzinfo=timezone.utc))
        )

        assert result == RecurringRunResult.SKIPPED
        assert gateway.authorized == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_scan_then_run_job_once(
        self, services: Services, seed_schedule: Any, provider: ScriptedProvider
    ) -> None:
        schedule_id = await seed_schedule()
        handler = make_run_handler(services.recurring_runner)

        await services.recurring_scanner.scan(now=NOW)
        (job,) = await services.recurring_queue.claim_due(now_ms=FAR_FUTURE_MS)

        assert await handler(job) == RecurringRunResult.DELIVERED
        # A redelivered job for the same occurrence does nothing
        assert await handler(job) == RecurringRunResult.SKIPPED
        assert len(provider.calls) == 1

        schedule = await load_schedule(services, schedule_id)
        assert schedule.times_run == 1


class TestConcurrentRuns:
    """Two workers picking up the same occurrence."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_same_occurrence_runs_once(
        self,
        services: Services,
        seed_schedule: Any,
        provider: ScriptedProvider,
        gateway: FakeGateway,
    ) -> None:
        gateway.delay = 0.1
        provider.delay = 0.1
        user_id = uuid.uuid4()
        schedule_id = await seed_schedule(user_id=user_id)
        due = to_epoch_ms(JAN_31)

        results = await asyncio.gather(
            services.recurring_runner.run(schedule_id, due_at_ms=due, now=NOW),
            services.recurring_runner.run(schedule_id, due_at_ms=due, now=NOW),
        )

        assert sorted(r.value for r in results) == ["delivered", "skipped"]
        assert len(gateway.authorized) == 1
        assert len(provider.calls) == 1
        assert len(await load_orders(services, user_id)) == 1

        schedule = await load_schedule(services, schedule_id)
        assert ensure_utc(schedule.next_run_at) == FEB_29
        assert schedule.times_run == 1
