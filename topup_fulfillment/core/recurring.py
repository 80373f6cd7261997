"""
Recurring top-up loop.

The scanner finds due schedules and enqueues one run job per schedule
occurrence. The runner turns a schedule into a fresh order, places an
off-session card hold and hands the line to the fulfillment orchestrator
for its first delivery attempt. Failed deliveries continue on the normal
retry pipeline; the schedule itself moves on to its next occurrence.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from topup_fulfillment.config import Settings
from topup_fulfillment.core.audit import record_audit
from topup_fulfillment.core.cadence import Cadence, compute_next_run_at
from topup_fulfillment.core.currency import StaticRateConverter, UnknownCurrencyError
from topup_fulfillment.core.fulfillment import FulfillmentOrchestrator, TickResult
from topup_fulfillment.core.job_queue import RedisJobQueue
from topup_fulfillment.core.order_state import OrderStatus, PaymentStatus, transition_order
from topup_fulfillment.database.models import (
    Order,
    OrderLine,
    PaymentAuthorization,
    ProductVariant,
    RecurringSchedule,
)
from topup_fulfillment.integrations.stripe_client import (
    IntentResult,
    PaymentGateway,
    PaymentGatewayError,
)
from topup_fulfillment.monitoring.metrics import metrics
from topup_fulfillment.timeutils import ensure_utc, to_epoch_ms, utcnow

logger = structlog.get_logger(__name__)

RECURRING_RUN_QUEUE = "recurring-run"
RUN_JOB_NAME = "run"


class RecurringRunResult(str, Enum):
    """How a recurring run ended."""

    SKIPPED = "skipped"
    VARIANT_NOT_FOUND = "variant_not_found"
    INVALID_AMOUNT = "invalid_amount"
    AUTHORIZATION_FAILED = "authorization_failed"
    DELIVERED = "delivered"
    DELIVERY_PENDING = "delivery_pending"


def run_job_id(schedule_id: uuid.UUID | str, due_at: datetime) -> str:
    """
    Job id for one occurrence of a schedule.

    Scans that overlap before the occurrence has run produce the same id,
    so the queue drops the duplicate.
    """
    return f"recurring-run:{schedule_id}:{to_epoch_ms(due_at)}"


def next_occurrence(schedule: RecurringSchedule) -> Dict[str, Any]:
    """Values that move a schedule past its current occurrence; one-off schedules retire."""
    if schedule.cadence == Cadence.DATE.value:
        return {"active": False}
    return {
        "next_run_at": compute_next_run_at(
            ensure_utc(schedule.next_run_at),
            schedule.cadence,
            anchor_day=schedule.anchor_day,
        )
    }


class RecurringScanner:
    """Enqueues run jobs for schedules whose next run is due."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        run_queue: RedisJobQueue,
        batch_size: int = 500,
    ):
        self.session_factory = session_factory
        self.run_queue = run_queue
        self.batch_size = batch_size

    async def scan(self, now: Optional[datetime] = None) -> int:
        """
        Enqueue due schedules, soonest first.

        Returns:
            int: Number of run jobs created
        """
        now = now or utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(RecurringSchedule.id, RecurringSchedule.next_run_at)
                .where(
                    RecurringSchedule.active.is_(True),
                    RecurringSchedule.next_run_at <= now,
                )
                .order_by(RecurringSchedule.next_run_at)
                .limit(self.batch_size)
            )
            due = result.all()

        created = 0
        for schedule_id, next_run_at in due:
            due_at_ms = to_epoch_ms(next_run_at)
            if await self.run_queue.add(
                RUN_JOB_NAME,
                {"schedule_id": str(schedule_id), "due_at_ms": due_at_ms},
                job_id=run_job_id(schedule_id, next_run_at),
            ):
                created += 1

        metrics.record_recurring_enqueued(created)
        logger.info("recurring_scan_finished", due=len(due), enqueued=created)
        return created


class RecurringRunner:
    """Materializes one schedule occurrence into an order and starts delivery."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        orchestrator: FulfillmentOrchestrator,
        payment_gateway: PaymentGateway,
        converter: StaticRateConverter,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.payment_gateway = payment_gateway
        self.converter = converter
        self.settings = settings

    async def run(
        self,
        schedule_id: uuid.UUID | str,
        due_at_ms: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RecurringRunResult:
        """
        Execute one occurrence of a schedule.

        Args:
            schedule_id: Schedule to run
            due_at_ms: Occurrence the job was created for; a schedule that
                has moved past it is skipped
            now: Clock override
        """
        now = now or utcnow()
        log = logger.bind(schedule_id=str(schedule_id))

        async with self.session_factory() as db:
            schedule = await db.get(RecurringSchedule, uuid.UUID(str(schedule_id)))
            if schedule is None or not schedule.active:
                return self._finish(log, RecurringRunResult.SKIPPED)
            if due_at_ms is not None and to_epoch_ms(schedule.next_run_at) != due_at_ms:
                log.info("recurring_occurrence_already_handled", due_at_ms=due_at_ms)
                return self._finish(log, RecurringRunResult.SKIPPED)

            variant = await db.get(ProductVariant, schedule.product_variant_id)
            if variant is None:
                schedule.last_run_at = now
                schedule.last_error = "variant_not_found"
                await db.commit()
                return self._finish(log, RecurringRunResult.VARIANT_NOT_FOUND)

            if not await self._claim_occurrence(db, schedule, now):
                await db.rollback()
                log.info("recurring_occurrence_claimed_elsewhere")
                return self._finish(log, RecurringRunResult.SKIPPED)

            order, line = self._materialize(db, schedule, variant)
            await db.commit()
            await db.refresh(schedule)
            log = log.bind(order_id=str(order.id), order_line_id=str(line.id))

            charge_minor = self._charge_amount(schedule, line)
            if charge_minor <= 0:
                await transition_order(db, order, OrderStatus.CANCELLED)
                schedule.last_error = "invalid_amount"
                await db.commit()
                return self._finish(log, RecurringRunResult.INVALID_AMOUNT)

            authorization = await self._authorize(db, schedule, order, charge_minor)
            if authorization.status != PaymentStatus.PENDING.value:
                await transition_order(db, order, OrderStatus.CANCELLED)
                schedule.last_error = f"authorization_failed:{authorization.error_code}"[:255]
                await db.commit()
                return self._finish(log, RecurringRunResult.AUTHORIZATION_FAILED)

            await db.commit()

            outcome = await self.orchestrator.run_tick(
                order.id,
                line.id,
                try_number=0,
                payment_provider=authorization.provider,
                payment_ref=authorization.provider_ref,
            )

            if outcome.result == TickResult.DELIVERED:
                schedule.times_run = (schedule.times_run or 0) + 1
                schedule.last_error = None
                result = RecurringRunResult.DELIVERED
            else:
                schedule.last_error = (
                    outcome.error_message or outcome.error_code or f"topup_{outcome.result.value}"
                )[:255]
                result = RecurringRunResult.DELIVERY_PENDING
            await db.commit()

        return self._finish(log, result)

    async def _claim_occurrence(
        self, db: AsyncSession, schedule: RecurringSchedule, now: datetime
    ) -> bool:
        """
        Advance the schedule only if it still sits on the occurrence we loaded.

        Exactly one concurrent run of the same occurrence matches the row; the
        others see zero rows and must not create an order.
        """
        result = await db.execute(
            update(RecurringSchedule)
            .where(
                RecurringSchedule.id == schedule.id,
                RecurringSchedule.next_run_at == schedule.next_run_at,
                RecurringSchedule.active.is_(True),
            )
            .values(last_run_at=now, **next_occurrence(schedule))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _finish(self, log: structlog.BoundLogger, result: RecurringRunResult) -> RecurringRunResult:
        metrics.record_recurring_run(result.value)
        log.info("recurring_run_finished", result=result.value)
        return result

    def _materialize(
        self, db: AsyncSession, schedule: RecurringSchedule, variant: ProductVariant
    ) -> tuple[Order, OrderLine]:
        amount = schedule.amount_minor
        if amount is None and not schedule.is_custom_amount:
            amount = variant.amount_minor
        amount = int(amount or 0)

        order = Order(
            id=uuid.uuid4(),
            user_id=schedule.user_id,
            status=OrderStatus.CREATED.value,
            total_minor=amount,
            currency=schedule.currency,
        )
        line = OrderLine(
            id=uuid.uuid4(),
            order_id=order.id,
            product_variant_id=variant.id,
            operator_id=schedule.operator_id or variant.operator_id,
            msisdn=schedule.msisdn,
            quantity=1,
            unit_price_minor=max(amount, 0),
            currency=schedule.currency,
            display_usd_minor=schedule.amount_usd_minor,
            is_custom_amount=schedule.is_custom_amount,
        )
        db.add(order)
        db.add(line)
        record_audit(
            db,
            entity_type="order",
            entity_id=order.id,
            action="order.created",
            diff={"after": OrderStatus.CREATED.value, "recurring_schedule_id": str(schedule.id)},
        )
        return order, line

    def _charge_amount(self, schedule: RecurringSchedule, line: OrderLine) -> int:
        if schedule.amount_usd_minor is not None:
            return int(schedule.amount_usd_minor)
        try:
            return self.converter.convert_minor(
                line.unit_price_minor, line.currency, self.settings.charge_currency
            )
        except UnknownCurrencyError as e:
            logger.warning("recurring_amount_unconvertible", error=str(e))
            return 0

    async def _authorize(
        self,
        db: AsyncSession,
        schedule: RecurringSchedule,
        order: Order,
        charge_minor: int,
    ) -> PaymentAuthorization:
        """Place the off-session hold and record it; never raises for gateway errors."""
        authorization = PaymentAuthorization(
            id=uuid.uuid4(),
            order_id=order.id,
            user_id=order.user_id,
            provider="stripe",
            amount_minor=charge_minor,
            currency=self.settings.charge_currency,
            status=PaymentStatus.CREATED.value,
        )
        try:
            result: IntentResult = await self.payment_gateway.authorize(
                amount_minor=charge_minor,
                currency=self.settings.charge_currency,
                idempotency_key=f"recurring:{schedule.id}:{order.id}",
                customer_id=schedule.stripe_customer_id,
                payment_method_id=schedule.stripe_payment_method_id,
                metadata={"order_id": str(order.id), "recurring_schedule_id": str(schedule.id)},
            )
        except PaymentGatewayError as e:
            authorization.status = PaymentStatus.FAILED.value
            authorization.error_code = e.code or e.error_type.value
            authorization.error_message = str(e)
        else:
            authorization.provider_ref = result.provider_ref
            if result.authorized:
                authorization.status = PaymentStatus.PENDING.value
            else:
                authorization.status = PaymentStatus.FAILED.value
                authorization.error_code = result.intent_status

        db.add(authorization)
        record_audit(
            db,
            entity_type="payment",
            entity_id=authorization.id,
            action=f"payment.{authorization.status}",
            diff={"after": authorization.status, "error_code": authorization.error_code},
        )
        await db.flush()

        logger.info(
            "recurring_payment_authorized"
            if authorization.status == PaymentStatus.PENDING.value
            else "recurring_payment_not_authorized",
            order_id=str(order.id),
            provider_ref=authorization.provider_ref,
            status=authorization.status,
            error_code=authorization.error_code,
        )
        return authorization
