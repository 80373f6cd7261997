"""
Fulfillment orchestrator for order-line top-ups.

One tick drives a single order line one step:
1. Load line, order and variant (missing -> stale, silent)
2. Check the order can still be delivered to (else ineligible, silent)
3. Take the attempt lock (contended -> silent)
4. Call the delivery provider with the line's stable external id
5. Upsert the delivery attempt log and commit
6. Success: once every line of the order landed, capture the hold and
   move the order -> paid -> fulfilled
7. Failure: cancel hold and order at the retry bound or on a terminal
   error code, otherwise schedule the next try. A terminal failure on an
   order with a delivered sibling line keeps the hold for manual review

Settling the hold (steps 6 and 7) runs under a per-order lock so that
sibling lines finishing together capture or cancel it once.

Try 0 is the synchronous attempt right after checkout; scheduled retries
are tries 1..max_tries.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from topup_fulfillment.config import Settings
from topup_fulfillment.core.attempt_lock import AttemptLock
from topup_fulfillment.core.delivery_log import external_attempt_id, upsert_attempt_log
from topup_fulfillment.core.order_state import (
    DELIVERABLE_ORDER_STATUSES,
    OrderStatus,
    PaymentStatus,
    transition_order,
    transition_payment,
)
from topup_fulfillment.core.retry_scheduler import RetryScheduler
from topup_fulfillment.database.models import (
    DeliveryAttemptLog,
    Order,
    OrderLine,
    PaymentAuthorization,
    ProductVariant,
)
from topup_fulfillment.integrations.delivery import (
    DeliveryErrorCode,
    DeliveryOutcome,
    DeliveryProvider,
    DeliveryStatus,
    ProviderRegistry,
)
from topup_fulfillment.integrations.stripe_client import PaymentGateway, PaymentGatewayError
from topup_fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CAPTURE_FAILED = "CAPTURE_FAILED"
CANCEL_FAILED = "CANCEL_FAILED"
PARTIAL_DELIVERY = "PARTIAL_DELIVERY"

_OPEN_PAYMENT_STATUSES = (PaymentStatus.CREATED.value, PaymentStatus.PENDING.value)
_SUCCESS_LOG_STATUSES = (DeliveryStatus.ACCEPTED.value, DeliveryStatus.DELIVERED.value)


class FulfillmentError(Exception):
    """Base exception for fulfillment errors."""

    pass


class OrderNotFoundError(FulfillmentError):
    """Raised when fulfillment is requested for an unknown order."""

    pass


class TickResult(str, Enum):
    """How a tick ended."""

    STALE = "stale"
    INELIGIBLE = "ineligible"
    LOCKED = "locked"
    DELIVERED = "delivered"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED_TERMINAL = "failed_terminal"


@dataclass
class TickOutcome:
    """Result of one tick for one order line."""

    result: TickResult
    order_id: str
    order_line_id: str
    try_number: int
    error_code: Optional[str] = None
    error_message: Optional[str] = None


def _as_uuid(value: uuid.UUID | str) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class FulfillmentOrchestrator:
    """
    Runs delivery ticks for order lines.

    All collaborators are injected; the orchestrator keeps no state between
    ticks.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        providers: ProviderRegistry,
        payment_gateway: PaymentGateway,
        attempt_lock: AttemptLock,
        retry_scheduler: RetryScheduler,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.providers = providers
        self.payment_gateway = payment_gateway
        self.attempt_lock = attempt_lock
        self.retry_scheduler = retry_scheduler
        self.settings = settings
        self.max_tries = settings.topup_max_tries

    async def begin_fulfillment(
        self,
        order_id: uuid.UUID | str,
        payment_provider: str = "stripe",
        payment_ref: Optional[str] = None,
    ) -> List[TickOutcome]:
        """
        Run the first delivery attempt (try 0) for every line of an order.

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        order_uuid = _as_uuid(order_id)
        async with self.session_factory() as db:
            order = await db.get(Order, order_uuid) if order_uuid else None
            if order is None:
                raise OrderNotFoundError(f"order {order_id} not found")

            if payment_ref is None:
                authorization = await self._find_authorization(db, order.id, None)
                if authorization is not None:
                    payment_ref = authorization.provider_ref
                    payment_provider = authorization.provider

            result = await db.execute(
                select(OrderLine.id)
                .where(OrderLine.order_id == order.id)
                .order_by(OrderLine.created_at, OrderLine.id)
            )
            line_ids = list(result.scalars().all())

        logger.info("fulfillment_started", order_id=str(order_uuid), lines=len(line_ids))

        outcomes = []
        for line_id in line_ids:
            outcomes.append(
                await self.run_tick(
                    order_uuid,
                    line_id,
                    try_number=0,
                    payment_provider=payment_provider,
                    payment_ref=payment_ref,
                )
            )
        return outcomes

    async def run_tick(
        self,
        order_id: uuid.UUID | str,
        line_id: uuid.UUID | str,
        try_number: int = 0,
        payment_provider: Optional[str] = "stripe",
        payment_ref: Optional[str] = None,
    ) -> TickOutcome:
        """
        Drive one order line one delivery attempt forward.

        Provider failures never raise out of a tick; database and Redis
        errors do.
        """
        log = logger.bind(
            order_id=str(order_id), order_line_id=str(line_id), try_number=try_number
        )

        def finish(result: TickResult, outcome: Optional[DeliveryOutcome] = None) -> TickOutcome:
            metrics.record_tick(result.value)
            log.info("fulfillment_tick_finished", result=result.value)
            return TickOutcome(
                result=result,
                order_id=str(order_id),
                order_line_id=str(line_id),
                try_number=try_number,
                error_code=outcome.error_code if outcome else None,
                error_message=outcome.error_message if outcome else None,
            )

        order_uuid = _as_uuid(order_id)
        line_uuid = _as_uuid(line_id)
        correlation_id = uuid.uuid4()

        async with self.session_factory() as db:
            line = await db.get(OrderLine, line_uuid) if line_uuid else None
            order = await db.get(Order, order_uuid) if order_uuid else None
            if line is None or order is None or line.order_id != order.id:
                return finish(TickResult.STALE)
            variant = await db.get(ProductVariant, line.product_variant_id)
            if variant is None:
                return finish(TickResult.STALE)

            if order.status not in {s.value for s in DELIVERABLE_ORDER_STATUSES}:
                return finish(TickResult.INELIGIBLE)

            if not await self.attempt_lock.acquire(order.id, line.id):
                return finish(TickResult.LOCKED)

            provider = self.providers.for_operator(line.operator_id or variant.operator_id)
            external_id = external_attempt_id(order.id, line.id)

            try:
                outcome = await self._previous_success(db, line.id, external_id)
                if outcome is None:
                    outcome = await self._attempt(provider, order, line, variant, external_id)
                    await upsert_attempt_log(db, line, provider.name, external_id, outcome)
                    await db.commit()
                else:
                    log.info("delivery_already_accepted", external_attempt_id=external_id)

                if outcome.succeeded:
                    await self._finalize_success(
                        db, order, payment_provider, payment_ref, correlation_id
                    )
            finally:
                await self.attempt_lock.release(order.id, line.id)

            if outcome.succeeded:
                return finish(TickResult.DELIVERED, outcome)

            if try_number >= self.max_tries or outcome.is_terminal_failure:
                log.warning(
                    "delivery_failed_terminal",
                    error_code=outcome.error_code,
                    error_message=outcome.error_message,
                )
                await self._finalize_failure(db, order, payment_ref, correlation_id)
                return finish(TickResult.FAILED_TERMINAL, outcome)

        await self.retry_scheduler.schedule_retry(
            order_id,
            line_id,
            try_number + 1,
            payment_provider=payment_provider,
            payment_provider_ref=payment_ref,
        )
        return finish(TickResult.RETRY_SCHEDULED, outcome)

    async def _attempt(
        self,
        provider: DeliveryProvider,
        order: Order,
        line: OrderLine,
        variant: ProductVariant,
        external_id: str,
    ) -> DeliveryOutcome:
        start = time.monotonic()
        logger.info(
            "delivery_attempt_started",
            provider=provider.name,
            order_line_id=str(line.id),
            external_attempt_id=external_id,
        )
        try:
            outcome = await asyncio.wait_for(
                provider.attempt_delivery(order, line, variant, external_id),
                self.settings.delivery_timeout_seconds,
            )
        except asyncio.TimeoutError:
            outcome = DeliveryOutcome.failure(
                DeliveryErrorCode.NETWORK,
                f"delivery timed out after {self.settings.delivery_timeout_seconds}s",
            )
        except Exception as e:
            logger.exception("delivery_provider_error", provider=provider.name)
            outcome = DeliveryOutcome.failure(
                DeliveryErrorCode.NETWORK, str(e) or e.__class__.__name__
            )

        logger.info(
            "delivery_attempt_finished",
            provider=provider.name,
            order_line_id=str(line.id),
            status=outcome.status.value,
            error_code=outcome.error_code,
            duration_seconds=round(time.monotonic() - start, 3),
        )
        return outcome

    async def _previous_success(
        self, db: AsyncSession, line_id: uuid.UUID, external_id: str
    ) -> Optional[DeliveryOutcome]:
        """An accepted log row for this external id means the upstream already has it."""
        result = await db.execute(
            select(DeliveryAttemptLog).where(
                DeliveryAttemptLog.order_line_id == line_id,
                DeliveryAttemptLog.external_attempt_id == external_id,
                DeliveryAttemptLog.status.in_(_SUCCESS_LOG_STATUSES),
            )
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            return None
        return DeliveryOutcome(
            status=DeliveryStatus(entry.status),
            provider_transaction_id=entry.provider_txn_id,
        )

    async def _delivered_line_counts(
        self, db: AsyncSession, order_id: uuid.UUID
    ) -> tuple[int, int]:
        """(lines with a success log, all lines) for an order."""
        lines = await db.execute(
            select(func.count(OrderLine.id)).where(OrderLine.order_id == order_id)
        )
        delivered = await db.execute(
            select(func.count(func.distinct(DeliveryAttemptLog.order_line_id)))
            .join(OrderLine, OrderLine.id == DeliveryAttemptLog.order_line_id)
            .where(
                OrderLine.order_id == order_id,
                DeliveryAttemptLog.status.in_(_SUCCESS_LOG_STATUSES),
            )
        )
        return int(delivered.scalar_one()), int(lines.scalar_one())

    async def _find_authorization(
        self, db: AsyncSession, order_id: uuid.UUID, payment_ref: Optional[str]
    ) -> Optional[PaymentAuthorization]:
        stmt = select(PaymentAuthorization).where(PaymentAuthorization.order_id == order_id)
        if payment_ref:
            stmt = stmt.where(PaymentAuthorization.provider_ref == payment_ref)
        else:
            stmt = stmt.where(PaymentAuthorization.status.in_(_OPEN_PAYMENT_STATUSES))
        stmt = (
            stmt.order_by(PaymentAuthorization.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def _finalize_success(
        self,
        db: AsyncSession,
        order: Order,
        payment_provider: Optional[str],
        payment_ref: Optional[str],
        correlation_id: uuid.UUID,
    ) -> None:
        """Capture the hold once the last line of the order landed."""
        delivered, total = await self._delivered_line_counts(db, order.id)
        if delivered < total:
            logger.info(
                "line_delivered_awaiting_siblings",
                order_id=str(order.id),
                delivered=delivered,
                lines=total,
            )
            return

        # Sibling lines finishing together all see every line delivered
        if not await self.attempt_lock.acquire_order(order.id):
            logger.info("order_settlement_in_progress", order_id=str(order.id))
            return
        try:
            await db.refresh(order)
            authorization = await self._find_authorization(db, order.id, payment_ref)
            if authorization is not None and authorization.status in _OPEN_PAYMENT_STATUSES:
                await self._capture(db, authorization, correlation_id)
            elif authorization is None:
                logger.warning(
                    "no_authorization_to_capture",
                    order_id=str(order.id),
                    payment_provider=payment_provider,
                    payment_ref=payment_ref,
                )

            if order.status == OrderStatus.CREATED.value:
                await transition_order(db, order, OrderStatus.PAID, correlation_id=correlation_id)
            if order.status == OrderStatus.PAID.value:
                await transition_order(
                    db, order, OrderStatus.FULFILLED, correlation_id=correlation_id
                )
            await db.commit()
        finally:
            await self.attempt_lock.release_order(order.id)

    async def _capture(
        self,
        db: AsyncSession,
        authorization: PaymentAuthorization,
        correlation_id: uuid.UUID,
    ) -> None:
        if not authorization.provider_ref:
            logger.warning("authorization_without_ref", payment_id=str(authorization.id))
            return
        try:
            await self.payment_gateway.capture(authorization.provider_ref)
        except PaymentGatewayError as e:
            # The line is delivered regardless; the hold stays for manual capture
            logger.error(
                "payment_capture_failed",
                payment_id=str(authorization.id),
                provider_ref=authorization.provider_ref,
                error=str(e),
            )
            authorization.error_code = CAPTURE_FAILED
            authorization.error_message = str(e)
            await db.flush()
            return

        await transition_payment(
            db, authorization, PaymentStatus.SUCCEEDED, correlation_id=correlation_id
        )

    async def _finalize_failure(
        self,
        db: AsyncSession,
        order: Order,
        payment_ref: Optional[str],
        correlation_id: uuid.UUID,
    ) -> None:
        """Release the hold and cancel the order, unless a sibling line already landed."""
        if not await self.attempt_lock.acquire_order(order.id):
            logger.info("order_settlement_in_progress", order_id=str(order.id))
            return
        try:
            await db.refresh(order)
            authorization = await self._find_authorization(db, order.id, payment_ref)
            delivered, total = await self._delivered_line_counts(db, order.id)

            if delivered:
                # Part of the order reached the customer; money moves by hand
                logger.error(
                    "order_partially_delivered",
                    order_id=str(order.id),
                    delivered=delivered,
                    lines=total,
                )
                if authorization is not None and authorization.status in _OPEN_PAYMENT_STATUSES:
                    authorization.error_code = PARTIAL_DELIVERY
                    authorization.error_message = f"{delivered} of {total} lines delivered"
                await db.commit()
                return

            if authorization is not None and authorization.status in _OPEN_PAYMENT_STATUSES:
                await self._cancel(db, authorization, correlation_id)

            if order.status == OrderStatus.CREATED.value:
                await transition_order(
                    db, order, OrderStatus.CANCELLED, correlation_id=correlation_id
                )
            else:
                logger.warning(
                    "order_not_cancellable", order_id=str(order.id), status=order.status
                )
            await db.commit()
        finally:
            await self.attempt_lock.release_order(order.id)

    async def _cancel(
        self,
        db: AsyncSession,
        authorization: PaymentAuthorization,
        correlation_id: uuid.UUID,
    ) -> None:
        error_code = None
        error_message = None
        if authorization.provider_ref:
            try:
                await self.payment_gateway.cancel(authorization.provider_ref)
            except PaymentGatewayError as e:
                logger.error(
                    "payment_cancel_failed",
                    payment_id=str(authorization.id),
                    provider_ref=authorization.provider_ref,
                    error=str(e),
                )
                error_code = CANCEL_FAILED
                error_message = str(e)
        await transition_payment(
            db,
            authorization,
            PaymentStatus.CANCELLED,
            error_code=error_code,
            error_message=error_message,
            correlation_id=correlation_id,
        )
