"""Customer-facing order status."""
import uuid
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from topup_fulfillment.core.delivery_log import latest_attempt
from topup_fulfillment.core.order_state import OrderStatus
from topup_fulfillment.database.models import Order, OrderLine, PaymentAuthorization
from topup_fulfillment.integrations.delivery import DeliveryStatus


@dataclass
class StatusFlags:
    delivered: bool
    failed: bool
    processing: bool

    @property
    def label(self) -> str:
        if self.delivered:
            return "delivered"
        if self.failed:
            return "failed"
        return "processing"


@dataclass
class LineStatusView:
    order_line_id: str
    msisdn: str
    last_attempt_status: Optional[str]
    last_error_message: Optional[str]


@dataclass
class OrderStatusView:
    """What a customer may see: no retry counts, no lock state."""

    order_id: str
    order_status: str
    payment_status: Optional[str]
    status: str
    delivered: bool
    failed: bool
    processing: bool
    lines: List[LineStatusView]


def derive_status_flags(order_status: str, last_log_status: Optional[str]) -> StatusFlags:
    """
    Collapse order and delivery state into one customer status.

    A line the provider accepted counts as delivered even while the order
    record has not caught up yet.
    """
    delivered = order_status == OrderStatus.FULFILLED.value or last_log_status in (
        DeliveryStatus.ACCEPTED.value,
        DeliveryStatus.DELIVERED.value,
    )
    failed = not delivered and order_status in (
        OrderStatus.CANCELLED.value,
        OrderStatus.REFUNDED.value,
    )
    processing = not delivered and not failed
    return StatusFlags(delivered=delivered, failed=failed, processing=processing)


async def get_order_status_view(
    db: AsyncSession, order_id: uuid.UUID
) -> Optional[OrderStatusView]:
    """Build the status view for an order, or None if it does not exist."""
    order = await db.get(Order, order_id)
    if order is None:
        return None

    payment = (
        await db.execute(
            select(PaymentAuthorization)
            .where(PaymentAuthorization.order_id == order.id)
            .order_by(PaymentAuthorization.created_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()

    lines = (
        await db.execute(
            select(OrderLine)
            .where(OrderLine.order_id == order.id)
            .order_by(OrderLine.created_at, OrderLine.id)
        )
    ).scalars().all()

    line_views = []
    line_flags = []
    for line in lines:
        attempt = await latest_attempt(db, line.id)
        last_status = attempt.status if attempt else None
        line_flags.append(derive_status_flags(order.status, last_status))
        line_views.append(
            LineStatusView(
                order_line_id=str(line.id),
                msisdn=line.msisdn,
                last_attempt_status=last_status,
                last_error_message=attempt.error_message if attempt else None,
            )
        )

    if line_flags:
        flags = StatusFlags(
            delivered=all(f.delivered for f in line_flags),
            failed=any(f.failed for f in line_flags),
            processing=False,
        )
        flags.processing = not flags.delivered and not flags.failed
    else:
        flags = derive_status_flags(order.status, None)

    return OrderStatusView(
        order_id=str(order.id),
        order_status=order.status,
        payment_status=payment.status if payment else None,
        status=flags.label,
        delivered=flags.delivered,
        failed=flags.failed,
        processing=flags.processing,
        lines=line_views,
    )
