"""
Order and payment lifecycle state machines.

Every status change of an Order or a PaymentAuthorization goes through
``transition_order`` / ``transition_payment``: the target is validated
against the adjacency table and an audit event is written in the same
session.
"""
import uuid
from enum import Enum
from typing import Dict, FrozenSet, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from topup_fulfillment.core.audit import record_audit
from topup_fulfillment.database.models import Order, PaymentAuthorization

logger = structlog.get_logger(__name__)


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    CREATED = "created"
    PAID = "paid"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    """Payment authorization lifecycle states."""

    CREATED = "created"
    PENDING = "pending"  # hold placed, capturable
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.FULFILLED, OrderStatus.REFUNDED}),
    OrderStatus.FULFILLED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.CREATED: frozenset(
        {
            PaymentStatus.PENDING,
            PaymentStatus.SUCCEEDED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        }
    ),
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.SUCCEEDED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}

# Orders a delivery attempt may still run against
DELIVERABLE_ORDER_STATUSES = frozenset({OrderStatus.CREATED, OrderStatus.PAID})


class InvalidTransitionError(Exception):
    """Raised when a status change is not allowed by the adjacency table."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"invalid {entity} transition from {current} -> {target}")
        self.entity = entity
        self.current = current
        self.target = target


def can_transition_order(current: str, target: str) -> bool:
    return OrderStatus(target) in ORDER_TRANSITIONS[OrderStatus(current)]


def can_transition_payment(current: str, target: str) -> bool:
    return PaymentStatus(target) in PAYMENT_TRANSITIONS[PaymentStatus(current)]


async def transition_order(
    db: AsyncSession,
    order: Order,
    target: OrderStatus,
    *,
    actor: str = "system",
    correlation_id: Optional[uuid.UUID] = None,
) -> None:
    """
    Move an order to ``target`` and audit the change.

    Raises:
        InvalidTransitionError: If the table does not allow the move
    """
    target = OrderStatus(target)
    before = order.status
    if not can_transition_order(before, target):
        raise InvalidTransitionError("order", before, target.value)

    order.status = target.value
    record_audit(
        db,
        entity_type="order",
        entity_id=order.id,
        action=f"order.{target.value}",
        diff={"before": before, "after": target.value},
        actor=actor,
        correlation_id=correlation_id,
    )
    await db.flush()

    logger.info(
        "order_status_changed",
        order_id=str(order.id),
        before=before,
        after=target.value,
        actor=actor,
    )


async def transition_payment(
    db: AsyncSession,
    authorization: PaymentAuthorization,
    target: PaymentStatus,
    *,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
    actor: str = "system",
    correlation_id: Optional[uuid.UUID] = None,
) -> None:
    """
    Move a payment authorization to ``target`` and audit the change.

    Raises:
        InvalidTransitionError: If the table does not allow the move
    """
    target = PaymentStatus(target)
    before = authorization.status
    if not can_transition_payment(before, target):
        raise InvalidTransitionError("payment", before, target.value)

    authorization.status = target.value
    if error_code is not None:
        authorization.error_code = error_code
    if error_message is not None:
        authorization.error_message = error_message

    record_audit(
        db,
        entity_type="payment",
        entity_id=authorization.id,
        action=f"payment.{target.value}",
        diff={"before": before, "after": target.value, "error_code": error_code},
        actor=actor,
        correlation_id=correlation_id,
    )
    await db.flush()

    logger.info(
        "payment_status_changed",
        payment_id=str(authorization.id),
        order_id=str(authorization.order_id),
        before=before,
        after=target.value,
    )
