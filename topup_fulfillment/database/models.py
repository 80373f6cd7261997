"""SQLAlchemy database models for the top-up fulfillment pipeline."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from topup_fulfillment.timeutils import utcnow

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Order(Base):
    """
    Purchase intent.

    Status only moves along the adjacency table in ``core.order_state``;
    rows are never deleted.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="created", index=True)
    total_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('created', 'paid', 'fulfilled', 'cancelled', 'refunded')",
            name="valid_order_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<Order(id={self.id}, status={self.status}, total={self.total_minor})>"


class ProductVariant(Base):
    """Catalog entry a line is priced against. Only the fields delivery needs."""

    __tablename__ = "product_variants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    operator_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    amount_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="AFN")


class OrderLine(Base):
    """
    One deliverable unit within an order.

    Price and destination are immutable once the line exists; a failed line
    is never re-priced, the customer places a new order instead.
    """

    __tablename__ = "order_lines"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False, index=True
    )
    product_variant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    operator_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    msisdn: Mapped[str] = mapped_column(String(32), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    display_usd_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    is_custom_amount: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    fx_rate_to_usd_snapshot: Mapped[Decimal | None] = mapped_column(
        Numeric(18, 8), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_quantity"),
        CheckConstraint("unit_price_minor >= 0", name="non_negative_price"),
    )

    def __repr__(self) -> str:
        return f"<OrderLine(id={self.id}, order_id={self.order_id}, msisdn={self.msisdn})>"


class PaymentAuthorization(Base):
    """
    Card-payment hold tied to an order.

    A cancelled or failed authorization is never revived; re-authorizing
    happens through a new record.
    """

    __tablename__ = "payment_authorizations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="stripe")
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    provider_ref: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('created', 'pending', 'succeeded', 'failed', 'cancelled')",
            name="valid_payment_status",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentAuthorization(id={self.id}, order_id={self.order_id}, "
            f"status={self.status})>"
        )


class DeliveryAttemptLog(Base):
    """
    Latest state of one external delivery call.

    There is at most one row per (order line, external attempt id); retries
    reusing the same external id update the row in place.
    """

    __tablename__ = "delivery_attempt_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_line_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("order_lines.id"), nullable=False, index=True
    )
    external_attempt_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(String(64), nullable=False)
    operator_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    msisdn: Mapped[str | None] = mapped_column(String(32), nullable=True)
    request_payload: Mapped[Any | None] = mapped_column(JSONType, nullable=True)
    response_payload: Mapped[Any | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_txn_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "order_line_id", "external_attempt_id", name="uq_delivery_attempt_line_external"
        ),
        CheckConstraint(
            "status IN ('sent', 'accepted', 'delivered', 'failed')",
            name="valid_delivery_status",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<DeliveryAttemptLog(line={self.order_line_id}, "
            f"external_id={self.external_attempt_id}, status={self.status})>"
        )


class RecurringSchedule(Base):
    """Standing instruction to materialize a top-up order on a cadence."""

    __tablename__ = "recurring_schedules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    product_variant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    operator_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    msisdn: Mapped[str] = mapped_column(String(32), nullable=False)

    is_custom_amount: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    amount_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    amount_usd_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="AFN")

    cadence: Mapped[str] = mapped_column(String(16), nullable=False)
    next_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scheduled_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    anchor_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    times_run: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "cadence IN ('weekly', 'monthly', 'quarterly', 'yearly', 'date')",
            name="valid_cadence",
        ),
        Index("idx_recurring_due", "active", "next_run_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<RecurringSchedule(id={self.id}, cadence={self.cadence}, "
            f"next_run_at={self.next_run_at}, active={self.active})>"
        )


class AuditEvent(Base):
    """
    Audit trail of order and payment transitions.

    Immutable once written.
    """

    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    diff: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    actor: Mapped[str] = mapped_column(String(100), nullable=False, default="system")
    correlation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (Index("idx_audit_entity", "entity_type", "entity_id"),)

    def __repr__(self) -> str:
        return f"<AuditEvent(id={self.id}, entity={self.entity_type}, action={self.action})>"
