"""Database package for the top-up fulfillment pipeline."""
from .connection import create_engine, create_session_factory, init_db, session_scope
from .models import (
    AuditEvent,
    Base,
    DeliveryAttemptLog,
    Order,
    OrderLine,
    PaymentAuthorization,
    ProductVariant,
    RecurringSchedule,
)

__all__ = [
    "Base",
    "Order",
    "OrderLine",
    "ProductVariant",
    "PaymentAuthorization",
    "DeliveryAttemptLog",
    "RecurringSchedule",
    "AuditEvent",
    "create_engine",
    "create_session_factory",
    "init_db",
    "session_scope",
]
