"""Audit trail writer for order and payment transitions."""
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from topup_fulfillment.database.models import AuditEvent
from topup_fulfillment.timeutils import utcnow


def record_audit(
    db: AsyncSession,
    *,
    entity_type: str,
    entity_id: uuid.UUID,
    action: str,
    diff: Optional[Dict[str, Any]] = None,
    actor: str = "system",
    correlation_id: Optional[uuid.UUID] = None,
) -> AuditEvent:
    """
    Add an audit event to the session.

    The event is written in the caller's transaction so it commits or rolls
    back together with the change it describes.
    """
    event = AuditEvent(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        diff=diff,
        actor=actor,
        correlation_id=correlation_id,
        created_at=utcnow(),
    )
    db.add(event)
    return event
