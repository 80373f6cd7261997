"""Delivery attempt log: one row per (order line, external attempt id)."""
import uuid
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from topup_fulfillment.database.models import DeliveryAttemptLog, OrderLine
from topup_fulfillment.integrations.delivery import DeliveryOutcome
from topup_fulfillment.timeutils import utcnow

logger = structlog.get_logger(__name__)


def external_attempt_id(order_id: uuid.UUID | str, line_id: uuid.UUID | str) -> str:
    """
    Identifier sent to the provider for a line.

    It does not include the try number: every retry of a line reuses it, so
    an upstream that already processed the line can deduplicate.
    """
    return f"ord{order_id}-item{line_id}"


def _as_payload(raw: object) -> object:
    if raw is None or isinstance(raw, (dict, list)):
        return raw
    return {"raw": str(raw)}


async def upsert_attempt_log(
    db: AsyncSession,
    line: OrderLine,
    provider_name: str,
    external_id: str,
    outcome: DeliveryOutcome,
) -> DeliveryAttemptLog:
    """
    Create or update the log row for ``(line.id, external_id)``.

    The caller owns the transaction.
    """
    result = await db.execute(
        select(DeliveryAttemptLog).where(
            DeliveryAttemptLog.order_line_id == line.id,
            DeliveryAttemptLog.external_attempt_id == external_id,
        )
    )
    entry = result.scalar_one_or_none()

    if entry is None:
        entry = DeliveryAttemptLog(
            id=uuid.uuid4(),
            order_line_id=line.id,
            external_attempt_id=external_id,
            provider=provider_name,
            operator_id=line.operator_id,
            msisdn=line.msisdn,
        )
        db.add(entry)

    entry.provider = provider_name
    entry.request_payload = _as_payload(outcome.raw_request)
    entry.response_payload = _as_payload(outcome.raw_response)
    entry.status = outcome.status.value
    entry.provider_txn_id = outcome.provider_transaction_id
    entry.error_code = outcome.error_code
    entry.error_message = outcome.error_message
    entry.updated_at = utcnow()

    await db.flush()

    logger.info(
        "delivery_attempt_logged",
        order_line_id=str(line.id),
        external_attempt_id=external_id,
        status=entry.status,
        error_code=entry.error_code,
    )
    return entry


async def latest_attempt(
    db: AsyncSession, line_id: uuid.UUID
) -> Optional[DeliveryAttemptLog]:
    """Most recently updated log row for a line."""
    result = await db.execute(
        select(DeliveryAttemptLog)
        .where(DeliveryAttemptLog.order_line_id == line_id)
        .order_by(DeliveryAttemptLog.updated_at.desc(), DeliveryAttemptLog.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
