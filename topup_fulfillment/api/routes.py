"""
API routes for order fulfillment, status and queue introspection.
"""
import uuid
from collections.abc import AsyncGenerator
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from topup_fulfillment.core.delivery_log import latest_attempt
from topup_fulfillment.core.fulfillment import OrderNotFoundError
from topup_fulfillment.core.idempotency import idempotent
from topup_fulfillment.core.order_status import get_order_status_view
from topup_fulfillment.core.retry_scheduler import RetryJobView
from topup_fulfillment.database.connection import session_scope
from topup_fulfillment.database.models import Order, OrderLine
from topup_fulfillment.services import Services

from .schemas import (
    BeginFulfillmentRequest,
    BeginFulfillmentResponse,
    HealthCheckResponse,
    OrderStatusResponse,
    PendingTopupListResponse,
    PendingTopupResponse,
)

logger = structlog.get_logger(__name__)

order_router = APIRouter(prefix="/orders", tags=["orders"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_db(services: Services = Depends(get_services)) -> AsyncGenerator[AsyncSession, Any]:
    async for session in session_scope(services.session_factory):
        yield session


def _fulfillment_key(kwargs: Dict[str, Any]) -> str:
    # One checkout handoff per order unless the client picks its own key
    return f"{kwargs['order_id']}:{kwargs.get('idempotency_key') or 'checkout'}"


@order_router.post(
    "/{order_id}/fulfillment",
    response_model=BeginFulfillmentResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start fulfillment",
    description="Run the first delivery attempt for every line of a paid-for order",
)
@idempotent(
    "fulfillment",
    store_getter=lambda kwargs: kwargs["services"].idempotency,
    key_getter=_fulfillment_key,
)
async def begin_fulfillment(
    order_id: uuid.UUID,
    body: Optional[BeginFulfillmentRequest] = None,
    services: Services = Depends(get_services),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> Dict[str, Any]:
    """
    Checkout handoff.

    Repeating the call returns the first call's result without touching the
    provider again.
    """
    body = body or BeginFulfillmentRequest()
    logger.info("api_begin_fulfillment_request", order_id=str(order_id))

    try:
        outcomes = await services.orchestrator.begin_fulfillment(
            order_id,
            payment_provider=body.payment_provider,
            payment_ref=body.payment_provider_ref,
        )
    except OrderNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    return {
        "order_id": str(order_id),
        "lines": [
            {
                "order_line_id": outcome.order_line_id,
                "result": outcome.result.value,
                "error_code": outcome.error_code,
                "error_message": outcome.error_message,
            }
            for outcome in outcomes
        ],
    }


@order_router.get(
    "/{order_id}/status",
    response_model=OrderStatusResponse,
    summary="Get order status",
    description="Customer-facing delivery status of an order",
)
async def get_order_status(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    view = await get_order_status_view(db, order_id)
    if view is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    return {
        "order_id": view.order_id,
        "order_status": view.order_status,
        "payment_status": view.payment_status,
        "status": view.status,
        "delivered": view.delivered,
        "failed": view.failed,
        "processing": view.processing,
        "lines": [line.__dict__ for line in view.lines],
    }


async def _enrich_job(
    db: AsyncSession, services: Services, job: RetryJobView
) -> Dict[str, Any]:
    """Join a queue entry with the order, line, lock and last attempt it refers to."""
    item: Dict[str, Any] = dict(job.__dict__)
    try:
        order_uuid = uuid.UUID(job.order_id)
        line_uuid = uuid.UUID(job.order_line_id)
    except ValueError:
        return item

    order = await db.get(Order, order_uuid)
    line = await db.get(OrderLine, line_uuid)
    item["order_status"] = order.status if order else None
    item["msisdn"] = line.msisdn if line else None
    item["locked"] = await services.attempt_lock.is_locked(job.order_id, job.order_line_id)

    attempt = await latest_attempt(db, line_uuid) if line else None
    if attempt is not None:
        item["last_attempt"] = {
            "status": attempt.status,
            "error_code": attempt.error_code,
            "error_message": attempt.error_message,
            "updated_at": attempt.updated_at,
        }
    return item


@admin_router.get(
    "/topups/pending",
    response_model=PendingTopupListResponse,
    summary="List pending top-up retries",
)
async def list_pending_topups(
    order_id: Optional[uuid.UUID] = Query(default=None),
    order_line_id: Optional[uuid.UUID] = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    jobs = await services.retry_scheduler.list_pending(
        order_id=order_id, line_id=order_line_id, limit=limit
    )
    items = [await _enrich_job(db, services, job) for job in jobs]
    return {"items": items, "count": len(items)}


@admin_router.get(
    "/topups/pending/{job_id}",
    response_model=PendingTopupResponse,
    summary="Get one top-up retry job",
)
async def get_pending_topup(
    job_id: str,
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    job = await services.retry_scheduler.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return await _enrich_job(db, services, job)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check database and Redis connectivity",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    result = await services.health.check_all()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
