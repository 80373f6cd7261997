"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class BeginFulfillmentRequest(BaseModel):
    """Checkout handoff: the card hold to settle once delivery lands."""

    payment_provider: str = Field(default="stripe", description="Payment provider name")
    payment_provider_ref: Optional[str] = Field(
        default=None, description="Provider reference of the hold (e.g. PaymentIntent id)"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [{"payment_provider": "stripe", "payment_provider_ref": "pi_1234567890"}]
        }
    }


class LineOutcomeResponse(BaseModel):
    """Outcome of the first delivery attempt for one line."""

    order_line_id: str = Field(..., description="Order line ID")
    result: str = Field(..., description="delivered, retry_scheduled, failed_terminal, ...")
    error_code: Optional[str] = Field(default=None, description="Provider error code")
    error_message: Optional[str] = Field(default=None, description="Provider error message")


class BeginFulfillmentResponse(BaseModel):
    """Response schema for the checkout handoff."""

    order_id: str = Field(..., description="Order ID")
    lines: List[LineOutcomeResponse] = Field(default_factory=list)


class LineStatusResponse(BaseModel):
    order_line_id: str
    msisdn: str = Field(..., description="Destination number")
    last_attempt_status: Optional[str] = None
    last_error_message: Optional[str] = None


class OrderStatusResponse(BaseModel):
    """Customer-facing order status."""

    order_id: str = Field(..., description="Order ID")
    order_status: str = Field(..., description="Order lifecycle status")
    payment_status: Optional[str] = Field(default=None, description="Payment status")
    status: str = Field(..., description="delivered, failed or processing")
    delivered: bool
    failed: bool
    processing: bool
    lines: List[LineStatusResponse] = Field(default_factory=list)


class LastAttemptResponse(BaseModel):
    status: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    updated_at: Optional[datetime] = None


class PendingTopupResponse(BaseModel):
    """Admin view of one pending retry job."""

    job_id: str
    state: str = Field(..., description="delayed, waiting or active")
    next_run_at: Optional[datetime] = None
    order_id: str
    order_line_id: str
    next_try: int
    tries_total: int
    tries_remaining_including_next: int
    payment_provider: Optional[str] = None
    payment_provider_ref: Optional[str] = None
    order_status: Optional[str] = None
    msisdn: Optional[str] = None
    locked: bool = Field(default=False, description="A delivery attempt is in flight")
    last_attempt: Optional[LastAttemptResponse] = None


class PendingTopupListResponse(BaseModel):
    items: List[PendingTopupResponse] = Field(default_factory=list)
    count: int = 0


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Status message")
