"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    BeginFulfillmentRequest,
    BeginFulfillmentResponse,
    OrderStatusResponse,
    PendingTopupResponse,
)

__all__ = [
    "create_app",
    "BeginFulfillmentRequest",
    "BeginFulfillmentResponse",
    "OrderStatusResponse",
    "PendingTopupResponse",
]
