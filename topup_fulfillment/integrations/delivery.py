"""
Delivery provider contract.

A provider turns (order, line, variant, external attempt id) into a
``DeliveryOutcome``. Providers must be safe to call repeatedly with the same
external attempt id; that id is how the upstream recognizes a retry.
"""
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from topup_fulfillment.database.models import Order, OrderLine, ProductVariant


class DeliveryStatus(str, Enum):
    """Outcome status reported by a provider."""

    SENT = "sent"
    ACCEPTED = "accepted"
    DELIVERED = "delivered"
    FAILED = "failed"


class DeliveryErrorCode:
    """Error codes providers attach to failed outcomes."""

    NETWORK = "NETWORK"
    AUTH = "AUTH"
    CONFIGURATION = "CONFIGURATION"
    SOAP_FAULT = "SOAP_FAULT"
    VALIDATION = "VALIDATION"


# Retrying cannot fix these
TERMINAL_ERROR_CODES = frozenset({DeliveryErrorCode.AUTH, DeliveryErrorCode.CONFIGURATION})


@dataclass
class DeliveryOutcome:
    """Result of one provider call."""

    status: DeliveryStatus
    raw_request: Optional[Any] = None
    raw_response: Optional[Any] = None
    provider_transaction_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status in (DeliveryStatus.ACCEPTED, DeliveryStatus.DELIVERED)

    @property
    def is_terminal_failure(self) -> bool:
        return not self.succeeded and self.error_code in TERMINAL_ERROR_CODES

    @classmethod
    def failure(
        cls,
        error_code: str,
        error_message: str,
        raw_request: Optional[Any] = None,
        raw_response: Optional[Any] = None,
    ) -> "DeliveryOutcome":
        return cls(
            status=DeliveryStatus.FAILED,
            error_code=error_code,
            error_message=error_message,
            raw_request=raw_request,
            raw_response=raw_response,
        )


class DeliveryProvider(Protocol):
    """Uniform capability every top-up upstream is wrapped in."""

    name: str

    async def attempt_delivery(
        self,
        order: Order,
        line: OrderLine,
        variant: ProductVariant,
        external_attempt_id: str,
    ) -> DeliveryOutcome:
        ...


class ProviderRegistry:
    """
    Picks the delivery provider for an operator.

    Every operator resolves to the default provider unless an explicit
    mapping is registered.
    """

    def __init__(self, default: DeliveryProvider):
        self.default = default
        self._by_operator: Dict[str, DeliveryProvider] = {}

    def register(self, operator_id: uuid.UUID | str, provider: DeliveryProvider) -> None:
        self._by_operator[str(operator_id)] = provider

    def for_operator(self, operator_id: Optional[uuid.UUID | str]) -> DeliveryProvider:
        if operator_id is None:
            return self.default
        return self._by_operator.get(str(operator_id), self.default)
