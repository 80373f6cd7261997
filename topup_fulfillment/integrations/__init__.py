"""External service integrations."""
from topup_fulfillment.integrations.awcc_client import AwccDeliveryProvider
from topup_fulfillment.integrations.delivery import (
    TERMINAL_ERROR_CODES,
    DeliveryErrorCode,
    DeliveryOutcome,
    DeliveryProvider,
    DeliveryStatus,
    ProviderRegistry,
)
from topup_fulfillment.integrations.stripe_client import (
    CircuitBreaker,
    IntentResult,
    PaymentErrorType,
    PaymentGateway,
    PaymentGatewayError,
    StripeClient,
    map_intent_status,
)

__all__ = [
    "AwccDeliveryProvider",
    "CircuitBreaker",
    "DeliveryErrorCode",
    "DeliveryOutcome",
    "DeliveryProvider",
    "DeliveryStatus",
    "IntentResult",
    "PaymentErrorType",
    "PaymentGateway",
    "PaymentGatewayError",
    "ProviderRegistry",
    "StripeClient",
    "TERMINAL_ERROR_CODES",
    "map_intent_status",
]
