"""
Stripe payment gateway for manual-capture card holds.

Implements:
- Off-session authorization (capture_method=manual)
- Capture and cancel of an existing hold
- Exponential backoff for transient errors
- Circuit breaker pattern

The Stripe SDK is synchronous; calls run in a worker thread with a hard
timeout so they cannot outlive the attempt lock.
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from topup_fulfillment.config import Settings
from topup_fulfillment.config.settings import STRIPE_BACKOFF_MAX_SECONDS, STRIPE_MAX_ATTEMPTS
from topup_fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PaymentErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class PaymentGatewayError(Exception):
    """Raised when the payment gateway rejects or fails a call."""

    def __init__(
        self,
        message: str,
        error_type: PaymentErrorType,
        original_error: Optional[Exception] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error
        self.code = code


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, PaymentGatewayError) and error.error_type in (
        PaymentErrorType.TRANSIENT,
        PaymentErrorType.RATE_LIMIT,
    )


# Stripe PaymentIntent status -> local payment status
INTENT_STATUS_MAP: Dict[str, str] = {
    "requires_capture": "pending",
    "succeeded": "succeeded",
    "canceled": "cancelled",
}


def map_intent_status(intent_status: Optional[str]) -> str:
    """Map a PaymentIntent status onto the local payment lifecycle."""
    return INTENT_STATUS_MAP.get(intent_status or "", "created")


@dataclass
class IntentResult:
    """The parts of a PaymentIntent the pipeline acts on."""

    provider_ref: str
    intent_status: str
    amount_minor: int
    currency: str

    @property
    def status(self) -> str:
        return map_intent_status(self.intent_status)

    @property
    def authorized(self) -> bool:
        return self.intent_status == "requires_capture"

    @classmethod
    def from_intent(cls, intent: Any) -> "IntentResult":
        return cls(
            provider_ref=intent["id"],
            intent_status=intent["status"],
            amount_minor=int(intent.get("amount") or 0),
            currency=str(intent.get("currency") or "").upper(),
        )


class PaymentGateway(Protocol):
    """Card-payment capability the fulfillment pipeline depends on."""

    async def authorize(
        self,
        amount_minor: int,
        currency: str,
        idempotency_key: str,
        customer_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> IntentResult:
        ...

    async def capture(self, provider_ref: str) -> IntentResult:
        ...

    async def cancel(self, provider_ref: str) -> IntentResult:
        ...


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Stops sending requests for ``timeout`` seconds after
    ``failure_threshold`` consecutive failures.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Raises:
            PaymentGatewayError: If the circuit is open
        """
        if self.state != "open":
            return
        if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
            self.state = "half_open"
            self.success_count = 0
            metrics.set_circuit_breaker_state(self.state)
            logger.info("circuit_breaker_half_open")
            return
        raise PaymentGatewayError("Circuit breaker is open", PaymentErrorType.TRANSIENT)

    def on_success(self) -> None:
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold and self.state != "open":
            self.state = "open"
            metrics.set_circuit_breaker_state(self.state)
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)


class StripeClient:
    """
    Payment gateway backed by Stripe PaymentIntents.

    Holds are created with ``capture_method="manual"`` so money is only
    taken once delivery succeeded.
    """

    def __init__(self, settings: Settings, circuit_breaker: Optional[CircuitBreaker] = None):
        self.settings = settings
        self.timeout_seconds = settings.stripe_timeout_seconds
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version

        logger.info(
            "stripe_client_initialized",
            api_version=settings.stripe_api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: Exception) -> PaymentErrorType:
        """Classify a Stripe SDK error for retry logic."""
        if isinstance(error, stripe.RateLimitError):
            return PaymentErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return PaymentErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
            ),
        ):
            return PaymentErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return PaymentErrorType.TRANSIENT

    async def _call(self, operation: str, func: Callable[[], Any]) -> Any:
        """Run one SDK call through the breaker with a hard timeout."""
        self.circuit_breaker.before_call()
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(asyncio.to_thread(func), self.timeout_seconds)
        except asyncio.TimeoutError as e:
            self.circuit_breaker.on_failure()
            metrics.record_stripe_api_call(operation, "timeout", time.monotonic() - start)
            metrics.record_stripe_api_error(PaymentErrorType.TRANSIENT.value)
            logger.error("stripe_api_timeout", operation=operation, timeout=self.timeout_seconds)
            raise PaymentGatewayError(
                f"Stripe {operation} timed out", PaymentErrorType.TRANSIENT, e
            ) from e
        except stripe.StripeError as e:
            self.circuit_breaker.on_failure()
            error_type = self._classify_error(e)
            metrics.record_stripe_api_call(operation, "error", time.monotonic() - start)
            metrics.record_stripe_api_error(error_type.value)
            logger.error(
                "stripe_api_error",
                operation=operation,
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise PaymentGatewayError(
                str(e), error_type, e, code=getattr(e, "code", None)
            ) from e

        self.circuit_breaker.on_success()
        metrics.record_stripe_api_call(operation, "success", time.monotonic() - start)
        return result

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(STRIPE_MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=1, max=STRIPE_BACKOFF_MAX_SECONDS),
        reraise=True,
    )
    async def authorize(
        self,
        amount_minor: int,
        currency: str,
        idempotency_key: str,
        customer_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> IntentResult:
        """
        Place an off-session manual-capture hold.

        Args:
            amount_minor: Amount in minor units of ``currency``
            currency: Charge currency
            idempotency_key: Stripe idempotency key; retries reuse it
            customer_id: Saved Stripe customer
            payment_method_id: Saved payment method
            metadata: Free-form metadata stored on the intent

        Returns:
            IntentResult: ``authorized`` is True only for ``requires_capture``

        Raises:
            PaymentGatewayError: If Stripe rejects or fails the call
        """
        logger.info(
            "authorizing_payment",
            amount_minor=amount_minor,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        def _create() -> Any:
            kwargs: Dict[str, Any] = {
                "amount": amount_minor,
                "currency": currency.lower(),
                "capture_method": "manual",
                "metadata": metadata or {},
                "idempotency_key": idempotency_key,
            }
            if customer_id:
                kwargs["customer"] = customer_id
            if payment_method_id:
                kwargs["payment_method"] = payment_method_id
                kwargs["off_session"] = True
                kwargs["confirm"] = True
            return stripe.PaymentIntent.create(**kwargs)

        intent = await self._call("authorize", _create)
        result = IntentResult.from_intent(intent)

        logger.info(
            "payment_authorized" if result.authorized else "payment_not_authorized",
            provider_ref=result.provider_ref,
            intent_status=result.intent_status,
        )
        return result

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(STRIPE_MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=1, max=STRIPE_BACKOFF_MAX_SECONDS),
        reraise=True,
    )
    async def capture(self, provider_ref: str) -> IntentResult:
        """
        Capture a held payment.

        Raises:
            PaymentGatewayError: If the capture fails
        """
        logger.info("capturing_payment", provider_ref=provider_ref)
        intent = await self._call(
            "capture", lambda: stripe.PaymentIntent.capture(provider_ref)
        )
        result = IntentResult.from_intent(intent)
        logger.info(
            "payment_captured", provider_ref=provider_ref, intent_status=result.intent_status
        )
        return result

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(STRIPE_MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=1, max=STRIPE_BACKOFF_MAX_SECONDS),
        reraise=True,
    )
    async def cancel(self, provider_ref: str) -> IntentResult:
        """
        Release a held payment.

        Raises:
            PaymentGatewayError: If the cancel fails
        """
        logger.info("cancelling_payment", provider_ref=provider_ref)
        intent = await self._call("cancel", lambda: stripe.PaymentIntent.cancel(provider_ref))
        result = IntentResult.from_intent(intent)
        logger.info(
            "payment_cancelled", provider_ref=provider_ref, intent_status=result.intent_status
        )
        return result

    async def retrieve(self, provider_ref: str) -> IntentResult:
        """Fetch the current state of a PaymentIntent."""
        intent = await self._call(
            "retrieve", lambda: stripe.PaymentIntent.retrieve(provider_ref)
        )
        return IntentResult.from_intent(intent)
