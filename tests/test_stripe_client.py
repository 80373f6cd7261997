"""
Tests for the Stripe payment gateway.

The Stripe SDK is patched; no network access.
"""
from typing import Any

import pytest
import stripe

from topup_fulfillment.config import Settings
from topup_fulfillment.integrations.stripe_client import (
    CircuitBreaker,
    IntentResult,
    PaymentErrorType,
    PaymentGatewayError,
    StripeClient,
    map_intent_status,
)


def intent(status: str, intent_id: str = "pi_123", amount: int = 142) -> dict:
    return {"id": intent_id, "status": status, "amount": amount, "currency": "usd"}


@pytest.fixture
def client(test_settings: Settings) -> StripeClient:
    return StripeClient(test_settings)


class TestStatusMapping:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "intent_status,expected",
        [
            ("requires_capture", "pending"),
            ("succeeded", "succeeded"),
            ("canceled", "cancelled"),
            ("requires_payment_method", "created"),
            ("processing", "created"),
            (None, "created"),
        ],
    )
    def test_map_intent_status(self, intent_status: Any, expected: str) -> None:
        assert map_intent_status(intent_status) == expected

    @pytest.mark.unit
    def test_intent_result(self) -> None:
        result = IntentResult.from_intent(intent("requires_capture"))

        assert result.provider_ref == "pi_123"
        assert result.amount_minor == 142
        assert result.currency == "USD"
        assert result.authorized is True
        assert result.status == "pending"
        assert IntentResult.from_intent(intent("requires_action")).authorized is False


class TestErrorClassification:
    @pytest.mark.unit
    def test_classify(self) -> None:
        assert (
            StripeClient._classify_error(stripe.RateLimitError("slow down"))
            == PaymentErrorType.RATE_LIMIT
        )
        assert (
            StripeClient._classify_error(stripe.APIConnectionError("reset"))
            == PaymentErrorType.TRANSIENT
        )
        assert (
            StripeClient._classify_error(
                stripe.CardError("Your card was declined.", None, "card_declined")
            )
            == PaymentErrorType.PERMANENT
        )
        assert (
            StripeClient._classify_error(stripe.InvalidRequestError("bad param", "amount"))
            == PaymentErrorType.PERMANENT
        )


class TestStripeClient:
    """Test suite for StripeClient."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_authorize_places_manual_capture_hold(
        self, client: StripeClient, mocker: Any
    ) -> None:
        create = mocker.patch("stripe.PaymentIntent.create", return_value=intent("requires_capture"))

        result = await client.authorize(
            amount_minor=142,
            currency="USD",
            idempotency_key="recurring:s1:o1",
            customer_id="cus_1",
            payment_method_id="pm_1",
            metadata={"order_id": "o1"},
        )

        assert result.authorized is True
        create.assert_called_once_with(
            amount=142,
            currency="usd",
            capture_method="manual",
            metadata={"order_id": "o1"},
            idempotency_key="recurring:s1:o1",
            customer="cus_1",
            payment_method="pm_1",
            off_session=True,
            confirm=True,
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_authorize_without_saved_method(self, client: StripeClient, mocker: Any) -> None:
        create = mocker.patch(
            "stripe.PaymentIntent.create", return_value=intent("requires_payment_method")
        )

        result = await client.authorize(142, "USD", idempotency_key="k1")

        assert result.authorized is False
        kwargs = create.call_args.kwargs
        assert "off_session" not in kwargs
        assert "payment_method" not in kwargs

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_error_is_not_retried(self, client: StripeClient, mocker: Any) -> None:
        create = mocker.patch(
            "stripe.PaymentIntent.create",
            side_effect=stripe.CardError("Your card was declined.", None, "card_declined"),
        )

        with pytest.raises(PaymentGatewayError) as exc_info:
            await client.authorize(142, "USD", idempotency_key="k1")

        assert exc_info.value.error_type == PaymentErrorType.PERMANENT
        assert exc_info.value.code == "card_declined"
        assert create.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, client: StripeClient, mocker: Any) -> None:
        mocker.patch("asyncio.sleep", new=mocker.AsyncMock())
        capture = mocker.patch(
            "stripe.PaymentIntent.capture",
            side_effect=[stripe.APIConnectionError("reset"), intent("succeeded")],
        )

        result = await client.capture("pi_123")

        assert result.status == "succeeded"
        assert capture.call_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel(self, client: StripeClient, mocker: Any) -> None:
        cancel = mocker.patch("stripe.PaymentIntent.cancel", return_value=intent("canceled"))

        result = await client.cancel("pi_123")

        assert result.status == "cancelled"
        cancel.assert_called_once_with("pi_123")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits(self, test_settings: Settings, mocker: Any) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=60)
        breaker.on_failure()
        client = StripeClient(test_settings, circuit_breaker=breaker)
        cancel = mocker.patch("stripe.PaymentIntent.cancel")
        mocker.patch("asyncio.sleep", new=mocker.AsyncMock())

        with pytest.raises(PaymentGatewayError, match="Circuit breaker is open"):
            await client.cancel("pi_123")

        cancel.assert_not_called()


class TestCircuitBreaker:
    @pytest.mark.unit
    def test_opens_and_recovers(self, mocker: Any) -> None:
        breaker = CircuitBreaker(failure_threshold=2, timeout=10, success_threshold=1)
        clock = mocker.patch("topup_fulfillment.integrations.stripe_client.time.time")

        clock.return_value = 1000.0
        breaker.on_failure()
        breaker.before_call()
        breaker.on_failure()
        assert breaker.state == "open"

        with pytest.raises(PaymentGatewayError):
            breaker.before_call()

        clock.return_value = 1011.0
        breaker.before_call()
        assert breaker.state == "half_open"

        breaker.on_success()
        assert breaker.state == "closed"
