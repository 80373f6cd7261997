"""
Tests for the AWCC eFill SOAP delivery provider.

HTTP is served by an httpx.MockTransport; no network access.
"""
import uuid
from typing import Any, Callable, List

import httpx
import pytest

from topup_fulfillment.config import Settings
from topup_fulfillment.database.models import Order, OrderLine, ProductVariant
from topup_fulfillment.integrations.awcc_client import (
    AwccDeliveryProvider,
    build_recharge_envelope,
    parse_fault,
)
from topup_fulfillment.integrations.delivery import DeliveryErrorCode, DeliveryStatus

OK_BODY = (
    '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body>'
    "<ns2:eFillRechargeResponse/></soap:Body></soap:Envelope>"
)


def fault_body(message: str) -> str:
    return (
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body>'
        f"<soap:Fault><faultcode>soap:Server</faultcode><faultstring>{message}</faultstring>"
        "</soap:Fault></soap:Body></soap:Envelope>"
    )


def make_records(unit_price_minor: int = 100) -> tuple[Order, OrderLine, ProductVariant]:
    variant = ProductVariant(
        id=uuid.uuid4(), name="AWCC 100", operator_id=uuid.uuid4(), amount_minor=100, currency="AFN"
    )
    order = Order(id=uuid.uuid4(), status="created", total_minor=unit_price_minor, currency="AFN")
    line = OrderLine(
        id=uuid.uuid4(),
        order_id=order.id,
        product_variant_id=variant.id,
        msisdn="93700123456",
        quantity=1,
        unit_price_minor=unit_price_minor,
        currency="AFN",
    )
    return order, line, variant


def make_provider(
    settings: Settings, handler: Callable[[httpx.Request], httpx.Response]
) -> AwccDeliveryProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AwccDeliveryProvider(settings, client)


class TestEnvelope:
    @pytest.mark.unit
    def test_envelope_carries_external_id_and_amount(self) -> None:
        envelope = build_recharge_envelope(
            recipient_msisdn="93700123456",
            originator_msisdn="93701243940",
            product_name="Default Product",
            recharge_amount=10000,
            salespoint_name="tohfa",
            account_id="acc-1",
            external_transaction_id="ordA-itemB",
        )

        assert "eFillRecharge" in envelope
        assert "<externalTransactionId>ordA-itemB</externalTransactionId>" in envelope
        assert "<rechargeAmount>10000</rechargeAmount>" in envelope
        assert "<recipientMsisdn>93700123456</recipientMsisdn>" in envelope

    @pytest.mark.unit
    def test_parse_fault(self) -> None:
        assert parse_fault(OK_BODY) is None
        assert parse_fault(fault_body("Authorization failed")) == "Authorization failed"
        assert parse_fault("<soap:Fault></soap:Fault>") == "SOAP fault"


class TestAwccDeliveryProvider:
    """Test suite for AwccDeliveryProvider."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_accepted(self, test_settings: Settings) -> None:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, text=OK_BODY)

        order, line, variant = make_records()
        outcome = await make_provider(test_settings, handler).attempt_delivery(
            order, line, variant, "ord1-item1"
        )

        assert outcome.status == DeliveryStatus.ACCEPTED
        assert outcome.provider_transaction_id == "ord1-item1"
        assert outcome.raw_response == OK_BODY
        assert str(requests[0].url) == "https://awcc.example.test/efill"
        body = requests[0].content.decode()
        assert "<rechargeAmount>10000</rechargeAmount>" in body
        assert "<externalTransactionId>ord1-item1</externalTransactionId>" in body
        assert requests[0].headers["Content-Type"].startswith("text/xml")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_basic_auth_when_configured(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(
            update={"awcc_soap_username": "user", "awcc_soap_password": "secret"}
        )
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text=OK_BODY)

        await make_provider(settings, handler).attempt_delivery(*make_records(), "ord1-item1")

        assert seen[0].headers["Authorization"].startswith("Basic ")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_authorization_fault_is_auth(self, test_settings: Settings) -> None:
        provider = make_provider(
            test_settings, lambda request: httpx.Response(500, text=fault_body("Authorization failed"))
        )

        outcome = await provider.attempt_delivery(*make_records(), "ord1-item1")

        assert outcome.status == DeliveryStatus.FAILED
        assert outcome.error_code == DeliveryErrorCode.AUTH
        assert outcome.is_terminal_failure is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unauthorized_status_is_auth(self, test_settings: Settings) -> None:
        provider = make_provider(test_settings, lambda request: httpx.Response(401, text=""))

        outcome = await provider.attempt_delivery(*make_records(), "ord1-item1")

        assert outcome.error_code == DeliveryErrorCode.AUTH

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_other_fault_is_retryable(self, test_settings: Settings) -> None:
        provider = make_provider(
            test_settings, lambda request: httpx.Response(200, text=fault_body("Subscriber busy"))
        )

        outcome = await provider.attempt_delivery(*make_records(), "ord1-item1")

        assert outcome.error_code == DeliveryErrorCode.SOAP_FAULT
        assert outcome.error_message == "Subscriber busy"
        assert outcome.is_terminal_failure is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_http_error_status_without_fault(self, test_settings: Settings) -> None:
        provider = make_provider(test_settings, lambda request: httpx.Response(502, text="bad gateway"))

        outcome = await provider.attempt_delivery(*make_records(), "ord1-item1")

        assert outcome.error_code == DeliveryErrorCode.SOAP_FAULT
        assert outcome.error_message == "HTTP 502"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_error_is_network(self, test_settings: Settings) -> None:
        def handler(request: httpx.Request) -> Any:
            raise httpx.ConnectError("connection refused", request=request)

        outcome = await make_provider(test_settings, handler).attempt_delivery(
            *make_records(), "ord1-item1"
        )

        assert outcome.error_code == DeliveryErrorCode.NETWORK
        assert "connection refused" in outcome.error_message
        assert outcome.raw_request is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_endpoint_is_configuration(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(update={"awcc_soap_endpoint": ""})
        calls: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, text=OK_BODY)

        outcome = await make_provider(settings, handler).attempt_delivery(
            *make_records(), "ord1-item1"
        )

        assert outcome.error_code == DeliveryErrorCode.CONFIGURATION
        assert outcome.is_terminal_failure is True
        assert calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_positive_amount_is_validation(self, test_settings: Settings) -> None:
        provider = make_provider(test_settings, lambda request: httpx.Response(200, text=OK_BODY))

        outcome = await provider.attempt_delivery(*make_records(unit_price_minor=0), "ord1-item1")

        assert outcome.error_code == DeliveryErrorCode.VALIDATION
