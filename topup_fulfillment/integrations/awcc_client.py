"""
AWCC eFill SOAP delivery provider.

Sends one ``eFillRecharge`` envelope per attempt. The external attempt id is
carried as ``externalTransactionId`` so the upstream can recognize a retry of
the same line.
"""
import re
import time
import xml.etree.ElementTree as ET
from typing import Optional

import httpx
import structlog

from topup_fulfillment.config import Settings
from topup_fulfillment.database.models import Order, OrderLine, ProductVariant
from topup_fulfillment.integrations.delivery import (
    DeliveryErrorCode,
    DeliveryOutcome,
    DeliveryStatus,
)
from topup_fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
EFILL_NS = "http://admin.soap.efill.topup.redknee.com/"

_FAULT_MARKERS = ("<soap:Fault", "<SOAP-ENV:Fault", "<soapenv:Fault", "<S:Fault")
_FAULTSTRING = re.compile(r"<faultstring>([^<]+)</faultstring>", re.IGNORECASE)
_AUTH_FAILED = re.compile(r"Authorization failed", re.IGNORECASE)

# eFill takes amounts in hundredths of the catalog unit
RECHARGE_AMOUNT_SCALE = 100


def build_recharge_envelope(
    recipient_msisdn: str,
    originator_msisdn: str,
    product_name: str,
    recharge_amount: int,
    salespoint_name: str,
    account_id: str,
    external_transaction_id: str,
) -> str:
    """Render the ``eFillRecharge`` SOAP envelope."""
    ET.register_namespace("soapenv", SOAP_ENV_NS)
    ET.register_namespace("adm", EFILL_NS)

    envelope = ET.Element(f"{{{SOAP_ENV_NS}}}Envelope")
    ET.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Header")
    body = ET.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    recharge = ET.SubElement(body, f"{{{EFILL_NS}}}eFillRecharge")

    fields = (
        ("recipientMsisdn", recipient_msisdn),
        ("recipientSubscriberCode", ""),
        ("recipientSmsConfirmation", "false"),
        ("originatorMsisdn", originator_msisdn),
        ("originatorSubscriberCode", ""),
        ("originatorSmsConfirmation", "false"),
        ("productName", product_name),
        ("rechargeAmount", str(recharge_amount)),
        ("parentSalespointName", salespoint_name),
        ("accountId", account_id),
        ("externalTransactionId", external_transaction_id),
    )
    for tag, text in fields:
        ET.SubElement(recharge, tag).text = text

    return ET.tostring(envelope, encoding="unicode")


def parse_fault(body: str) -> Optional[str]:
    """Return the fault string if ``body`` is a SOAP fault, else None."""
    if not any(marker in body for marker in _FAULT_MARKERS):
        return None
    match = _FAULTSTRING.search(body)
    return match.group(1).strip() if match else "SOAP fault"


class AwccDeliveryProvider:
    """Delivery provider speaking AWCC's eFill SOAP API."""

    name = "awcc"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        """
        Initialize the provider.

        Args:
            settings: Application settings (endpoint, credentials, timeout)
            http_client: Shared async HTTP client
        """
        self.settings = settings
        self.http = http_client

    def _auth(self) -> Optional[httpx.BasicAuth]:
        if self.settings.awcc_soap_username and self.settings.awcc_soap_password:
            return httpx.BasicAuth(
                self.settings.awcc_soap_username, self.settings.awcc_soap_password
            )
        return None

    async def attempt_delivery(
        self,
        order: Order,
        line: OrderLine,
        variant: ProductVariant,
        external_attempt_id: str,
    ) -> DeliveryOutcome:
        """
        Send one recharge request.

        Never raises for upstream or transport problems; those come back as
        a failed outcome with an error code.
        """
        endpoint = self.settings.awcc_soap_endpoint
        if not endpoint:
            return DeliveryOutcome.failure(
                DeliveryErrorCode.CONFIGURATION, "AWCC SOAP endpoint is not configured"
            )

        amount = line.unit_price_minor if line.unit_price_minor is not None else variant.amount_minor
        if not amount or amount <= 0:
            return DeliveryOutcome.failure(
                DeliveryErrorCode.VALIDATION, "recharge amount must be positive"
            )

        payload = build_recharge_envelope(
            recipient_msisdn=line.msisdn,
            originator_msisdn=self.settings.awcc_originator_msisdn,
            product_name=self.settings.awcc_product_name,
            recharge_amount=amount * RECHARGE_AMOUNT_SCALE,
            salespoint_name=self.settings.awcc_salespoint_name,
            account_id=self.settings.awcc_account_id,
            external_transaction_id=external_attempt_id,
        )

        logger.info(
            "awcc_recharge_started",
            order_id=str(order.id),
            order_line_id=str(line.id),
            external_attempt_id=external_attempt_id,
        )
        start = time.monotonic()
        try:
            response = await self.http.post(
                endpoint,
                content=payload,
                headers={"Content-Type": "text/xml; charset=UTF-8"},
                auth=self._auth(),
                timeout=self.settings.delivery_timeout_seconds,
            )
        except httpx.HTTPError as e:
            metrics.record_delivery_attempt(self.name, "network_error", time.monotonic() - start)
            logger.warning(
                "awcc_recharge_network_error",
                external_attempt_id=external_attempt_id,
                error=str(e),
            )
            return DeliveryOutcome.failure(
                DeliveryErrorCode.NETWORK, str(e) or e.__class__.__name__, raw_request=payload
            )

        duration = time.monotonic() - start
        body = response.text or ""
        fault = parse_fault(body)

        if response.status_code != 200 or fault is not None:
            message = fault or f"HTTP {response.status_code}"
            auth_failed = bool(_AUTH_FAILED.search(message)) or response.status_code in (401, 403)
            error_code = DeliveryErrorCode.AUTH if auth_failed else DeliveryErrorCode.SOAP_FAULT
            metrics.record_delivery_attempt(self.name, "failed", duration)
            logger.warning(
                "awcc_recharge_failed",
                external_attempt_id=external_attempt_id,
                http_status=response.status_code,
                error_code=error_code,
                error_message=message,
            )
            return DeliveryOutcome.failure(
                error_code, message, raw_request=payload, raw_response=body
            )

        metrics.record_delivery_attempt(self.name, "accepted", duration)
        logger.info(
            "awcc_recharge_accepted",
            external_attempt_id=external_attempt_id,
            duration_seconds=round(duration, 3),
        )
        return DeliveryOutcome(
            status=DeliveryStatus.ACCEPTED,
            raw_request=payload,
            raw_response=body,
            provider_transaction_id=external_attempt_id,
        )
