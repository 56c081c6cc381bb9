# Overview: Mercado Pago client; the only code that speaks the processor's HTTP API.

"""
Payment processor boundary.

WHY: Everything the processor says is untrusted, loosely typed JSON. This module
turns it into a ProcessorPayment value and maps the upstream status vocabulary
onto the closed PaymentStatus enum in exactly one place (map_processor_status).

FAILURES: transport errors, timeouts and non-2xx answers raise ProcessorError
(an UpstreamUnavailableError). Nothing here retries; callers decide.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime

import httpx
from flask import current_app

from ..errors import ConfigurationError, UpstreamUnavailableError, ValidationError
from ..models import PaymentStatus
from ..validation import amount_to_cents, cents_to_amount
from poltrona.time_utils import parse_iso_datetime

logger = logging.getLogger(__name__)


class ProcessorError(UpstreamUnavailableError):
    """Processor unreachable, timed out, or answered with an error."""

    def __init__(self, message: str = "Payment processor unavailable", *, upstream_status: int | None = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class ProcessorNotFoundError(ProcessorError):
    """The processor does not know the payment id."""


# =============================================================================
# STATUS MAPPING
# =============================================================================

_STATUS_MAP = {
    "approved": PaymentStatus.APPROVED,
    "authorized": PaymentStatus.APPROVED,
    "rejected": PaymentStatus.REJECTED,
    "cancelled": PaymentStatus.REJECTED,
    "refunded": PaymentStatus.REJECTED,
    "charged_back": PaymentStatus.REJECTED,
    "pending": PaymentStatus.PENDING,
    "in_process": PaymentStatus.PENDING,
    "in_mediation": PaymentStatus.PENDING,
}


def map_processor_status(raw: str | None) -> PaymentStatus:
    """
    Map an upstream status string to the internal vocabulary.

    Unknown values map to PENDING (and are logged) so a later webhook or sweep
    gets another chance to resolve them.
    """
    key = (raw or "").strip().lower()
    status = _STATUS_MAP.get(key)
    if status is None:
        logger.warning("Unknown processor status %r; treating as pending", raw)
        return PaymentStatus.PENDING
    return status


# =============================================================================
# VALUES
# =============================================================================

@dataclass(frozen=True)
class ProcessorPayment:
    payment_id: str
    status: str
    amount_cents: int
    chair_id: str | None = None
    qr_code: str | None = None
    qr_code_base64: str | None = None
    expires_at: datetime | None = None
    approved_at: datetime | None = None

    @property
    def mapped_status(self) -> PaymentStatus:
        return map_processor_status(self.status)

    @classmethod
    def from_api(cls, data: dict) -> "ProcessorPayment":
        if not isinstance(data, dict) or data.get("id") is None:
            raise ProcessorError("Payment processor returned an unexpected payload")

        metadata = data.get("metadata") or {}
        chair_id = metadata.get("chair_id") or metadata.get("poltrona_id")

        transaction_data = (data.get("point_of_interaction") or {}).get("transaction_data") or {}

        try:
            amount_cents = amount_to_cents(data.get("transaction_amount"), field="transaction_amount")
            expires_at = parse_iso_datetime(data.get("date_of_expiration"))
            approved_at = parse_iso_datetime(data.get("date_approved"))
        except (ValidationError, ValueError):
            raise ProcessorError("Payment processor returned an unexpected payload")

        return cls(
            payment_id=str(data["id"]),
            status=str(data.get("status") or ""),
            amount_cents=amount_cents,
            chair_id=str(chair_id) if chair_id is not None else None,
            qr_code=transaction_data.get("qr_code"),
            qr_code_base64=transaction_data.get("qr_code_base64"),
            expires_at=expires_at,
            approved_at=approved_at,
        )


# =============================================================================
# CLIENT
# =============================================================================

class MercadoPagoClient:
    """Thin synchronous client over the processor's REST API."""

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = "https://api.mercadopago.com",
        timeout: float = 10.0,
        webhook_url: str | None = None,
        payer_email: str = "pagador@example.com",
        transport: httpx.BaseTransport | None = None,
    ):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.webhook_url = webhook_url
        self.payer_email = payer_email
        self.transport = transport

    def _request(self, method: str, path: str, **kwargs) -> dict:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        headers.update(kwargs.pop("headers", {}))
        try:
            with httpx.Client(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                response = client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException:
            logger.warning("Processor %s %s timed out after %.1fs", method, path, self.timeout)
            raise ProcessorError("Payment processor timed out")
        except httpx.HTTPError as exc:
            logger.warning("Processor %s %s failed: %s", method, path, exc)
            raise ProcessorError()

        if response.status_code == 404:
            raise ProcessorNotFoundError("Payment not found at processor", upstream_status=404)
        if response.status_code >= 400:
            # Upstream body goes to the log only, never to callers
            logger.error(
                "Processor %s %s returned HTTP %s: %s",
                method, path, response.status_code, response.text[:500],
            )
            raise ProcessorError(
                f"Payment processor returned HTTP {response.status_code}",
                upstream_status=response.status_code,
            )

        try:
            return response.json()
        except ValueError:
            raise ProcessorError("Payment processor returned an unexpected payload")

    def create_payment(self, chair_id: str, amount_cents: int, description: str | None = None) -> ProcessorPayment:
        """Create a PIX payment whose metadata routes the approval back to chair_id."""
        body = {
            "transaction_amount": cents_to_amount(amount_cents),
            "description": description or f"Pagamento Poltrona {chair_id}",
            "payment_method_id": "pix",
            "payer": {"email": self.payer_email},
            "metadata": {"chair_id": chair_id},
        }
        if self.webhook_url:
            body["notification_url"] = self.webhook_url

        data = self._request(
            "POST",
            "/v1/payments",
            json=body,
            headers={"X-Idempotency-Key": f"chair_{chair_id}_{uuid.uuid4().hex}"},
        )
        payment = ProcessorPayment.from_api(data)
        logger.info("Processor payment %s created for chair %s (%s cents)", payment.payment_id, chair_id, amount_cents)
        return payment

    def get_payment(self, payment_id: str) -> ProcessorPayment:
        return ProcessorPayment.from_api(self._request("GET", f"/v1/payments/{payment_id}"))

    def test_connection(self) -> dict:
        """Round-trip a cheap authenticated call to validate the token."""
        start_time = time.time()
        data = self._request("GET", "/v1/payment_methods")
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "reachable": True,
            "latency_ms": round(elapsed_ms, 2),
            "payment_methods": len(data) if isinstance(data, list) else None,
        }


def get_client() -> MercadoPagoClient:
    """Build a client from app config; a missing token is fatal for the invocation."""
    config = current_app.config
    token = config.get("MERCADOPAGO_ACCESS_TOKEN")
    if not token:
        logger.error("MERCADOPAGO_ACCESS_TOKEN not configured")
        raise ConfigurationError("MERCADOPAGO_ACCESS_TOKEN")
    return MercadoPagoClient(
        token,
        base_url=config["MERCADOPAGO_API_BASE"],
        timeout=config["MERCADOPAGO_TIMEOUT_SECONDS"],
        webhook_url=config.get("MERCADOPAGO_WEBHOOK_URL"),
        payer_email=config["PAYER_EMAIL_PLACEHOLDER"],
        transport=config.get("MERCADOPAGO_HTTP_TRANSPORT"),
    )
