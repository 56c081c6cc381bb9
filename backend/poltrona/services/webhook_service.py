# Overview: Service-layer operations for processor webhooks; re-fetch, then reconcile.

"""
Webhook ingestion rules

- The envelope is a hint ({type, data: {id}}); the processor is re-queried for the
  authoritative payment before anything is written.
- Everything except misconfiguration (ConfigurationError) and an unreachable
  processor (ProcessorError) is acknowledged, so the processor stops re-delivering
  notifications we can never act on. Those soft failures leave an audit row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..errors import NotFoundError
from ..extensions import db
from ..models import Payment
from . import audit_service, payment_service
from .mercadopago import ProcessorNotFoundError, get_client

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookResult:
    action: str
    payment_id: str | None = None
    status: str | None = None

    def to_dict(self) -> dict:
        body = {"success": True, "action": self.action}
        if self.payment_id:
            body["paymentId"] = self.payment_id
        if self.status:
            body["status"] = self.status
        return body


def _ignore(reason: str, *, payment_id: str | None = None, chair_id: str | None = None, envelope=None) -> WebhookResult:
    logger.warning("Webhook ignored: %s (payment=%s chair=%s)", reason, payment_id, chair_id)
    audit_service.record(
        "WEBHOOK_IGNORED",
        actor=audit_service.ACTOR_WEBHOOK,
        entity_type="webhook",
        entity_id=payment_id,
        chair_id=chair_id,
        payment_id=payment_id,
        message=reason,
        new_values={"envelope": envelope} if isinstance(envelope, dict) else None,
    )
    db.session.commit()
    return WebhookResult(action="ignored", payment_id=payment_id)


def handle_notification(envelope) -> WebhookResult:
    client = get_client()

    if not isinstance(envelope, dict):
        return _ignore("Envelope is not a JSON object")

    kind = envelope.get("type") or envelope.get("topic")
    if kind != "payment":
        logger.info("Webhook of type %r acknowledged without action", kind)
        return _ignore(f"Notification type {kind!r} carries no payment", envelope=envelope)

    data = envelope.get("data") or {}
    raw_id = data.get("id") if isinstance(data, dict) else None
    if raw_id in (None, ""):
        return _ignore("Payment notification without data.id", envelope=envelope)
    payment_id = str(raw_id)

    try:
        detail = client.get_payment(payment_id)
    except ProcessorNotFoundError:
        return _ignore("Payment unknown to the processor", payment_id=payment_id)

    known = db.session.query(Payment.chair_id).filter_by(payment_id=payment_id).scalar()
    chair_id = known or detail.chair_id
    if not chair_id:
        return _ignore("Payment metadata carries no chair id", payment_id=payment_id)

    try:
        outcome = payment_service.reconcile(
            detail,
            chair_id=chair_id,
            source=payment_service.SOURCE_WEBHOOK,
        )
    except NotFoundError:
        return _ignore(f"Chair {chair_id} not registered", payment_id=payment_id, chair_id=chair_id)

    return WebhookResult(action=outcome.action, payment_id=payment_id, status=outcome.status.value)
