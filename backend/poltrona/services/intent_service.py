# Overview: Service-layer operations for payment intents; one payable PIX reference per chair.

"""
Payment Intent Creator

WHY: The dashboard (or the payer's phone) asks for a QR code for a chair. Asking
twice must not create two processor payments for the same purchase, and a chair
that is in use must not sell a second session.

RULES:
- Chair must exist (404) and be active (412).
- Live session -> ChairBusyError (423) carrying the seconds until it frees up.
  A session flagged active but already past its end is expired inline.
- Live intent (pending local payment, not past intent_expires_at) -> returned as-is.
- Otherwise a processor payment is created at the chair's current price and
  attached with a conditional write on the prior intent reference; a concurrent
  loser returns the winner's intent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app

from ..errors import ChairBusyError, NotFoundError, PreconditionFailedError
from ..extensions import db
from ..models import Chair, Payment, PaymentStatus
from . import audit_service, session_service
from .concurrency import compare_and_set
from .mercadopago import get_client
from poltrona.time_utils import to_utc_z, utcnow
from poltrona.validation import cents_to_amount

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntentResult:
    intent_ref: str
    chair_id: str
    amount_cents: int
    qr_code: str | None
    qr_code_base64: str | None
    expires_at: datetime | None
    reused: bool

    def to_dict(self) -> dict:
        return {
            "intentRef": self.intent_ref,
            "chairId": self.chair_id,
            "amount": cents_to_amount(self.amount_cents),
            "qrCode": self.qr_code,
            "qrCodeBase64": self.qr_code_base64,
            "expiresAt": to_utc_z(self.expires_at),
            "reused": self.reused,
        }


def _live_intent(chair: Chair, now: datetime) -> IntentResult | None:
    if not chair.intent_payment_id:
        return None
    if chair.intent_expires_at is not None and chair.intent_expires_at <= now:
        return None
    payment = db.session.query(Payment).filter_by(payment_id=chair.intent_payment_id).one_or_none()
    if payment is None or payment.status != PaymentStatus.PENDING.value:
        return None
    return IntentResult(
        intent_ref=chair.intent_payment_id,
        chair_id=chair.chair_id,
        amount_cents=chair.intent_amount_cents,
        qr_code=chair.intent_qr_code,
        qr_code_base64=chair.intent_qr_code_base64,
        expires_at=chair.intent_expires_at,
        reused=True,
    )


def _load_chair(chair_id: str) -> Chair:
    chair = db.session.query(Chair).filter_by(chair_id=chair_id).one_or_none()
    if chair is None:
        raise NotFoundError(f"Chair {chair_id} not found")
    return chair


def _raise_if_busy(chair: Chair, now: datetime) -> None:
    if chair.session_is_live(now):
        raise ChairBusyError(chair.chair_id, session_service.remaining_seconds(chair, now))


def create_intent(chair_id: str, now: datetime | None = None) -> IntentResult:
    now = now or utcnow()

    chair = _load_chair(chair_id)
    if not chair.is_active:
        raise PreconditionFailedError(f"Chair {chair_id} is inactive")

    _raise_if_busy(chair, now)
    if chair.session_active:
        # Lapsed but not swept yet
        session_service.expire_chair(chair_id, now, actor=audit_service.ACTOR_INTENT)
        db.session.commit()
        chair = _load_chair(chair_id)

    live = _live_intent(chair, now)
    if live is not None:
        audit_service.record(
            "INTENT_REUSED",
            actor=audit_service.ACTOR_INTENT,
            entity_type="chair",
            entity_id=chair_id,
            chair_id=chair_id,
            payment_id=live.intent_ref,
        )
        db.session.commit()
        logger.info("Reusing intent %s for chair %s", live.intent_ref, chair_id)
        return live

    client = get_client()
    prior_ref = chair.intent_payment_id
    amount_cents = chair.price_cents

    detail = client.create_payment(chair_id, amount_cents)
    expires_at = detail.expires_at or now + timedelta(minutes=current_app.config["INTENT_TTL_MINUTES"])

    prior_condition = Chair.intent_payment_id.is_(None) if prior_ref is None else Chair.intent_payment_id == prior_ref
    attached = compare_and_set(
        Chair,
        [Chair.chair_id == chair_id, prior_condition, Chair.session_active.is_(False)],
        {
            "intent_payment_id": detail.payment_id,
            "intent_qr_code": detail.qr_code,
            "intent_qr_code_base64": detail.qr_code_base64,
            "intent_amount_cents": amount_cents,
            "intent_created_at": now,
            "intent_expires_at": expires_at,
        },
    )

    if not attached:
        db.session.rollback()
        logger.info(
            "Concurrent intent creation for chair %s; discarding processor payment %s",
            chair_id, detail.payment_id,
        )
        chair = _load_chair(chair_id)
        _raise_if_busy(chair, now)
        live = _live_intent(chair, now)
        if live is None:
            raise PreconditionFailedError(f"Chair {chair_id} changed while creating the payment; try again")
        return live

    if db.session.query(Payment.id).filter_by(payment_id=detail.payment_id).first() is None:
        db.session.add(Payment(
            payment_id=detail.payment_id,
            chair_id=chair_id,
            amount_cents=amount_cents,
            status=PaymentStatus.PENDING.value,
            source="intent",
            created_at=now,
        ))

    audit_service.record(
        "INTENT_CREATED",
        actor=audit_service.ACTOR_INTENT,
        entity_type="chair",
        entity_id=chair_id,
        chair_id=chair_id,
        payment_id=detail.payment_id,
        message=f"PIX intent for chair {chair_id}: {cents_to_amount(amount_cents):.2f}",
        old_values={"intent_payment_id": prior_ref},
        new_values={"intent_payment_id": detail.payment_id, "expires_at": to_utc_z(expires_at)},
    )
    db.session.commit()

    logger.info("Intent %s created for chair %s (%s cents)", detail.payment_id, chair_id, amount_cents)
    return IntentResult(
        intent_ref=detail.payment_id,
        chair_id=chair_id,
        amount_cents=amount_cents,
        qr_code=detail.qr_code,
        qr_code_base64=detail.qr_code_base64,
        expires_at=expires_at,
        reused=False,
    )
