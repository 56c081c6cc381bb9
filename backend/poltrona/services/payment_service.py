# Overview: Service-layer operations for payments; shared reconciliation core and payment queries.

"""
Payment reconciliation core

WHY: The webhook and the polling sweep both learn about approvals, in any order,
sometimes at the same instant. Both funnel through reconcile(), so the rules
that keep the system consistent live in one place.

INVARIANTS:
- Status is monotonic: only `pending -> terminal`, as a conditional write on
  status == pending. The loser of a race sees an already-resolved payment.
- The paid amount must match what was asked for (within AMOUNT_TOLERANCE_CENTS);
  a mismatch resolves the payment as rejected.
- Session opening and device notification happen only in the invocation that
  won both the status transition and the `processed` claim.
- The device is called after the commit, never while holding a transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import NotFoundError, PreconditionFailedError
from ..extensions import db
from ..models import Chair, Payment, PaymentStatus
from . import audit_service, session_service
from .concurrency import compare_and_set, run_with_retry
from .mercadopago import ProcessorPayment
from .notifier_service import get_notifier
from poltrona.time_utils import to_utc_z, utcnow
from poltrona.validation import cents_to_amount

logger = logging.getLogger(__name__)

SOURCE_INTENT = "intent"
SOURCE_WEBHOOK = "webhook"
SOURCE_POLL = "poll"

_ACTOR_BY_SOURCE = {
    SOURCE_WEBHOOK: audit_service.ACTOR_WEBHOOK,
    SOURCE_POLL: audit_service.ACTOR_POLLER,
}


@dataclass
class ReconcileOutcome:
    payment_id: str
    chair_id: str
    status: PaymentStatus
    transitioned: bool = False
    already_resolved: bool = False
    session_opened: bool = False
    notified: bool | None = None
    amount_mismatch: bool = False

    @property
    def action(self) -> str:
        if self.already_resolved:
            return "already_resolved"
        if not self.transitioned:
            return "pending"
        return self.status.value


def _get_payment(payment_id: str) -> Payment | None:
    return db.session.query(Payment).filter_by(payment_id=payment_id).one_or_none()


def _ensure_local_payment(detail: ProcessorPayment, chair_id: str, source: str, now: datetime) -> tuple[Payment, bool]:
    """Insert-or-ignore the local row. Returns (payment, inserted)."""
    payment = _get_payment(detail.payment_id)
    if payment is not None:
        return payment, False

    db.session.add(Payment(
        payment_id=detail.payment_id,
        chair_id=chair_id,
        amount_cents=detail.amount_cents,
        status=PaymentStatus.PENDING.value,
        source=source,
        created_at=now,
    ))
    try:
        db.session.commit()
        inserted = True
    except IntegrityError:
        # Another path inserted it first
        db.session.rollback()
        inserted = False
    return _get_payment(detail.payment_id), inserted


def reconcile(
    detail: ProcessorPayment,
    *,
    chair_id: str | None = None,
    source: str,
    now: datetime | None = None,
) -> ReconcileOutcome:
    """
    Apply an authoritative processor view of a payment to local state.

    chair_id defaults to the processor metadata. Raises NotFoundError for an
    unknown chair; callers decide whether that is a soft failure.
    """
    now = now or utcnow()
    actor = _ACTOR_BY_SOURCE.get(source, audit_service.ACTOR_WEBHOOK)

    existing = _get_payment(detail.payment_id)
    chair_id = existing.chair_id if existing is not None else (chair_id or detail.chair_id)
    chair = db.session.query(Chair).filter_by(chair_id=chair_id).one_or_none() if chair_id else None
    if chair is None:
        raise NotFoundError(f"Chair {chair_id} not found")

    # Without a local row the price on the chair is what was asked for
    expected_cents = existing.amount_cents if existing is not None else chair.price_cents

    payment, _ = _ensure_local_payment(detail, chair_id, source, now)
    outcome = ReconcileOutcome(payment_id=detail.payment_id, chair_id=chair_id, status=payment.status_enum)

    if payment.status_enum.is_terminal:
        outcome.already_resolved = True
        logger.info(
            "Payment %s already %s; %s observation ignored (chair=%s)",
            detail.payment_id, payment.status, source, chair_id,
        )
        return outcome

    target = detail.mapped_status
    if target is PaymentStatus.PENDING:
        logger.debug("Payment %s still pending at processor (%s)", detail.payment_id, detail.status)
        return outcome

    tolerance = current_app.config["AMOUNT_TOLERANCE_CENTS"]
    mismatch = target is PaymentStatus.APPROVED and abs(detail.amount_cents - expected_cents) > tolerance

    def _apply() -> ReconcileOutcome:
        result = ReconcileOutcome(payment_id=detail.payment_id, chair_id=chair_id, status=target)
        status = PaymentStatus.REJECTED if mismatch else target

        values = {"status": status.value, "resolved_at": now}
        if status is PaymentStatus.APPROVED:
            values["approved_at"] = detail.approved_at or now

        won = compare_and_set(
            Payment,
            [Payment.payment_id == detail.payment_id, Payment.status == PaymentStatus.PENDING.value],
            values,
        )
        if not won:
            db.session.rollback()
            current = _get_payment(detail.payment_id)
            result.status = current.status_enum
            result.already_resolved = True
            logger.info("Payment %s resolved concurrently as %s (%s lost)", detail.payment_id, current.status, source)
            return result

        result.status = status
        result.transitioned = True

        if mismatch:
            result.amount_mismatch = True
            audit_service.record(
                "PAYMENT_AMOUNT_MISMATCH",
                actor=actor,
                entity_type="payment",
                entity_id=detail.payment_id,
                chair_id=chair_id,
                payment_id=detail.payment_id,
                message=(
                    f"Paid {cents_to_amount(detail.amount_cents):.2f}, "
                    f"expected {cents_to_amount(expected_cents):.2f}; payment rejected"
                ),
                old_values={"amount_cents": expected_cents},
                new_values={"amount_cents": detail.amount_cents},
            )
            logger.warning(
                "Amount mismatch payment=%s chair=%s paid=%s expected=%s",
                detail.payment_id, chair_id, detail.amount_cents, expected_cents,
            )

        audit_service.record(
            "PAYMENT_APPROVED" if status is PaymentStatus.APPROVED else "PAYMENT_REJECTED",
            actor=actor,
            entity_type="payment",
            entity_id=detail.payment_id,
            chair_id=chair_id,
            payment_id=detail.payment_id,
            message=f"Payment {detail.payment_id} {status.value} via {source} (processor status {detail.status})",
            old_values={"status": PaymentStatus.PENDING.value},
            new_values={"status": status.value, "resolved_at": to_utc_z(now)},
        )

        if status is PaymentStatus.APPROVED:
            active_chair = db.session.query(Chair).filter_by(chair_id=chair_id).one()
            if active_chair.is_active:
                result.session_opened = session_service.open_session(detail.payment_id, now, actor=actor)
            else:
                audit_service.record(
                    "PAYMENT_FOR_INACTIVE_CHAIR",
                    actor=actor,
                    entity_type="payment",
                    entity_id=detail.payment_id,
                    chair_id=chair_id,
                    payment_id=detail.payment_id,
                    message=f"Approved payment for inactive chair {chair_id}; no session opened",
                )
                logger.warning("Approved payment %s for inactive chair %s", detail.payment_id, chair_id)

        db.session.commit()
        return result

    outcome = run_with_retry(_apply)

    if outcome.session_opened:
        address = db.session.query(Chair.ip_address).filter_by(chair_id=chair_id).scalar()
        outcome.notified = get_notifier().notify(address, chair_id, detail.payment_id, actor=actor)

    logger.info(
        "Reconciled payment=%s chair=%s source=%s action=%s session_opened=%s notified=%s",
        detail.payment_id, chair_id, source, outcome.action, outcome.session_opened, outcome.notified,
    )
    return outcome


# =============================================================================
# QUERIES
# =============================================================================

def get_public_status(payment_id: str) -> dict | None:
    """What the payer's status page may see. None when the id is unknown."""
    payment = _get_payment(str(payment_id))
    if payment is None:
        return None
    return {
        "payment_id": payment.payment_id,
        "chair_id": payment.chair_id,
        "status": payment.status,
        "amount": cents_to_amount(payment.amount_cents),
        "approved_at": to_utc_z(payment.approved_at),
    }


def list_payments(*, chair_id: str | None = None, status: str | None = None, limit: int = 100) -> list[Payment]:
    query = db.session.query(Payment)
    if chair_id:
        query = query.filter(Payment.chair_id == chair_id)
    if status:
        query = query.filter(Payment.status == status)
    limit = max(1, min(limit, 500))
    return query.order_by(Payment.created_at.desc(), Payment.id.desc()).limit(limit).all()


def renotify(payment_id: str, *, actor: str) -> dict:
    """
    Manual retry of a device notification for an approved payment.

    No-op when the device was already told.
    """
    payment = _get_payment(str(payment_id))
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} not found")
    if payment.status_enum is not PaymentStatus.APPROVED:
        raise PreconditionFailedError(f"Payment {payment_id} is {payment.status}, not approved")

    if payment.notified_at is not None:
        return {"delivered": True, "already_notified": True, "attempts": payment.notification_attempts}

    chair = db.session.query(Chair).filter_by(chair_id=payment.chair_id).one()
    delivered = get_notifier().notify(chair.ip_address, chair.chair_id, payment.payment_id, actor=actor)
    payment = _get_payment(str(payment_id))
    return {
        "delivered": delivered,
        "already_notified": False,
        "attempts": payment.notification_attempts,
        "last_error": payment.last_notification_error,
    }
