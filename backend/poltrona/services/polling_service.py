# Overview: Service-layer operations for the polling sweep; re-checks recent pending payments.

"""
Polling Reconciler

WHY: Webhooks get lost or arrive late. Every sweep asks the processor directly
about each local payment that is still pending and was created within
POLL_WINDOW_MINUTES; older pending payments are abandoned and age out.

One payment's failure never aborts the sweep. Running two sweeps at once, or a
sweep alongside a webhook, is safe: reconcile() decides races in the database.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..errors import ReconciliationError
from ..extensions import db
from ..models import Payment, PaymentStatus
from . import payment_service
from .mercadopago import ProcessorError, get_client
from poltrona.time_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    checked: int = 0
    approved: int = 0
    rejected: int = 0
    already_resolved: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def pending_in_window(now: datetime) -> list[tuple[str, str]]:
    cutoff = now - timedelta(minutes=current_app.config["POLL_WINDOW_MINUTES"])
    rows = (
        db.session.query(Payment.payment_id, Payment.chair_id)
        .filter(Payment.status == PaymentStatus.PENDING.value)
        .filter(Payment.created_at >= cutoff)
        .order_by(Payment.created_at.asc())
        .all()
    )
    return [(row.payment_id, row.chair_id) for row in rows]


def run_sweep(now: datetime | None = None) -> SweepSummary:
    """`now` only anchors the polling window; resolutions are stamped as they happen."""
    now = now or utcnow()
    client = get_client()
    summary = SweepSummary()

    candidates = pending_in_window(now)
    logger.info("Polling sweep: %s pending payment(s) in window", len(candidates))

    for payment_id, chair_id in candidates:
        try:
            detail = client.get_payment(payment_id)
        except ProcessorError as exc:
            summary.failed += 1
            logger.warning("Poll fetch failed payment=%s chair=%s: %s", payment_id, chair_id, exc.message)
            continue

        try:
            # Each payment is stamped with its own now; notifying earlier chairs takes time
            outcome = payment_service.reconcile(
                detail,
                chair_id=chair_id,
                source=payment_service.SOURCE_POLL,
                now=utcnow(),
            )
        except (ReconciliationError, SQLAlchemyError):
            db.session.rollback()
            summary.failed += 1
            logger.exception("Poll reconcile failed payment=%s chair=%s", payment_id, chair_id)
            continue

        summary.checked += 1
        if outcome.already_resolved:
            summary.already_resolved += 1
        elif outcome.transitioned and outcome.status is PaymentStatus.APPROVED:
            summary.approved += 1
        elif outcome.transitioned:
            summary.rejected += 1

    logger.info("Polling sweep done: %s", summary.to_dict())
    return summary
