# Overview: Service-layer operations for chair sessions; opening on approval and expiry sweeps.

"""
Session Tracker

Per chair: NO_SESSION -> ACTIVE -> NO_SESSION, nothing else.

- Opening is keyed on the funding payment's `processed` flag (False -> True), so a
  payment opens at most one session however many paths observe its approval.
- The chair's session sub-record only moves from inactive (or lapsed) to active
  through a conditional write; the partial unique index on chair_sessions backs it.
- Expiry clears the session and the single-use intent; public_payment_url stays.
- Sessions are never cancelled early.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import or_

from ..extensions import db
from ..models import Chair, ChairSession, Payment, PaymentStatus
from . import audit_service
from .concurrency import compare_and_set, run_with_retry
from poltrona.time_utils import seconds_until, to_utc_z, utcnow

logger = logging.getLogger(__name__)

_CLEARED_SESSION = {
    "session_active": False,
    "session_started_at": None,
    "session_ends_at": None,
    "session_payment_id": None,
    "intent_payment_id": None,
    "intent_qr_code": None,
    "intent_qr_code_base64": None,
    "intent_amount_cents": None,
    "intent_created_at": None,
    "intent_expires_at": None,
}


def remaining_seconds(chair: Chair, now: datetime | None = None) -> int:
    now = now or utcnow()
    if not chair.session_active:
        return 0
    return seconds_until(chair.session_ends_at, now)


def open_session(payment_id: str, now: datetime | None = None, *, actor: str = audit_service.ACTOR_WEBHOOK) -> bool:
    """
    Open the session funded by an approved payment.

    Returns True only for the invocation that actually opened it. Does not commit.
    """
    now = now or utcnow()

    claimed = compare_and_set(
        Payment,
        [
            Payment.payment_id == payment_id,
            Payment.status == PaymentStatus.APPROVED.value,
            Payment.processed.is_(False),
        ],
        {"processed": True},
    )
    if not claimed:
        logger.info("Payment %s already processed; no session opened", payment_id)
        return False

    payment = db.session.query(Payment).filter_by(payment_id=payment_id).one()
    chair = db.session.query(Chair).filter_by(chair_id=payment.chair_id).one()
    chair_id = chair.chair_id
    ends_at = now + timedelta(seconds=chair.duration_seconds)
    lapsed_payment_id = chair.session_payment_id if chair.session_active else None

    opened = compare_and_set(
        Chair,
        [
            Chair.chair_id == chair_id,
            or_(Chair.session_active.is_(False), Chair.session_ends_at <= now),
        ],
        {
            "session_active": True,
            "session_started_at": now,
            "session_ends_at": ends_at,
            "session_payment_id": payment_id,
        },
    )
    if not opened:
        audit_service.record(
            "SESSION_CONFLICT",
            actor=actor,
            entity_type="session",
            chair_id=chair_id,
            payment_id=payment_id,
            message=f"Chair {chair_id} already in use; payment {payment_id} did not open a session",
        )
        logger.warning("Session conflict chair=%s payment=%s", chair_id, payment_id)
        return False

    # A lapsed session the sweep has not reached yet gets closed here
    compare_and_set(
        ChairSession,
        [ChairSession.chair_id == chair_id, ChairSession.is_active.is_(True)],
        {"is_active": False, "ended_at": now},
    )
    if lapsed_payment_id:
        logger.info("Closed lapsed session chair=%s payment=%s", chair_id, lapsed_payment_id)

    session = ChairSession(
        chair_id=chair_id,
        payment_id=payment_id,
        started_at=now,
        expected_end_at=ends_at,
        is_active=True,
    )
    db.session.add(session)
    db.session.flush()

    audit_service.record(
        "SESSION_OPENED",
        actor=actor,
        entity_type="session",
        entity_id=session.id,
        chair_id=chair_id,
        payment_id=payment_id,
        message=f"Chair {chair_id} in use until {to_utc_z(ends_at)}",
        new_values={"started_at": to_utc_z(now), "ends_at": to_utc_z(ends_at)},
    )
    logger.info("Session opened chair=%s payment=%s until=%s", chair_id, payment_id, to_utc_z(ends_at))
    return True


def expire_chair(chair_id: str, now: datetime, *, actor: str = audit_service.ACTOR_EXPIRY) -> bool:
    """Close one lapsed session. Does not commit; False if it was not lapsed (or already closed)."""
    chair = db.session.query(Chair).filter_by(chair_id=chair_id).one_or_none()
    if chair is None:
        return False
    old_values = {
        "session_payment_id": chair.session_payment_id,
        "session_ends_at": to_utc_z(chair.session_ends_at),
        "intent_payment_id": chair.intent_payment_id,
    }

    expired = compare_and_set(
        Chair,
        [
            Chair.chair_id == chair_id,
            Chair.session_active.is_(True),
            or_(Chair.session_ends_at.is_(None), Chair.session_ends_at <= now),
        ],
        _CLEARED_SESSION,
    )
    if not expired:
        return False

    compare_and_set(
        ChairSession,
        [ChairSession.chair_id == chair_id, ChairSession.is_active.is_(True)],
        {"is_active": False, "ended_at": now},
    )
    audit_service.record(
        "SESSION_EXPIRED",
        actor=actor,
        entity_type="session",
        chair_id=chair_id,
        payment_id=old_values["session_payment_id"],
        message=f"Session on chair {chair_id} expired",
        old_values=old_values,
    )
    logger.info("Session expired chair=%s payment=%s", chair_id, old_values["session_payment_id"])
    return True


def expire_sessions(now: datetime | None = None) -> list[str]:
    """Expiry sweep; one transaction per chair so chairs never block each other."""
    now = now or utcnow()
    candidates = [
        row.chair_id
        for row in db.session.query(Chair.chair_id)
        .filter(Chair.session_active.is_(True))
        .filter(or_(Chair.session_ends_at.is_(None), Chair.session_ends_at <= now))
        .order_by(Chair.chair_id)
        .all()
    ]

    expired = []
    for chair_id in candidates:
        def _expire(chair_id=chair_id):
            done = expire_chair(chair_id, now)
            db.session.commit()
            return done

        if run_with_retry(_expire):
            expired.append(chair_id)

    if expired:
        logger.info("Expiry sweep closed %s session(s): %s", len(expired), ", ".join(expired))
    return expired


def list_sessions(*, chair_id: str | None = None, active_only: bool = False, limit: int = 100) -> list[ChairSession]:
    query = db.session.query(ChairSession)
    if chair_id:
        query = query.filter(ChairSession.chair_id == chair_id)
    if active_only:
        query = query.filter(ChairSession.is_active.is_(True))
    return query.order_by(ChairSession.id.desc()).limit(max(1, min(limit, 500))).all()
