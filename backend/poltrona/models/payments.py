from __future__ import annotations

import enum

from ..extensions import db
from poltrona.time_utils import to_utc_z
from poltrona.validation import cents_to_amount


class PaymentStatus(str, enum.Enum):
    """Closed internal vocabulary; upstream strings are mapped at the processor boundary."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


# CANCELLED is never produced by the processor mapping (it folds into REJECTED);
# it is kept for rows cancelled by an operator directly in the database.
TERMINAL_STATUSES = frozenset({PaymentStatus.APPROVED, PaymentStatus.REJECTED, PaymentStatus.CANCELLED})


class NotificationState(str, enum.Enum):
    NOT_NOTIFIED = "not_notified"
    NOTIFIED = "notified"


class Payment(db.Model):
    """
    Processor payment mirrored locally.

    LIFECYCLE: pending -> approved | rejected | cancelled, exactly once.
    notified_at and processed are write-once guards: every write to them is a
    conditional UPDATE keyed on the prior value (see services.concurrency).
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index("ix_payments_status_created", "status", "created_at"),
        db.Index("ix_payments_chair_created", "chair_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.String(64), nullable=False, unique=True, index=True)  # processor-assigned
    chair_id = db.Column(db.String(20), db.ForeignKey("chairs.chair_id"), nullable=False)

    amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    source = db.Column(db.String(16), nullable=False)  # intent, webhook, poll

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Device notification
    notified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notification_attempts = db.Column(db.Integer, nullable=False, default=0)
    last_notification_error = db.Column(db.String(255), nullable=True)

    # Session side effect applied
    processed = db.Column(db.Boolean, nullable=False, default=False)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    chair = db.relationship("Chair", backref=db.backref("payments", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def status_enum(self) -> PaymentStatus:
        return PaymentStatus(self.status)

    @property
    def notification_state(self) -> NotificationState:
        if self.notified_at is None:
            return NotificationState.NOT_NOTIFIED
        return NotificationState.NOTIFIED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "chair_id": self.chair_id,
            "amount": cents_to_amount(self.amount_cents),
            "amount_cents": self.amount_cents,
            "status": self.status,
            "source": self.source,
            "created_at": to_utc_z(self.created_at),
            "approved_at": to_utc_z(self.approved_at),
            "resolved_at": to_utc_z(self.resolved_at),
            "notification_state": self.notification_state.value,
            "notified_at": to_utc_z(self.notified_at),
            "notification_attempts": self.notification_attempts,
            "last_notification_error": self.last_notification_error,
            "processed": self.processed,
        }


class ChairSession(db.Model):
    """
    One funded usage window of a chair.

    INVARIANTS (enforced by the schema, not only by code):
    - payment_id is unique: a payment funds at most one session
    - at most one active session per chair (partial unique index)
    """
    __tablename__ = "chair_sessions"
    __table_args__ = (
        db.Index(
            "uq_chair_sessions_one_active",
            "chair_id",
            unique=True,
            sqlite_where=db.text("is_active = 1"),
            postgresql_where=db.text("is_active"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    chair_id = db.Column(db.String(20), db.ForeignKey("chairs.chair_id"), nullable=False, index=True)
    payment_id = db.Column(db.String(64), db.ForeignKey("payments.payment_id"), nullable=False, unique=True)

    started_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expected_end_at = db.Column(db.DateTime(timezone=True), nullable=False)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    chair = db.relationship("Chair", backref=db.backref("sessions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "chair_id": self.chair_id,
            "payment_id": self.payment_id,
            "started_at": to_utc_z(self.started_at),
            "expected_end_at": to_utc_z(self.expected_end_at),
            "ended_at": to_utc_z(self.ended_at),
            "is_active": self.is_active,
        }
