from __future__ import annotations

from ..extensions import db
from poltrona.time_utils import to_utc_z


class AuditLog(db.Model):
    """
    Administrative actions and pipeline events, as shown on the dashboard.

    IMMUTABLE: Never update or delete. Append-only for audit integrity.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_chair_created", "chair_id", "created_at"),
        db.Index("ix_audit_logs_action_created", "action", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    actor = db.Column(db.String(64), nullable=False)  # system:webhook, admin:maria, ...
    action = db.Column(db.String(64), nullable=False, index=True)  # PAYMENT_APPROVED, SESSION_EXPIRED, ...
    entity_type = db.Column(db.String(32), nullable=False)  # chair, payment, session, device
    entity_id = db.Column(db.String(64), nullable=True)

    # Denormalized for the per-chair log view
    chair_id = db.Column(db.String(20), nullable=True)
    payment_id = db.Column(db.String(64), nullable=True, index=True)

    message = db.Column(db.Text, nullable=True)
    old_values = db.Column(db.JSON, nullable=True)
    new_values = db.Column(db.JSON, nullable=True)

    # Client context (admin actions only)
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor": self.actor,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "chair_id": self.chair_id,
            "payment_id": self.payment_id,
            "message": self.message,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "ip_address": self.ip_address,
            "created_at": to_utc_z(self.created_at),
        }
