from __future__ import annotations

from datetime import datetime, timedelta

from ..extensions import db
from poltrona.time_utils import to_utc_z
from poltrona.validation import cents_to_amount


class Chair(db.Model):
    """
    Physical massage chair with a network-addressable relay controller.

    WHY: The registry row is the unit the whole pipeline routes to: the
    processor metadata carries chair_id, the notifier dials ip_address.

    DESIGN: Chairs are persistent (deactivated, never deleted). The intent_*
    and session_* columns are two optional sub-records owned by the
    reconciliation pipeline; admin edits cannot touch them.
    """
    __tablename__ = "chairs"
    __table_args__ = (
        db.Index("ix_chairs_session_active_ends", "session_active", "session_ends_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Business key printed on the chair and sent in processor metadata (e.g. "p1")
    chair_id = db.Column(db.String(20), nullable=False, unique=True, index=True)
    ip_address = db.Column(db.String(32), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    duration_seconds = db.Column(db.Integer, nullable=False, default=900)
    location = db.Column(db.String(100), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    # Printable link to the public payment page; survives session expiry
    public_payment_url = db.Column(db.String(255), nullable=True)

    # Single-use payment intent (cleared when the session it funded expires)
    intent_payment_id = db.Column(db.String(64), nullable=True)
    intent_qr_code = db.Column(db.Text, nullable=True)
    intent_qr_code_base64 = db.Column(db.Text, nullable=True)
    intent_amount_cents = db.Column(db.Integer, nullable=True)
    intent_created_at = db.Column(db.DateTime(timezone=True), nullable=True)
    intent_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Current session
    session_active = db.Column(db.Boolean, nullable=False, default=False)
    session_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    session_ends_at = db.Column(db.DateTime(timezone=True), nullable=True)
    session_payment_id = db.Column(db.String(64), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Chair chair_id={self.chair_id!r} active={self.is_active}>"

    def session_is_live(self, now: datetime) -> bool:
        return bool(self.session_active and self.session_ends_at and self.session_ends_at > now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "chair_id": self.chair_id,
            "ip_address": self.ip_address,
            "price": cents_to_amount(self.price_cents),
            "price_cents": self.price_cents,
            "duration_seconds": self.duration_seconds,
            "location": self.location,
            "is_active": self.is_active,
            "public_payment_url": self.public_payment_url,
            "intent": {
                "payment_id": self.intent_payment_id,
                "qr_code": self.intent_qr_code,
                "amount": cents_to_amount(self.intent_amount_cents),
                "created_at": to_utc_z(self.intent_created_at),
                "expires_at": to_utc_z(self.intent_expires_at),
            } if self.intent_payment_id else None,
            "session": {
                "active": self.session_active,
                "started_at": to_utc_z(self.session_started_at),
                "ends_at": to_utc_z(self.session_ends_at),
                "payment_id": self.session_payment_id,
            },
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class DeviceStatus(db.Model):
    """
    Last liveness ping per chair controller.

    WHY: Devices push heartbeats; nothing marks them offline. Online-ness is
    derived at read time from is_online AND the age of last_ping.
    """
    __tablename__ = "device_status"

    chair_id = db.Column(db.String(20), db.ForeignKey("chairs.chair_id"), primary_key=True)
    is_online = db.Column(db.Boolean, nullable=False, default=False)
    last_ping = db.Column(db.DateTime(timezone=True), nullable=True)
    firmware_version = db.Column(db.String(32), nullable=True)
    signal_strength = db.Column(db.Integer, nullable=True)  # RSSI, dBm
    uptime_seconds = db.Column(db.Integer, nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    chair = db.relationship("Chair", backref=db.backref("device_status", uselist=False, lazy=True))

    def online_at(self, now: datetime, stale_after: timedelta) -> bool:
        if not self.is_online or self.last_ping is None:
            return False
        return now - self.last_ping <= stale_after

    def to_dict(self, *, now: datetime, stale_after: timedelta) -> dict:
        return {
            "chair_id": self.chair_id,
            "online": self.online_at(now, stale_after),
            "is_online": self.is_online,
            "last_ping": to_utc_z(self.last_ping),
            "firmware_version": self.firmware_version,
            "signal_strength": self.signal_strength,
            "uptime_seconds": self.uptime_seconds,
            "updated_at": to_utc_z(self.updated_at),
        }
