# Overview: Service-layer operations for device presence; heartbeat upserts and derived online state.

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Chair, DeviceStatus
from poltrona.time_utils import utcnow

logger = logging.getLogger(__name__)


def stale_after() -> timedelta:
    return timedelta(seconds=current_app.config["PRESENCE_STALE_SECONDS"])


def is_online(status: DeviceStatus | None, now: datetime | None = None) -> bool:
    """Stored flag AND a recent ping; nothing ever marks a device offline."""
    if status is None:
        return False
    return status.online_at(now or utcnow(), stale_after())


def _optional_int(value, field: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValidationError(f"{field} must be an integer")


def heartbeat(
    chair_id: str,
    firmware_version: str | None = None,
    signal: int | None = None,
    uptime: int | None = None,
    now: datetime | None = None,
) -> DeviceStatus:
    now = now or utcnow()
    signal = _optional_int(signal, "signal")
    uptime = _optional_int(uptime, "uptime")
    if firmware_version is not None:
        firmware_version = str(firmware_version).strip()[:32] or None

    if db.session.query(Chair.id).filter_by(chair_id=chair_id).first() is None:
        raise NotFoundError(f"Chair {chair_id} not found")

    def _upsert() -> DeviceStatus:
        status = db.session.get(DeviceStatus, chair_id)
        if status is None:
            status = DeviceStatus(chair_id=chair_id)
            db.session.add(status)
        status.is_online = True
        status.last_ping = now
        if firmware_version is not None:
            status.firmware_version = firmware_version
        if signal is not None:
            status.signal_strength = signal
        if uptime is not None:
            status.uptime_seconds = uptime
        db.session.commit()
        return status

    try:
        status = _upsert()
    except IntegrityError:
        # First heartbeats racing each other; the row exists now
        db.session.rollback()
        status = _upsert()

    logger.debug("Heartbeat chair=%s fw=%s signal=%s uptime=%s", chair_id, firmware_version, signal, uptime)
    return status


def list_statuses(now: datetime | None = None) -> list[dict]:
    """Presence for every registered chair; chairs that never pinged are offline."""
    now = now or utcnow()
    window = stale_after()
    rows = (
        db.session.query(Chair, DeviceStatus)
        .outerjoin(DeviceStatus, DeviceStatus.chair_id == Chair.chair_id)
        .order_by(Chair.chair_id)
        .all()
    )

    result = []
    for chair, status in rows:
        if status is None:
            entry = {
                "chair_id": chair.chair_id,
                "online": False,
                "is_online": False,
                "last_ping": None,
                "firmware_version": None,
                "signal_strength": None,
                "uptime_seconds": None,
                "updated_at": None,
            }
        else:
            entry = status.to_dict(now=now, stale_after=window)
        entry["location"] = chair.location
        entry["is_active"] = chair.is_active
        result.append(entry)
    return result
