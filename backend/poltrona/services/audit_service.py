# Overview: Service-layer operations for the audit log; append-only writes and dashboard reads.

from __future__ import annotations

from typing import Any

from ..extensions import db
from ..models import AuditLog

"""
Audit log invariants

- Append-only: rows are inserted, never updated or deleted.
- Entries are written inside the same DB transaction as the change they describe,
  so a rolled-back change leaves no audit row behind.
- Pipeline actors are "system:<component>"; dashboard actors are "admin:<name>".
"""

ACTOR_INTENT = "system:intent"
ACTOR_WEBHOOK = "system:webhook"
ACTOR_POLLER = "system:poller"
ACTOR_NOTIFIER = "system:notifier"
ACTOR_EXPIRY = "system:expiry"

DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 500


def record(
    action: str,
    *,
    actor: str,
    entity_type: str,
    entity_id: Any = None,
    chair_id: str | None = None,
    payment_id: str | None = None,
    message: str | None = None,
    old_values: dict | None = None,
    new_values: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditLog:
    """Append an audit row to the current transaction (flushed, not committed)."""
    entry = AuditLog(
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        chair_id=chair_id,
        payment_id=str(payment_id) if payment_id is not None else None,
        message=message,
        old_values=old_values,
        new_values=new_values,
        ip_address=ip_address,
        user_agent=user_agent[:512] if user_agent else None,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def list_entries(
    *,
    chair_id: str | None = None,
    payment_id: str | None = None,
    action: str | None = None,
    limit: int = DEFAULT_LIST_LIMIT,
) -> list[AuditLog]:
    """Newest first."""
    query = db.session.query(AuditLog)
    if chair_id:
        query = query.filter(AuditLog.chair_id == chair_id)
    if payment_id:
        query = query.filter(AuditLog.payment_id == str(payment_id))
    if action:
        query = query.filter(AuditLog.action == action)
    limit = max(1, min(limit, MAX_LIST_LIMIT))
    return query.order_by(AuditLog.id.desc()).limit(limit).all()
