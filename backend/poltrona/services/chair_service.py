# Overview: Service-layer operations for the chair registry; admin CRUD with audit snapshots.

"""
Device Registry

WHY: Chairs are static configuration edited from the dashboard. The reconciliation
pipeline owns the intent and session sub-records, so the writable allowlist here
never includes them.

DESIGN:
- Clients send price in reais (two decimals at most); it is stored as integer cents.
- camelCase and snake_case keys are both accepted.
- Chairs are deactivated, never deleted: payments and audit rows reference them.
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Chair
from . import audit_service
from .concurrency import run_with_retry
from poltrona.validation import (
    ModelValidationPolicy,
    amount_to_cents,
    enforce_rules_chair,
    has_at_most_two_decimals,
    validate_payload,
)

logger = logging.getLogger(__name__)

CHAIR_CREATE_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({"chair_id", "ip_address", "price_cents", "duration_seconds", "location", "is_active"}),
    required_on_create=frozenset({"chair_id", "ip_address", "price_cents", "location"}),
)

CHAIR_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({"ip_address", "price_cents", "duration_seconds", "location", "is_active"}),
)

_KEY_ALIASES = {
    "chairId": "chair_id",
    "poltronaId": "chair_id",
    "ipAddress": "ip_address",
    "ip": "ip_address",
    "durationSeconds": "duration_seconds",
    "duration": "duration_seconds",
    "isActive": "is_active",
    "active": "is_active",
}

_AUDITED_FIELDS = ("ip_address", "price_cents", "duration_seconds", "location", "is_active")


def _normalize(payload) -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    normalized = {}
    for key, value in payload.items():
        normalized[_KEY_ALIASES.get(key, key)] = value

    if "price" in normalized:
        price = normalized.pop("price")
        if price is not None and not has_at_most_two_decimals(price):
            raise ValidationError("price must have at most two decimal places")
        normalized["price_cents"] = amount_to_cents(price, field="price") if price is not None else None
    return normalized


def _snapshot(chair: Chair) -> dict:
    return {field: getattr(chair, field) for field in _AUDITED_FIELDS}


def get_chair(chair_id: str) -> Chair:
    chair = db.session.query(Chair).filter_by(chair_id=chair_id).one_or_none()
    if chair is None:
        raise NotFoundError(f"Chair {chair_id} not found")
    return chair


def list_chairs(*, include_inactive: bool = True) -> list[Chair]:
    query = db.session.query(Chair)
    if not include_inactive:
        query = query.filter(Chair.is_active.is_(True))
    return query.order_by(Chair.chair_id).all()


def create_chair(payload, *, actor: str, ip_address: str | None = None, user_agent: str | None = None) -> Chair:
    patch = validate_payload(model=Chair, payload=_normalize(payload), policy=CHAIR_CREATE_POLICY, partial=False)
    enforce_rules_chair(patch)

    chair_id = patch["chair_id"]
    if db.session.query(Chair.id).filter_by(chair_id=chair_id).first() is not None:
        raise ValidationError(f"Chair {chair_id} already exists")

    base_url = current_app.config["PUBLIC_BASE_URL"].rstrip("/")
    chair = Chair(public_payment_url=f"{base_url}/pagar/{chair_id}", **patch)
    db.session.add(chair)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError(f"Chair {chair_id} already exists")

    audit_service.record(
        "CHAIR_CREATED",
        actor=actor,
        entity_type="chair",
        entity_id=chair_id,
        chair_id=chair_id,
        new_values=_snapshot(chair),
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.session.commit()
    logger.info("Chair %s created by %s", chair_id, actor)
    return chair


def update_chair(
    chair_id: str,
    payload,
    *,
    actor: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> Chair:
    normalized = _normalize(payload)
    if "chair_id" in normalized and normalized["chair_id"] != chair_id:
        raise ValidationError("chair_id cannot be changed")
    normalized.pop("chair_id", None)

    patch = validate_payload(model=Chair, payload=normalized, policy=CHAIR_UPDATE_POLICY, partial=True)
    enforce_rules_chair(patch)

    def _apply() -> Chair:
        chair = get_chair(chair_id)
        before = _snapshot(chair)
        for field, value in patch.items():
            setattr(chair, field, value)
        db.session.flush()
        after = _snapshot(chair)

        changed = {k for k in _AUDITED_FIELDS if before[k] != after[k]}
        if changed:
            audit_service.record(
                "CHAIR_UPDATED",
                actor=actor,
                entity_type="chair",
                entity_id=chair_id,
                chair_id=chair_id,
                old_values={k: before[k] for k in sorted(changed)},
                new_values={k: after[k] for k in sorted(changed)},
                ip_address=ip_address,
                user_agent=user_agent,
            )
        db.session.commit()
        return chair

    return run_with_retry(_apply)


def deactivate_chair(chair_id: str, *, actor: str, ip_address: str | None = None, user_agent: str | None = None) -> Chair:
    def _apply() -> Chair:
        chair = get_chair(chair_id)
        if not chair.is_active:
            return chair
        chair.is_active = False
        audit_service.record(
            "CHAIR_DEACTIVATED",
            actor=actor,
            entity_type="chair",
            entity_id=chair_id,
            chair_id=chair_id,
            old_values={"is_active": True},
            new_values={"is_active": False},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        db.session.commit()
        return chair

    chair = run_with_retry(_apply)
    logger.info("Chair %s deactivated by %s", chair_id, actor)
    return chair
