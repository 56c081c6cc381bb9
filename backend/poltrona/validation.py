from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import DeclarativeMeta

from poltrona.errors import ValidationError


# Chair price bounds: R$ 0,01 .. R$ 1.000,00
MIN_PRICE_CENTS = 1
MAX_PRICE_CENTS = 100_000

MIN_DURATION_SECONDS = 60
MAX_DURATION_SECONDS = 3600

CHAIR_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,20}$")
_OCTET = r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)"
DEVICE_ADDRESS_PATTERN = re.compile(rf"^(?:{_OCTET}\.){{3}}{_OCTET}(?::\d{{1,5}})?$")

_CENT = Decimal("0.01")


def amount_to_cents(value: Any, *, field: str = "amount") -> int:
    """
    Convert a currency amount (number or numeric string, reais) to integer cents.

    Floats go through str() so 10.1 becomes 1010, not 1009.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number")
    try:
        dec = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not dec.is_finite():
        raise ValidationError(f"{field} must be a number")
    return int((dec.quantize(_CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def cents_to_amount(cents: int | None) -> float | None:
    """Cents -> reais as a JSON-friendly number with exactly two decimals of precision."""
    if cents is None:
        return None
    return float(Decimal(cents) / 100)


def has_at_most_two_decimals(value: Any) -> bool:
    try:
        dec = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return False
    return dec == dec.quantize(_CENT)


@dataclass(frozen=True)
class ModelValidationPolicy:
    """Which columns a client may send, and which of them a create must include."""
    writable_fields: frozenset
    required_on_create: frozenset = frozenset()


def _as_int(key: str, value: Any) -> int:
    # JSON numbers or digit strings; 900.0, "9e2" and booleans are refused
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and re.fullmatch(r"\s*-?\d+\s*", value):
        return int(value)
    raise ValidationError(f"{key} must be an integer")


def _coerce_value(col, value: Any):
    if isinstance(col.type, Boolean):
        if not isinstance(value, bool):
            raise ValidationError(f"{col.key} must be a boolean")
        return value
    if isinstance(col.type, Integer):
        return _as_int(col.key, value)
    if isinstance(col.type, (String, Text)):
        text = str(value).strip()
        if not text and not col.nullable:
            raise ValidationError(f"{col.key} cannot be blank")
        limit = getattr(col.type, "length", None)
        if limit and len(text) > limit:
            raise ValidationError(f"{col.key} exceeds max length {limit}")
        return text
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Check a dashboard payload against the model's columns and the policy allowlist.

    Returns the coerced patch. partial=True is PATCH semantics: only the keys sent
    are checked and required_on_create is ignored.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    blocked = sorted(k for k in payload if k not in policy.writable_fields)
    if blocked:
        raise ValidationError(f"Field not allowed: {', '.join(blocked)}")

    if not partial:
        missing = sorted(policy.required_on_create - payload.keys())
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    columns = {c.key: c for c in model.__mapper__.columns}
    patch = {}
    for key, raw in payload.items():
        col = columns[key]
        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{key} cannot be null")
            patch[key] = None
        else:
            patch[key] = _coerce_value(col, raw)
    return patch


def enforce_rules_chair(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Mirrors the dashboard's chair form.
    """
    if "chair_id" in patch and not CHAIR_ID_PATTERN.match(patch["chair_id"]):
        raise ValidationError("chair_id must be 1-20 characters: letters, digits, _ and -")

    if "ip_address" in patch and not DEVICE_ADDRESS_PATTERN.match(patch["ip_address"]):
        raise ValidationError("ip_address must be an IPv4 address (e.g. 192.168.0.10)")

    if "price_cents" in patch:
        price = patch["price_cents"]
        if price < MIN_PRICE_CENTS:
            raise ValidationError("price must be greater than zero")
        if price > MAX_PRICE_CENTS:
            raise ValidationError(f"price cannot exceed {MAX_PRICE_CENTS / 100:,.2f}")

    if "duration_seconds" in patch:
        duration = patch["duration_seconds"]
        if duration < MIN_DURATION_SECONDS or duration > MAX_DURATION_SECONDS:
            raise ValidationError(
                f"duration_seconds must be between {MIN_DURATION_SECONDS} and {MAX_DURATION_SECONDS}"
            )


def pick(data: dict, *keys, default=None):
    """First non-null value among alternative key spellings (camelCase, snake_case, legacy)."""
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return default
