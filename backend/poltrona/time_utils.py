from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Optional

# Every timestamp in the database is naive UTC.


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Processor timestamp -> naive UTC.

    Mercado Pago sends local offsets with milliseconds
    ("2024-05-01T10:00:00.000-04:00"); dashboards send "...Z". A value without an
    offset is taken as UTC already. Blank -> None; garbage raises ValueError.
    """
    if value is None or not value.strip():
        return None
    text = value.strip()
    if text[-1] in "zZ":
        text = f"{text[:-1]}+00:00"
    return _as_naive_utc(datetime.fromisoformat(text))


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """API form: whole seconds, 'Z' suffix."""
    if dt is None:
        return None
    stamp = _as_naive_utc(dt).replace(microsecond=0)
    return f"{stamp.isoformat()}Z"


def seconds_until(end: Optional[datetime], now: datetime) -> int:
    """Whole seconds from now until end, rounded up; 0 when end is past or unset."""
    if end is None:
        return 0
    delta = (end - now).total_seconds()
    return int(math.ceil(delta)) if delta > 0 else 0
