# Overview: Service-layer helpers for concurrency; conditional writes and retry on contention.

"""
Coordination between handlers happens only in the database.

Two concurrent invocations (webhook vs poller, two overlapping sweeps) never share
memory; they race on rows. compare_and_set() turns every pipeline mutation into an
UPDATE ... WHERE <expected prior state>, so the loser of a race sees rowcount 0 and
degrades to a no-op instead of applying the effect twice.
"""

from __future__ import annotations

import time

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def compare_and_set(model, conditions: list, values: dict) -> bool:
    """
    Conditionally update exactly the rows matching `conditions`.

    Returns True when at least one row changed. Bumps version_id (when the model
    has one) so concurrent ORM edits of the same row fail with StaleDataError.
    Instances of `model` already loaded in the session are expired so callers
    re-read the winning state.
    """
    values = dict(values)
    if "version_id" in model.__table__.c and "version_id" not in values:
        values["version_id"] = model.version_id + 1

    stmt = (
        update(model)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)

    for obj in list(db.session.identity_map.values()):
        if isinstance(obj, model):
            db.session.expire(obj)

    return result.rowcount > 0


def run_with_retry(func, *, attempts: int = 5, backoff_base: float = 0.05):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, "database is locked") and
    StaleDataError (optimistic locking conflicts).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
