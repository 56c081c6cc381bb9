# backend/poltrona/routes/system.py
"""
System health, version and processor connectivity endpoints.

Health checks cover the database and the reconciliation backlog; the processor
check is separate and admin-only because it spends an authenticated API call.
"""

import sys
import time
from datetime import timedelta

from flask import Blueprint, current_app, jsonify

from ..decorators import require_admin
from ..errors import ReconciliationError, error_response
from ..extensions import db
from ..models import Chair, Payment, PaymentStatus
from ..services.mercadopago import get_client
from poltrona.time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)

# Worst status wins; degraded still answers 200
_SEVERITY = {"healthy": 0, "degraded": 1, "unhealthy": 2}


def _timed(probe, failure_label: str) -> dict:
    """Run one probe and stamp its latency. A raising probe is reported unhealthy."""
    started = time.perf_counter()
    try:
        result = probe()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("%s health check failed", failure_label)
        result = {"status": "unhealthy", "error": f"{failure_label} error"}
    result["latency_ms"] = round((time.perf_counter() - started) * 1000, 2)
    return result


def check_database_health() -> dict:
    """Chair registry is readable."""
    def _probe():
        chairs = db.session.query(Chair)
        return {
            "status": "healthy",
            "details": {
                "chairs": chairs.count(),
                "active_chairs": chairs.filter(Chair.is_active.is_(True)).count(),
            },
        }
    return _timed(_probe, "Database")


def check_reconciliation_health() -> dict:
    """
    Backlog signals: pending payments inside the polling window, lapsed sessions
    the expiry sweep has not reached, approvals whose device was never told.
    """
    def _probe():
        now = utcnow()
        window_start = now - timedelta(minutes=current_app.config["POLL_WINDOW_MINUTES"])
        payments = db.session.query(Payment)

        details = {
            "pending_in_window": payments.filter(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.created_at >= window_start,
            ).count(),
            "lapsed_sessions": db.session.query(Chair).filter(
                Chair.session_active.is_(True),
                Chair.session_ends_at <= now,
            ).count(),
            "approved_not_notified": payments.filter(
                Payment.status == PaymentStatus.APPROVED.value,
                Payment.processed.is_(True),
                Payment.notified_at.is_(None),
            ).count(),
        }
        if details["lapsed_sessions"]:
            return {"status": "degraded", "warning": "Expiry sweep is behind", "details": details}
        return {"status": "healthy", "details": details}
    return _timed(_probe, "Reconciliation")


def check_configuration() -> dict:
    missing = [
        key for key in ("MERCADOPAGO_ACCESS_TOKEN", "ADMIN_API_TOKEN")
        if not current_app.config.get(key)
    ]
    if missing:
        return {"status": "degraded", "warning": f"Missing settings: {', '.join(missing)}"}
    return {"status": "healthy"}


@system_bp.get("/health")
def health():
    """
    200 when healthy or degraded, 503 when any check is unhealthy.
    """
    started = time.perf_counter()
    checks = {
        "database": check_database_health(),
        "reconciliation": check_reconciliation_health(),
        "configuration": check_configuration(),
    }
    overall = max((c["status"] for c in checks.values()), key=_SEVERITY.__getitem__)

    body = {
        "status": overall,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.perf_counter() - started) * 1000, 2),
        "checks": checks,
    }
    return body, 503 if overall == "unhealthy" else 200


@system_bp.get("/version")
def version():
    """Non-sensitive deployment info."""
    return {
        "api_version": "1.0.0",
        "environment": "development" if current_app.debug else "production",
        "python_version": sys.version.split()[0],
        "server_time": to_utc_z(utcnow()),
    }


@system_bp.post("/api/system/processor-test")
@require_admin
def processor_test():
    """Validate the processor token with a cheap authenticated call."""
    try:
        result = get_client().test_connection()
        return jsonify({"success": True, **result}), 200
    except ReconciliationError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Processor connectivity test failed")
        return jsonify({"success": False, "message": "Internal server error"}), 500
