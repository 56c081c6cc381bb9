# Overview: Flask API routes for the audit log; read-only dashboard feed.

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_admin
from ..services import audit_service

audit_bp = Blueprint("audit", __name__, url_prefix="/api/audit")


@audit_bp.get("")
@require_admin
def list_audit_route():
    """
    Query params: chair_id, payment_id, action, limit (default 100, max 500)
    """
    try:
        entries = audit_service.list_entries(
            chair_id=request.args.get("chair_id"),
            payment_id=request.args.get("payment_id"),
            action=request.args.get("action"),
            limit=request.args.get("limit", audit_service.DEFAULT_LIST_LIMIT, type=int),
        )
        return jsonify({"success": True, "entries": [e.to_dict() for e in entries]}), 200
    except Exception:
        current_app.logger.exception("Failed to list audit log")
        return jsonify({"success": False, "message": "Internal server error"}), 500
