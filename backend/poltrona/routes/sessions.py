# Overview: Flask API routes for chair sessions; expiry sweep and session listing.

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_admin
from ..services import session_service

sessions_bp = Blueprint("sessions", __name__, url_prefix="/api/sessions")


@sessions_bp.post("/cleanup")
def cleanup_route():
    """Expiry sweep; called by the scheduler."""
    try:
        expired = session_service.expire_sessions()
        return jsonify({"success": True, "cleaned": len(expired), "sessions": expired}), 200
    except Exception:
        current_app.logger.exception("Session cleanup failed")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@sessions_bp.get("")
@require_admin
def list_sessions_route():
    try:
        sessions = session_service.list_sessions(
            chair_id=request.args.get("chair_id"),
            active_only=request.args.get("active") in ("1", "true"),
            limit=request.args.get("limit", 100, type=int),
        )
        return jsonify({"success": True, "sessions": [s.to_dict() for s in sessions]}), 200
    except Exception:
        current_app.logger.exception("Failed to list sessions")
        return jsonify({"success": False, "message": "Internal server error"}), 500
