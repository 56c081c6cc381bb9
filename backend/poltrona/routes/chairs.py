# Overview: Flask API routes for the chair registry; parses input and returns JSON responses.

# backend/poltrona/routes/chairs.py
"""
Chair Registry API Routes

WHY: Admins register chairs, fix addresses and prices, and take chairs out of
service from the dashboard.

SECURITY:
- All endpoints require the admin token
- Session and intent fields are never writable here
- Every change is audited with the acting admin and client address
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import client_context, require_admin
from ..errors import ReconciliationError, error_response
from ..services import chair_service


chairs_bp = Blueprint("chairs", __name__, url_prefix="/api/chairs")


@chairs_bp.get("")
@require_admin
def list_chairs_route():
    """Query params: active_only=true hides deactivated chairs."""
    try:
        active_only = request.args.get("active_only") in ("1", "true")
        chairs = chair_service.list_chairs(include_inactive=not active_only)
        return jsonify({"success": True, "chairs": [c.to_dict() for c in chairs]}), 200
    except Exception:
        current_app.logger.exception("Failed to list chairs")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@chairs_bp.post("")
@require_admin
def create_chair_route():
    """
    Register a chair.

    Request body:
    {
        "chairId": "p1",
        "ipAddress": "192.168.0.50",
        "price": 10.00,
        "durationSeconds": 900,     (optional, 60..3600)
        "location": "Shopping Centro"
    }

    Returns:
        201: Chair created (with public_payment_url)
        400: Invalid input or duplicate chairId
    """
    try:
        chair = chair_service.create_chair(request.get_json(silent=True), actor=g.actor, **client_context())
        return jsonify({"success": True, "chair": chair.to_dict()}), 201
    except ReconciliationError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create chair")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@chairs_bp.get("/<chair_id>")
@require_admin
def get_chair_route(chair_id: str):
    try:
        chair = chair_service.get_chair(chair_id)
        return jsonify({"success": True, "chair": chair.to_dict()}), 200
    except ReconciliationError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get chair")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@chairs_bp.patch("/<chair_id>")
@require_admin
def update_chair_route(chair_id: str):
    try:
        chair = chair_service.update_chair(chair_id, request.get_json(silent=True), actor=g.actor, **client_context())
        return jsonify({"success": True, "chair": chair.to_dict()}), 200
    except ReconciliationError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update chair")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@chairs_bp.delete("/<chair_id>")
@require_admin
def deactivate_chair_route(chair_id: str):
    """Deactivate; chairs are never deleted."""
    try:
        chair = chair_service.deactivate_chair(chair_id, actor=g.actor, **client_context())
        return jsonify({"success": True, "chair": chair.to_dict()}), 200
    except ReconciliationError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to deactivate chair")
        return jsonify({"success": False, "message": "Internal server error"}), 500
