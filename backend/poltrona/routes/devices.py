# Overview: Flask API routes for chair controllers; heartbeats, presence and diagnostics.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_admin
from ..errors import ReconciliationError, ValidationError, error_response
from ..extensions import db
from ..services import audit_service, chair_service, presence_service
from ..services.notifier_service import get_notifier
from ..validation import pick

devices_bp = Blueprint("devices", __name__, url_prefix="/api/devices")


def _chair_id_from(data: dict) -> str:
    chair_id = pick(data, "chairId", "chair_id", "poltrona_id")
    if not chair_id:
        raise ValidationError("chairId is required")
    return str(chair_id)


@devices_bp.post("/heartbeat")
def heartbeat_route():
    """
    Liveness ping from a chair controller.

    Request body:
    {
        "chairId": "p1",
        "firmwareVersion": "1.2.0",   (optional)
        "signal": -61,                (optional, RSSI dBm; wifi_signal accepted)
        "uptime": 3600                (optional, seconds; uptime_seconds accepted)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        presence_service.heartbeat(
            _chair_id_from(data),
            firmware_version=pick(data, "firmwareVersion", "firmware_version"),
            signal=pick(data, "signal", "wifi_signal", "signal_strength"),
            uptime=pick(data, "uptime", "uptime_seconds"),
        )
        return jsonify({"success": True}), 200

    except ReconciliationError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record heartbeat")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@devices_bp.get("/status")
@require_admin
def device_status_route():
    """Derived presence for every chair."""
    try:
        return jsonify({"success": True, "devices": presence_service.list_statuses()}), 200
    except Exception:
        current_app.logger.exception("Failed to list device status")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@devices_bp.post("/test-activation")
@require_admin
def test_activation_route():
    """Fire the relay directly (POST /test), bypassing payments."""
    try:
        data = request.get_json(silent=True) or {}
        chair = chair_service.get_chair(_chair_id_from(data))

        result = get_notifier().test_activation(chair.ip_address, chair.chair_id)
        audit_service.record(
            "DEVICE_TEST_ACTIVATION",
            actor=g.actor,
            entity_type="device",
            entity_id=chair.chair_id,
            chair_id=chair.chair_id,
            message="Relay test triggered remotely",
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent"),
        )
        db.session.commit()
        return jsonify({"success": True, "message": "Test sent; relays activate for a few seconds", **result}), 200

    except ReconciliationError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Test activation failed")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@devices_bp.post("/test-connection")
@require_admin
def test_connection_route():
    """Probe the controller's GET /status and report online/offline with latency."""
    try:
        data = request.get_json(silent=True) or {}
        chair = chair_service.get_chair(_chair_id_from(data))
        result = get_notifier().probe(chair.ip_address)
        online = result["status"] == "online"
        return jsonify({"success": online, "chairId": chair.chair_id, **result}), 200 if online else 503

    except ReconciliationError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Connection test failed")
        return jsonify({"success": False, "message": "Internal server error"}), 500
