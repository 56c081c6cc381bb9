# Overview: Flask API routes for payments; intents, processor webhook, polling sweep and history.

# backend/poltrona/routes/payments.py
"""
Payment API Routes

WHY: The reconciliation pipeline's entry points. Intent creation is called by the
dashboard and the public payment page, the webhook by the processor, the poll
endpoint by an external scheduler.

DESIGN:
- Every handler returns {"success": ...}; failures carry a sanitized message only.
- The webhook answers 200 for everything it cannot act on, so the processor stops
  re-delivering; only misconfiguration (500) and processor outages (502) are not 200.

SECURITY:
- Intent, webhook, poll and public status are unauthenticated (payer, processor, scheduler)
- History and manual re-notification require the admin token
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_admin
from ..errors import ReconciliationError, ValidationError, error_response
from ..services import payment_service, polling_service, webhook_service
from ..services.intent_service import create_intent
from ..validation import pick


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


# =============================================================================
# PIPELINE ENTRY POINTS
# =============================================================================

@payments_bp.post("/intents")
def create_intent_route():
    """
    Create (or re-fetch) the PIX intent for a chair.

    Request body:
    {
        "chairId": "p1"     (chair_id / poltrona_id accepted)
    }

    Returns:
        201: New intent
        200: Existing live intent (reused=true)
        400: Missing chairId
        404: Unknown chair
        412: Chair inactive
        423: Chair in use; details.remainingSeconds and Retry-After
        502: Processor unavailable
    """
    try:
        data = request.get_json(silent=True) or {}
        chair_id = pick(data, "chairId", "chair_id", "poltrona_id")
        if not chair_id:
            raise ValidationError("chairId is required")

        result = create_intent(str(chair_id))
        return jsonify({"success": True, **result.to_dict()}), 200 if result.reused else 201

    except ReconciliationError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create payment intent")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@payments_bp.post("/webhook")
def webhook_route():
    """Processor notification: {type, data: {id}}. Treated as a hint to re-fetch."""
    try:
        envelope = request.get_json(silent=True)
        current_app.logger.info("Webhook received: type=%s", (envelope or {}).get("type") if isinstance(envelope, dict) else None)
        result = webhook_service.handle_notification(envelope)
        return jsonify(result.to_dict()), 200

    except ReconciliationError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Webhook processing failed")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@payments_bp.post("/poll")
def poll_route():
    """Run one polling sweep over recent pending payments."""
    try:
        summary = polling_service.run_sweep()
        return jsonify({
            "success": True,
            "checked": summary.checked,
            "approved": summary.approved,
            "rejected": summary.rejected,
            "alreadyResolved": summary.already_resolved,
            "failed": summary.failed,
        }), 200

    except ReconciliationError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Polling sweep failed")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@payments_bp.get("/<payment_id>/status")
def public_status_route(payment_id: str):
    """Payer-facing status lookup; no chair or session internals."""
    try:
        status = payment_service.get_public_status(payment_id)
        if status is None:
            return jsonify({"success": False, "status": "not_found", "message": "Payment not found"}), 404
        return jsonify({"success": True, **status}), 200

    except Exception:
        current_app.logger.exception("Failed to look up payment status")
        return jsonify({"success": False, "message": "Internal server error"}), 500


# =============================================================================
# ADMIN
# =============================================================================

@payments_bp.get("")
@require_admin
def list_payments_route():
    """
    Payment history, newest first.

    Query params: chair_id, status, limit (default 100, max 500)
    """
    try:
        limit = request.args.get("limit", 100, type=int)
        payments = payment_service.list_payments(
            chair_id=request.args.get("chair_id"),
            status=request.args.get("status"),
            limit=limit,
        )
        return jsonify({"success": True, "payments": [p.to_dict() for p in payments]}), 200

    except Exception:
        current_app.logger.exception("Failed to list payments")
        return jsonify({"success": False, "message": "Internal server error"}), 500


@payments_bp.post("/<payment_id>/renotify")
@require_admin
def renotify_route(payment_id: str):
    """Retry the device notification of an approved payment (no-op if already delivered)."""
    try:
        result = payment_service.renotify(payment_id, actor=g.actor)
        return jsonify({"success": result["delivered"], **result}), 200 if result["delivered"] else 502

    except ReconciliationError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to re-notify payment %s", payment_id)
        return jsonify({"success": False, "message": "Internal server error"}), 500
