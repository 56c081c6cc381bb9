# Overview: Request decorators for API routes; the admin identity oracle.

import secrets
from functools import wraps

from flask import current_app, g, jsonify, request

from .errors import ConfigurationError


def require_admin(f):
    """
    Require the admin bearer token.

    The identity provider is opaque to this service: it hands admins a token,
    and the token is compared in constant time against ADMIN_API_TOKEN.

    Sets:
    - g.actor: "admin:<name>" from the optional X-Actor header ("admin:unknown" otherwise)

    Returns 401 without a valid token, 500 when the token is not configured.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get("ADMIN_API_TOKEN")
        if not expected:
            current_app.logger.error("ADMIN_API_TOKEN not configured; refusing admin request to %s", request.path)
            return jsonify(ConfigurationError("ADMIN_API_TOKEN").to_dict()), 500

        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"success": False, "message": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1].strip()
        if not secrets.compare_digest(token.encode(), expected.encode()):
            current_app.logger.warning("Rejected admin token from %s for %s", request.remote_addr, request.path)
            return jsonify({"success": False, "message": "Invalid token"}), 401

        name = (request.headers.get("X-Actor") or "unknown").strip()[:50] or "unknown"
        g.actor = f"admin:{name}"

        return f(*args, **kwargs)

    return decorated_function


def client_context() -> dict:
    """Request metadata attached to admin audit rows."""
    return {
        "ip_address": request.remote_addr,
        "user_agent": request.headers.get("User-Agent"),
    }
