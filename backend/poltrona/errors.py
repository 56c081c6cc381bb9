# Overview: Error taxonomy shared by services and routes.

"""
Every error raised by the reconciliation pipeline carries an HTTP status and a
message that is safe to show to callers. Upstream bodies never end up in the message.
"""

from __future__ import annotations

from flask import jsonify


class ReconciliationError(Exception):
    """Base class; 500-level unless a subclass says otherwise."""

    status_code = 500

    def __init__(self, message: str, *, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"success": False, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ReconciliationError):
    """400-level input problem."""

    status_code = 400


class NotFoundError(ReconciliationError):
    """404: chair or payment unknown."""

    status_code = 404


class PreconditionFailedError(ReconciliationError):
    """412: entity exists but is not in a state that allows the operation."""

    status_code = 412


class ChairBusyError(PreconditionFailedError):
    """423: the chair is in an active session; carries the time until it frees up."""

    status_code = 423

    def __init__(self, chair_id: str, remaining_seconds: int):
        super().__init__(
            f"Chair {chair_id} is in use, available in {remaining_seconds} seconds",
            details={"chairId": chair_id, "remainingSeconds": remaining_seconds},
        )
        self.chair_id = chair_id
        self.remaining_seconds = remaining_seconds


class UpstreamUnavailableError(ReconciliationError):
    """502: the payment processor or a device could not be reached."""

    status_code = 502


class ConfigurationError(ReconciliationError):
    """500: required secrets or settings are missing. Never retried."""

    status_code = 500

    def __init__(self, missing: str):
        super().__init__("Server configuration incomplete")
        self.missing = missing


def error_response(error: ReconciliationError):
    """JSON error response for a route; ChairBusyError also sets Retry-After."""
    response = jsonify(error.to_dict())
    response.status_code = error.status_code
    if isinstance(error, ChairBusyError):
        response.headers["Retry-After"] = str(error.remaining_seconds)
    return response
