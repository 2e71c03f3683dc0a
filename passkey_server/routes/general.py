"""Health check, error mapping and CORS handling."""
from __future__ import annotations

from flask import current_app, jsonify, request

from ..errors import (
    Conflict,
    InputError,
    InvalidSignature,
    NotFound,
    NoCredentialsRegistered,
    PersistenceError,
    PossibleCloneDetected,
    VerificationError,
    WebAuthnError,
)
from . import bp

# Checked in order; the first matching class decides the status.
_STATUS_BY_ERROR = (
    (NotFound, 404),
    (NoCredentialsRegistered, 404),
    (Conflict, 409),
    (InvalidSignature, 401),
    (PossibleCloneDetected, 401),
    (InputError, 400),
    (VerificationError, 400),
    (PersistenceError, 503),
)


def status_for(error: WebAuthnError) -> int:
    for error_cls, status in _STATUS_BY_ERROR:
        if isinstance(error, error_cls):
            return status
    return 500


@bp.app_errorhandler(WebAuthnError)
def handle_webauthn_error(error: WebAuthnError):
    status = status_for(error)
    if status >= 500:
        current_app.logger.error("Ceremony failed with %s: %s", error.code, error)
    else:
        current_app.logger.info("Ceremony rejected with %s: %s", error.code, error)
    return jsonify({"error": error.code, "message": str(error)}), status


@bp.after_app_request
def add_cors_headers(response):
    origin = request.headers.get("Origin")
    config = current_app.extensions["passkeys"].config
    if origin and origin in config.origins:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Vary"] = "Origin"
    return response


@bp.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok"})
