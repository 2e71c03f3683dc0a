"""Routes for the registration and login ceremonies."""
from __future__ import annotations

from typing import Any, Mapping

from flask import current_app, jsonify, request

from ..ceremony import CeremonyOrchestrator
from ..encoding import make_json_safe, websafe_encode
from ..errors import InvalidInput
from ..models import AssertionResponse, CreationResponse
from . import bp


def _orchestrator() -> CeremonyOrchestrator:
    return current_app.extensions["passkeys"]


def _json_body() -> Mapping[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, Mapping):
        raise InvalidInput("request body must be a JSON object")
    return payload


@bp.route("/register/begin", methods=["POST"])
def register_begin():
    payload = _json_body()
    options = _orchestrator().begin_registration(
        payload.get("username"),
        payload.get("displayName"),
    )
    return jsonify(options.to_dict())


@bp.route("/register/finish", methods=["POST"])
def register_finish():
    response = CreationResponse.from_dict(_json_body())
    result = _orchestrator().finish_registration(response)
    return jsonify(
        {
            "status": "success",
            "message": "Registration successful",
            "user": result.user.name,
            "credentialId": websafe_encode(result.credential.id),
        }
    )


@bp.route("/login/begin", methods=["POST"])
def login_begin():
    payload = _json_body()
    options = _orchestrator().begin_login(payload.get("username"))
    return jsonify(options.to_dict())


@bp.route("/login/finish", methods=["POST"])
def login_finish():
    response = AssertionResponse.from_dict(_json_body())
    result = _orchestrator().finish_login(response)
    body = {
        "status": "ok",
        "message": "Login successful",
        "user": result.username,
        "credentialId": result.credential_id,
        "signCount": result.sign_count,
    }
    if result.warnings:
        body["warnings"] = list(result.warnings)
    return jsonify(make_json_safe(body))
