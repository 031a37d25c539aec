from __future__ import annotations

from flask import Blueprint, jsonify, request

from mercadoboom.blueprints.common import (
    client_ip,
    json_body,
    notification_service,
    require_user,
    serialize_dt,
)
from mercadoboom.database import get_db
from mercadoboom.schemas import (
    CheckRequiredRequest,
    SendCodeRequest,
    UpdateTwoFactorRequest,
    VerifyCodeRequest,
    parse_payload,
)
from mercadoboom.services.verification_service import VerificationService

security_bp = Blueprint("security", __name__, url_prefix="/api/security")


def _get_verification_service() -> VerificationService:
    return VerificationService(get_db(), notification_service=notification_service())


@security_bp.route("/send-code", methods=["POST"])
def send_code():
    user = require_user()
    payload = parse_payload(SendCodeRequest, json_body())
    dispatch = _get_verification_service().send_code(
        user.userID,
        payload.action,
        ip_address=client_ip(),
        user_agent=request.headers.get("User-Agent"),
    )
    return jsonify(
        {
            "success": True,
            "message": dispatch.message,
            "channels": dispatch.channels,
            "expiresAt": serialize_dt(dispatch.expires_at),
        }
    )


@security_bp.route("/verify-code", methods=["POST"])
def verify_code():
    user = require_user()
    payload = parse_payload(VerifyCodeRequest, json_body())
    outcome = _get_verification_service().verify_code(user.userID, payload.action, payload.code)
    return jsonify(
        {
            "success": True,
            "message": outcome.message,
            "action": outcome.action,
            "verifiedAt": serialize_dt(outcome.verified_at),
            **outcome.details,
        }
    )


@security_bp.route("/update-2fa", methods=["POST"])
def update_two_factor():
    user = require_user()
    payload = parse_payload(UpdateTwoFactorRequest, json_body())
    message = _get_verification_service().update_two_factor_settings(
        user.userID, payload.enabled, payload.method
    )
    return jsonify({"success": True, "message": message})


@security_bp.route("/check-required", methods=["POST"])
def check_required():
    user = require_user()
    payload = parse_payload(CheckRequiredRequest, json_body())
    required = _get_verification_service().requires_verification(user.userID, payload.action)
    return jsonify({"required": required, "action": payload.action})
