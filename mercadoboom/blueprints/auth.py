from __future__ import annotations

from flask import Blueprint, jsonify, session

from mercadoboom.blueprints.common import (
    json_body,
    notification_service,
    require_user,
    serialize_dt,
    serialize_user,
)
from mercadoboom.database import get_db
from mercadoboom.schemas import (
    LoginRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    parse_payload,
)
from mercadoboom.services.auth_service import AuthService

auth_bp = Blueprint("auth", __name__)


def _get_auth_service() -> AuthService:
    return AuthService(get_db(), notification_service=notification_service())


@auth_bp.route("/api/register", methods=["POST"])
def api_register():
    payload = parse_payload(RegisterRequest, json_body())
    user = _get_auth_service().register(
        username=payload.username,
        email=payload.email,
        password=payload.password,
        full_name=payload.full_name,
        phone=payload.phone,
    )
    session.clear()
    session["user_id"] = user.userID
    return jsonify(serialize_user(user)), 201


@auth_bp.route("/api/login", methods=["POST"])
def api_login():
    payload = parse_payload(LoginRequest, json_body())
    user = _get_auth_service().authenticate(payload.username, payload.password)
    session.clear()
    session["user_id"] = user.userID
    return jsonify(serialize_user(user))


@auth_bp.route("/api/logout", methods=["POST"])
def api_logout():
    session.clear()
    return jsonify({"success": True})


@auth_bp.route("/api/user", methods=["GET"])
def api_current_user():
    return jsonify(serialize_user(require_user()))


@auth_bp.route("/api/user/profile", methods=["PATCH"])
def api_update_profile():
    user = require_user()
    payload = parse_payload(ProfileUpdateRequest, json_body())
    updated = _get_auth_service().update_profile(
        user.userID,
        username=payload.username,
        email=payload.email,
        full_name=payload.full_name,
        phone=payload.phone,
    )
    return jsonify(serialize_user(updated))


@auth_bp.route("/api/password-reset/request", methods=["POST"])
def api_password_reset_request():
    payload = parse_payload(PasswordResetRequest, json_body())
    dispatch = _get_auth_service().request_password_reset(payload.identifier, payload.method)
    return jsonify(
        {
            "message": dispatch.message,
            "method": dispatch.method,
            "sentTo": dispatch.sent_to,
            "messagesSent": dispatch.messages_sent,
            "expiresAt": serialize_dt(dispatch.expires_at),
        }
    )


@auth_bp.route("/api/password-reset/confirm", methods=["POST"])
def api_password_reset_confirm():
    payload = parse_payload(PasswordResetConfirm, json_body())
    _get_auth_service().confirm_password_reset(
        payload.identifier, payload.method, payload.token, payload.new_password
    )
    return jsonify({"success": True, "message": "Contraseña actualizada exitosamente"})
