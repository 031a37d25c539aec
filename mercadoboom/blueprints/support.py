from __future__ import annotations

from flask import Blueprint, jsonify, request

from mercadoboom.blueprints.common import (
    current_user,
    json_body,
    require_user,
    serialize_message,
    serialize_ticket,
)
from mercadoboom.database import get_db
from mercadoboom.errors import ValidationError
from mercadoboom.models import TicketStatus
from mercadoboom.schemas import CreateTicketRequest, TicketMessageRequest, parse_payload
from mercadoboom.services.support_service import SupportService

support_bp = Blueprint("support", __name__, url_prefix="/api/support")


def _get_support_service() -> SupportService:
    return SupportService(get_db())


@support_bp.route("/tickets", methods=["POST"])
def create_ticket():
    # Guests may open tickets as long as they leave a name and email
    payload = parse_payload(CreateTicketRequest, json_body())
    ticket = _get_support_service().create_ticket(
        payload.subject,
        payload.description,
        payload.category,
        priority=payload.priority,
        user=current_user(),
        name=payload.name,
        email=payload.email,
        order_id=payload.order_id,
        attachments=[a.model_dump() for a in payload.attachments],
    )
    return (
        jsonify(
            {
                "success": True,
                "message": f"Ticket {ticket.ticket_number} creado",
                "ticket": serialize_ticket(ticket),
            }
        ),
        201,
    )


@support_bp.route("/tickets", methods=["GET"])
def list_tickets():
    user = require_user()
    status = request.args.get("status")
    try:
        status_filter = TicketStatus(status) if status else None
    except ValueError as exc:
        raise ValidationError(f"Estado de ticket desconocido: {status}") from exc
    tickets = _get_support_service().list_tickets(user, status_filter)
    return jsonify([serialize_ticket(t) for t in tickets])


@support_bp.route("/tickets/<int:ticket_id>", methods=["GET"])
def get_ticket(ticket_id: int):
    user = require_user()
    thread = _get_support_service().get_thread(ticket_id, user)
    body = serialize_ticket(thread.ticket)
    body["messages"] = [serialize_message(m) for m in thread.messages]
    return jsonify(body)


@support_bp.route("/tickets/<int:ticket_id>/messages", methods=["POST"])
def post_message(ticket_id: int):
    user = require_user()
    payload = parse_payload(TicketMessageRequest, json_body())
    entry = _get_support_service().post_message(
        ticket_id,
        user,
        payload.message,
        attachments=[a.model_dump() for a in payload.attachments],
        is_internal=payload.is_internal,
    )
    return jsonify({"success": True, "message": serialize_message(entry)}), 201
