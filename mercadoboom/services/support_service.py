from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import bleach
from sqlalchemy.orm import Session

from mercadoboom.config import Config
from mercadoboom.errors import NotFoundError, PermissionDeniedError, StateConflictError, ValidationError
from mercadoboom.models import (
    Order,
    SenderType,
    SupportTicket,
    TicketCategory,
    TicketMessage,
    TicketPriority,
    TicketStatus,
    User,
)
from mercadoboom.observability import increment_counter, record_event


def _generate_ticket_number() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(5))
    return f"TICKET-{stamp}-{suffix}"


def _clean_text(value: Optional[str]) -> str:
    """Strip any markup from customer supplied text."""
    return bleach.clean(value or "", tags=[], strip=True).strip()


@dataclass
class TicketThread:
    ticket: SupportTicket
    messages: List[TicketMessage]


class SupportService:
    """Customer support tickets and their message threads."""

    def __init__(self, db_session: Session, config: type[Config] = Config) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)

    def create_ticket(
        self,
        subject: str,
        description: str,
        category: TicketCategory,
        priority: TicketPriority = TicketPriority.MEDIO,
        user: Optional[User] = None,
        name: Optional[str] = None,
        email: Optional[str] = None,
        order_id: Optional[int] = None,
        attachments: Optional[Iterable[Dict[str, Any]]] = None,
    ) -> SupportTicket:
        subject, description = _clean_text(subject), _clean_text(description)
        name = _clean_text(name) or None
        if user is not None:
            name = name or user.full_name or user.username
            email = email or user.email
        if not name or not email:
            raise ValidationError("Nombre y correo son obligatorios")
        if not subject:
            raise ValidationError("El asunto es obligatorio")
        if len(description) < 10:
            raise ValidationError("La descripción debe tener al menos 10 caracteres")

        if order_id is not None:
            order = self.db.query(Order).filter_by(orderID=order_id).first()
            if order is None or (user is not None and not user.is_admin and order.userID != user.userID):
                raise ValidationError("El pedido indicado no existe")

        ticket = SupportTicket(
            ticket_number=_generate_ticket_number(),
            userID=user.userID if user is not None else None,
            name=name,
            email=email,
            subject=subject,
            description=description,
            category=TicketCategory(category),
            priority=TicketPriority(priority),
            status=TicketStatus.ABIERTO,
            orderID=order_id,
            attachments=list(attachments or []),
        )
        self.db.add(ticket)
        self.db.commit()

        increment_counter(
            "support_tickets_created_total",
            labels={"category": ticket.category.value, "priority": ticket.priority.value},
        )
        record_event("support_ticket_created", {"ticket_id": ticket.ticketID, "ticket_number": ticket.ticket_number})
        self.logger.info(
            "Support ticket %s created",
            ticket.ticket_number,
            extra={"ticket_id": ticket.ticketID, "category": ticket.category.value},
        )
        return ticket

    def post_message(
        self,
        ticket_id: int,
        sender: User,
        message: str,
        attachments: Optional[Iterable[Dict[str, Any]]] = None,
        is_internal: bool = False,
    ) -> TicketMessage:
        ticket = self._get_visible_ticket(ticket_id, sender)
        if not ticket.accepts_messages:
            raise StateConflictError("No se pueden agregar mensajes a un ticket resuelto o cerrado")
        if is_internal and not sender.is_admin:
            raise PermissionDeniedError("Solo el equipo de soporte puede agregar notas internas")
        message = _clean_text(message)
        if not message:
            raise ValidationError("El mensaje no puede estar vacío")

        entry = TicketMessage(
            ticketID=ticket.ticketID,
            senderID=sender.userID,
            sender_type=SenderType.ADMIN if sender.is_admin else SenderType.CLIENTE,
            sender_name=sender.full_name or sender.username,
            sender_email=sender.email,
            message=message,
            attachments=list(attachments or []),
            is_internal=is_internal,
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(entry)
        self.db.commit()

        increment_counter("support_messages_total", labels={"sender_type": entry.sender_type.value})
        self.logger.info(
            "Ticket message posted",
            extra={"ticket_id": ticket.ticketID, "sender_type": entry.sender_type.value},
        )
        return entry

    def get_thread(self, ticket_id: int, viewer: User) -> TicketThread:
        ticket = self._get_visible_ticket(ticket_id, viewer)
        query = self.db.query(TicketMessage).filter_by(ticketID=ticket.ticketID)
        if not viewer.is_admin:
            query = query.filter(TicketMessage.is_internal.is_(False))
        messages = query.order_by(TicketMessage.created_at, TicketMessage.messageID).all()
        return TicketThread(ticket=ticket, messages=messages)

    def list_tickets(self, viewer: User, status: Optional[TicketStatus] = None) -> List[SupportTicket]:
        query = self.db.query(SupportTicket)
        if not viewer.is_admin:
            query = query.filter(SupportTicket.userID == viewer.userID)
        if status is not None:
            query = query.filter(SupportTicket.status == TicketStatus(status))
        return query.order_by(SupportTicket.created_at.desc(), SupportTicket.ticketID.desc()).all()

    def update_ticket(
        self,
        ticket_id: int,
        status: Optional[TicketStatus] = None,
        priority: Optional[TicketPriority] = None,
        assigned_to: Optional[int] = None,
        admin_notes: Optional[str] = None,
        resolution: Optional[str] = None,
    ) -> SupportTicket:
        ticket = self.get_ticket(ticket_id)
        previous = TicketStatus(ticket.status)
        if status is not None and TicketStatus(status) is not previous:
            ticket.transition_to(TicketStatus(status))
        if priority is not None:
            ticket.priority = TicketPriority(priority)
        if assigned_to is not None:
            assignee = self.db.query(User).filter_by(userID=assigned_to).first()
            if assignee is None or not assignee.is_admin:
                raise ValidationError("Solo se puede asignar a un administrador")
            ticket.assigned_to = assigned_to
        if admin_notes is not None:
            ticket.admin_notes = admin_notes
        if resolution is not None:
            ticket.resolution = resolution
        self.db.commit()

        self.logger.info(
            "Support ticket updated",
            extra={
                "ticket_id": ticket.ticketID,
                "previous_status": previous.value,
                "status": TicketStatus(ticket.status).value,
            },
        )
        return ticket

    def get_ticket(self, ticket_id: int) -> SupportTicket:
        ticket = self.db.query(SupportTicket).filter_by(ticketID=ticket_id).first()
        if ticket is None:
            raise NotFoundError("Ticket no encontrado")
        return ticket

    def _get_visible_ticket(self, ticket_id: int, viewer: User) -> SupportTicket:
        ticket = self.get_ticket(ticket_id)
        if not viewer.is_admin and ticket.userID != viewer.userID:
            # Don't reveal other customers' tickets
            raise NotFoundError("Ticket no encontrado")
        return ticket
