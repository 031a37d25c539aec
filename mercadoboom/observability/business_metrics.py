"""Dashboard aggregates for the admin panel, computed from the database on each call."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from mercadoboom.models import (
    Order,
    OrderStatus,
    PaymentStatus,
    PaymentType,
    SenderType,
    SupportTicket,
    TicketMessage,
    TicketStatus,
    User,
)

# Payment states that count as money actually collected
_COLLECTED_PAYMENT_STATUSES = (PaymentStatus.APPROVED, PaymentStatus.VERIFIED)


def compute_admin_stats(session: Session) -> Dict[str, Any]:
    active_users = (
        session.query(func.count(User.userID)).filter(User.is_blocked.is_(False)).scalar() or 0
    )
    total_orders = session.query(func.count(Order.orderID)).scalar() or 0
    pending_orders = (
        session.query(func.count(Order.orderID))
        .filter(Order.status == OrderStatus.PENDIENTE)
        .scalar()
        or 0
    )
    pending_transfers = (
        session.query(func.count(Order.orderID))
        .filter(Order.payment_type == PaymentType.DIRECT_TRANSFER)
        .filter(Order.payment_status == PaymentStatus.PENDING_VERIFICATION)
        .scalar()
        or 0
    )
    paid_orders = (
        session.query(func.count(Order.orderID))
        .filter(Order.payment_status.in_(_COLLECTED_PAYMENT_STATUSES))
        .scalar()
        or 0
    )
    total_sales = (
        session.query(func.coalesce(func.sum(Order.total_amount), 0))
        .filter(Order.payment_status.in_(_COLLECTED_PAYMENT_STATUSES))
        .scalar()
    )
    conversion_rate = (paid_orders / total_orders * 100) if total_orders else 0.0

    return {
        "activeUsers": active_users,
        "totalOrders": total_orders,
        "pendingOrders": pending_orders,
        "pendingTransfers": pending_transfers,
        "totalSales": str(Decimal(str(total_sales)).quantize(Decimal("0.01"))),
        "conversionRate": f"{conversion_rate:.1f}%",
    }


def compute_support_stats(session: Session) -> Dict[str, Any]:
    counts = dict(
        session.query(SupportTicket.status, func.count(SupportTicket.ticketID))
        .group_by(SupportTicket.status)
        .all()
    )
    total = sum(counts.values())
    resolved = counts.get(TicketStatus.RESUELTO, 0) + counts.get(TicketStatus.CERRADO, 0)

    return {
        "totalTickets": total,
        "openTickets": counts.get(TicketStatus.ABIERTO, 0),
        "inProgressTickets": counts.get(TicketStatus.EN_PROCESO, 0)
        + counts.get(TicketStatus.ESPERANDO_CLIENTE, 0),
        "resolvedTickets": resolved,
        "avgResponseTime": _format_hours(_average_first_response_hours(session)),
    }


def _average_first_response_hours(session: Session) -> Optional[float]:
    """Mean time between ticket creation and the first admin reply, in hours."""
    first_replies = (
        session.query(
            TicketMessage.ticketID,
            func.min(TicketMessage.created_at).label("first_reply"),
        )
        .filter(TicketMessage.sender_type == SenderType.ADMIN)
        .filter(TicketMessage.is_internal.is_(False))
        .group_by(TicketMessage.ticketID)
        .subquery()
    )
    rows = (
        session.query(SupportTicket.created_at, first_replies.c.first_reply)
        .join(first_replies, first_replies.c.ticketID == SupportTicket.ticketID)
        .all()
    )
    durations: List[float] = []
    for created_at, first_reply in rows:
        if created_at is None or first_reply is None:
            continue
        if isinstance(first_reply, str):
            # SQLite returns aggregated datetimes as text
            first_reply = datetime.fromisoformat(first_reply)
        created_at = created_at.replace(tzinfo=None)
        first_reply = first_reply.replace(tzinfo=None)
        durations.append((first_reply - created_at).total_seconds() / 3600)
    if not durations:
        return None
    return sum(durations) / len(durations)


def _format_hours(hours: Optional[float]) -> str:
    if hours is None:
        return "N/A"
    if hours < 1:
        return f"{int(round(hours * 60))} min"
    return f"{hours:.1f} h"


__all__ = [
    "compute_admin_stats",
    "compute_support_stats",
]
