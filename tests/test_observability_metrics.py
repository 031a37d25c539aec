import json
import logging
from datetime import timedelta
from decimal import Decimal

from mercadoboom.models import (
    Order,
    OrderStatus,
    PaymentStatus,
    PaymentType,
    SenderType,
    SupportTicket,
    TicketCategory,
    TicketMessage,
    TicketStatus,
)
from mercadoboom.observability import mask_code, mask_email, mask_phone
from mercadoboom.observability.business_metrics import compute_admin_stats, compute_support_stats
from mercadoboom.observability.logging_config import JsonFormatter
from mercadoboom.observability.metrics import (
    counter_total,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
    reset_metrics,
    set_gauge,
)


def test_metrics_snapshot_accumulates_counts():
    reset_metrics()
    increment_counter("test_counter")
    increment_counter("test_counter", amount=2, labels={"route": "/example"})
    set_gauge("test_gauge", 5)
    observe_latency("test_latency", 100, labels={"route": "/example"})
    observe_latency("test_latency", 50, labels={"route": "/example"})

    snapshot = get_metrics_snapshot()
    counters = snapshot["counters"]["test_counter"]
    assert len(counters) == 2
    assert counter_total("test_counter") == 3

    gauges = snapshot["gauges"]["test_gauge"]
    assert gauges[0]["value"] == 5

    hist = snapshot["histograms"]["test_latency"][0]["stats"]
    assert hist["count"] == 2
    assert hist["max"] == 100


def test_masking_helpers_hide_secrets():
    assert mask_code("123456") == "12****"
    assert mask_email("cliente@example.com") == "c*****e@example.com"
    assert mask_phone("+525512345678") == "*********5678"


def test_json_formatter_carries_extra_context():
    record = logging.LogRecord("mercadoboom.test", logging.INFO, __file__, 1, "Order %s created", ("MB-1",), None)
    record.order_id = 7

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "Order MB-1 created"
    assert payload["context"] == {"order_id": 7}


def _order(user, product, number, payment_type, payment_status, total, status=OrderStatus.PENDIENTE):
    return Order(
        order_number=number,
        userID=user.userID,
        productID=product.productID,
        quantity=1,
        total_amount=Decimal(total),
        original_amount=Decimal(total),
        payment_type=payment_type,
        payment_status=payment_status,
        status=status,
        status_history=[],
    )


def test_admin_stats(db_session, make_user, make_product):
    user = make_user()
    blocked = make_user()
    blocked.is_blocked = True
    product = make_product()
    db_session.add_all(
        [
            _order(user, product, "MB-1", PaymentType.MERCADOPAGO, PaymentStatus.APPROVED, "100.00", OrderStatus.PAGADO),
            _order(user, product, "MB-2", PaymentType.DIRECT_TRANSFER, PaymentStatus.PENDING_VERIFICATION, "965.00"),
            _order(user, product, "MB-3", PaymentType.DIRECT_TRANSFER, PaymentStatus.VERIFIED, "50.50", OrderStatus.PAGADO),
            _order(user, product, "MB-4", PaymentType.MERCADOPAGO, PaymentStatus.REJECTED, "10.00"),
        ]
    )
    db_session.commit()

    stats = compute_admin_stats(db_session)

    assert stats["activeUsers"] == 1
    assert stats["totalOrders"] == 4
    assert stats["pendingOrders"] == 2
    assert stats["pendingTransfers"] == 1
    assert stats["totalSales"] == "150.50"
    assert stats["conversionRate"] == "50.0%"


def test_support_stats_average_first_admin_reply(db_session, make_user):
    admin = make_user(is_admin=True)
    ticket = SupportTicket(
        ticket_number="TICKET-1",
        name="Cliente",
        email="cliente@example.com",
        subject="Ayuda",
        description="Necesito ayuda con mi pedido",
        category=TicketCategory.PEDIDO,
        status=TicketStatus.EN_PROCESO,
        attachments=[],
    )
    db_session.add(ticket)
    db_session.commit()
    db_session.add(
        TicketMessage(
            ticketID=ticket.ticketID,
            senderID=admin.userID,
            sender_type=SenderType.ADMIN,
            sender_name="Soporte",
            sender_email=admin.email,
            message="Hola, lo revisamos",
            attachments=[],
            created_at=ticket.created_at + timedelta(minutes=30),
        )
    )
    db_session.commit()

    stats = compute_support_stats(db_session)

    assert stats["totalTickets"] == 1
    assert stats["inProgressTickets"] == 1
    assert stats["avgResponseTime"] == "30 min"


def test_support_stats_empty(db_session):
    stats = compute_support_stats(db_session)
    assert stats["totalTickets"] == 0
    assert stats["avgResponseTime"] == "N/A"
