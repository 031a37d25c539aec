from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from mercadoboom.database import Base
from mercadoboom.errors import (
    InvalidTransferState,
    MissingAmountFields,
    NotFoundError,
    PermissionDeniedError,
    ProductUnavailable,
    StateConflictError,
    ValidationError,
)
from mercadoboom.models import (
    Order,
    OrderStatus,
    PaymentStatus,
    PaymentType,
    Product,
    TransferDiscountConfig,
    User,
)
from mercadoboom.services.order_service import OrderService, quote_transfer_discount


@pytest.fixture
def service(db_session):
    return OrderService(db_session)


def _transfer_order(service, user, product, discount_config, quantity=1):
    quote = OrderService.quote_for_product(product, quantity, discount_config)
    order, _ = service.create_transfer_order(
        user.userID,
        product.productID,
        quantity,
        quote.original_amount,
        quote.discount_applied,
        discount_config,
    )
    return order


# ---------------------------
# Discount quotes
# ---------------------------


def test_quote_three_and_a_half_percent(discount_config):
    quote = quote_transfer_discount("1000.00", discount_config)
    assert quote.discount_applied == Decimal("35.00")
    assert quote.total_amount == Decimal("965.00")
    assert quote.to_dict()["discountPercentage"] == "3.50"


def test_quote_rounds_half_up_to_cents(discount_config):
    quote = quote_transfer_discount("999.99", discount_config)
    assert quote.discount_applied == Decimal("35.00")
    assert quote.total_amount == Decimal("964.99")


def test_quote_inactive_discount_is_zero(db_session, discount_config):
    discount_config.is_active = False
    db_session.commit()
    quote = quote_transfer_discount("500.00", discount_config)
    assert quote.discount_applied == Decimal("0.00")
    assert quote.total_amount == Decimal("500.00")


def test_quote_respects_product_opt_out(make_product, discount_config):
    product = make_product(allow_transfer_discount=False)
    quote = OrderService.quote_for_product(product, 2, discount_config)
    assert quote.original_amount == Decimal("2000.00")
    assert quote.discount_applied == Decimal("0.00")


# ---------------------------
# Direct-transfer orders
# ---------------------------


def test_create_transfer_order_freezes_amounts(service, make_user, make_product, discount_config, db_session):
    user = make_user()
    product = make_product()

    order, quote = service.create_transfer_order(
        user.userID, product.productID, 1, "1000.00", "35.00", discount_config
    )

    assert order.order_number.startswith("MB-TF-")
    assert order.payment_type is PaymentType.DIRECT_TRANSFER
    assert order.payment_status is PaymentStatus.PENDING
    assert order.status is OrderStatus.PENDIENTE
    assert order.original_amount == Decimal("1000.00")
    assert order.discount_applied == Decimal("35.00")
    assert order.total_amount == Decimal("965.00")
    assert order.total_amount == order.original_amount - order.discount_applied
    assert order.status_history[0]["status"] == "PENDIENTE"

    # Later config changes do not touch existing orders
    discount_config.discount_percentage = Decimal("10.00")
    db_session.commit()
    db_session.refresh(order)
    assert order.total_amount == Decimal("965.00")
    assert order.discount_applied == Decimal("35.00")


def test_create_transfer_order_requires_amounts(service, make_user, make_product, discount_config):
    user = make_user()
    product = make_product()
    with pytest.raises(MissingAmountFields):
        service.create_transfer_order(user.userID, product.productID, 1, None, "35.00", discount_config)
    with pytest.raises(MissingAmountFields):
        service.create_transfer_order(user.userID, product.productID, 1, "1000.00", None, discount_config)


def test_create_transfer_order_rejects_stale_discount(service, make_user, make_product, discount_config):
    user = make_user()
    product = make_product()
    with pytest.raises(ValidationError) as exc_info:
        service.create_transfer_order(user.userID, product.productID, 1, "1000.00", "50.00", discount_config)
    assert exc_info.value.details == {"expected": "35.00", "received": "50.00"}


def test_create_transfer_order_rejects_wrong_original(service, make_user, make_product, discount_config):
    user = make_user()
    product = make_product()
    with pytest.raises(ValidationError):
        service.create_transfer_order(user.userID, product.productID, 1, "10.00", "0.35", discount_config)


def test_create_order_checks_product(service, make_user, make_product, discount_config):
    user = make_user()
    inactive = make_product(is_active=False)
    low_stock = make_product(stock=1)

    with pytest.raises(ProductUnavailable):
        service.create_gateway_order(user.userID, inactive.productID)
    with pytest.raises(ProductUnavailable):
        service.create_gateway_order(user.userID, 9999)
    with pytest.raises(ValidationError):
        service.create_gateway_order(user.userID, low_stock.productID, quantity=2)
    with pytest.raises(ValidationError):
        service.create_gateway_order(user.userID, low_stock.productID, quantity=0)


def test_gateway_order_has_no_discount(service, make_user, make_product):
    user = make_user()
    product = make_product(price="250.50")
    order = service.create_gateway_order(user.userID, product.productID, quantity=2)
    assert order.order_number.startswith("MB-")
    assert order.payment_type is PaymentType.MERCADOPAGO
    assert order.total_amount == Decimal("501.00")
    assert order.discount_applied == Decimal("0.00")


def test_upload_receipt_moves_to_pending_verification(service, make_user, make_product, discount_config):
    user = make_user()
    order = _transfer_order(service, user, make_product(), discount_config)

    service.upload_receipt(order.orderID, user.userID, "https://files.example.com/r1.pdf")
    assert order.payment_status is PaymentStatus.PENDING_VERIFICATION

    # Re-uploading replaces the receipt while still pending
    service.upload_receipt(order.orderID, user.userID, "https://files.example.com/r2.pdf")
    assert order.transfer_receipt_url == "https://files.example.com/r2.pdf"


def test_upload_receipt_only_by_owner(service, make_user, make_product, discount_config):
    owner = make_user()
    stranger = make_user()
    order = _transfer_order(service, owner, make_product(), discount_config)
    with pytest.raises(PermissionDeniedError):
        service.upload_receipt(order.orderID, stranger.userID, "https://files.example.com/r.pdf")


def test_upload_receipt_rejected_for_gateway_orders(service, make_user, make_product):
    user = make_user()
    order = service.create_gateway_order(user.userID, make_product().productID)
    with pytest.raises(InvalidTransferState):
        service.upload_receipt(order.orderID, user.userID, "https://files.example.com/r.pdf")


def test_verify_transfer_approves_and_marks_paid(service, make_user, make_product, discount_config):
    user = make_user()
    admin = make_user(is_admin=True)
    order = _transfer_order(service, user, make_product(), discount_config)
    service.upload_receipt(order.orderID, user.userID, "https://files.example.com/r.pdf")

    verified = service.verify_transfer(order.orderID, admin.userID, True, notes="Depósito confirmado")

    assert verified.payment_status is PaymentStatus.VERIFIED
    assert verified.status is OrderStatus.PAGADO
    assert verified.transfer_verified_by == admin.userID
    assert verified.transfer_verified_at is not None
    assert verified.transfer_notes == "Depósito confirmado"
    assert [entry["status"] for entry in verified.status_history] == ["PENDIENTE", "PAGADO"]


def test_verify_transfer_rejection_is_terminal(service, make_user, make_product, discount_config):
    user = make_user()
    admin = make_user(is_admin=True)
    order = _transfer_order(service, user, make_product(), discount_config)
    service.upload_receipt(order.orderID, user.userID, "https://files.example.com/r.pdf")

    rejected = service.verify_transfer(order.orderID, admin.userID, False, notes="Monto incorrecto")
    assert rejected.payment_status is PaymentStatus.REJECTED
    assert rejected.status is OrderStatus.PENDIENTE

    with pytest.raises(InvalidTransferState):
        service.verify_transfer(order.orderID, admin.userID, True)
    with pytest.raises(InvalidTransferState):
        service.upload_receipt(order.orderID, user.userID, "https://files.example.com/r2.pdf")


def test_verify_transfer_requires_receipt(service, make_user, make_product, discount_config):
    user = make_user()
    admin = make_user(is_admin=True)
    order = _transfer_order(service, user, make_product(), discount_config)
    with pytest.raises(InvalidTransferState) as exc_info:
        service.verify_transfer(order.orderID, admin.userID, True)
    assert exc_info.value.details == {"paymentStatus": "pending"}


def test_verify_transfer_twice_conflicts(service, make_user, make_product, discount_config):
    user = make_user()
    admin = make_user(is_admin=True)
    order = _transfer_order(service, user, make_product(), discount_config)
    service.upload_receipt(order.orderID, user.userID, "https://files.example.com/r.pdf")
    service.verify_transfer(order.orderID, admin.userID, True)

    with pytest.raises(InvalidTransferState):
        service.verify_transfer(order.orderID, admin.userID, False)


def test_concurrent_verifications_only_one_wins(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}", future=True)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, future=True)

    setup = SessionLocal()
    user = User(username="buyer", email="buyer@example.com", passwordHash="x")
    admin = User(username="boss", email="boss@example.com", passwordHash="x", is_admin=True)
    product = Product(name="Bocina", price=Decimal("1000.00"), stock=5)
    config = TransferDiscountConfig(discount_percentage=Decimal("3.50"), discount_text="", is_active=True)
    setup.add_all([user, admin, product, config])
    setup.commit()
    order, _ = OrderService(setup).create_transfer_order(
        user.userID, product.productID, 1, "1000.00", "35.00", config
    )
    OrderService(setup).upload_receipt(order.orderID, user.userID, "https://files.example.com/r.pdf")
    order_id, admin_id = order.orderID, admin.userID
    setup.close()

    first, second = SessionLocal(), SessionLocal()
    try:
        # Both admins load the order while it is still pending
        assert first.get(Order, order_id).payment_status is PaymentStatus.PENDING_VERIFICATION
        assert second.get(Order, order_id).payment_status is PaymentStatus.PENDING_VERIFICATION

        OrderService(first).verify_transfer(order_id, admin_id, True)
        with pytest.raises(InvalidTransferState):
            OrderService(second).verify_transfer(order_id, admin_id, False)
    finally:
        first.close()
        second.close()

    check = SessionLocal()
    assert check.get(Order, order_id).payment_status is PaymentStatus.VERIFIED
    check.close()
    engine.dispose()


def test_list_pending_transfers(service, make_user, make_product, discount_config):
    user = make_user()
    admin = make_user(is_admin=True)
    product = make_product()
    waiting = _transfer_order(service, user, product, discount_config)
    done = _transfer_order(service, user, product, discount_config)
    service.upload_receipt(done.orderID, user.userID, "https://files.example.com/r.pdf")
    service.verify_transfer(done.orderID, admin.userID, True)
    service.create_gateway_order(user.userID, product.productID)

    pending = service.list_pending_transfers()

    assert [o.orderID for o in pending] == [waiting.orderID]


# ---------------------------
# Fulfillment
# ---------------------------


def test_status_moves_forward_only(service, make_user, make_product):
    user = make_user()
    admin = make_user(is_admin=True)
    order = service.create_gateway_order(user.userID, make_product().productID)

    service.update_status(order.orderID, OrderStatus.PAGADO, admin.userID)
    service.update_status(
        order.orderID,
        OrderStatus.ENVIADO,
        admin.userID,
        note="Salió del almacén",
        tracking_number="TRK123",
        courier_service="DHL",
    )

    assert order.status is OrderStatus.ENVIADO
    assert order.tracking_number == "TRK123"
    assert order.status_history[-1]["note"] == "Salió del almacén"
    assert order.status_history[-1]["changed_by"] == admin.userID

    with pytest.raises(StateConflictError):
        service.update_status(order.orderID, OrderStatus.PAGADO, admin.userID)
    with pytest.raises(StateConflictError):
        service.update_status(order.orderID, OrderStatus.ENVIADO, admin.userID)


def test_user_cannot_read_other_users_order(service, make_user, make_product):
    owner = make_user()
    other = make_user()
    order = service.create_gateway_order(owner.userID, make_product().productID)
    assert service.get_user_order(order.orderID, owner.userID) is order
    with pytest.raises(NotFoundError):
        service.get_user_order(order.orderID, other.userID)


def test_gateway_payment_approval_marks_paid(service, make_user, make_product):
    user = make_user()
    order = service.create_gateway_order(user.userID, make_product().productID)

    service.apply_gateway_payment(order.orderID, "approved", payment_id="123", payment_method="visa")

    assert order.payment_status is PaymentStatus.APPROVED
    assert order.status is OrderStatus.PAGADO
    assert order.payment_id == "123"

    with pytest.raises(StateConflictError):
        service.apply_gateway_payment(order.orderID, "rejected")


def test_gateway_payment_never_touches_transfer_orders(service, make_user, make_product, discount_config):
    user = make_user()
    order = _transfer_order(service, user, make_product(), discount_config)
    with pytest.raises(StateConflictError):
        service.apply_gateway_payment(order.orderID, "approved")
