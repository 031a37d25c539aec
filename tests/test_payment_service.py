import json

import pytest

from mercadoboom.config import Config
from mercadoboom.errors import ChannelDeliveryError, ValidationError
from mercadoboom.models import OrderStatus, PaymentStatus
from mercadoboom.observability.metrics import counter_total
from mercadoboom.services.payment_service import MercadoPagoGateway, PaymentService


class _GatewayConfig(Config):
    MERCADOPAGO_ACCESS_TOKEN = "TEST-access-token"
    MERCADOPAGO_API_URL = "https://mp.test"
    PUBLIC_BASE_URL = "https://shop.test/"


@pytest.fixture
def gateway(mp_session):
    return MercadoPagoGateway(_GatewayConfig, session=mp_session)


@pytest.fixture
def service(db_session, gateway):
    return PaymentService(db_session, gateway=gateway, config=_GatewayConfig)


def test_create_checkout_builds_preference(service, fake_mp, make_user, make_product):
    user = make_user()
    product = make_product(price="499.90")

    checkout = service.create_checkout(user, product.productID, 2)

    assert checkout["preferenceId"] == "pref-123"
    assert checkout["initPoint"] == "https://mp.test/init"
    assert checkout["order"].preference_id == "pref-123"
    request = fake_mp.requests[0]
    assert request.headers["Authorization"] == "Bearer TEST-access-token"
    body = json.loads(request.body)
    assert body["external_reference"] == str(checkout["order"].orderID)
    assert body["items"][0]["quantity"] == 2
    assert body["notification_url"] == "https://shop.test/api/payments/webhook"


def test_gateway_http_error_is_delivery_error(service, fake_mp, make_user, make_product):
    fake_mp.fail_with = 500
    with pytest.raises(ChannelDeliveryError) as exc_info:
        service.create_checkout(make_user(), make_product().productID, 1)
    assert exc_info.value.retryable is True
    assert counter_total("mercadopago_errors_total") == 1


def test_gateway_without_token_refuses(fake_mp, mp_session):
    class _NoToken(_GatewayConfig):
        MERCADOPAGO_ACCESS_TOKEN = ""

    with pytest.raises(ChannelDeliveryError):
        MercadoPagoGateway(_NoToken, session=mp_session).get_payment("1")
    assert fake_mp.requests == []


def test_webhook_approves_order(service, fake_mp, make_user, make_product):
    checkout = service.create_checkout(make_user(), make_product().productID, 1)
    order = checkout["order"]
    fake_mp.payments["987"] = {
        "id": 987,
        "status": "approved",
        "external_reference": str(order.orderID),
        "payment_method_id": "visa",
    }

    result = service.process_webhook("payment", {"id": "987"})

    assert result.orderID == order.orderID
    assert order.payment_status is PaymentStatus.APPROVED
    assert order.status is OrderStatus.PAGADO
    assert order.payment_method == "visa"


def test_webhook_replay_is_acknowledged(service, fake_mp, make_user, make_product):
    order = service.create_checkout(make_user(), make_product().productID, 1)["order"]
    fake_mp.payments["1"] = {"id": 1, "status": "approved", "external_reference": str(order.orderID)}
    fake_mp.payments["2"] = {"id": 2, "status": "rejected", "external_reference": str(order.orderID)}
    service.process_webhook("payment", {"id": "1"})

    # An approved order cannot be rejected by a late notification
    assert service.process_webhook("payment", {"id": "2"}) is None
    assert order.payment_status is PaymentStatus.APPROVED


def test_webhook_ignores_other_topics(service, fake_mp):
    assert service.process_webhook("merchant_order", {"id": "5"}) is None
    assert fake_mp.requests == []


def test_webhook_requires_payment_id(service):
    with pytest.raises(ValidationError):
        service.process_webhook("payment", {})
