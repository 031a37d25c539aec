from __future__ import annotations

from flask import Blueprint, jsonify, request

from mercadoboom.blueprints.common import (
    json_body,
    money,
    payment_gateway,
    require_user,
    serialize_order,
)
from mercadoboom.config import Config
from mercadoboom.database import get_db
from mercadoboom.errors import ValidationError
from mercadoboom.schemas import (
    CreateOrderRequest,
    DirectTransferRequest,
    UploadReceiptRequest,
    WebhookNotification,
    parse_payload,
)
from mercadoboom.services.catalog_service import CatalogService
from mercadoboom.services.order_service import OrderService
from mercadoboom.services.payment_config_service import PaymentConfigService, TransferDiscountService
from mercadoboom.services.payment_service import PaymentService

payments_bp = Blueprint("payments", __name__, url_prefix="/api")


def _get_order_service() -> OrderService:
    return OrderService(get_db())


@payments_bp.route("/orders", methods=["GET"])
def list_orders():
    user = require_user()
    return jsonify([serialize_order(o) for o in _get_order_service().list_user_orders(user.userID)])


@payments_bp.route("/orders/<int:order_id>", methods=["GET"])
def get_order(order_id: int):
    user = require_user()
    return jsonify(serialize_order(_get_order_service().get_user_order(order_id, user.userID)))


@payments_bp.route("/orders", methods=["POST"])
def create_order():
    user = require_user()
    payload = parse_payload(CreateOrderRequest, json_body())
    order = _get_order_service().create_gateway_order(
        user.userID, payload.product_id, payload.quantity, payload.shipping_address_id
    )
    return jsonify({"success": True, "order": serialize_order(order)}), 201


@payments_bp.route("/payments/create-preference", methods=["POST"])
def create_preference():
    user = require_user()
    payload = parse_payload(CreateOrderRequest, json_body())
    db = get_db()
    checkout = PaymentService(db, gateway=payment_gateway()).create_checkout(
        user, payload.product_id, payload.quantity, payload.shipping_address_id
    )
    return jsonify(
        {
            "success": True,
            "order": serialize_order(checkout["order"]),
            "preferenceId": checkout["preferenceId"],
            "initPoint": checkout["initPoint"],
            "sandboxInitPoint": checkout["sandboxInitPoint"],
        }
    )


@payments_bp.route("/payments/create-direct-transfer", methods=["POST"])
def create_direct_transfer():
    user = require_user()
    payload = parse_payload(DirectTransferRequest, json_body())
    db = get_db()
    bank = PaymentConfigService(db).bank_details()
    # Read fresh for this request; the order keeps the amounts it was created with
    discount_config = TransferDiscountService(db).get_config()
    order, quote = _get_order_service().create_transfer_order(
        user.userID,
        payload.product_id,
        payload.quantity,
        payload.original_amount,
        payload.discount_applied,
        discount_config,
        payload.shipping_address_id,
    )
    return jsonify(
        {
            "success": True,
            "order": serialize_order(order),
            "discount": quote.to_dict(),
            "bankDetails": {
                "bankName": bank["bank_name"],
                "clabe": bank["clabe"],
                "accountHolder": bank["account_holder"],
                "reference": order.order_number,
                "amount": money(order.total_amount),
                "instructions": bank["instructions"],
            },
        }
    ), 201


@payments_bp.route("/payments/transfer-quote", methods=["GET"])
def transfer_quote():
    product_id = request.args.get("productId", type=int)
    quantity = request.args.get("quantity", default=1, type=int)
    if product_id is None or quantity < 1:
        raise ValidationError("productId y quantity son obligatorios")
    db = get_db()
    product = CatalogService(db).get_product(product_id)
    quote = OrderService.quote_for_product(product, quantity, TransferDiscountService(db).get_config())
    return jsonify(quote.to_dict())


@payments_bp.route("/payments/config", methods=["GET"])
def payment_config():
    return jsonify(
        {
            "publicKey": Config.MERCADOPAGO_PUBLIC_KEY,
            "env": Config.APP_ENV,
            "activePaymentMethods": PaymentConfigService(get_db()).active_methods(),
        }
    )


@payments_bp.route("/payments/webhook", methods=["POST"])
def payment_webhook():
    body = json_body()
    notification = parse_payload(WebhookNotification, body)
    # MercadoPago also sends the topic and id as query parameters
    topic = notification.type or request.args.get("type") or request.args.get("topic")
    data = dict(notification.data)
    if "id" not in data and request.args.get("data.id"):
        data["id"] = request.args.get("data.id")
    order = PaymentService(get_db(), gateway=payment_gateway()).process_webhook(topic, data)
    return jsonify({"received": True, "orderId": order.orderID if order else None})


@payments_bp.route("/upload-receipt", methods=["POST"])
def upload_receipt():
    user = require_user()
    payload = parse_payload(UploadReceiptRequest, json_body())
    order = _get_order_service().upload_receipt(payload.order_id, user.userID, payload.receipt_url)
    return jsonify(
        {
            "success": True,
            "message": "Comprobante subido. Verificaremos tu pago en 24-48 horas",
            "order": serialize_order(order),
        }
    )
