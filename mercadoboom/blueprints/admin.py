from __future__ import annotations

import json
from typing import Any, Dict

from flask import Blueprint, jsonify, request

from mercadoboom.blueprints.common import (
    json_body,
    money,
    notification_service,
    require_admin,
    serialize_banner,
    serialize_dt,
    serialize_offer,
    serialize_order,
    serialize_product,
    serialize_ticket,
    serialize_user,
)
from mercadoboom.database import get_db
from mercadoboom.errors import ValidationError
from mercadoboom.models import OrderStatus, PaymentConfig, TransferDiscountConfig
from mercadoboom.observability.business_metrics import compute_admin_stats, compute_support_stats
from mercadoboom.schemas import (
    BannerPayload,
    BlockUserRequest,
    OrderStatusUpdateRequest,
    PaymentConfigCreate,
    PaymentConfigUpdate,
    ProductPayload,
    SetPasswordRequest,
    SpecialOfferPayload,
    TicketUpdateRequest,
    TransferDiscountUpdate,
    VerifyTransferRequest,
    parse_payload,
)
from mercadoboom.services.auth_service import AuthService
from mercadoboom.services.catalog_service import CatalogService
from mercadoboom.services.order_service import OrderService
from mercadoboom.services.payment_config_service import PaymentConfigService, TransferDiscountService
from mercadoboom.services.promotion_service import PromotionService
from mercadoboom.services.support_service import SupportService

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


@admin_bp.before_request
def _admins_only():
    require_admin()


def _serialize_payment_config(row: PaymentConfig) -> Dict[str, Any]:
    return {
        "id": row.configID,
        "configKey": row.config_key,
        "displayName": row.display_name,
        "isActive": bool(row.is_active),
        "config": json.loads(row.config or "{}"),
        "createdAt": serialize_dt(row.created_at),
        "updatedAt": serialize_dt(row.updated_at),
    }


def _serialize_discount_config(row: TransferDiscountConfig) -> Dict[str, Any]:
    return {
        "id": row.configID,
        "discountPercentage": money(row.discount_percentage),
        "discountText": row.discount_text,
        "isActive": bool(row.is_active),
        "updatedBy": row.updated_by,
        "updatedAt": serialize_dt(row.updated_at),
    }


# ---------------------------
# Direct transfers
# ---------------------------


@admin_bp.route("/verify-transfer", methods=["POST"])
def verify_transfer():
    admin = require_admin()
    payload = parse_payload(VerifyTransferRequest, json_body())
    order = OrderService(get_db()).verify_transfer(
        payload.order_id, admin.userID, payload.verified, payload.notes
    )
    message = "Transferencia verificada" if payload.verified else "Transferencia rechazada"
    return jsonify({"success": True, "message": message, "order": serialize_order(order)})


@admin_bp.route("/pending-transfers", methods=["GET"])
def pending_transfers():
    orders = OrderService(get_db()).list_pending_transfers()
    return jsonify([serialize_order(o) for o in orders])


# ---------------------------
# Orders
# ---------------------------


@admin_bp.route("/orders", methods=["GET"])
def list_orders():
    status = request.args.get("status")
    try:
        status_filter = OrderStatus(status) if status else None
    except ValueError as exc:
        raise ValidationError(f"Estado de pedido desconocido: {status}") from exc
    orders = OrderService(get_db()).list_all_orders(status_filter)
    return jsonify([serialize_order(o) for o in orders])


@admin_bp.route("/orders/<int:order_id>/status", methods=["PATCH"])
def update_order_status(order_id: int):
    admin = require_admin()
    payload = parse_payload(OrderStatusUpdateRequest, json_body())
    order = OrderService(get_db()).update_status(
        order_id,
        payload.status,
        admin.userID,
        note=payload.note,
        tracking_number=payload.tracking_number,
        courier_service=payload.courier_service,
    )
    return jsonify({"success": True, "order": serialize_order(order)})


# ---------------------------
# Payment configuration
# ---------------------------


@admin_bp.route("/payment-config", methods=["GET"])
def list_payment_configs():
    rows = PaymentConfigService(get_db()).list_configs()
    return jsonify([_serialize_payment_config(r) for r in rows])


@admin_bp.route("/payment-config", methods=["POST"])
def create_payment_config():
    payload = parse_payload(PaymentConfigCreate, json_body())
    row = PaymentConfigService(get_db()).create_config(
        payload.config_key, payload.display_name, payload.config, is_active=payload.is_active
    )
    return jsonify(_serialize_payment_config(row)), 201


@admin_bp.route("/payment-config/<int:config_id>", methods=["PATCH"])
def update_payment_config(config_id: int):
    payload = parse_payload(PaymentConfigUpdate, json_body())
    row = PaymentConfigService(get_db()).update_config(
        config_id,
        display_name=payload.display_name,
        is_active=payload.is_active,
        settings=payload.config,
    )
    return jsonify(_serialize_payment_config(row))


@admin_bp.route("/transfer-discount-config", methods=["GET"])
def get_transfer_discount_config():
    return jsonify(_serialize_discount_config(TransferDiscountService(get_db()).get_config()))


@admin_bp.route("/transfer-discount-config", methods=["PUT"])
def update_transfer_discount_config():
    admin = require_admin()
    payload = parse_payload(TransferDiscountUpdate, json_body())
    row = TransferDiscountService(get_db()).update_config(
        payload.discount_percentage,
        admin.userID,
        discount_text=payload.discount_text,
        is_active=payload.is_active,
    )
    return jsonify(_serialize_discount_config(row))


# ---------------------------
# Products
# ---------------------------


def _product_fields(payload: ProductPayload) -> Dict[str, Any]:
    fields = payload.model_dump()
    fields["categoryID"] = fields.pop("category_id")
    return fields


@admin_bp.route("/products", methods=["GET"])
def list_products():
    return jsonify([serialize_product(p) for p in CatalogService(get_db()).list_all_products()])


@admin_bp.route("/products", methods=["POST"])
def create_product():
    payload = parse_payload(ProductPayload, json_body())
    product = CatalogService(get_db()).create_product(_product_fields(payload))
    return jsonify(serialize_product(product)), 201


@admin_bp.route("/products/<int:product_id>", methods=["PATCH"])
def update_product(product_id: int):
    service = CatalogService(get_db())
    merged = {**serialize_product(service.get_any_product(product_id)), **json_body()}
    payload = parse_payload(ProductPayload, merged)
    return jsonify(serialize_product(service.update_product(product_id, _product_fields(payload))))


@admin_bp.route("/products/<int:product_id>", methods=["DELETE"])
def deactivate_product(product_id: int):
    product = CatalogService(get_db()).deactivate_product(product_id)
    return jsonify({"success": True, "product": serialize_product(product)})


# ---------------------------
# Banners & special offers
# ---------------------------


def _offer_fields(payload: SpecialOfferPayload) -> Dict[str, Any]:
    fields = payload.model_dump()
    fields["productID"] = fields.pop("product_id")
    return fields


@admin_bp.route("/banners", methods=["GET"])
def list_banners():
    return jsonify([serialize_banner(b) for b in PromotionService(get_db()).list_banners()])


@admin_bp.route("/banners", methods=["POST"])
def create_banner():
    payload = parse_payload(BannerPayload, json_body())
    banner = PromotionService(get_db()).create_banner(payload.model_dump())
    return jsonify(serialize_banner(banner)), 201


@admin_bp.route("/banners/<int:banner_id>", methods=["GET"])
def get_banner(banner_id: int):
    return jsonify(serialize_banner(PromotionService(get_db()).get_banner(banner_id)))


@admin_bp.route("/banners/<int:banner_id>", methods=["PUT"])
def update_banner(banner_id: int):
    service = PromotionService(get_db())
    # Fields missing from the body keep their stored values
    merged = {**serialize_banner(service.get_banner(banner_id)), **json_body()}
    payload = parse_payload(BannerPayload, merged)
    return jsonify(serialize_banner(service.update_banner(banner_id, payload.model_dump())))


@admin_bp.route("/banners/<int:banner_id>", methods=["DELETE"])
def delete_banner(banner_id: int):
    PromotionService(get_db()).delete_banner(banner_id)
    return jsonify({"success": True})


@admin_bp.route("/special-offers", methods=["GET"])
def list_offers():
    return jsonify([serialize_offer(o) for o in PromotionService(get_db()).list_offers()])


@admin_bp.route("/special-offers", methods=["POST"])
def create_offer():
    payload = parse_payload(SpecialOfferPayload, json_body())
    offer = PromotionService(get_db()).create_offer(_offer_fields(payload))
    return jsonify(serialize_offer(offer)), 201


@admin_bp.route("/special-offers/<int:offer_id>", methods=["GET"])
def get_offer(offer_id: int):
    return jsonify(serialize_offer(PromotionService(get_db()).get_offer(offer_id)))


@admin_bp.route("/special-offers/<int:offer_id>", methods=["PUT"])
def update_offer(offer_id: int):
    service = PromotionService(get_db())
    merged = {**serialize_offer(service.get_offer(offer_id)), **json_body()}
    payload = parse_payload(SpecialOfferPayload, merged)
    return jsonify(serialize_offer(service.update_offer(offer_id, _offer_fields(payload))))


@admin_bp.route("/special-offers/<int:offer_id>", methods=["DELETE"])
def delete_offer(offer_id: int):
    PromotionService(get_db()).delete_offer(offer_id)
    return jsonify({"success": True})


# ---------------------------
# Users
# ---------------------------


def _get_auth_service() -> AuthService:
    return AuthService(get_db(), notification_service=notification_service())


@admin_bp.route("/users", methods=["GET"])
def list_users():
    users = _get_auth_service().list_users()
    return jsonify([serialize_user(u, include_admin_fields=True) for u in users])


@admin_bp.route("/users/<int:user_id>/block", methods=["POST"])
def block_user(user_id: int):
    admin = require_admin()
    payload = parse_payload(BlockUserRequest, json_body())
    user = _get_auth_service().block_user(user_id, admin.userID, payload.reason)
    return jsonify({"success": True, "user": serialize_user(user, include_admin_fields=True)})


@admin_bp.route("/users/<int:user_id>/unblock", methods=["POST"])
def unblock_user(user_id: int):
    admin = require_admin()
    user = _get_auth_service().unblock_user(user_id, admin.userID)
    return jsonify({"success": True, "user": serialize_user(user, include_admin_fields=True)})


@admin_bp.route("/users/<int:user_id>/password", methods=["PUT"])
def set_user_password(user_id: int):
    admin = require_admin()
    payload = parse_payload(SetPasswordRequest, json_body())
    _get_auth_service().set_password(user_id, payload.new_password, admin.userID)
    return jsonify({"success": True, "message": "Contraseña actualizada"})


# ---------------------------
# Dashboards & support
# ---------------------------


@admin_bp.route("/stats", methods=["GET"])
def admin_stats():
    return jsonify(compute_admin_stats(get_db()))


@admin_bp.route("/support/stats", methods=["GET"])
def support_stats():
    return jsonify(compute_support_stats(get_db()))


@admin_bp.route("/support/tickets/<int:ticket_id>", methods=["PATCH"])
def update_ticket(ticket_id: int):
    payload = parse_payload(TicketUpdateRequest, json_body())
    ticket = SupportService(get_db()).update_ticket(
        ticket_id,
        status=payload.status,
        priority=payload.priority,
        assigned_to=payload.assigned_to,
        admin_notes=payload.admin_notes,
        resolution=payload.resolution,
    )
    return jsonify({"success": True, "ticket": serialize_ticket(ticket)})
