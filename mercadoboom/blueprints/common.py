"""Helpers shared by the JSON blueprints: session auth, service wiring, serializers."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from flask import current_app, g, request, session

from mercadoboom.database import get_db
from mercadoboom.errors import AuthError, PermissionDeniedError
from mercadoboom.models import Banner, Order, Product, SpecialOffer, SupportTicket, TicketMessage, User
from mercadoboom.schemas import StatusHistoryEntry
from mercadoboom.services.auth_service import BLOCKED_MESSAGE
from mercadoboom.services.notification_service import NotificationService
from mercadoboom.services.payment_service import MercadoPagoGateway


def current_user() -> Optional[User]:
    if "current_user" not in g:
        user_id = session.get("user_id")
        g.current_user = get_db().query(User).filter_by(userID=user_id).first() if user_id else None
    return g.current_user


def require_user() -> User:
    user = current_user()
    if user is None:
        raise AuthError("Usuario no autenticado")
    if user.is_blocked:
        session.clear()
        raise AuthError(BLOCKED_MESSAGE)
    return user


def require_admin() -> User:
    user = require_user()
    if not user.is_admin:
        raise PermissionDeniedError("Se requiere acceso de administrador")
    return user


def json_body() -> Dict[str, Any]:
    return request.get_json(silent=True) or {}


def client_ip() -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For", "")
    return forwarded.split(",")[0].strip() or request.remote_addr


def notification_service() -> NotificationService:
    # Tests and alternative deployments can register their own channels here
    service = current_app.extensions.get("mercadoboom.notifications")
    return service or NotificationService()


def payment_gateway() -> MercadoPagoGateway:
    gateway = current_app.extensions.get("mercadoboom.gateway")
    return gateway or MercadoPagoGateway()


# ---------------------------
# Serializers
# ---------------------------


def serialize_dt(value: Optional[datetime]) -> Optional[str]:
    if not value:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def money(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(Decimal(str(value)).quantize(Decimal("0.01")))


def serialize_user(user: User, include_admin_fields: bool = False) -> Dict[str, Any]:
    body = {
        "id": user.userID,
        "username": user.username,
        "email": user.email,
        "fullName": user.full_name,
        "phone": user.phone,
        "isAdmin": bool(user.is_admin),
        "twoFactorEnabled": bool(user.two_factor_enabled),
        "twoFactorMethod": enum_value(user.two_factor_method),
        "isEmailVerified": bool(user.is_email_verified),
        "isPhoneVerified": bool(user.is_phone_verified),
        "isBlocked": bool(user.is_blocked),
        "createdAt": serialize_dt(user.created_at),
    }
    if include_admin_fields:
        body.update(
            {
                "blockReason": user.block_reason,
                "blockedAt": serialize_dt(user.blocked_at),
                "blockedBy": user.blocked_by,
            }
        )
    return body


def serialize_product(product: Product) -> Dict[str, Any]:
    return {
        "id": product.productID,
        "name": product.name,
        "description": product.description,
        "price": money(product.price),
        "originalPrice": money(product.original_price),
        "categoryId": product.categoryID,
        "category": product.category.name if product.category else None,
        "imageUrl": product.image_url,
        "stock": product.stock,
        "promotionType": product.promotion_type,
        "isActive": bool(product.is_active),
        "isFeatured": bool(product.is_featured),
        "allowTransferDiscount": bool(product.allow_transfer_discount),
    }


def serialize_order(order: Order) -> Dict[str, Any]:
    product = order.product
    return {
        "id": order.orderID,
        "orderNumber": order.order_number,
        "userId": order.userID,
        "productId": order.productID,
        "productName": product.name if product else None,
        "quantity": order.quantity,
        "totalAmount": money(order.total_amount),
        "originalAmount": money(order.original_amount),
        "discountApplied": money(order.discount_applied),
        "status": enum_value(order.status),
        "paymentStatus": enum_value(order.payment_status),
        "paymentType": enum_value(order.payment_type),
        "paymentId": order.payment_id,
        "preferenceId": order.preference_id,
        "paymentMethod": order.payment_method,
        "transferReceiptUrl": order.transfer_receipt_url,
        "transferVerifiedAt": serialize_dt(order.transfer_verified_at),
        "transferVerifiedBy": order.transfer_verified_by,
        "transferNotes": order.transfer_notes,
        "shippingAddressId": order.shipping_addressID,
        "trackingNumber": order.tracking_number,
        "courierService": order.courier_service,
        "statusHistory": [
            StatusHistoryEntry.model_validate(entry).model_dump(mode="json")
            for entry in order.status_history or []
        ],
        "createdAt": serialize_dt(order.created_at),
        "updatedAt": serialize_dt(order.updated_at),
    }


def serialize_banner(banner: Banner) -> Dict[str, Any]:
    return {
        "id": banner.bannerID,
        "title": banner.title,
        "subtitle": banner.subtitle,
        "imageUrl": banner.image_url,
        "buttonText": banner.button_text,
        "buttonLink": banner.button_link,
        "backgroundColor": banner.background_color,
        "textColor": banner.text_color,
        "isTransparent": bool(banner.is_transparent),
        "isActive": bool(banner.is_active),
        "displayOrder": banner.display_order,
        "startDate": serialize_dt(banner.start_date),
        "endDate": serialize_dt(banner.end_date),
    }


def serialize_offer(offer: SpecialOffer) -> Dict[str, Any]:
    return {
        "id": offer.offerID,
        "title": offer.title,
        "description": offer.description,
        "discountPercentage": offer.discount_percentage,
        "originalPrice": money(offer.original_price),
        "offerPrice": money(offer.offer_price),
        "imageUrl": offer.image_url,
        "productId": offer.productID,
        "offerType": enum_value(offer.offer_type),
        "isActive": bool(offer.is_active),
        "displayOrder": offer.display_order,
        "startDate": serialize_dt(offer.start_date),
        "endDate": serialize_dt(offer.end_date),
    }


def serialize_ticket(ticket: SupportTicket) -> Dict[str, Any]:
    return {
        "id": ticket.ticketID,
        "ticketNumber": ticket.ticket_number,
        "userId": ticket.userID,
        "name": ticket.name,
        "email": ticket.email,
        "subject": ticket.subject,
        "description": ticket.description,
        "category": enum_value(ticket.category),
        "priority": enum_value(ticket.priority),
        "status": enum_value(ticket.status),
        "orderId": ticket.orderID,
        "attachments": list(ticket.attachments or []),
        "assignedTo": ticket.assigned_to,
        "adminNotes": ticket.admin_notes,
        "resolution": ticket.resolution,
        "createdAt": serialize_dt(ticket.created_at),
        "updatedAt": serialize_dt(ticket.updated_at),
        "resolvedAt": serialize_dt(ticket.resolved_at),
    }


def serialize_message(message: TicketMessage) -> Dict[str, Any]:
    return {
        "id": message.messageID,
        "ticketId": message.ticketID,
        "senderId": message.senderID,
        "senderType": enum_value(message.sender_type),
        "senderName": message.sender_name,
        "message": message.message,
        "attachments": list(message.attachments or []),
        "isInternal": bool(message.is_internal),
        "createdAt": serialize_dt(message.created_at),
    }
