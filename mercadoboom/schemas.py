"""Pydantic models for request payloads and JSON-typed columns."""
from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from mercadoboom.errors import ValidationError
from mercadoboom.models import (
    OfferType,
    OrderStatus,
    TicketCategory,
    TicketPriority,
    TicketStatus,
)

ModelT = TypeVar("ModelT", bound=BaseModel)


class _Payload(BaseModel):
    """Request bodies accept both the camelCase keys sent by the storefront and snake_case."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def parse_payload(model: Type[ModelT], data: Optional[Dict[str, Any]]) -> ModelT:
    try:
        return model.model_validate(data or {})
    except PydanticValidationError as exc:
        issues = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        raise ValidationError("Datos inválidos", details=issues) from exc


# ---------- JSON columns ----------
class StatusHistoryEntry(BaseModel):
    status: OrderStatus
    timestamp: datetime
    note: Optional[str] = None
    changed_by: Optional[int] = None


class Attachment(BaseModel):
    url: str
    filename: Optional[str] = None
    content_type: Optional[str] = None


class _GatewaySettings(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class MercadoPagoSettings(_GatewaySettings):
    public_key: str = ""
    access_token: str = ""
    webhook_url: str = "/api/payments/webhook"
    statement_descriptor: str = "MERCADOBOOM"


class BankTransferSettings(_GatewaySettings):
    bank_name: str
    clabe: str = Field(min_length=18, max_length=18)
    account_holder: str
    account_number: Optional[str] = None
    instructions: List[str] = Field(default_factory=list)


class ConektaSettings(_GatewaySettings):
    public_key: str = ""
    private_key: str = ""
    webhook_url: str = "/api/payments/conekta-webhook"
    note: Optional[str] = None


PAYMENT_CONFIG_SCHEMAS: Dict[str, Type[BaseModel]] = {
    "mercadopago": MercadoPagoSettings,
    "bank_transfer": BankTransferSettings,
    "conekta": ConektaSettings,
}


def validate_gateway_settings(config_key: str, raw: Any) -> Dict[str, Any]:
    """Validate a gateway configuration blob against the model registered for its key."""
    schema = PAYMENT_CONFIG_SCHEMAS.get(config_key)
    if schema is None:
        raise ValidationError(f"Método de pago desconocido: {config_key}")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw or "{}")
        except json.JSONDecodeError as exc:
            raise ValidationError("La configuración debe ser un JSON válido") from exc
    return parse_payload(schema, raw).model_dump()


# ---------- Security ----------
class SendCodeRequest(_Payload):
    action: str = Field(min_length=1, max_length=64)


class VerifyCodeRequest(_Payload):
    action: str = Field(min_length=1, max_length=64)
    code: str = Field(min_length=4, max_length=12)


class UpdateTwoFactorRequest(_Payload):
    enabled: bool
    method: Optional[str] = None


class CheckRequiredRequest(_Payload):
    action: str


# ---------- Accounts ----------
class RegisterRequest(_Payload):
    username: str = Field(min_length=3, max_length=255)
    email: EmailStr
    password: str = Field(min_length=8)
    full_name: Optional[str] = Field(default=None, alias="fullName")
    phone: Optional[str] = None


class LoginRequest(_Payload):
    username: str
    password: str


class ProfileUpdateRequest(_Payload):
    username: Optional[str] = Field(default=None, min_length=3)
    email: Optional[EmailStr] = None
    full_name: Optional[str] = Field(default=None, alias="fullName")
    phone: Optional[str] = None


class PasswordResetRequest(_Payload):
    identifier: str = Field(min_length=1)
    method: Literal["username", "email", "phone"]


class PasswordResetConfirm(_Payload):
    identifier: str = Field(min_length=1)
    method: Literal["username", "email", "phone"]
    token: str = Field(min_length=1, alias="resetToken")
    new_password: str = Field(min_length=8, alias="newPassword")


class BlockUserRequest(_Payload):
    reason: str = Field(min_length=1)


class SetPasswordRequest(_Payload):
    new_password: str = Field(min_length=8, alias="newPassword")


class AddressRequest(_Payload):
    title: Optional[str] = None
    street: str
    city: str
    state: str
    postal_code: str = Field(alias="postalCode")
    country: str = "México"
    is_default: bool = Field(default=False, alias="isDefault")


class ProductPayload(_Payload):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    price: Decimal = Field(gt=0)
    original_price: Optional[Decimal] = Field(default=None, gt=0, alias="originalPrice")
    category_id: Optional[int] = Field(default=None, alias="categoryId")
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    stock: int = Field(default=0, ge=0)
    promotion_type: Optional[str] = Field(default=None, alias="promotionType")
    is_active: bool = Field(default=True, alias="isActive")
    is_featured: bool = Field(default=False, alias="isFeatured")
    allow_transfer_discount: bool = Field(default=True, alias="allowTransferDiscount")


# ---------- Orders & payments ----------
class CreateOrderRequest(_Payload):
    product_id: int = Field(alias="productId")
    quantity: int = Field(default=1, ge=1)
    shipping_address_id: Optional[int] = Field(default=None, alias="shippingAddressId")


class DirectTransferRequest(CreateOrderRequest):
    original_amount: Optional[Decimal] = Field(default=None, alias="originalAmount")
    discount_applied: Optional[Decimal] = Field(default=None, alias="discountApplied")


class UploadReceiptRequest(_Payload):
    order_id: int = Field(alias="orderId")
    receipt_url: str = Field(min_length=1, alias="receiptUrl")


class VerifyTransferRequest(_Payload):
    order_id: int = Field(alias="orderId")
    verified: bool
    notes: Optional[str] = None


class OrderStatusUpdateRequest(_Payload):
    status: OrderStatus
    note: Optional[str] = None
    tracking_number: Optional[str] = Field(default=None, alias="trackingNumber")
    courier_service: Optional[str] = Field(default=None, alias="courierService")


class WebhookNotification(_Payload):
    type: Optional[str] = None
    action: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


# ---------- Admin configuration ----------
class PaymentConfigCreate(_Payload):
    config_key: str = Field(alias="configKey")
    display_name: str = Field(alias="displayName")
    is_active: bool = Field(default=False, alias="isActive")
    config: Any = Field(default_factory=dict)


class PaymentConfigUpdate(_Payload):
    display_name: Optional[str] = Field(default=None, alias="displayName")
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    config: Any = None


class TransferDiscountUpdate(_Payload):
    discount_percentage: Decimal = Field(alias="discountPercentage")
    discount_text: Optional[str] = Field(default=None, alias="discountText")
    is_active: Optional[bool] = Field(default=None, alias="isActive")

    @field_validator("discount_percentage")
    @classmethod
    def _within_percent_range(cls, value: Decimal) -> Decimal:
        if value < 0 or value > 100:
            raise ValueError("El porcentaje debe estar entre 0 y 100")
        return value


class BannerPayload(_Payload):
    title: str = Field(min_length=1)
    subtitle: Optional[str] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    button_text: Optional[str] = Field(default=None, alias="buttonText")
    button_link: Optional[str] = Field(default=None, alias="buttonLink")
    background_color: str = Field(default="#ff4444", alias="backgroundColor")
    text_color: str = Field(default="#ffffff", alias="textColor")
    is_transparent: bool = Field(default=False, alias="isTransparent")
    is_active: bool = Field(default=True, alias="isActive")
    display_order: int = Field(default=0, alias="displayOrder")
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")


class SpecialOfferPayload(_Payload):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    discount_percentage: int = Field(default=0, ge=0, le=100, alias="discountPercentage")
    original_price: Optional[Decimal] = Field(default=None, alias="originalPrice")
    offer_price: Optional[Decimal] = Field(default=None, alias="offerPrice")
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    product_id: Optional[int] = Field(default=None, alias="productId")
    offer_type: OfferType = Field(default=OfferType.OFERTA, alias="offerType")
    is_active: bool = Field(default=True, alias="isActive")
    display_order: int = Field(default=0, alias="displayOrder")
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")


# ---------- Support ----------
class CreateTicketRequest(_Payload):
    subject: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=10)
    category: TicketCategory
    priority: TicketPriority = TicketPriority.MEDIO
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    order_id: Optional[int] = Field(default=None, alias="orderId")
    attachments: List[Attachment] = Field(default_factory=list)


class TicketMessageRequest(_Payload):
    message: str = Field(min_length=1)
    attachments: List[Attachment] = Field(default_factory=list)
    is_internal: bool = Field(default=False, alias="isInternal")


class TicketUpdateRequest(_Payload):
    status: Optional[TicketStatus] = None
    priority: Optional[TicketPriority] = None
    assigned_to: Optional[int] = Field(default=None, alias="assignedTo")
    admin_notes: Optional[str] = Field(default=None, alias="adminNotes")
    resolution: Optional[str] = None
