# mercadoboom/models.py
from enum import Enum, Flag, auto
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    Boolean,
    Text,
    JSON,
    Enum as SAEnum,
    and_,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import relationship

# Use a single, shared Base for all models
from mercadoboom.database import Base
from mercadoboom.errors import StateConflictError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Channel(Flag):
    EMAIL = auto()
    SMS = auto()
    WHATSAPP = auto()


class TwoFactorMethod(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"
    EMAIL_SMS = "email_sms"
    EMAIL_WHATSAPP = "email_whatsapp"
    SMS_WHATSAPP = "sms_whatsapp"
    ALL = "all"

    @classmethod
    def parse(cls, value: str) -> "TwoFactorMethod":
        # "both" predates the per-channel combinations
        if value == "both":
            return cls.EMAIL_SMS
        return cls(value)

    @property
    def channels(self) -> Channel:
        return _METHOD_CHANNELS[self]


_METHOD_CHANNELS = {
    TwoFactorMethod.EMAIL: Channel.EMAIL,
    TwoFactorMethod.SMS: Channel.SMS,
    TwoFactorMethod.WHATSAPP: Channel.WHATSAPP,
    TwoFactorMethod.EMAIL_SMS: Channel.EMAIL | Channel.SMS,
    TwoFactorMethod.EMAIL_WHATSAPP: Channel.EMAIL | Channel.WHATSAPP,
    TwoFactorMethod.SMS_WHATSAPP: Channel.SMS | Channel.WHATSAPP,
    TwoFactorMethod.ALL: Channel.EMAIL | Channel.SMS | Channel.WHATSAPP,
}


class OrderStatus(str, Enum):
    PENDIENTE = "PENDIENTE"
    PAGADO = "PAGADO"
    EN_PREPARACION = "EN_PREPARACION"
    RECOGIDO = "RECOGIDO"
    ENVIADO = "ENVIADO"
    EN_RUTA = "EN_RUTA"
    ENTREGADO = "ENTREGADO"


ORDER_STATUS_SEQUENCE = list(OrderStatus)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"


class PaymentType(str, Enum):
    MERCADOPAGO = "mercadopago"
    DIRECT_TRANSFER = "direct_transfer"


class TicketStatus(str, Enum):
    ABIERTO = "ABIERTO"
    EN_PROCESO = "EN_PROCESO"
    ESPERANDO_CLIENTE = "ESPERANDO_CLIENTE"
    RESUELTO = "RESUELTO"
    CERRADO = "CERRADO"


class TicketCategory(str, Enum):
    PEDIDO = "PEDIDO"
    PAGO = "PAGO"
    TECNICO = "TECNICO"
    DEVOLUCION = "DEVOLUCION"
    OTRO = "OTRO"


class TicketPriority(str, Enum):
    BAJO = "BAJO"
    MEDIO = "MEDIO"
    ALTO = "ALTO"
    URGENTE = "URGENTE"


class SenderType(str, Enum):
    CLIENTE = "CLIENTE"
    ADMIN = "ADMIN"


class OfferType(str, Enum):
    BOOM = "BOOM"
    OFERTA = "OFERTA"
    RELAMPAGO = "RELAMPAGO"
    ESPECIAL = "ESPECIAL"


class User(Base):
    __tablename__ = 'User'
    userID = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), unique=True, nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    passwordHash = Column(String(255), nullable=False)
    full_name = Column(String(255))
    phone = Column(String(32))
    is_admin = Column(Boolean, default=False, nullable=False)

    two_factor_enabled = Column(Boolean, default=False, nullable=False)
    two_factor_method = Column(
        SAEnum(TwoFactorMethod, name="two_factor_method", native_enum=False, validate_strings=True,
               values_callable=lambda enum: [member.value for member in enum]),
        default=TwoFactorMethod.EMAIL,
        nullable=False,
    )
    is_email_verified = Column(Boolean, default=False, nullable=False)
    is_phone_verified = Column(Boolean, default=False, nullable=False)

    reset_token = Column(String(128))
    reset_token_expiry = Column(DateTime(timezone=True))

    is_blocked = Column(Boolean, default=False, nullable=False)
    block_reason = Column(Text)
    blocked_at = Column(DateTime(timezone=True))
    blocked_by = Column(Integer, ForeignKey('User.userID'))

    created_at = Column(DateTime(timezone=True), default=_utcnow)

    orders = relationship("Order", back_populates="user", foreign_keys="Order.userID")
    addresses = relationship("Address", back_populates="user")
    security_logs = relationship("SecurityLog", back_populates="user")


class SecurityLog(Base):
    __tablename__ = 'SecurityLog'

    logID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False, index=True)
    action = Column(String(64), nullable=False)
    method = Column(String(32), nullable=False)
    code = Column(String(12), nullable=False)
    verified = Column(Boolean, default=False, nullable=False)
    superseded = Column(Boolean, default=False, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    ip_address = Column(String(64))
    user_agent = Column(String(512))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    verified_at = Column(DateTime(timezone=True))

    user = relationship("User", back_populates="security_logs")

    @hybrid_property
    def is_pending(self) -> bool:
        return not self.verified and not self.superseded

    @is_pending.expression
    def is_pending(cls):
        return and_(cls.verified.is_(False), cls.superseded.is_(False))

    def is_expired(self, now: datetime) -> bool:
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return now > expires_at


class Category(Base):
    __tablename__ = 'Category'

    categoryID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), unique=True, nullable=False)
    emoji = Column(String(16))
    is_active = Column(Boolean, default=True, nullable=False)

    products = relationship("Product", back_populates="category")


class Product(Base):
    __tablename__ = 'Product'

    productID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    price = Column(Numeric(10, 2), nullable=False)
    original_price = Column(Numeric(10, 2))
    categoryID = Column(Integer, ForeignKey('Category.categoryID'))
    image_url = Column(String(512))
    stock = Column(Integer, default=0, nullable=False)
    promotion_type = Column(String(32))
    is_active = Column(Boolean, default=True, nullable=False)
    is_featured = Column(Boolean, default=False, nullable=False)
    allow_transfer_discount = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    category = relationship("Category", back_populates="products")

    def subtotal_for_quantity(self, quantity: int) -> Decimal:
        return Decimal(str(self.price)) * quantity


class Address(Base):
    __tablename__ = 'Address'

    addressID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    title = Column(String(120))
    street = Column(String(255), nullable=False)
    city = Column(String(120), nullable=False)
    state = Column(String(120), nullable=False)
    postal_code = Column(String(20), nullable=False)
    country = Column(String(80), default="México", nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    user = relationship("User", back_populates="addresses")


class Order(Base):
    __tablename__ = 'Order'

    orderID = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(64), unique=True, nullable=False)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False, index=True)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    total_amount = Column(Numeric(10, 2), nullable=False)
    original_amount = Column(Numeric(10, 2))
    discount_applied = Column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)

    status = Column(
        SAEnum(OrderStatus, name="order_status", native_enum=False, validate_strings=True),
        default=OrderStatus.PENDIENTE,
        nullable=False,
    )
    payment_status = Column(
        SAEnum(PaymentStatus, name="payment_status", native_enum=False, validate_strings=True,
               values_callable=lambda enum: [member.value for member in enum]),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    payment_type = Column(
        SAEnum(PaymentType, name="payment_type", native_enum=False, validate_strings=True,
               values_callable=lambda enum: [member.value for member in enum]),
        default=PaymentType.MERCADOPAGO,
        nullable=False,
    )
    payment_id = Column(String(120))
    preference_id = Column(String(120))
    payment_method = Column(String(64))

    transfer_receipt_url = Column(String(1024))
    transfer_verified_at = Column(DateTime(timezone=True))
    transfer_verified_by = Column(Integer, ForeignKey('User.userID'))
    transfer_notes = Column(Text)

    shipping_addressID = Column(Integer, ForeignKey('Address.addressID'))
    tracking_number = Column(String(120))
    courier_service = Column(String(120))
    status_history = Column(JSON, default=list, nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="orders", foreign_keys=[userID])
    product = relationship("Product")
    shipping_address = relationship("Address")

    def can_transition(self, new_status: OrderStatus) -> bool:
        current = ORDER_STATUS_SEQUENCE.index(OrderStatus(self.status))
        return ORDER_STATUS_SEQUENCE.index(OrderStatus(new_status)) > current

    def transition_to(self, new_status: OrderStatus, note: str | None = None, changed_by: int | None = None) -> None:
        new_status = OrderStatus(new_status)
        if not self.can_transition(new_status):
            raise StateConflictError(
                f"Transición de estado inválida de {OrderStatus(self.status).value} a {new_status.value}"
            )
        self.status = new_status
        self.append_history(new_status, note=note, changed_by=changed_by)

    def append_history(self, status: OrderStatus, note: str | None = None, changed_by: int | None = None) -> None:
        entry = {
            "status": OrderStatus(status).value,
            "timestamp": _utcnow().isoformat(),
            "note": note,
            "changed_by": changed_by,
        }
        # Reassign so the JSON column is flagged dirty
        self.status_history = list(self.status_history or []) + [entry]

    @property
    def is_direct_transfer(self) -> bool:
        return PaymentType(self.payment_type) is PaymentType.DIRECT_TRANSFER


class PaymentConfig(Base):
    __tablename__ = 'PaymentConfig'

    configID = Column(Integer, primary_key=True, autoincrement=True)
    config_key = Column(String(64), unique=True, nullable=False)
    is_active = Column(Boolean, default=False, nullable=False)
    display_name = Column(String(120), nullable=False)
    config = Column(Text, nullable=False, default="{}")
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class TransferDiscountConfig(Base):
    __tablename__ = 'TransferDiscountConfig'

    configID = Column(Integer, primary_key=True, autoincrement=True)
    discount_percentage = Column(Numeric(5, 2), nullable=False, default=Decimal("3.50"))
    discount_text = Column(String(255), nullable=False, default="por evitar comisiones")
    is_active = Column(Boolean, default=True, nullable=False)
    updated_by = Column(Integer, ForeignKey('User.userID'))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class SupportTicket(Base):
    __tablename__ = 'SupportTicket'

    ticketID = Column(Integer, primary_key=True, autoincrement=True)
    ticket_number = Column(String(64), unique=True, nullable=False)
    userID = Column(Integer, ForeignKey('User.userID'))
    email = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(
        SAEnum(TicketCategory, name="ticket_category", native_enum=False, validate_strings=True),
        nullable=False,
    )
    priority = Column(
        SAEnum(TicketPriority, name="ticket_priority", native_enum=False, validate_strings=True),
        default=TicketPriority.MEDIO,
        nullable=False,
    )
    status = Column(
        SAEnum(TicketStatus, name="ticket_status", native_enum=False, validate_strings=True),
        default=TicketStatus.ABIERTO,
        nullable=False,
    )
    orderID = Column(Integer, ForeignKey('Order.orderID'))
    attachments = Column(JSON, default=list, nullable=False)
    assigned_to = Column(Integer, ForeignKey('User.userID'))
    admin_notes = Column(Text)
    resolution = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    resolved_at = Column(DateTime(timezone=True))

    messages = relationship(
        "TicketMessage",
        back_populates="ticket",
        order_by="TicketMessage.messageID",
    )

    _VALID_TRANSITIONS = {
        TicketStatus.ABIERTO: {TicketStatus.EN_PROCESO, TicketStatus.RESUELTO, TicketStatus.CERRADO},
        TicketStatus.EN_PROCESO: {TicketStatus.ESPERANDO_CLIENTE, TicketStatus.RESUELTO, TicketStatus.CERRADO},
        TicketStatus.ESPERANDO_CLIENTE: {TicketStatus.EN_PROCESO, TicketStatus.RESUELTO, TicketStatus.CERRADO},
        TicketStatus.RESUELTO: {TicketStatus.CERRADO},
    }

    @property
    def accepts_messages(self) -> bool:
        return TicketStatus(self.status) not in {TicketStatus.RESUELTO, TicketStatus.CERRADO}

    def can_transition(self, new_status: TicketStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(TicketStatus(self.status), set())
        return new_status in allowed

    def transition_to(self, new_status: TicketStatus) -> None:
        new_status = TicketStatus(new_status)
        if not self.can_transition(new_status):
            raise StateConflictError(
                f"Transición de ticket inválida de {TicketStatus(self.status).value} a {new_status.value}"
            )
        self.status = new_status
        if new_status in {TicketStatus.RESUELTO, TicketStatus.CERRADO} and self.resolved_at is None:
            self.resolved_at = _utcnow()


class TicketMessage(Base):
    __tablename__ = 'TicketMessage'

    messageID = Column(Integer, primary_key=True, autoincrement=True)
    ticketID = Column(Integer, ForeignKey('SupportTicket.ticketID'), nullable=False, index=True)
    senderID = Column(Integer, ForeignKey('User.userID'))
    sender_type = Column(
        SAEnum(SenderType, name="sender_type", native_enum=False, validate_strings=True),
        nullable=False,
    )
    sender_name = Column(String(255), nullable=False)
    sender_email = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    attachments = Column(JSON, default=list, nullable=False)
    is_internal = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    ticket = relationship("SupportTicket", back_populates="messages")


class Banner(Base):
    __tablename__ = 'Banner'

    bannerID = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    subtitle = Column(String(255))
    image_url = Column(String(512))
    button_text = Column(String(120))
    button_link = Column(String(512))
    background_color = Column(String(16), default="#ff4444", nullable=False)
    text_color = Column(String(16), default="#ffffff", nullable=False)
    is_transparent = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    display_order = Column(Integer, default=0, nullable=False)
    start_date = Column(DateTime(timezone=True))
    end_date = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class SpecialOffer(Base):
    __tablename__ = 'SpecialOffer'

    offerID = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    discount_percentage = Column(Integer, default=0, nullable=False)
    original_price = Column(Numeric(10, 2))
    offer_price = Column(Numeric(10, 2))
    image_url = Column(String(512))
    productID = Column(Integer, ForeignKey('Product.productID'))
    offer_type = Column(
        SAEnum(OfferType, name="offer_type", native_enum=False, validate_strings=True),
        default=OfferType.OFERTA,
        nullable=False,
    )
    is_active = Column(Boolean, default=True, nullable=False)
    display_order = Column(Integer, default=0, nullable=False)
    start_date = Column(DateTime(timezone=True))
    end_date = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    product = relationship("Product")
