"""Order creation, direct-transfer verification and fulfillment tracking."""
from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from mercadoboom.config import Config
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
    Address,
    Order,
    OrderStatus,
    PaymentStatus,
    PaymentType,
    Product,
    TransferDiscountConfig,
)
from mercadoboom.observability import increment_counter, record_event

CENTS = Decimal("0.01")

# Gateway path; the transfer path is enforced by the conditional updates below
_GATEWAY_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.APPROVED, PaymentStatus.REJECTED, PaymentStatus.CANCELLED},
    PaymentStatus.APPROVED: {PaymentStatus.REFUNDED},
}

_GATEWAY_STATUS_MAP = {
    "approved": PaymentStatus.APPROVED,
    "authorized": PaymentStatus.PENDING,
    "pending": PaymentStatus.PENDING,
    "in_process": PaymentStatus.PENDING,
    "in_mediation": PaymentStatus.PENDING,
    "rejected": PaymentStatus.REJECTED,
    "cancelled": PaymentStatus.CANCELLED,
    "refunded": PaymentStatus.REFUNDED,
    "charged_back": PaymentStatus.REFUNDED,
}


def _money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def _generate_order_number(prefix: str) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(9))
    return f"{prefix}-{stamp}-{suffix}"


@dataclass(frozen=True)
class DiscountQuote:
    original_amount: Decimal
    discount_applied: Decimal
    total_amount: Decimal
    discount_percentage: Decimal
    discount_text: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "originalAmount": str(self.original_amount),
            "discountApplied": str(self.discount_applied),
            "totalAmount": str(self.total_amount),
            "discountPercentage": str(self.discount_percentage),
            "discountText": self.discount_text,
        }


def quote_transfer_discount(original_amount: Any, discount_config: TransferDiscountConfig) -> DiscountQuote:
    """Apply the transfer discount percentage to ``original_amount``, rounded to cents."""
    original = _money(original_amount)
    percentage = Decimal(str(discount_config.discount_percentage)) if discount_config.is_active else Decimal("0")
    discount = (original * percentage / Decimal("100")).quantize(CENTS, rounding=ROUND_HALF_UP)
    return DiscountQuote(
        original_amount=original,
        discount_applied=discount,
        total_amount=original - discount,
        discount_percentage=percentage.quantize(CENTS),
        discount_text=discount_config.discount_text or "",
    )


class OrderService:
    def __init__(self, db_session: Session, config: type[Config] = Config) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create_gateway_order(
        self,
        user_id: int,
        product_id: int,
        quantity: int = 1,
        shipping_address_id: Optional[int] = None,
    ) -> Order:
        product = self._get_available_product(product_id, quantity)
        self._check_address(user_id, shipping_address_id)
        total = _money(product.subtotal_for_quantity(quantity))

        order = Order(
            order_number=_generate_order_number("MB"),
            userID=user_id,
            productID=product.productID,
            quantity=quantity,
            total_amount=total,
            original_amount=total,
            discount_applied=Decimal("0.00"),
            status=OrderStatus.PENDIENTE,
            payment_status=PaymentStatus.PENDING,
            payment_type=PaymentType.MERCADOPAGO,
            shipping_addressID=shipping_address_id,
        )
        order.append_history(OrderStatus.PENDIENTE, note="Pedido creado", changed_by=user_id)
        self.db.add(order)
        self.db.commit()
        self._record_created(order)
        return order

    def create_transfer_order(
        self,
        user_id: int,
        product_id: int,
        quantity: int,
        original_amount: Any,
        discount_applied: Any,
        discount_config: TransferDiscountConfig,
        shipping_address_id: Optional[int] = None,
    ) -> Tuple[Order, DiscountQuote]:
        """Create a direct-transfer order with the discount frozen at creation time.

        ``discount_config`` is read by the caller for this request; the amounts the
        client computed must agree with a quote made from it.
        """
        if original_amount in (None, "") or discount_applied in (None, ""):
            raise MissingAmountFields()

        product = self._get_available_product(product_id, quantity)
        self._check_address(user_id, shipping_address_id)

        expected_original = _money(product.subtotal_for_quantity(quantity))
        try:
            original_amount, discount_applied = _money(original_amount), _money(discount_applied)
        except InvalidOperation as exc:
            raise ValidationError("Los montos deben ser numéricos") from exc
        if original_amount != expected_original:
            raise ValidationError(
                "El monto original no coincide con el precio del producto",
                details={"expected": str(expected_original), "received": str(original_amount)},
            )

        quote = self.quote_for_product(product, quantity, discount_config)
        if discount_applied != quote.discount_applied:
            raise ValidationError(
                "El descuento no coincide con la configuración vigente",
                details={"expected": str(quote.discount_applied), "received": str(discount_applied)},
            )

        order = Order(
            order_number=_generate_order_number("MB-TF"),
            userID=user_id,
            productID=product.productID,
            quantity=quantity,
            original_amount=quote.original_amount,
            discount_applied=quote.discount_applied,
            total_amount=quote.total_amount,
            status=OrderStatus.PENDIENTE,
            payment_status=PaymentStatus.PENDING,
            payment_type=PaymentType.DIRECT_TRANSFER,
            payment_method="bank_transfer",
            shipping_addressID=shipping_address_id,
        )
        order.append_history(OrderStatus.PENDIENTE, note="Pedido creado, en espera de transferencia", changed_by=user_id)
        self.db.add(order)
        self.db.commit()
        self._record_created(order)
        return order, quote

    @staticmethod
    def quote_for_product(product: Product, quantity: int, discount_config: TransferDiscountConfig) -> DiscountQuote:
        subtotal = _money(product.subtotal_for_quantity(quantity))
        if not product.allow_transfer_discount:
            return DiscountQuote(subtotal, Decimal("0.00"), subtotal, Decimal("0.00"), "")
        return quote_transfer_discount(subtotal, discount_config)

    # ------------------------------------------------------------------
    # Direct transfer
    # ------------------------------------------------------------------
    def upload_receipt(self, order_id: int, user_id: int, receipt_url: str) -> Order:
        order = self.get_order(order_id)
        if order.userID != user_id:
            raise PermissionDeniedError("No tienes acceso a este pedido")
        if not order.is_direct_transfer:
            raise InvalidTransferState("Este pedido no es por transferencia directa")
        current = PaymentStatus(order.payment_status)
        if current not in {PaymentStatus.PENDING, PaymentStatus.PENDING_VERIFICATION}:
            raise InvalidTransferState("El pago de este pedido ya fue procesado")

        order.transfer_receipt_url = receipt_url
        order.payment_status = PaymentStatus.PENDING_VERIFICATION
        self.db.commit()

        increment_counter("transfer_receipts_uploaded_total")
        self.logger.info(
            "Transfer receipt uploaded",
            extra={"order_id": order.orderID, "replaced": current is PaymentStatus.PENDING_VERIFICATION},
        )
        return order

    def verify_transfer(self, order_id: int, admin_id: int, verified: bool, notes: Optional[str] = None) -> Order:
        order = self.get_order(order_id)
        if not order.is_direct_transfer:
            raise InvalidTransferState("Este pedido no es por transferencia directa")

        now = datetime.now(timezone.utc)
        values: Dict[str, Any] = {
            "transfer_verified_by": admin_id,
            "transfer_notes": notes,
            "updated_at": now,
        }
        if verified:
            values["payment_status"] = PaymentStatus.VERIFIED
            values["transfer_verified_at"] = now
        else:
            values["payment_status"] = PaymentStatus.REJECTED

        # Re-checks the state inside the UPDATE so a concurrent decision cannot be overwritten
        result = self.db.execute(
            update(Order)
            .where(Order.orderID == order_id)
            .where(Order.payment_type == PaymentType.DIRECT_TRANSFER)
            .where(Order.payment_status == PaymentStatus.PENDING_VERIFICATION)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            increment_counter("transfer_verification_conflicts_total")
            self.db.refresh(order)
            raise InvalidTransferState(
                details={"paymentStatus": PaymentStatus(order.payment_status).value},
            )

        self.db.refresh(order)
        if verified and order.can_transition(OrderStatus.PAGADO):
            order.transition_to(OrderStatus.PAGADO, note="Transferencia verificada", changed_by=admin_id)
        self.db.commit()

        outcome = "verified" if verified else "rejected"
        increment_counter("transfer_verifications_total", labels={"outcome": outcome})
        record_event("transfer_verified", {"order_id": order_id, "admin_id": admin_id, "outcome": outcome})
        self.logger.info(
            "Transfer %s",
            outcome,
            extra={"order_id": order_id, "admin_id": admin_id},
        )
        return order

    def list_pending_transfers(self) -> List[Order]:
        return (
            self.db.query(Order)
            .filter(Order.payment_type == PaymentType.DIRECT_TRANSFER)
            .filter(Order.payment_status.in_([PaymentStatus.PENDING, PaymentStatus.PENDING_VERIFICATION]))
            .order_by(Order.created_at.desc(), Order.orderID.desc())
            .all()
        )

    # ------------------------------------------------------------------
    # Gateway
    # ------------------------------------------------------------------
    def attach_preference(self, order: Order, preference_id: str) -> Order:
        order.preference_id = preference_id
        self.db.commit()
        return order

    def apply_gateway_payment(
        self,
        order_id: int,
        gateway_status: str,
        payment_id: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> Order:
        order = self.get_order(order_id)
        if order.is_direct_transfer:
            raise StateConflictError("Los pedidos por transferencia no se actualizan por webhook")

        new_status = _GATEWAY_STATUS_MAP.get((gateway_status or "").lower())
        if new_status is None:
            raise ValidationError(f"Estado de pago desconocido: {gateway_status}")

        current = PaymentStatus(order.payment_status)
        if new_status is not current and new_status not in _GATEWAY_TRANSITIONS.get(current, set()):
            raise StateConflictError(
                f"Transición de pago inválida de {current.value} a {new_status.value}"
            )

        order.payment_status = new_status
        if payment_id:
            order.payment_id = str(payment_id)
        if payment_method:
            order.payment_method = payment_method
        if new_status is PaymentStatus.APPROVED and order.can_transition(OrderStatus.PAGADO):
            order.transition_to(OrderStatus.PAGADO, note="Pago aprobado por MercadoPago")
        self.db.commit()

        increment_counter("gateway_payments_total", labels={"status": new_status.value})
        self.logger.info(
            "Gateway payment applied",
            extra={"order_id": order_id, "payment_status": new_status.value, "payment_id": payment_id},
        )
        return order

    # ------------------------------------------------------------------
    # Fulfillment
    # ------------------------------------------------------------------
    def update_status(
        self,
        order_id: int,
        status: OrderStatus,
        admin_id: int,
        note: Optional[str] = None,
        tracking_number: Optional[str] = None,
        courier_service: Optional[str] = None,
    ) -> Order:
        order = self.get_order(order_id)
        order.transition_to(OrderStatus(status), note=note, changed_by=admin_id)
        if tracking_number:
            order.tracking_number = tracking_number
        if courier_service:
            order.courier_service = courier_service
        self.db.commit()

        increment_counter("order_status_changes_total", labels={"status": OrderStatus(status).value})
        self.logger.info(
            "Order status updated",
            extra={"order_id": order_id, "status": OrderStatus(status).value, "admin_id": admin_id},
        )
        return order

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_order(self, order_id: int) -> Order:
        order = self.db.query(Order).filter_by(orderID=order_id).first()
        if order is None:
            raise NotFoundError("Pedido no encontrado")
        return order

    def get_user_order(self, order_id: int, user_id: int) -> Order:
        order = self.get_order(order_id)
        if order.userID != user_id:
            raise NotFoundError("Pedido no encontrado")
        return order

    def list_user_orders(self, user_id: int) -> List[Order]:
        return (
            self.db.query(Order)
            .filter_by(userID=user_id)
            .order_by(Order.created_at.desc(), Order.orderID.desc())
            .all()
        )

    def list_all_orders(self, status: Optional[OrderStatus] = None) -> List[Order]:
        query = self.db.query(Order)
        if status is not None:
            query = query.filter(Order.status == OrderStatus(status))
        return query.order_by(Order.created_at.desc(), Order.orderID.desc()).all()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _get_available_product(self, product_id: int, quantity: int) -> Product:
        if quantity is None or quantity < 1:
            raise ValidationError("La cantidad debe ser al menos 1")
        product = self.db.query(Product).filter_by(productID=product_id).first()
        if product is None or not product.is_active:
            raise ProductUnavailable()
        if product.stock is not None and quantity > product.stock:
            raise ValidationError("Stock insuficiente para este producto")
        return product

    def _check_address(self, user_id: int, address_id: Optional[int]) -> None:
        if address_id is None:
            return
        address = self.db.query(Address).filter_by(addressID=address_id, userID=user_id).first()
        if address is None:
            raise ValidationError("Dirección de envío inválida")

    def _record_created(self, order: Order) -> None:
        payment_type = PaymentType(order.payment_type).value
        increment_counter("orders_created_total", labels={"payment_type": payment_type})
        record_event(
            "order_created",
            {"order_id": order.orderID, "order_number": order.order_number, "payment_type": payment_type},
        )
        self.logger.info(
            "Order %s created",
            order.order_number,
            extra={"order_id": order.orderID, "user_id": order.userID, "total": str(order.total_amount)},
        )
