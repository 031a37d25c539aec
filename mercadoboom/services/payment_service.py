from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import requests
from sqlalchemy.orm import Session

from mercadoboom.config import Config
from mercadoboom.errors import ChannelDeliveryError, StateConflictError, ValidationError
from mercadoboom.models import Order, Product, User
from mercadoboom.observability import increment_counter, observe_latency
from mercadoboom.services.order_service import OrderService


class MercadoPagoGateway:
    """Minimal synchronous client for the MercadoPago checkout and payments APIs."""

    def __init__(self, config: type[Config] = Config, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.logger = logging.getLogger(__name__)
        self._session = session or requests.Session()

    def _request(self, method: str, endpoint: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.config.MERCADOPAGO_ACCESS_TOKEN:
            raise ChannelDeliveryError("MercadoPago no está configurado")
        headers = {
            "Authorization": f"Bearer {self.config.MERCADOPAGO_ACCESS_TOKEN}",
            "Content-Type": "application/json",
        }
        started = time.perf_counter()
        try:
            response = self._session.request(
                method,
                f"{self.config.MERCADOPAGO_API_URL.rstrip('/')}{endpoint}",
                json=json,
                headers=headers,
                timeout=self.config.MERCADOPAGO_TIMEOUT_SECONDS,
            )
            observe_latency("mercadopago_latency_ms", (time.perf_counter() - started) * 1000)
            response.raise_for_status()
            return response.json()
        except requests.HTTPError as exc:
            increment_counter("mercadopago_errors_total", labels={"status": str(exc.response.status_code)})
            self.logger.error(
                "MercadoPago API error",
                extra={"status_code": exc.response.status_code, "body": exc.response.text[:500]},
            )
            raise ChannelDeliveryError("Error al comunicarse con MercadoPago") from exc
        except requests.RequestException as exc:
            increment_counter("mercadopago_errors_total", labels={"status": "network"})
            self.logger.error("MercadoPago request failed", extra={"error": str(exc)})
            raise ChannelDeliveryError("Error al comunicarse con MercadoPago") from exc

    def create_preference(self, order: Order, product: Product, payer: User) -> Dict[str, Any]:
        base_url = self.config.PUBLIC_BASE_URL.rstrip("/")
        payload = {
            "items": [
                {
                    "id": str(product.productID),
                    "title": product.name,
                    "quantity": order.quantity,
                    "unit_price": float(product.price),
                    "currency_id": "MXN",
                }
            ],
            "payer": {"email": payer.email, "name": payer.full_name or payer.username},
            "external_reference": str(order.orderID),
            "back_urls": {
                "success": f"{base_url}/payment-success",
                "failure": f"{base_url}/payment-failure",
                "pending": f"{base_url}/payment-pending",
            },
            "auto_return": "approved",
            "notification_url": f"{base_url}/api/payments/webhook",
            "statement_descriptor": "MERCADOBOOM",
        }
        return self._request("POST", "/checkout/preferences", json=payload)

    def get_payment(self, payment_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/v1/payments/{payment_id}")


class PaymentService:
    """Checkout through MercadoPago and reconciliation of its webhook notifications."""

    def __init__(
        self,
        db_session: Session,
        gateway: Optional[MercadoPagoGateway] = None,
        order_service: Optional[OrderService] = None,
        config: type[Config] = Config,
    ) -> None:
        self.db = db_session
        self.config = config
        self.gateway = gateway or MercadoPagoGateway(config)
        self.orders = order_service or OrderService(db_session, config=config)
        self.logger = logging.getLogger(__name__)

    def create_checkout(
        self,
        user: User,
        product_id: int,
        quantity: int,
        shipping_address_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        order = self.orders.create_gateway_order(user.userID, product_id, quantity, shipping_address_id)
        preference = self.gateway.create_preference(order, order.product, user)
        self.orders.attach_preference(order, preference["id"])
        self.logger.info(
            "Checkout preference created",
            extra={"order_id": order.orderID, "preference_id": preference["id"]},
        )
        return {
            "order": order,
            "preferenceId": preference["id"],
            "initPoint": preference.get("init_point"),
            "sandboxInitPoint": preference.get("sandbox_init_point"),
        }

    def process_webhook(self, notification_type: Optional[str], data: Dict[str, Any]) -> Optional[Order]:
        """Apply a payment notification. Non-payment topics are acknowledged and ignored."""
        if notification_type != "payment":
            self.logger.info("Webhook ignored", extra={"type": notification_type})
            return None

        payment_id = data.get("id")
        if not payment_id:
            raise ValidationError("Notificación sin id de pago")

        payment = self.gateway.get_payment(str(payment_id))
        reference = payment.get("external_reference")
        try:
            order_id = int(reference)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Referencia externa inválida: {reference}") from exc

        increment_counter("payment_webhooks_total", labels={"status": str(payment.get("status"))})
        try:
            return self.orders.apply_gateway_payment(
                order_id,
                payment.get("status", ""),
                payment_id=str(payment_id),
                payment_method=payment.get("payment_method_id"),
            )
        except StateConflictError as exc:
            # Out-of-order or replayed notifications are acknowledged, not retried
            self.logger.warning(
                "Webhook transition rejected",
                extra={"order_id": order_id, "payment_id": payment_id, "reason": exc.message},
            )
            return None
