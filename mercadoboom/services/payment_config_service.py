from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mercadoboom.config import Config
from mercadoboom.errors import NotFoundError, StateConflictError, ValidationError
from mercadoboom.models import PaymentConfig, TransferDiscountConfig
from mercadoboom.observability import record_event
from mercadoboom.schemas import PAYMENT_CONFIG_SCHEMAS, validate_gateway_settings


def _default_gateway_configs(config: type[Config]) -> List[Dict[str, Any]]:
    return [
        {
            "config_key": "mercadopago",
            "display_name": "MercadoPago",
            "is_active": True,
            "config": {
                "public_key": config.MERCADOPAGO_PUBLIC_KEY,
                "access_token": config.MERCADOPAGO_ACCESS_TOKEN,
                "webhook_url": "/api/payments/webhook",
            },
        },
        {
            "config_key": "bank_transfer",
            "display_name": "Transferencia Bancaria BBVA",
            "is_active": True,
            "config": {
                "bank_name": config.BANK_NAME,
                "clabe": config.BANK_CLABE,
                "account_holder": config.BANK_ACCOUNT_HOLDER,
                "instructions": [
                    "Realiza la transferencia usando la CLABE interbancaria",
                    "Usa como referencia el número de pedido",
                    "Sube tu comprobante desde tu panel de pedidos",
                    "El pedido se procesa al confirmar el pago (24-48 hrs)",
                ],
            },
        },
        {
            "config_key": "conekta",
            "display_name": "Conekta (No Configurado)",
            "is_active": False,
            "config": {"note": "Configurar cuando se requiera usar Conekta"},
        },
    ]


class PaymentConfigService:
    """Admin-managed gateway configuration, one row per gateway key."""

    def __init__(self, db_session: Session, config: type[Config] = Config) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)

    def list_configs(self) -> List[PaymentConfig]:
        return self.db.query(PaymentConfig).order_by(PaymentConfig.configID).all()

    def get_config(self, config_id: int) -> PaymentConfig:
        row = self.db.query(PaymentConfig).filter_by(configID=config_id).first()
        if row is None:
            raise NotFoundError("Configuración de pago no encontrada")
        return row

    def get_by_key(self, config_key: str) -> Optional[PaymentConfig]:
        return self.db.query(PaymentConfig).filter_by(config_key=config_key).first()

    def settings_for(self, row: PaymentConfig) -> Dict[str, Any]:
        """Parse the stored blob through the typed model for its key."""
        return validate_gateway_settings(row.config_key, row.config)

    def create_config(
        self,
        config_key: str,
        display_name: str,
        settings: Any,
        is_active: bool = False,
    ) -> PaymentConfig:
        if config_key not in PAYMENT_CONFIG_SCHEMAS:
            raise ValidationError(f"Método de pago desconocido: {config_key}")
        if self.get_by_key(config_key) is not None:
            raise StateConflictError(f"Ya existe una configuración para {config_key}")
        row = PaymentConfig(
            config_key=config_key,
            display_name=display_name,
            is_active=is_active,
            config=json.dumps(validate_gateway_settings(config_key, settings)),
        )
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise StateConflictError(f"Ya existe una configuración para {config_key}") from exc
        self.logger.info("Payment config created", extra={"config_key": config_key})
        return row

    def update_config(
        self,
        config_id: int,
        display_name: Optional[str] = None,
        is_active: Optional[bool] = None,
        settings: Any = None,
    ) -> PaymentConfig:
        row = self.get_config(config_id)
        if display_name is not None:
            row.display_name = display_name
        if is_active is not None:
            row.is_active = is_active
        if settings is not None:
            row.config = json.dumps(validate_gateway_settings(row.config_key, settings))
        self.db.commit()
        record_event("payment_config_updated", {"config_key": row.config_key, "is_active": row.is_active})
        self.logger.info(
            "Payment config updated",
            extra={"config_key": row.config_key, "is_active": row.is_active},
        )
        return row

    def active_methods(self) -> Dict[str, bool]:
        methods = {key: False for key in PAYMENT_CONFIG_SCHEMAS}
        for row in self.db.query(PaymentConfig).filter_by(is_active=True).all():
            if row.config_key in methods:
                methods[row.config_key] = True
        return methods

    def bank_details(self) -> Dict[str, Any]:
        row = self.get_by_key("bank_transfer")
        if row is None or not row.is_active:
            raise StateConflictError("La transferencia bancaria no está disponible")
        return self.settings_for(row)

    def seed_defaults(self) -> int:
        created = 0
        for entry in _default_gateway_configs(self.config):
            if self.get_by_key(entry["config_key"]) is not None:
                continue
            self.db.add(
                PaymentConfig(
                    config_key=entry["config_key"],
                    display_name=entry["display_name"],
                    is_active=entry["is_active"],
                    config=json.dumps(validate_gateway_settings(entry["config_key"], entry["config"])),
                )
            )
            created += 1
        self.db.commit()
        if created:
            self.logger.info("Default payment configs created", extra={"created": created})
        return created


class TransferDiscountService:
    """Reads and updates the singleton transfer-discount row.

    The row is re-read on every call so checkouts always quote against the
    value admins saved last.
    """

    def __init__(self, db_session: Session, config: type[Config] = Config) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)

    def get_config(self) -> TransferDiscountConfig:
        row = (
            self.db.query(TransferDiscountConfig)
            .order_by(TransferDiscountConfig.configID)
            .first()
        )
        if row is None:
            row = TransferDiscountConfig(
                discount_percentage=self.config.DEFAULT_TRANSFER_DISCOUNT_PERCENT,
                discount_text=self.config.DEFAULT_TRANSFER_DISCOUNT_TEXT,
                is_active=True,
            )
            self.db.add(row)
            self.db.commit()
        return row

    def update_config(
        self,
        discount_percentage: Decimal,
        admin_id: int,
        discount_text: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> TransferDiscountConfig:
        percentage = Decimal(str(discount_percentage))
        if percentage < 0 or percentage > 100:
            raise ValidationError("El porcentaje de descuento debe estar entre 0 y 100")
        row = self.get_config()
        previous = row.discount_percentage
        row.discount_percentage = percentage.quantize(Decimal("0.01"))
        if discount_text is not None:
            row.discount_text = discount_text
        if is_active is not None:
            row.is_active = is_active
        row.updated_by = admin_id
        self.db.commit()
        record_event(
            "transfer_discount_updated",
            {"previous": str(previous), "current": str(row.discount_percentage), "admin_id": admin_id},
        )
        self.logger.info(
            "Transfer discount updated",
            extra={"previous": str(previous), "current": str(row.discount_percentage), "admin_id": admin_id},
        )
        return row
