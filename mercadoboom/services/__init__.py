"""Domain services for MercadoBoom."""

from .auth_service import AuthService
from .catalog_service import CatalogService
from .notification_service import NotificationService
from .order_service import OrderService, quote_transfer_discount
from .payment_config_service import PaymentConfigService, TransferDiscountService
from .payment_service import MercadoPagoGateway, PaymentService
from .promotion_service import PromotionService
from .support_service import SupportService
from .verification_service import VerificationService

__all__ = [
    "AuthService",
    "CatalogService",
    "NotificationService",
    "OrderService",
    "quote_transfer_discount",
    "PaymentConfigService",
    "TransferDiscountService",
    "MercadoPagoGateway",
    "PaymentService",
    "PromotionService",
    "SupportService",
    "VerificationService",
]
