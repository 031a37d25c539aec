"""Domain exceptions raised by services and rendered as JSON by the app."""
from __future__ import annotations

from typing import Any, Dict, Optional


class MercadoBoomError(Exception):
    """Base error carrying a user-facing (Spanish) message and an HTTP status."""

    status_code = 500
    error_code = "internal_error"
    retryable = False
    default_message = "Error interno del servidor"

    def __init__(self, message: Optional[str] = None, details: Any = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        if self.retryable:
            body["retryable"] = True
        return body


class ValidationError(MercadoBoomError):
    status_code = 400
    error_code = "validation_error"
    default_message = "Datos inválidos"


class MissingAmountFields(ValidationError):
    error_code = "missing_amount_fields"
    default_message = "Faltan los montos originales y el descuento aplicado"


class NotFoundError(MercadoBoomError):
    status_code = 404
    error_code = "not_found"
    default_message = "Recurso no encontrado"


class ProductUnavailable(NotFoundError):
    error_code = "product_unavailable"
    default_message = "Producto no encontrado"


class StateConflictError(MercadoBoomError):
    status_code = 409
    error_code = "state_conflict"
    default_message = "La operación no es válida en el estado actual"


class InvalidTransferState(StateConflictError):
    error_code = "invalid_transfer_state"
    default_message = "El pedido no está pendiente de verificación"


class ChannelDeliveryError(MercadoBoomError):
    status_code = 502
    error_code = "channel_delivery_failed"
    retryable = True
    default_message = "No se pudo enviar el mensaje. Intenta de nuevo"


class ChannelUnavailable(ChannelDeliveryError):
    status_code = 400
    error_code = "channel_unavailable"
    retryable = False
    default_message = "No hay un medio de contacto disponible para este método"


class AuthError(MercadoBoomError):
    status_code = 401
    error_code = "auth_error"
    default_message = "No autenticado"


class CodeMismatch(AuthError):
    error_code = "code_mismatch"
    default_message = "Código de verificación incorrecto"


class CodeExpired(AuthError):
    error_code = "code_expired"
    default_message = "Código de verificación expirado"


class NoPendingCode(AuthError):
    error_code = "no_pending_code"
    default_message = "No hay un código de verificación pendiente"


class PermissionDeniedError(MercadoBoomError):
    status_code = 403
    error_code = "forbidden"
    default_message = "Acceso denegado"
