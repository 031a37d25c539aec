"""
Two-factor verification gate.

A short numeric code is issued per ``(user, action)`` and delivered over the
channels selected by the user's two-factor method. Only the newest pending code
for a pair can be checked, and a code can be consumed once.
"""
from __future__ import annotations

import hmac
import logging
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from mercadoboom.config import Config
from mercadoboom.errors import (
    ChannelDeliveryError,
    ChannelUnavailable,
    CodeExpired,
    CodeMismatch,
    NoPendingCode,
    NotFoundError,
    ValidationError,
)
from mercadoboom.models import Channel, SecurityLog, TwoFactorMethod, User
from mercadoboom.observability import increment_counter, mask_code, record_event
from mercadoboom.services.notification_service import CHANNEL_LABELS, NotificationService

SENSITIVE_ACTIONS = frozenset({"admin_access", "large_order", "profile_change", "payment_update"})

OnVerified = Callable[[Session, User], None]


def _mark_email_verified(db: Session, user: User) -> None:
    user.is_email_verified = True


def _mark_phone_verified(db: Session, user: User) -> None:
    user.is_phone_verified = True


@dataclass
class CodeDispatch:
    action: str
    channels: List[str]
    expires_at: datetime
    message: str


@dataclass
class VerificationOutcome:
    action: str
    verified_at: datetime
    message: str = "Código verificado correctamente"
    details: Dict[str, bool] = field(default_factory=dict)


class VerificationService:
    """Issue and check one-time codes guarding sensitive actions."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        notification_service: Optional[NotificationService] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.db = db_session
        self.config = config
        self.notifications = notification_service or NotificationService(config=config)
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        # Continuations run inside the same transaction as the code consumption
        self._continuations: Dict[str, OnVerified] = {
            "verify_email": _mark_email_verified,
            "verify_phone": _mark_phone_verified,
        }

    def register_continuation(self, action: str, callback: OnVerified) -> None:
        self._continuations[action] = callback

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------
    def send_code(
        self,
        user_id: int,
        action: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> CodeDispatch:
        user = self._get_user(user_id)
        method = TwoFactorMethod(user.two_factor_method)
        channels = self._channels_for(action, method)
        targets = self._resolve_targets(user, channels)

        now = self.clock()
        superseded = self._supersede_pending(user_id, action)
        code = self._generate_code()
        expires_at = now + timedelta(minutes=self.config.VERIFICATION_CODE_TTL_MINUTES)
        log = SecurityLog(
            userID=user_id,
            action=action,
            method=self._method_label(channels, method),
            code=code,
            verified=False,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:512] or None,
            created_at=now,
        )
        self.db.add(log)
        self.db.commit()

        delivery = self.notifications.send_verification_code(
            targets, code, self.config.VERIFICATION_CODE_TTL_MINUTES
        )
        if not delivery.delivered:
            increment_counter("verification_codes_undelivered_total", labels={"action": action})
            raise ChannelDeliveryError(
                "No se pudo enviar el código de verificación. Solicita uno nuevo",
                details={CHANNEL_LABELS[c]: reason for c, reason in delivery.failed.items()},
            )

        increment_counter("verification_codes_sent_total", labels={"action": action})
        record_event(
            "verification_code_sent",
            {"user_id": user_id, "action": action, "channels": delivery.delivered_labels},
        )
        self.logger.info(
            "Verification code issued",
            extra={
                "user_id": user_id,
                "action": action,
                "code": mask_code(code),
                "superseded": superseded,
                "channels": delivery.delivered_labels,
            },
        )
        return CodeDispatch(
            action=action,
            channels=delivery.delivered_labels,
            expires_at=expires_at,
            message=f"Código de verificación enviado por {' y '.join(delivery.delivered_labels)}",
        )

    # ------------------------------------------------------------------
    # Check
    # ------------------------------------------------------------------
    def verify_code(self, user_id: int, action: str, code: str) -> VerificationOutcome:
        user = self._get_user(user_id)
        log = (
            self.db.query(SecurityLog)
            .filter_by(userID=user_id, action=action)
            .filter(SecurityLog.is_pending)
            .order_by(SecurityLog.created_at.desc(), SecurityLog.logID.desc())
            .first()
        )
        if log is None:
            increment_counter("verification_failures_total", labels={"reason": "no_pending_code"})
            raise NoPendingCode()

        now = self.clock()
        if log.is_expired(now):
            increment_counter("verification_failures_total", labels={"reason": "code_expired"})
            raise CodeExpired()

        if not hmac.compare_digest(log.code.encode(), (code or "").strip().encode()):
            increment_counter("verification_failures_total", labels={"reason": "code_mismatch"})
            self.logger.info("Verification code mismatch", extra={"user_id": user_id, "action": action})
            raise CodeMismatch()

        # Consumes the row only if no concurrent request verified or superseded it first
        result = self.db.execute(
            update(SecurityLog)
            .where(SecurityLog.logID == log.logID)
            .where(SecurityLog.is_pending)
            .values(verified=True, verified_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            increment_counter("verification_failures_total", labels={"reason": "already_consumed"})
            raise NoPendingCode()

        continuation = self._continuations.get(action)
        if continuation is not None:
            continuation(self.db, user)
        self.db.commit()

        increment_counter("verification_success_total", labels={"action": action})
        self.logger.info("Verification code accepted", extra={"user_id": user_id, "action": action})
        return VerificationOutcome(
            action=action,
            verified_at=now,
            details={
                "isEmailVerified": bool(user.is_email_verified),
                "isPhoneVerified": bool(user.is_phone_verified),
            },
        )

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    def update_two_factor_settings(self, user_id: int, enabled: bool, method: Optional[str] = None) -> str:
        user = self._get_user(user_id)
        if method is not None:
            try:
                parsed = TwoFactorMethod.parse(method)
            except ValueError as exc:
                raise ValidationError(f"Método de verificación inválido: {method}") from exc
            user.two_factor_method = parsed
        user.two_factor_enabled = bool(enabled)
        self.db.commit()

        self.logger.info(
            "Two-factor settings updated",
            extra={"user_id": user_id, "enabled": user.two_factor_enabled, "method": _value(user.two_factor_method)},
        )
        if user.two_factor_enabled:
            return f"Verificación en dos pasos activada con método: {_value(user.two_factor_method)}"
        return "Verificación en dos pasos desactivada"

    def requires_verification(self, user_id: int, action: str) -> bool:
        user = self._get_user(user_id)
        return bool(user.two_factor_enabled) and action in SENSITIVE_ACTIONS

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _get_user(self, user_id: int) -> User:
        user = self.db.query(User).filter_by(userID=user_id).first()
        if user is None:
            raise NotFoundError("Usuario no encontrado")
        return user

    @staticmethod
    def _channels_for(action: str, method: TwoFactorMethod) -> Channel:
        # Contact confirmation always targets the contact being confirmed
        if action == "verify_email":
            return Channel.EMAIL
        if action == "verify_phone":
            return Channel.SMS
        return method.channels

    @staticmethod
    def _resolve_targets(user: User, channels: Channel) -> Dict[Channel, str]:
        targets: Dict[Channel, str] = {}
        for channel in (Channel.EMAIL, Channel.SMS, Channel.WHATSAPP):
            if not channels & channel:
                continue
            if channel is Channel.EMAIL:
                if not user.email:
                    raise ChannelUnavailable("No hay correo electrónico registrado para verificación")
                targets[channel] = user.email
            else:
                if not user.phone:
                    raise ChannelUnavailable(
                        f"No hay número de teléfono registrado para verificación {CHANNEL_LABELS[channel]}"
                    )
                targets[channel] = user.phone
        return targets

    def _supersede_pending(self, user_id: int, action: str) -> int:
        result = self.db.execute(
            update(SecurityLog)
            .where(SecurityLog.userID == user_id)
            .where(SecurityLog.action == action)
            .where(SecurityLog.is_pending)
            .values(superseded=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def _generate_code(self) -> str:
        length = max(4, self.config.VERIFICATION_CODE_LENGTH)
        # No leading zero so the code keeps its length when typed as a number
        return secrets.choice("123456789") + "".join(
            secrets.choice(string.digits) for _ in range(length - 1)
        )

    @staticmethod
    def _method_label(channels: Channel, method: TwoFactorMethod) -> str:
        if channels == method.channels:
            return method.value
        return "_".join(CHANNEL_LABELS[c].lower() for c in (Channel.EMAIL, Channel.SMS, Channel.WHATSAPP) if channels & c)


def _value(value) -> str:
    return value.value if hasattr(value, "value") else value
