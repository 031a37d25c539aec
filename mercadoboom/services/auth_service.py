from __future__ import annotations

import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from mercadoboom.config import Config
from mercadoboom.errors import (
    AuthError,
    ChannelUnavailable,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from mercadoboom.models import Channel, User
from mercadoboom.observability import increment_counter, mask_email, mask_phone, record_event
from mercadoboom.services.notification_service import CHANNEL_LABELS, NotificationService

BLOCKED_MESSAGE = "Tu cuenta ha sido bloqueada. Contacta con el administrador."
INVALID_CREDENTIALS = "Credenciales inválidas"
INVALID_RESET_TOKEN = "Token de recuperación inválido o expirado"


@dataclass
class ResetDispatch:
    method: str
    sent_to: str
    messages_sent: List[str]
    expires_at: datetime
    message: str = "Token de recuperación enviado"


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AuthService:
    """Accounts: registration, login, password recovery and admin moderation."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        notification_service: Optional[NotificationService] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.notifications = notification_service or NotificationService(config=config)
        self.logger = logging.getLogger(__name__)

    def register(
        self,
        username: str,
        email: str,
        password: str,
        full_name: Optional[str] = None,
        phone: Optional[str] = None,
        is_admin: bool = False,
    ) -> User:
        self._check_password(password)
        self._check_unique(username=username, email=email)
        user = User(
            username=username,
            email=email,
            passwordHash=generate_password_hash(password),
            full_name=full_name,
            phone=phone,
            is_admin=is_admin,
        )
        self.db.add(user)
        self.db.commit()
        increment_counter("users_registered_total")
        self.logger.info("User registered", extra={"user_id": user.userID})
        return user

    def authenticate(self, username: str, password: str) -> User:
        user = self.db.query(User).filter_by(username=username).first()
        if user is None:
            increment_counter("login_failures_total", labels={"reason": "unknown_user"})
            raise AuthError(INVALID_CREDENTIALS)
        # Blocked accounts get the blocked message even with a wrong password
        if user.is_blocked:
            increment_counter("login_failures_total", labels={"reason": "blocked"})
            raise AuthError(BLOCKED_MESSAGE)
        if not check_password_hash(user.passwordHash, password):
            increment_counter("login_failures_total", labels={"reason": "bad_password"})
            raise AuthError(INVALID_CREDENTIALS)
        increment_counter("logins_total")
        return user

    def get_user(self, user_id: int) -> User:
        user = self.db.query(User).filter_by(userID=user_id).first()
        if user is None:
            raise NotFoundError("Usuario no encontrado")
        return user

    def list_users(self) -> List[User]:
        return self.db.query(User).order_by(User.userID).all()

    def update_profile(
        self,
        user_id: int,
        username: Optional[str] = None,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User:
        user = self.get_user(user_id)
        self._check_unique(
            username=username if username != user.username else None,
            email=email if email != user.email else None,
        )
        if username is not None:
            user.username = username
        if email is not None and email != user.email:
            user.email = email
            user.is_email_verified = False
        if phone is not None and phone != user.phone:
            user.phone = phone
            user.is_phone_verified = False
        if full_name is not None:
            user.full_name = full_name
        self.db.commit()
        self.logger.info("Profile updated", extra={"user_id": user_id})
        return user

    # ------------------------------------------------------------------
    # Password recovery
    # ------------------------------------------------------------------
    def request_password_reset(self, identifier: str, method: str) -> ResetDispatch:
        """Send a reset token to the account matching ``identifier``.

        The reply only echoes what the caller supplied, so known and unknown
        identifiers get the same ``ResetDispatch``.
        """
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(hours=self.config.PASSWORD_RESET_TTL_HOURS)
        channel = Channel.SMS if method == "phone" else Channel.EMAIL
        masked = mask_phone(identifier) if channel is Channel.SMS else mask_email(identifier)
        reply = ResetDispatch(
            method=method,
            sent_to=masked,
            messages_sent=[CHANNEL_LABELS[channel]],
            expires_at=expires_at,
        )

        user = self._find_by_identifier(identifier, method)
        if user is None:
            self.logger.info("Password reset requested for unknown identifier", extra={"method": method})
            return reply

        recipient = user.phone if channel is Channel.SMS else user.email
        if not recipient:
            raise ChannelUnavailable("El usuario no tiene número de teléfono registrado")

        token = secrets.token_hex(32)
        user.reset_token = token
        user.reset_token_expiry = expires_at
        self.db.commit()

        self.notifications.send_password_reset(channel, recipient, token, self.config.PASSWORD_RESET_TTL_HOURS)
        increment_counter("password_resets_requested_total", labels={"method": method})
        self.logger.info(
            "Password reset token sent",
            extra={"user_id": user.userID, "channel": CHANNEL_LABELS[channel]},
        )
        return reply

    def confirm_password_reset(self, identifier: str, method: str, token: str, new_password: str) -> User:
        user = self._find_by_identifier(identifier, method)
        if user is None or not user.reset_token:
            raise ValidationError(INVALID_RESET_TOKEN)
        expiry = _as_aware(user.reset_token_expiry)
        if expiry is None or datetime.now(timezone.utc) > expiry:
            raise ValidationError(INVALID_RESET_TOKEN)
        if not hmac.compare_digest(user.reset_token, token or ""):
            raise ValidationError(INVALID_RESET_TOKEN)
        self._check_password(new_password)

        user.passwordHash = generate_password_hash(new_password)
        user.reset_token = None
        user.reset_token_expiry = None
        self.db.commit()
        record_event("password_reset_completed", {"user_id": user.userID})
        self.logger.info("Password reset completed", extra={"user_id": user.userID})
        return user

    # ------------------------------------------------------------------
    # Admin moderation
    # ------------------------------------------------------------------
    def block_user(self, user_id: int, admin_id: int, reason: str) -> User:
        if user_id == admin_id:
            raise StateConflictError("No puedes bloquear tu propia cuenta")
        user = self.get_user(user_id)
        user.is_blocked = True
        user.block_reason = reason
        user.blocked_at = datetime.now(timezone.utc)
        user.blocked_by = admin_id
        self.db.commit()
        record_event("user_blocked", {"user_id": user_id, "admin_id": admin_id})
        self.logger.info("User blocked", extra={"target_user_id": user_id, "admin_id": admin_id})
        return user

    def unblock_user(self, user_id: int, admin_id: int) -> User:
        user = self.get_user(user_id)
        user.is_blocked = False
        user.block_reason = None
        user.blocked_at = None
        user.blocked_by = None
        self.db.commit()
        self.logger.info("User unblocked", extra={"target_user_id": user_id, "admin_id": admin_id})
        return user

    def set_password(self, user_id: int, new_password: str, admin_id: int) -> User:
        self._check_password(new_password)
        user = self.get_user(user_id)
        user.passwordHash = generate_password_hash(new_password)
        self.db.commit()
        self.logger.info("Password set by admin", extra={"target_user_id": user_id, "admin_id": admin_id})
        return user

    def ensure_admin(self) -> Optional[User]:
        """Create the bootstrap admin from config when it does not exist yet."""
        if not self.config.ADMIN_PASSWORD:
            return None
        existing = self.db.query(User).filter_by(username=self.config.ADMIN_USERNAME).first()
        if existing is not None:
            return existing
        admin = self.register(
            username=self.config.ADMIN_USERNAME,
            email=self.config.ADMIN_EMAIL,
            password=self.config.ADMIN_PASSWORD,
            full_name="Administrador",
            is_admin=True,
        )
        self.logger.info("Bootstrap admin created", extra={"username": admin.username})
        return admin

    # ------------------------------------------------------------------
    def _find_by_identifier(self, identifier: str, method: str) -> Optional[User]:
        columns = {"username": User.username, "email": User.email, "phone": User.phone}
        column = columns.get(method)
        if column is None:
            raise ValidationError("Método de recuperación inválido")
        return self.db.query(User).filter(column == identifier).first()

    def _check_password(self, password: str) -> None:
        if len(password or "") < self.config.PASSWORD_MIN_LENGTH:
            raise ValidationError(
                f"La contraseña debe tener al menos {self.config.PASSWORD_MIN_LENGTH} caracteres"
            )

    def _check_unique(self, username: Optional[str] = None, email: Optional[str] = None) -> None:
        filters = []
        if username:
            filters.append(User.username == username)
        if email:
            filters.append(User.email == email)
        if not filters:
            return
        clash = self.db.query(User).filter(or_(*filters)).first()
        if clash is None:
            return
        if username and clash.username == username:
            raise StateConflictError("El nombre de usuario ya existe")
        raise StateConflictError("El correo ya está registrado")
