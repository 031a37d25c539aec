"""
Outbound messaging channels used for verification codes and account recovery.

Each channel is a thin adapter over its provider (SMTP for email, Twilio for SMS
and WhatsApp). When a provider is not configured the channel logs the message
instead of sending it so local development works without credentials.
"""
from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Dict, Iterable, List, Optional, Protocol

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from mercadoboom.config import Config
from mercadoboom.errors import ChannelDeliveryError
from mercadoboom.models import Channel
from mercadoboom.observability import increment_counter, mask_email, mask_phone

logger = logging.getLogger(__name__)

CHANNEL_LABELS = {
    Channel.EMAIL: "email",
    Channel.SMS: "SMS",
    Channel.WHATSAPP: "WhatsApp",
}


class MessageChannel(Protocol):
    channel: Channel

    def send(self, recipient: str, subject: str, body: str) -> None:
        ...


@dataclass
class DeliveryResult:
    delivered: List[Channel]
    failed: Dict[Channel, str]

    @property
    def delivered_labels(self) -> List[str]:
        return [CHANNEL_LABELS[channel] for channel in self.delivered]


class EmailChannel:
    channel = Channel.EMAIL

    def __init__(self, config: type[Config] = Config) -> None:
        self.config = config

    @property
    def configured(self) -> bool:
        return bool(self.config.SMTP_HOST)

    def send(self, recipient: str, subject: str, body: str) -> None:
        if not self.configured:
            logger.info("Email simulated (SMTP not configured)", extra={"to": mask_email(recipient), "subject": subject})
            return

        message = EmailMessage()
        message["From"] = self.config.MAIL_FROM
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body)

        try:
            with smtplib.SMTP(self.config.SMTP_HOST, self.config.SMTP_PORT, timeout=15) as smtp:
                if self.config.SMTP_USE_TLS:
                    smtp.starttls()
                if self.config.SMTP_USERNAME:
                    smtp.login(self.config.SMTP_USERNAME, self.config.SMTP_PASSWORD)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelDeliveryError(f"No se pudo enviar el email: {exc}") from exc


class _TwilioChannel:
    """Shared Twilio plumbing for SMS and WhatsApp."""

    channel: Channel
    address_prefix = ""

    def __init__(self, config: type[Config] = Config, client: Optional[Client] = None) -> None:
        self.config = config
        self._client = client

    @property
    def configured(self) -> bool:
        return self._client is not None or bool(self.config.TWILIO_ACCOUNT_SID and self.config.TWILIO_AUTH_TOKEN)

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = Client(self.config.TWILIO_ACCOUNT_SID, self.config.TWILIO_AUTH_TOKEN)
        return self._client

    def _sender_params(self) -> Dict[str, str]:
        raise NotImplementedError

    def send(self, recipient: str, subject: str, body: str) -> None:
        label = CHANNEL_LABELS[self.channel]
        if not self.configured:
            logger.info("%s simulated (Twilio not configured)", label, extra={"to": mask_phone(recipient)})
            return
        try:
            self.client.messages.create(
                to=f"{self.address_prefix}{recipient}",
                body=body,
                **self._sender_params(),
            )
        except TwilioException as exc:
            raise ChannelDeliveryError(f"No se pudo enviar el {label}: {exc}") from exc


class SmsChannel(_TwilioChannel):
    channel = Channel.SMS

    def _sender_params(self) -> Dict[str, str]:
        if self.config.TWILIO_MESSAGING_SERVICE_SID:
            return {"messaging_service_sid": self.config.TWILIO_MESSAGING_SERVICE_SID}
        return {"from_": self.config.TWILIO_PHONE_NUMBER}


class WhatsAppChannel(_TwilioChannel):
    channel = Channel.WHATSAPP
    address_prefix = "whatsapp:"

    def _sender_params(self) -> Dict[str, str]:
        return {"from_": f"whatsapp:{self.config.TWILIO_WHATSAPP_NUMBER}"}


class NotificationService:
    """Fan a message out to one or more channels and report which ones succeeded."""

    def __init__(self, channels: Optional[Iterable[MessageChannel]] = None, config: type[Config] = Config) -> None:
        self.logger = logging.getLogger(__name__)
        if channels is None:
            channels = (EmailChannel(config), SmsChannel(config), WhatsAppChannel(config))
        self._channels: Dict[Channel, MessageChannel] = {c.channel: c for c in channels}

    def send(self, channel: Channel, recipient: str, subject: str, body: str) -> None:
        adapter = self._channels.get(channel)
        if adapter is None:
            raise ChannelDeliveryError(f"Canal no disponible: {CHANNEL_LABELS[channel]}")
        adapter.send(recipient, subject, body)
        increment_counter("notifications_sent_total", labels={"channel": CHANNEL_LABELS[channel]})

    def dispatch(self, targets: Dict[Channel, str], subject: str, body: str) -> DeliveryResult:
        """Send to every target, collecting failures instead of stopping at the first."""
        result = DeliveryResult(delivered=[], failed={})
        for channel, recipient in targets.items():
            try:
                self.send(channel, recipient, subject, body)
            except ChannelDeliveryError as exc:
                increment_counter("notifications_failed_total", labels={"channel": CHANNEL_LABELS[channel]})
                self.logger.warning(
                    "Channel delivery failed",
                    extra={"channel": CHANNEL_LABELS[channel], "reason": exc.message},
                )
                result.failed[channel] = exc.message
            else:
                result.delivered.append(channel)
        return result

    def send_verification_code(self, targets: Dict[Channel, str], code: str, ttl_minutes: int) -> DeliveryResult:
        subject = "Tu código de verificación MercadoBoom"
        body = (
            f"Tu código de verificación de MercadoBoom es: {code}. "
            f"Expira en {ttl_minutes} minutos. No lo compartas con nadie."
        )
        return self.dispatch(targets, subject, body)

    def send_password_reset(self, channel: Channel, recipient: str, token: str, ttl_hours: int) -> None:
        subject = "Recuperación de contraseña MercadoBoom"
        body = (
            f"Tu token de recuperación de contraseña es: {token}. "
            f"Es válido por {ttl_hours} horas. Si no lo solicitaste, ignora este mensaje."
        )
        self.send(channel, recipient, subject, body)
