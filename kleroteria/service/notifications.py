from __future__ import annotations

import asyncio
from typing import Protocol

from kleroteria.config import Settings
from kleroteria.logging import get_logger, redact_address
from kleroteria.service.email import EmailService
from kleroteria.service.errors import SendError
from kleroteria.service.sms import SmsService
from kleroteria.storage.models import TokenPurpose

logger = get_logger(__name__)


class NotificationSender(Protocol):
    async def send(
        self,
        channel: TokenPurpose,
        address: str,
        code: str,
        *,
        first_name: str = "",
        resent: bool = False,
    ) -> None: ...


class NotificationDispatcher:
    """Route verification codes to email or SMS by token purpose.

    Delivery failures surface as ``SendError``.
    """

    def __init__(
        self,
        email: EmailService,
        sms: SmsService,
        *,
        ttl_minutes: int = 10,
    ) -> None:
        self.email = email
        self.sms = sms
        self.ttl_minutes = ttl_minutes

    async def send(
        self,
        channel: TokenPurpose,
        address: str,
        code: str,
        *,
        first_name: str = "",
        resent: bool = False,
    ) -> None:
        channel = TokenPurpose(channel)
        if channel == TokenPurpose.EMAIL:
            # smtplib blocks; keep it off the event loop
            delivered = await asyncio.to_thread(
                self.email.send_verification_code,
                address,
                code,
                first_name=first_name,
                resent=resent,
                ttl_minutes=self.ttl_minutes,
            )
        else:
            delivered = await self.sms.send_verification_code(
                address, code, resent=resent, ttl_minutes=self.ttl_minutes
            )
        if not delivered:
            logger.warning(
                "notification_delivery_failed",
                channel=channel.value,
                to=redact_address(address),
            )
            raise SendError(f"{channel.value.lower()} delivery failed", channel=channel.value)


def build_dispatcher(settings: Settings) -> NotificationDispatcher:
    """Construct the default dispatcher from settings."""
    email = EmailService(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_use_tls=settings.smtp_use_tls,
        from_email=settings.email_from_address,
        from_name=settings.email_from_name,
    )
    sms = SmsService(
        api_url=settings.sms_api_url,
        account_sid=settings.sms_account_sid,
        auth_token=settings.sms_auth_token,
        from_number=settings.sms_from_number,
        sender_name=settings.email_from_name,
    )
    return NotificationDispatcher(
        email, sms, ttl_minutes=settings.verification_code_ttl_minutes
    )
