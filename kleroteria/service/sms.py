from __future__ import annotations

from typing import Optional

import httpx

from kleroteria.logging import get_logger, redact_address

logger = get_logger(__name__)


class SmsService:
    """Text message delivery through a Twilio-compatible Messages API.

    ``api_url`` is the full messages endpoint; requests are form posts
    authenticated with HTTP basic auth. When not configured, messages are
    logged instead of sent (dev mode).
    """

    def __init__(
        self,
        *,
        api_url: Optional[str] = None,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        sender_name: str = "Kleroteria",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.sender_name = sender_name
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(
            self.api_url and self.account_sid and self.auth_token and self.from_number
        )

    async def _send_sms(self, to_number: str, body: str) -> bool:
        if not self.is_configured:
            logger.info("sms_dev_mode", to=redact_address(to_number), length=len(body))
            return True

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self.api_url,
                    data={"From": self.from_number, "To": to_number, "Body": body},
                    auth=(self.account_sid, self.auth_token),
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "sms_rejected",
                to=redact_address(to_number),
                status_code=exc.response.status_code,
            )
            return False
        except httpx.HTTPError as exc:
            logger.error(
                "sms_send_failed",
                to=redact_address(to_number),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("sms_sent", to=redact_address(to_number))
        return True

    async def send_verification_code(
        self, to_number: str, code: str, *, resent: bool = False, ttl_minutes: int = 10
    ) -> bool:
        prefix = "Your new" if resent else "Your"
        body = (
            f"{prefix} {self.sender_name} verification code is {code}. "
            f"It expires in {ttl_minutes} minutes."
        )
        return await self._send_sms(to_number, body)
