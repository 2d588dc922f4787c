from __future__ import annotations

from typing import Optional

import httpx

from venueauth.logging import get_logger

logger = get_logger(__name__)


class SmsService:
    """Sends verification codes through an HTTP SMS gateway.

    The gateway is called with basic auth (account sid / auth token) and a
    form body of ``To``, ``From`` and ``Body``. Without a configured
    gateway the message is only logged.
    """

    def __init__(
        self,
        *,
        gateway_url: Optional[str] = None,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.gateway_url = gateway_url
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.gateway_url and self.from_number)

    @staticmethod
    def _redact_phone(phone: str) -> str:
        return f"***{phone[-3:]}" if len(phone) > 3 else "***"

    async def send_code(self, phone_digits: str, code: str, *, minutes: int = 10) -> bool:
        """Deliver ``code`` to a local-format number such as ``01012345678``."""
        body = f"Your verification code is {code}. It expires in {minutes} minutes."
        if not self.is_configured:
            logger.info("sms_dev_mode", to=self._redact_phone(phone_digits))
            return True

        auth = (
            (self.account_sid, self.auth_token)
            if self.account_sid and self.auth_token
            else None
        )
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self.gateway_url,
                    data={"To": phone_digits, "From": self.from_number, "Body": body},
                    auth=auth,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "sms_gateway_rejected",
                to=self._redact_phone(phone_digits),
                status_code=exc.response.status_code,
            )
            return False
        except httpx.HTTPError as exc:
            logger.error(
                "sms_send_failed",
                to=self._redact_phone(phone_digits),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("sms_sent", to=self._redact_phone(phone_digits))
        return True
