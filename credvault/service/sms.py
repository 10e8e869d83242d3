from __future__ import annotations

from typing import Optional

from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

from credvault.logging import get_logger

logger = get_logger(__name__)


class SmsService:
    """Delivers one-time codes by SMS through Twilio.

    Without credentials the message is logged and treated as delivered, which
    keeps local development and tests free of a real gateway.
    """

    def __init__(
        self,
        *,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        client: Optional[TwilioClient] = None,
    ) -> None:
        self.from_number = from_number
        self._client = client
        if self._client is None and account_sid and auth_token:
            self._client = TwilioClient(account_sid, auth_token)

    @property
    def is_configured(self) -> bool:
        return bool(self._client and self.from_number)

    def send_otp(self, phone_number: str, code: str) -> bool:
        body = f"Your verification code is {code}. It expires in 5 minutes."
        if not self.is_configured:
            logger.info("sms_dev_mode", phone=phone_number)
            return True
        try:
            message = self._client.messages.create(
                to=phone_number, from_=self.from_number, body=body
            )
        except (TwilioException, OSError) as exc:
            logger.error(
                "sms_send_failed",
                phone=phone_number,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("sms_sent", phone=phone_number, message_sid=getattr(message, "sid", None))
        return True
