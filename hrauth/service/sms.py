from __future__ import annotations

from typing import Optional

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from hrauth.logging import get_logger

logger = get_logger(__name__)

OTP_TEMPLATE = "Your OTP is: {code}"
PASSWORD_RESET_SUCCESS_TEXT = (
    "Your password has been reset successfully. "
    "If this wasn't you, contact support immediately."
)


def _redact_phone(number: str) -> str:
    return f"***{number[-4:]}" if len(number) > 4 else "***"


class SmsSender:
    """SMS transport for OTP codes and security notices.

    With Twilio credentials the message goes through the Twilio REST API;
    without them (console driver) the message is logged. Sending to an empty
    number raises ``ValueError`` because there is nothing to fall back to.
    """

    def __init__(
        self,
        *,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        client: Optional[Client] = None,
    ) -> None:
        self.from_number = from_number
        self.client = client
        if self.client is None and account_sid and auth_token:
            self.client = Client(account_sid, auth_token)

    @property
    def is_configured(self) -> bool:
        return bool(self.client and self.from_number)

    def _send(self, to: str, body: str) -> bool:
        if not to:
            raise ValueError("SMS destination is required")
        if not self.is_configured:
            logger.info("sms_dev_mode", recipient=_redact_phone(to), body_preview=body[:160])
            return True
        try:
            message = self.client.messages.create(body=body, from_=self.from_number, to=to)
        except TwilioException as exc:
            logger.error(
                "sms_send_failed",
                recipient=_redact_phone(to),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("sms_sent", recipient=_redact_phone(to), sid=message.sid)
        return True

    def send_otp(self, to: str, code: str) -> bool:
        return self._send(to, OTP_TEMPLATE.format(code=code))

    def send_password_reset_success(self, to: str) -> bool:
        return self._send(to, PASSWORD_RESET_SUCCESS_TEXT)
