from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, List, Optional

from hrauth.logging import get_logger, sanitize_error_message
from hrauth.service.email import EmailSender
from hrauth.service.errors import BadRequestError
from hrauth.service.sms import SmsSender
from hrauth.storage.models import (
    BothDestinations,
    Destination,
    EmailDestination,
    OtpChannel,
    PhoneDestination,
)

logger = get_logger(__name__)


def destination_for(
    channel: OtpChannel, email: Optional[str], phone: Optional[str]
) -> Destination:
    """Resolve the contacts a challenge on ``channel`` is sent to.

    Raises ``BadRequestError`` when the account lacks a contact the channel
    needs; ``all`` needs both.
    """
    channel = OtpChannel(channel)
    if channel == OtpChannel.EMAIL:
        if not email:
            raise BadRequestError("User email not set")
        return EmailDestination(email)
    if channel == OtpChannel.SMS:
        if not phone:
            raise BadRequestError("User phone not set")
        return PhoneDestination(phone)
    if not email or not phone:
        raise BadRequestError("Both email and phone are required for channel 'all'")
    return BothDestinations(email, phone)


@dataclass(frozen=True)
class DeliveryAttempt:
    """Outcome of one best-effort send on one channel."""

    channel: str
    kind: str
    delivered: bool
    error: Optional[str] = None


class DeliveryRouter:
    """Route codes and notices to the email and SMS senders.

    Every send is fire-and-forget: transport failures are logged and reported
    back as a ``DeliveryAttempt`` instead of raised, so a slow or broken
    transport never changes the outcome of the flow that triggered it. Sender
    calls are blocking and run in worker threads.
    """

    def __init__(self, email: EmailSender, sms: SmsSender) -> None:
        self.email = email
        self.sms = sms

    async def _attempt(
        self, channel: str, kind: str, send: Callable[..., bool], *args: str
    ) -> DeliveryAttempt:
        try:
            delivered = bool(await asyncio.to_thread(send, *args))
        except Exception as exc:
            error = sanitize_error_message(str(exc))
            logger.warning(
                "delivery_failed",
                channel=channel,
                kind=kind,
                error_type=type(exc).__name__,
                error=error,
            )
            return DeliveryAttempt(channel, kind, False, error)
        if not delivered:
            logger.warning("delivery_not_confirmed", channel=channel, kind=kind)
            return DeliveryAttempt(channel, kind, False, "sender reported failure")
        return DeliveryAttempt(channel, kind, True)

    async def send_code(self, destination: Destination, code: str) -> List[DeliveryAttempt]:
        """Send an OTP code to every contact in ``destination``."""
        if isinstance(destination, EmailDestination):
            return [await self._attempt("email", "otp", self.email.send_otp, destination.address, code)]
        if isinstance(destination, PhoneDestination):
            return [await self._attempt("sms", "otp", self.sms.send_otp, destination.number, code)]
        if isinstance(destination, BothDestinations):
            # Channels are independent; one failing does not stop the other
            attempts = await asyncio.gather(
                self._attempt("email", "otp", self.email.send_otp, destination.address, code),
                self._attempt("sms", "otp", self.sms.send_otp, destination.number, code),
            )
            return list(attempts)
        raise TypeError(f"unsupported destination: {destination!r}")

    async def send_reset_link(self, address: str, link: str) -> DeliveryAttempt:
        return await self._attempt(
            "email", "reset_link", self.email.send_password_reset, address, link
        )

    async def notify_password_reset(
        self, email: Optional[str], phone: Optional[str]
    ) -> List[DeliveryAttempt]:
        """Tell the owner their password changed, on every contact they have."""
        sends = []
        if email:
            sends.append(
                self._attempt("email", "reset_success", self.email.send_password_reset_success, email)
            )
        if phone:
            sends.append(
                self._attempt("sms", "reset_success", self.sms.send_password_reset_success, phone)
            )
        return list(await asyncio.gather(*sends))

    async def notify_two_factor_enabled(self, email: str, method: str) -> DeliveryAttempt:
        return await self._attempt(
            "email", "two_factor_enabled", self.email.send_two_factor_enabled, email, method
        )
