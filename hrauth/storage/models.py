from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TwoFactorMethod(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    ALL = "all"


# Challenges are delivered over the same channels an account can pick for 2FA
OtpChannel = TwoFactorMethod


class OtpPurpose(str, Enum):
    LOGIN = "login"
    ENABLE_2FA = "enable_2fa"
    RESET_PASSWORD = "reset_password"


@dataclass(frozen=True)
class EmailDestination:
    address: str

    def __post_init__(self) -> None:
        if not self.address:
            raise ValueError("email destination requires an address")

    @property
    def channel(self) -> OtpChannel:
        return OtpChannel.EMAIL


@dataclass(frozen=True)
class PhoneDestination:
    number: str

    def __post_init__(self) -> None:
        if not self.number:
            raise ValueError("phone destination requires a number")

    @property
    def channel(self) -> OtpChannel:
        return OtpChannel.SMS


@dataclass(frozen=True)
class BothDestinations:
    address: str
    number: str

    def __post_init__(self) -> None:
        if not self.address or not self.number:
            raise ValueError("combined destination requires an address and a number")

    @property
    def channel(self) -> OtpChannel:
        return OtpChannel.ALL


Destination = Union[EmailDestination, PhoneDestination, BothDestinations]


def destination_to_dict(destination: Destination) -> Dict[str, Optional[str]]:
    """Flatten a destination into the ``{"email", "phone"}`` storage shape."""
    if isinstance(destination, EmailDestination):
        return {"email": destination.address, "phone": None}
    if isinstance(destination, PhoneDestination):
        return {"email": None, "phone": destination.number}
    return {"email": destination.address, "phone": destination.number}


def destination_from_dict(channel: OtpChannel, data: Dict[str, Optional[str]]) -> Destination:
    """Rebuild a persisted destination for ``channel``.

    Raises ``ValueError`` when the stored contacts do not cover the channel.
    """
    email = (data or {}).get("email")
    phone = (data or {}).get("phone")
    channel = OtpChannel(channel)
    if channel == OtpChannel.EMAIL and email:
        return EmailDestination(email)
    if channel == OtpChannel.SMS and phone:
        return PhoneDestination(phone)
    if channel == OtpChannel.ALL and email and phone:
        return BothDestinations(email, phone)
    raise ValueError(f"no usable destination stored for channel {channel.value}")


@dataclass
class Account:
    id: int
    email: str
    phone: Optional[str] = None
    role: str = "employee"
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    is_active: bool = True
    two_factor_enabled: bool = False
    two_factor_method: Optional[TwoFactorMethod] = None
    token_version: int = 0
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OtpChallenge:
    id: str
    account_id: Optional[int]
    channel: OtpChannel
    destination: Destination
    purpose: OtpPurpose
    code_hash: str
    expires_at: datetime
    consumed_at: Optional[datetime] = None
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        account_id: Optional[int],
        destination: Destination,
        purpose: OtpPurpose,
        code_hash: str,
        *,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> "OtpChallenge":
        now = now or utcnow()
        return cls(
            id=secrets.token_urlsafe(24),
            account_id=account_id,
            channel=destination.channel,
            destination=destination,
            purpose=purpose,
            code_hash=code_hash,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
            updated_at=now,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


@dataclass
class RevokedToken:
    jti: str
    account_id: int
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
