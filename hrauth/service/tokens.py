from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt

from hrauth.config import Settings
from hrauth.logging import get_logger
from hrauth.service.errors import AuthenticationError
from hrauth.storage.models import Account, utcnow
from hrauth.storage.redis_cache import CacheBackend

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
# HMAC only; never accept whatever algorithm the token header names
_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ["exp", "iat", "sub", "jti", "iss", "aud"]
INVALID_TOKEN_MESSAGE = "Invalid or expired token"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> Dict[str, str]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


@dataclass(frozen=True)
class TokenClaims:
    """Verified identity carried by a token."""

    account_id: int
    email: Optional[str]
    role: Optional[str]
    token_version: int
    jti: str
    expires_at: datetime
    token_type: str


class TokenIssuer:
    """Mint access/refresh pairs signed with separate secrets."""

    def __init__(self, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None):
        self.settings = settings
        self._clock = clock or utcnow

    def _sign(self, account: Account, token_type: str, now: datetime, ttl_seconds: int, secret: str):
        expires_at = now + timedelta(seconds=ttl_seconds)
        payload: Dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": str(account.id),
            "email": account.email,
            "role": account.role,
            "ver": account.token_version,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return jwt.encode(payload, secret, algorithm=_ALGORITHM), expires_at

    def sign_session(self, account: Account) -> TokenPair:
        now = self._clock()
        access_token, access_exp = self._sign(
            account, ACCESS, now, self.settings.access_token_ttl_seconds, self.settings.jwt_secret
        )
        refresh_token, refresh_exp = self._sign(
            account,
            REFRESH,
            now,
            self.settings.refresh_token_ttl_seconds,
            self.settings.refresh_secret,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )


class TokenValidator:
    """Accept a token only if it verifies and still matches the account state.

    Signature, expiry, issuer and audience are checked by PyJWT. On top of
    that an access token must belong to an active account, carry the
    account's current token version and not have had its jti revoked. Every
    rejection raises the same ``AuthenticationError``.
    """

    def __init__(self, store, settings: Settings, *, cache: CacheBackend = None) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache

    def decode(self, token: str, token_type: str) -> TokenClaims:
        secret = self.settings.jwt_secret if token_type == ACCESS else self.settings.refresh_secret
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[_ALGORITHM],
                audience=self.settings.jwt_audience,
                issuer=self.settings.jwt_issuer,
                leeway=self.settings.jwt_leeway_seconds,
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError:
            logger.info("jwt_expired", expected_type=token_type)
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)
        except jwt.InvalidTokenError as exc:
            logger.info("jwt_rejected", expected_type=token_type, reason=type(exc).__name__)
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)

        if payload.get("token_type") != token_type:
            logger.info("jwt_wrong_type", expected_type=token_type)
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)
        try:
            account_id = int(payload["sub"])
            token_version = int(payload.get("ver", 0))
        except (TypeError, ValueError):
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)
        return TokenClaims(
            account_id=account_id,
            email=payload.get("email"),
            role=payload.get("role"),
            token_version=token_version,
            jti=payload["jti"],
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            token_type=token_type,
        )

    def check_account(self, claims: TokenClaims) -> Account:
        """Load the token's account and require it active and on the same version."""
        account = self.store.get_account(claims.account_id)
        if account is None or not account.is_active:
            logger.info("token_account_unavailable", account_id=claims.account_id)
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)
        if claims.token_version != account.token_version:
            logger.info(
                "token_version_mismatch",
                account_id=account.id,
                presented=claims.token_version,
                current=account.token_version,
            )
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)
        return account

    async def is_revoked(self, jti: str) -> bool:
        if self.cache is not None:
            try:
                if await self.cache.is_access_token_denylisted(jti):
                    return True
            except Exception as exc:
                # The store below stays authoritative when Redis is unavailable
                logger.warning("denylist_check_failed", jti=jti, error=str(exc))
        return self.store.is_token_revoked(jti)

    async def validate_incoming(self, token: str) -> TokenClaims:
        claims = self.decode(token, ACCESS)
        self.check_account(claims)
        if claims.jti and await self.is_revoked(claims.jti):
            logger.info("access_token_revoked", jti=claims.jti, account_id=claims.account_id)
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)
        return claims
