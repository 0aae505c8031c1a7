from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from hrauth.config import Settings
from hrauth.logging import get_logger
from hrauth.service.delivery import DeliveryAttempt, DeliveryRouter, destination_for
from hrauth.service.errors import (
    AuthenticationError,
    BadRequestError,
    ChallengeNotFoundError,
)
from hrauth.service.otp import OtpChallengeManager
from hrauth.service.tokens import (
    INVALID_TOKEN_MESSAGE,
    REFRESH,
    TokenClaims,
    TokenIssuer,
    TokenPair,
    TokenValidator,
)
from hrauth.storage.models import (
    Account,
    OtpChallenge,
    OtpChannel,
    OtpPurpose,
    RevokedToken,
    TwoFactorMethod,
    utcnow,
)
from hrauth.storage.redis_cache import CacheBackend

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid credentials"
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 255
PASSWORD_ALGO = "argon2id"


class AuthStore(Protocol):
    def get_account(self, account_id: int) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def find_active_account(self, identifier: str) -> Optional[Account]: ...

    def create_account(self, email: str, **fields) -> Account: ...

    def save_password(self, account_id: int, password_hash: str, password_algo: str) -> None: ...

    def touch_last_login(self, account_id: int, when: datetime) -> None: ...

    def set_two_factor(
        self, account_id: int, enabled: bool, method: Optional[TwoFactorMethod]
    ) -> Optional[Account]: ...

    def increment_token_version(self, account_id: int) -> Optional[int]: ...

    def get_challenge(self, challenge_id: str) -> Optional[OtpChallenge]: ...

    def revoke_token(self, token: RevokedToken) -> bool: ...

    def is_token_revoked(self, jti: str) -> bool: ...

    def purge_expired_revocations(self, now: datetime) -> int: ...


@dataclass
class LoginResult:
    requires_2fa: bool
    tokens: Optional[TokenPair] = None
    challenge_id: Optional[str] = None
    channel: Optional[OtpChannel] = None


@dataclass
class TwoFactorResult:
    two_factor_enabled: bool
    two_factor_method: Optional[TwoFactorMethod]
    # Set when other sessions were invalidated and the caller needs new tokens
    tokens: Optional[TokenPair] = None
    notifications: List[DeliveryAttempt] = field(default_factory=list)


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()


class AuthService:
    """Login, 2FA, token lifecycle and password reset flows.

    This is the only entry point the HTTP layer talks to. It checks
    credentials against the store, runs OTP challenges through
    ``OtpChallengeManager`` and issues tokens only after every required
    factor has been proven.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        otp: OtpChallengeManager,
        router: DeliveryRouter,
        issuer: TokenIssuer,
        validator: TokenValidator,
        cache: CacheBackend = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.otp = otp
        self.router = router
        self.issuer = issuer
        self.validator = validator
        self.cache = cache
        self._clock = clock or utcnow
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            type=Type.ID,
        )
        # Verified when no account matches so unknown identifiers cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def _now(self) -> datetime:
        return self._clock()

    # -- passwords --------------------------------------------------------

    def hash_password(self, password: str) -> Tuple[str, str]:
        """Validate and hash a new password, returning ``(digest, algo)``."""
        if len(password) < MIN_PASSWORD_LENGTH:
            raise BadRequestError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        if len(password) > MAX_PASSWORD_LENGTH:
            raise BadRequestError(
                f"Password must be at most {MAX_PASSWORD_LENGTH} characters"
            )
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, account: Optional[Account], password: str) -> bool:
        """Check ``password`` against the account's stored hash."""
        if account is None or not account.password_hash:
            try:
                self._pwd_hasher.verify(self._dummy_hash, password)
            except (VerificationError, InvalidHashError):
                pass
            return False
        if account.password_algo and account.password_algo != PASSWORD_ALGO:
            logger.warning(
                "password_algo_mismatch", account_id=account.id, algo=account.password_algo
            )
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except (VerificationError, InvalidHashError):
            logger.info("password_verification_failed", account_id=account.id)
            return False

    def create_account(
        self,
        email: str,
        password: str,
        *,
        phone: Optional[str] = None,
        role: str = "employee",
        two_factor_method: Optional[TwoFactorMethod] = None,
    ) -> Account:
        """Seed an account with an argon2id password hash.

        With ``two_factor_method`` the account starts with 2FA on; the
        contacts that method needs must be present.
        """
        password_hash, algo = self.hash_password(password)
        if two_factor_method is not None:
            destination_for(two_factor_method, email, phone)
        account = self.store.create_account(
            email,
            phone=phone,
            role=role,
            password_hash=password_hash,
            password_algo=algo,
            two_factor_enabled=two_factor_method is not None,
            two_factor_method=two_factor_method,
        )
        logger.info("account_created", account_id=account.id, role=role)
        return account

    # -- login ------------------------------------------------------------

    def _issue(self, account: Account) -> TokenPair:
        tokens = self.issuer.sign_session(account)
        self.store.touch_last_login(account.id, self._now())
        logger.info("tokens_issued", account_id=account.id)
        return tokens

    async def login(self, identifier: str, password: str) -> LoginResult:
        account = self.store.find_active_account(identifier)
        if not self.verify_password(account, password):
            logger.info("login_failed", identifier_hash=_email_hash(identifier))
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

        if not account.two_factor_enabled:
            return LoginResult(requires_2fa=False, tokens=self._issue(account))

        method = account.two_factor_method or TwoFactorMethod.EMAIL
        destination = destination_for(method, account.email, account.phone)
        challenge_id = await self.otp.create_and_send(account.id, destination, OtpPurpose.LOGIN)
        logger.info("login_2fa_challenge_issued", account_id=account.id, channel=method.value)
        return LoginResult(requires_2fa=True, challenge_id=challenge_id, channel=method)

    async def verify_login_otp(self, challenge_id: str, code: str) -> TokenPair:
        challenge = self.otp.verify_and_consume(
            challenge_id, code, expected_purpose=OtpPurpose.LOGIN
        )
        account = self._challenge_account(challenge)
        return self._issue(account)

    async def resend_otp(self, challenge_id: str) -> str:
        return await self.otp.resend(challenge_id)

    def _challenge_account(self, challenge: OtpChallenge) -> Account:
        account = self.store.get_account(challenge.account_id) if challenge.account_id else None
        if account is None or not account.is_active:
            logger.warning(
                "otp_challenge_account_missing",
                challenge_id=challenge.id,
                account_id=challenge.account_id,
            )
            raise BadRequestError("Invalid challenge")
        return account

    # -- password reset ---------------------------------------------------

    async def request_password_reset(self, email: str) -> None:
        """Start a reset for ``email``. Silent for unknown or inactive accounts."""
        account = self.store.get_account_by_email(email)
        if account is None or not account.is_active:
            logger.info("password_reset_unknown_account", email_hash=_email_hash(email))
            return
        await self.otp.create_password_reset(account.id, account.email)
        logger.info("password_reset_requested", account_id=account.id)

    def validate_password_reset_token(self, challenge_id: str, code: str) -> None:
        self.otp.validate(challenge_id, code, expected_purpose=OtpPurpose.RESET_PASSWORD)

    async def reset_password(
        self, challenge_id: str, code: str, new_password: str
    ) -> List[DeliveryAttempt]:
        """Set a new password from a reset challenge.

        Existing tokens are invalidated. The owner is notified by email and
        SMS on a best-effort basis; the returned attempts report what was
        sent, and a failed notice never undoes the reset.
        """
        password_hash, algo = self.hash_password(new_password)
        challenge = self.otp.verify_and_consume(
            challenge_id, code, expected_purpose=OtpPurpose.RESET_PASSWORD
        )
        account = self._challenge_account(challenge)
        self.store.save_password(account.id, password_hash, algo)
        self.store.increment_token_version(account.id)
        logger.info("password_reset_completed", account_id=account.id)
        return await self.router.notify_password_reset(account.email, account.phone)

    # -- two-factor enrollment --------------------------------------------

    def _require_account(self, account_id: int) -> Account:
        account = self.store.get_account(account_id)
        if account is None or not account.is_active:
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)
        return account

    async def send_enable_2fa(self, account_id: int, channel: OtpChannel) -> str:
        account = self._require_account(account_id)
        destination = destination_for(channel, account.email, account.phone)
        return await self.otp.create_and_send(account.id, destination, OtpPurpose.ENABLE_2FA)

    async def confirm_enable_2fa(
        self, account_id: int, challenge_id: str, code: str
    ) -> TwoFactorResult:
        """Turn on 2FA with the channel the confirmed challenge was sent over.

        Switching an already enabled account to a different method, including
        narrowing ``all`` to one channel, invalidates every existing token and
        returns a fresh pair for the caller.
        """
        account = self._require_account(account_id)
        pending = self.store.get_challenge(challenge_id)
        if pending is None or pending.account_id != account.id:
            raise ChallengeNotFoundError()
        challenge = self.otp.verify_and_consume(
            challenge_id, code, expected_purpose=OtpPurpose.ENABLE_2FA
        )
        method = TwoFactorMethod(challenge.channel)
        method_changed = account.two_factor_enabled and account.two_factor_method != method
        updated = self.store.set_two_factor(account.id, True, method)
        if updated is None:
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)

        tokens = None
        if method_changed:
            self.store.increment_token_version(account.id)
            updated = self._require_account(account.id)
            tokens = self.issuer.sign_session(updated)
            logger.info(
                "two_factor_method_changed",
                account_id=account.id,
                previous=account.two_factor_method.value if account.two_factor_method else None,
                method=method.value,
            )
        else:
            logger.info("two_factor_enabled", account_id=account.id, method=method.value)
        notice = await self.router.notify_two_factor_enabled(updated.email, method.value)
        return TwoFactorResult(
            two_factor_enabled=True,
            two_factor_method=method,
            tokens=tokens,
            notifications=[notice],
        )

    async def disable_2fa(self, account_id: int, password: str) -> TwoFactorResult:
        """Turn 2FA off after re-checking the password; other sessions end."""
        account = self._require_account(account_id)
        if not self.verify_password(account, password):
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)
        self.store.set_two_factor(account.id, False, None)
        self.store.increment_token_version(account.id)
        logger.info("two_factor_disabled", account_id=account.id)
        tokens = self.issuer.sign_session(self._require_account(account.id))
        return TwoFactorResult(two_factor_enabled=False, two_factor_method=None, tokens=tokens)

    # -- token lifecycle --------------------------------------------------

    async def refresh(self, refresh_token: str) -> TokenPair:
        claims = self.validator.decode(refresh_token, REFRESH)
        account = self.validator.check_account(claims)
        logger.info("tokens_refreshed", account_id=account.id)
        return self.issuer.sign_session(account)

    async def logout(self, account_id: int) -> int:
        """Invalidate every token of the account by bumping its token version."""
        version = self.store.increment_token_version(account_id)
        if version is None:
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)
        logger.info("account_logged_out", account_id=account_id, token_version=version)
        return version

    async def revoke_access_token(
        self, account_id: int, jti: Optional[str], expires_at: Optional[datetime] = None
    ) -> bool:
        """Revoke one access token by jti, leaving other sessions alone."""
        if not jti:
            return False
        now = self._now()
        expires_at = expires_at or now + timedelta(seconds=self.settings.access_token_ttl_seconds)
        inserted = self.store.revoke_token(
            RevokedToken(jti=jti, account_id=account_id, expires_at=expires_at, created_at=now)
        )
        if self.cache is not None:
            ttl = int((expires_at - now).total_seconds()) + self.settings.jwt_leeway_seconds
            try:
                await self.cache.denylist_access_token(jti, ttl)
            except Exception as exc:
                logger.warning("cache_denylist_failed", jti=jti, error=str(exc))
        logger.info("access_token_revoked", account_id=account_id, jti=jti, new=inserted)
        return inserted

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    async def authenticate(self, authorization: Optional[str]) -> TokenClaims:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)
        return await self.validator.validate_incoming(token)

    def get_profile(self, account_id: int) -> Account:
        return self._require_account(account_id)

    # -- housekeeping -----------------------------------------------------

    def sweep_expired(self) -> Dict[str, int]:
        """Purge expired challenges and revocation rows. Safe to run repeatedly."""
        challenges = self.otp.cleanup_expired()
        # Tokens still decode for jwt_leeway_seconds past exp, so keep their rows that long
        cutoff = self._now() - timedelta(seconds=self.settings.jwt_leeway_seconds)
        revocations = self.store.purge_expired_revocations(cutoff)
        if revocations:
            logger.info("revoked_tokens_purged", count=revocations)
        return {"challenges": challenges, "revoked_tokens": revocations}
