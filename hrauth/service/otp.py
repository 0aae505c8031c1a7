from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import urlencode

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from hrauth.config import Settings
from hrauth.logging import get_logger
from hrauth.service.delivery import DeliveryRouter
from hrauth.service.errors import (
    AttemptsExceededError,
    ChallengeAlreadyUsedError,
    ChallengeExpiredError,
    ChallengeNotFoundError,
    InvalidCodeError,
    PurposeMismatchError,
)
from hrauth.storage.models import (
    Destination,
    EmailDestination,
    OtpChallenge,
    OtpPurpose,
    utcnow,
)

logger = get_logger(__name__)


class OtpChallengeManager:
    """Create, deliver, resend and redeem one-time passcode challenges.

    Only the argon2 hash of a code is stored. Every state change on an
    existing challenge goes through one atomic store operation; the store is
    written before any code leaves the process, so a failed send never leaves
    a challenge half-updated.
    """

    def __init__(
        self,
        store,
        router: DeliveryRouter,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.router = router
        self.settings = settings
        self._hasher = hasher or PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            type=Type.ID,
        )
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _generate_code(self) -> str:
        length = self.settings.otp_length
        return str(secrets.randbelow(10**length)).zfill(length)

    def _code_matches(self, code_hash: str, candidate: str) -> bool:
        # argon2 compares digests in constant time
        try:
            return self._hasher.verify(code_hash, candidate or "")
        except (VerificationError, InvalidHashError):
            return False

    def build_reset_link(self, challenge_id: str, code: str) -> str:
        base = self.settings.app_public_url.rstrip("/")
        query = urlencode({"challengeId": challenge_id, "code": code})
        return f"{base}/reset-password?{query}"

    async def _dispatch(self, challenge: OtpChallenge, code: str) -> None:
        if challenge.purpose == OtpPurpose.RESET_PASSWORD:
            address = getattr(challenge.destination, "address", None)
            await self.router.send_reset_link(address, self.build_reset_link(challenge.id, code))
        else:
            await self.router.send_code(challenge.destination, code)

    async def create_and_send(
        self,
        account_id: Optional[int],
        destination: Destination,
        purpose: OtpPurpose,
    ) -> str:
        """Persist a new challenge, deliver its code and return the handle."""
        code = self._generate_code()
        challenge = OtpChallenge.new(
            account_id,
            destination,
            purpose,
            self._hasher.hash(code),
            ttl_seconds=self.settings.otp_ttl_seconds,
            now=self._now(),
        )
        self.store.create_challenge(challenge)
        logger.info(
            "otp_challenge_created",
            challenge_id=challenge.id,
            account_id=account_id,
            purpose=purpose.value,
            channel=challenge.channel.value,
        )
        await self._dispatch(challenge, code)
        return challenge.id

    async def create_password_reset(self, account_id: int, email: str) -> str:
        """Issue a reset challenge and email a link carrying its handle and code."""
        return await self.create_and_send(
            account_id, EmailDestination(email), OtpPurpose.RESET_PASSWORD
        )

    def _ensure_redeemable(self, challenge: Optional[OtpChallenge], now: datetime) -> OtpChallenge:
        if challenge is None:
            raise ChallengeNotFoundError()
        if challenge.consumed_at is not None:
            raise ChallengeAlreadyUsedError()
        if challenge.is_expired(now):
            raise ChallengeExpiredError()
        return challenge

    def _check_code(
        self,
        handle: str,
        candidate: str,
        now: datetime,
        expected_purpose: Optional[OtpPurpose],
    ) -> OtpChallenge:
        self._ensure_redeemable(self.store.get_challenge(handle), now)
        challenge = self.store.record_challenge_attempt(handle, now)
        if challenge is None:
            # Consumed or expired between the read and the increment
            self._ensure_redeemable(self.store.get_challenge(handle), now)
            raise ChallengeNotFoundError()

        max_attempts = self.settings.otp_max_attempts
        if challenge.attempts > max_attempts:
            logger.warning(
                "otp_attempts_exceeded", challenge_id=handle, attempts=challenge.attempts
            )
            raise AttemptsExceededError()
        if not self._code_matches(challenge.code_hash, candidate):
            logger.info(
                "otp_code_mismatch", challenge_id=handle, attempts=challenge.attempts
            )
            if challenge.attempts >= max_attempts:
                raise AttemptsExceededError()
            raise InvalidCodeError()
        if expected_purpose is not None and challenge.purpose != expected_purpose:
            logger.warning(
                "otp_purpose_mismatch",
                challenge_id=handle,
                purpose=challenge.purpose.value,
                expected=expected_purpose.value,
            )
            raise PurposeMismatchError()
        return challenge

    def verify_and_consume(
        self,
        handle: str,
        candidate: str,
        *,
        expected_purpose: Optional[OtpPurpose] = None,
    ) -> OtpChallenge:
        """Redeem a challenge. A handle can be redeemed successfully only once.

        With ``expected_purpose`` a correct code for a challenge issued to a
        different flow is rejected without consuming it.
        """
        now = self._now()
        checked = self._check_code(handle, candidate, now, expected_purpose)
        consumed = self.store.consume_challenge(handle, checked.code_hash, now)
        if consumed is None:
            current = self.store.get_challenge(handle)
            if current is None:
                raise ChallengeNotFoundError()
            if current.consumed_at is not None:
                raise ChallengeAlreadyUsedError()
            # A resend replaced the code after it was checked
            logger.info("otp_code_superseded", challenge_id=handle)
            raise InvalidCodeError()
        logger.info(
            "otp_challenge_consumed", challenge_id=handle, purpose=consumed.purpose.value
        )
        return consumed

    def validate(
        self,
        handle: str,
        candidate: str,
        *,
        expected_purpose: Optional[OtpPurpose] = None,
    ) -> OtpChallenge:
        """Check a code without consuming the challenge. Attempts still count."""
        return self._check_code(handle, candidate, self._now(), expected_purpose)

    async def resend(self, handle: str) -> str:
        """Replace the code of a pending challenge and deliver it again.

        Expiry restarts and attempts reset to zero; the previous code stops
        working. The handle does not change.
        """
        now = self._now()
        challenge = self.store.get_challenge(handle)
        if challenge is None:
            raise ChallengeNotFoundError()
        if challenge.consumed_at is not None:
            raise ChallengeAlreadyUsedError()

        code = self._generate_code()
        updated = self.store.replace_challenge_code(
            handle,
            self._hasher.hash(code),
            now + timedelta(seconds=self.settings.otp_ttl_seconds),
            now,
        )
        if updated is None:
            if self.store.get_challenge(handle) is None:
                raise ChallengeNotFoundError()
            raise ChallengeAlreadyUsedError()
        logger.info(
            "otp_challenge_resent", challenge_id=handle, channel=updated.channel.value
        )
        await self._dispatch(updated, code)
        return handle

    def cleanup_expired(self) -> int:
        removed = self.store.purge_expired_challenges(self._now())
        if removed:
            logger.info("otp_challenges_purged", count=removed)
        return removed
