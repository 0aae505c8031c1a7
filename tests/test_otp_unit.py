"""Unit tests for the OTP challenge manager.

Covers:
- Code generation, hashing and delivery
- Expiry, single use and attempt limits
- Resend semantics
- Password reset links
"""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from hrauth.service.errors import (
    AttemptsExceededError,
    ChallengeAlreadyUsedError,
    ChallengeExpiredError,
    ChallengeNotFoundError,
    InvalidCodeError,
    PurposeMismatchError,
)
from hrauth.storage.models import (
    BothDestinations,
    EmailDestination,
    OtpChannel,
    OtpPurpose,
    PhoneDestination,
)


def _wrong(code: str) -> str:
    return "0" * len(code) if code != "0" * len(code) else "1" * len(code)


async def _issue(stack, destination=None, purpose=OtpPurpose.LOGIN):
    destination = destination or EmailDestination("worker@example.com")
    handle = await stack.otp.create_and_send(1, destination, purpose)
    return handle, stack.email.last("otp")


class TestChallengeCreation:
    """Tests for creating and delivering challenges."""

    async def test_code_is_numeric_with_configured_length(self, stack):
        """The delivered code is a zero-padded decimal string."""
        _, code = await _issue(stack)

        assert len(code) == stack.settings.otp_length
        assert code.isdigit()

    async def test_only_hash_is_stored(self, stack):
        """The plaintext code never lands in the store."""
        handle, code = await _issue(stack)
        challenge = stack.store.get_challenge(handle)

        assert challenge.code_hash != code
        assert challenge.code_hash.startswith("$argon2id$")
        assert challenge.attempts == 0
        assert challenge.consumed_at is None

    async def test_expiry_is_now_plus_ttl(self, stack):
        """Challenges expire otp_ttl_seconds after creation."""
        handle, _ = await _issue(stack)
        challenge = stack.store.get_challenge(handle)

        assert (challenge.expires_at - stack.clock.now).total_seconds() == 300

    async def test_sms_destination_goes_to_sms_sender(self, stack):
        """A phone destination uses only the SMS transport."""
        handle = await stack.otp.create_and_send(
            1, PhoneDestination("+15550100"), OtpPurpose.LOGIN
        )

        assert stack.store.get_challenge(handle).channel == OtpChannel.SMS
        assert [k for k, _, _ in stack.sms.sent] == ["otp"]
        assert stack.email.sent == []

    async def test_all_destination_sends_same_code_on_both_channels(self, stack):
        """Channel 'all' delivers one code over email and SMS."""
        await stack.otp.create_and_send(
            1, BothDestinations("worker@example.com", "+15550100"), OtpPurpose.LOGIN
        )

        assert stack.email.last("otp") == stack.sms.last("otp")

    async def test_delivery_failure_still_creates_challenge(self, stack):
        """Sends are fire-and-forget; a broken transport does not fail creation."""
        stack.email.fail = True
        handle = await stack.otp.create_and_send(
            1, EmailDestination("worker@example.com"), OtpPurpose.LOGIN
        )

        assert stack.store.get_challenge(handle) is not None


class TestVerification:
    """Tests for redeeming challenges."""

    async def test_correct_code_consumes(self, stack):
        """A correct code marks the challenge consumed."""
        handle, code = await _issue(stack)

        challenge = stack.otp.verify_and_consume(handle, code)

        assert challenge.consumed_at is not None
        assert stack.store.get_challenge(handle).consumed_at is not None

    async def test_second_redeem_fails_as_already_used(self, stack):
        """A handle redeems successfully at most once."""
        handle, code = await _issue(stack)
        stack.otp.verify_and_consume(handle, code)

        with pytest.raises(ChallengeAlreadyUsedError):
            stack.otp.verify_and_consume(handle, code)

    async def test_unknown_handle(self, stack):
        """Unknown handles are reported as not found."""
        with pytest.raises(ChallengeNotFoundError):
            stack.otp.verify_and_consume("missing", "123456")

    async def test_expired_after_ttl(self, stack):
        """Verification 301 seconds after creation fails as expired."""
        handle, code = await _issue(stack)
        stack.clock.advance(301)

        with pytest.raises(ChallengeExpiredError):
            stack.otp.verify_and_consume(handle, code)

    async def test_valid_at_exact_expiry(self, stack):
        """A challenge is still redeemable at exactly its expiry instant."""
        handle, code = await _issue(stack)
        stack.clock.advance(300)

        assert stack.otp.verify_and_consume(handle, code).consumed_at is not None

    async def test_wrong_code_counts_attempt(self, stack):
        """A wrong code fails and increments the attempt counter."""
        handle, code = await _issue(stack)

        with pytest.raises(InvalidCodeError):
            stack.otp.verify_and_consume(handle, _wrong(code))

        assert stack.store.get_challenge(handle).attempts == 1

    async def test_fifth_wrong_code_exhausts_and_sixth_fails(self, stack):
        """After five wrong codes even the right code is refused."""
        handle, code = await _issue(stack)
        for _ in range(4):
            with pytest.raises(InvalidCodeError):
                stack.otp.verify_and_consume(handle, _wrong(code))
        with pytest.raises(AttemptsExceededError):
            stack.otp.verify_and_consume(handle, _wrong(code))

        with pytest.raises(AttemptsExceededError):
            stack.otp.verify_and_consume(handle, code)
        assert stack.store.get_challenge(handle).consumed_at is None

    async def test_correct_code_on_last_allowed_attempt(self, stack):
        """Four misses still leave the fifth attempt usable."""
        handle, code = await _issue(stack)
        for _ in range(4):
            with pytest.raises(InvalidCodeError):
                stack.otp.verify_and_consume(handle, _wrong(code))

        assert stack.otp.verify_and_consume(handle, code).attempts == 5

    async def test_purpose_mismatch_does_not_consume(self, stack):
        """A code issued for another flow is refused and stays redeemable."""
        handle, code = await _issue(stack, purpose=OtpPurpose.ENABLE_2FA)

        with pytest.raises(PurposeMismatchError):
            stack.otp.verify_and_consume(handle, code, expected_purpose=OtpPurpose.LOGIN)

        consumed = stack.otp.verify_and_consume(
            handle, code, expected_purpose=OtpPurpose.ENABLE_2FA
        )
        assert consumed.purpose == OtpPurpose.ENABLE_2FA

    async def test_validate_does_not_consume(self, stack):
        """validate checks the code but leaves the challenge pending."""
        handle, code = await _issue(stack)

        stack.otp.validate(handle, code)

        challenge = stack.store.get_challenge(handle)
        assert challenge.consumed_at is None
        assert challenge.attempts == 1
        stack.otp.verify_and_consume(handle, code)


class TestResend:
    """Tests for resending a pending challenge."""

    async def test_resend_keeps_handle_and_replaces_code(self, stack):
        """The handle stays the same while the old code stops working."""
        handle, first = await _issue(stack)
        with pytest.raises(InvalidCodeError):
            stack.otp.verify_and_consume(handle, _wrong(first))

        assert await stack.otp.resend(handle) == handle
        second = stack.email.last("otp")
        challenge = stack.store.get_challenge(handle)
        assert challenge.attempts == 0

        if second != first:
            with pytest.raises(InvalidCodeError):
                stack.otp.verify_and_consume(handle, first)
        assert stack.otp.verify_and_consume(handle, second).consumed_at is not None

    async def test_resend_restarts_expiry(self, stack):
        """Expiry is recomputed from the time of the resend."""
        handle, _ = await _issue(stack)
        stack.clock.advance(200)

        await stack.otp.resend(handle)

        challenge = stack.store.get_challenge(handle)
        assert (challenge.expires_at - stack.clock.now).total_seconds() == 300

    async def test_resend_revives_expired_challenge(self, stack):
        """An expired but unused challenge can be resent."""
        handle, _ = await _issue(stack)
        stack.clock.advance(600)

        await stack.otp.resend(handle)

        assert stack.otp.verify_and_consume(handle, stack.email.last("otp"))

    async def test_resend_consumed_fails(self, stack):
        """A consumed challenge cannot be resent."""
        handle, code = await _issue(stack)
        stack.otp.verify_and_consume(handle, code)

        with pytest.raises(ChallengeAlreadyUsedError):
            await stack.otp.resend(handle)

    async def test_resend_unknown_fails(self, stack):
        """Resending an unknown handle is reported as not found."""
        with pytest.raises(ChallengeNotFoundError):
            await stack.otp.resend("missing")

    async def test_resend_during_verification_invalidates_checked_code(self, stack):
        """A code replaced between the attempt and the consume no longer redeems."""
        handle, code = await _issue(stack)
        record_attempt = stack.store.record_challenge_attempt

        def attempt_then_replace(challenge_id, now):
            challenge = record_attempt(challenge_id, now)
            stack.store.replace_challenge_code(
                challenge_id, "$argon2id$replaced", now + timedelta(minutes=5), now
            )
            return challenge

        stack.store.record_challenge_attempt = attempt_then_replace

        with pytest.raises(InvalidCodeError):
            stack.otp.verify_and_consume(handle, code)

        challenge = stack.store.get_challenge(handle)
        assert challenge.consumed_at is None
        assert challenge.code_hash == "$argon2id$replaced"

    async def test_resend_uses_challenge_channel(self, stack):
        """A resend goes to the channel the challenge was created for."""
        handle = await stack.otp.create_and_send(
            1, PhoneDestination("+15550100"), OtpPurpose.LOGIN
        )

        await stack.otp.resend(handle)

        assert [k for k, _, _ in stack.sms.sent] == ["otp", "otp"]
        assert stack.email.sent == []


class TestPasswordResetLink:
    """Tests for reset-purpose challenges."""

    async def test_reset_link_carries_handle_and_code(self, stack):
        """The emailed link points at the frontend with challengeId and code."""
        handle = await stack.otp.create_password_reset(1, "worker@example.com")
        link = stack.email.last("reset_link")

        parsed = urlparse(link)
        query = parse_qs(parsed.query)
        assert f"{parsed.scheme}://{parsed.netloc}" == stack.settings.app_public_url
        assert parsed.path == "/reset-password"
        assert query["challengeId"] == [handle]
        stack.otp.validate(handle, query["code"][0], expected_purpose=OtpPurpose.RESET_PASSWORD)

    def test_build_reset_link_strips_trailing_slash(self, stack):
        """A trailing slash on the public URL does not double up."""
        stack.settings.app_public_url = "https://hr.example.com/"

        link = stack.otp.build_reset_link("abc", "123456")

        assert link == "https://hr.example.com/reset-password?challengeId=abc&code=123456"


class TestCleanup:
    """Tests for purging expired challenges."""

    async def test_cleanup_removes_only_expired(self, stack):
        """Expired challenges are purged and live ones are kept."""
        old, _ = await _issue(stack)
        stack.clock.advance(301)
        fresh, _ = await _issue(stack)

        assert stack.otp.cleanup_expired() == 1
        assert stack.store.get_challenge(old) is None
        assert stack.store.get_challenge(fresh) is not None
