"""Unit tests for token issuing and validation."""

import time
import uuid

import jwt
import pytest

from hrauth.service.errors import AuthenticationError
from hrauth.service.tokens import ACCESS, REFRESH, TokenIssuer, TokenValidator
from hrauth.storage.memory import MemoryStore
from hrauth.storage.models import RevokedToken, utcnow


class FakeCache:
    def __init__(self, denylisted=(), broken=False):
        self.denylisted = set(denylisted)
        self.broken = broken

    async def is_access_token_denylisted(self, jti):
        if self.broken:
            raise ConnectionError("redis down")
        return jti in self.denylisted


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def account(store):
    return store.create_account("worker@example.com", role="hr_admin")


@pytest.fixture
def issuer(settings):
    return TokenIssuer(settings)


@pytest.fixture
def validator(store, settings):
    return TokenValidator(store, settings)


def _claims(settings, account, **overrides):
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "sub": str(account.id),
        "email": account.email,
        "role": account.role,
        "ver": account.token_version,
        "token_type": ACCESS,
        "jti": str(uuid.uuid4()),
        "iat": now,
        "exp": now + 600,
    }
    payload.update(overrides)
    return payload


class TestIssuer:
    """Tests for minting token pairs."""

    def test_pair_carries_identity_claims(self, issuer, settings, account):
        """Access tokens carry subject, role, version and type."""
        pair = issuer.sign_session(account)

        payload = jwt.decode(
            pair.access_token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
        )
        assert payload["sub"] == str(account.id)
        assert payload["role"] == "hr_admin"
        assert payload["ver"] == 0
        assert payload["token_type"] == ACCESS
        assert payload["iss"] == settings.jwt_issuer

    def test_refresh_uses_separate_secret(self, issuer, settings, account):
        """Refresh tokens do not verify with the access secret."""
        pair = issuer.sign_session(account)

        with pytest.raises(jwt.InvalidSignatureError):
            jwt.decode(
                pair.refresh_token,
                settings.jwt_secret,
                algorithms=["HS256"],
                audience=settings.jwt_audience,
            )

    def test_each_token_has_unique_jti(self, issuer, settings, account):
        """Two sessions never share a jti."""
        first = issuer.sign_session(account)
        second = issuer.sign_session(account)
        decode = lambda t: jwt.decode(  # noqa: E731
            t, settings.jwt_secret, algorithms=["HS256"], audience=settings.jwt_audience
        )

        assert decode(first.access_token)["jti"] != decode(second.access_token)["jti"]

    def test_expiry_matches_ttls(self, issuer, settings, account):
        """Expiry timestamps follow the configured lifetimes."""
        pair = issuer.sign_session(account)

        spread = (pair.refresh_expires_at - pair.expires_at).total_seconds()
        assert spread == settings.refresh_token_ttl_seconds - settings.access_token_ttl_seconds


class TestValidator:
    """Tests for accepting and rejecting tokens."""

    async def test_valid_access_token(self, issuer, validator, account):
        """A fresh access token validates to its claims."""
        pair = issuer.sign_session(account)

        claims = await validator.validate_incoming(pair.access_token)

        assert claims.account_id == account.id
        assert claims.token_type == ACCESS

    async def test_garbage_token(self, validator):
        """Malformed tokens are rejected."""
        with pytest.raises(AuthenticationError):
            await validator.validate_incoming("not-a-jwt")

    async def test_tampered_signature(self, settings, validator, account):
        """Tokens signed with another secret are rejected."""
        token = jwt.encode(
            _claims(settings, account), "another-secret-long-enough-for-hs256!", algorithm="HS256"
        )

        with pytest.raises(AuthenticationError):
            await validator.validate_incoming(token)

    async def test_expired_token(self, settings, validator, account):
        """Tokens past exp plus leeway are rejected."""
        past = int(time.time()) - 3600
        token = jwt.encode(
            _claims(settings, account, iat=past - 60, exp=past),
            settings.jwt_secret,
            algorithm="HS256",
        )

        with pytest.raises(AuthenticationError):
            await validator.validate_incoming(token)

    async def test_wrong_audience(self, settings, validator, account):
        """Tokens minted for another audience are rejected."""
        token = jwt.encode(
            _claims(settings, account, aud="payroll"), settings.jwt_secret, algorithm="HS256"
        )

        with pytest.raises(AuthenticationError):
            await validator.validate_incoming(token)

    async def test_unsigned_token_rejected(self, settings, validator, account):
        """alg=none is never accepted."""
        token = jwt.encode(_claims(settings, account), None, algorithm="none")

        with pytest.raises(AuthenticationError):
            await validator.validate_incoming(token)

    async def test_refresh_token_is_not_an_access_token(self, validator, settings, account):
        """Token type must match even when the signature would verify."""
        token = jwt.encode(
            _claims(settings, account, token_type=REFRESH), settings.jwt_secret, algorithm="HS256"
        )

        with pytest.raises(AuthenticationError):
            await validator.validate_incoming(token)

    async def test_version_mismatch(self, store, issuer, validator, account):
        """Bumping the account's token version invalidates older tokens."""
        pair = issuer.sign_session(account)
        store.increment_token_version(account.id)

        with pytest.raises(AuthenticationError):
            await validator.validate_incoming(pair.access_token)

    async def test_inactive_account(self, store, issuer, validator, account):
        """Tokens of deactivated accounts are rejected."""
        pair = issuer.sign_session(account)
        store.accounts[account.id].is_active = False

        with pytest.raises(AuthenticationError):
            await validator.validate_incoming(pair.access_token)

    async def test_revoked_jti(self, store, issuer, validator, account):
        """A jti in the revocation store is rejected."""
        pair = issuer.sign_session(account)
        claims = await validator.validate_incoming(pair.access_token)
        store.revoke_token(
            RevokedToken(jti=claims.jti, account_id=account.id, expires_at=claims.expires_at)
        )

        with pytest.raises(AuthenticationError):
            await validator.validate_incoming(pair.access_token)

    async def test_denylist_hit(self, store, settings, issuer, account):
        """A jti found in the cache denylist is rejected without the store."""
        pair = issuer.sign_session(account)
        jti = TokenValidator(store, settings).decode(pair.access_token, ACCESS).jti
        validator = TokenValidator(store, settings, cache=FakeCache(denylisted={jti}))

        with pytest.raises(AuthenticationError):
            await validator.validate_incoming(pair.access_token)

    async def test_broken_cache_falls_back_to_store(self, store, settings, issuer, account):
        """When the cache is down the store still decides revocation."""
        pair = issuer.sign_session(account)
        validator = TokenValidator(store, settings, cache=FakeCache(broken=True))
        claims = await validator.validate_incoming(pair.access_token)

        store.revoke_token(
            RevokedToken(jti=claims.jti, account_id=account.id, expires_at=utcnow())
        )

        with pytest.raises(AuthenticationError):
            await validator.validate_incoming(pair.access_token)

    def test_every_rejection_has_same_message(self, settings, validator, account):
        """Callers cannot tell which check failed."""
        bad_sig = jwt.encode(_claims(settings, account), "x" * 32, algorithm="HS256")
        wrong_type = jwt.encode(
            _claims(settings, account, token_type=REFRESH), settings.jwt_secret, algorithm="HS256"
        )
        messages = set()
        for token in (bad_sig, wrong_type, "garbage"):
            with pytest.raises(AuthenticationError) as exc:
                validator.decode(token, ACCESS)
            messages.add(exc.value.message)

        assert messages == {"Invalid or expired token"}
