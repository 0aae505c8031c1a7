from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from hrauth.storage.errors import ConstraintViolation
from hrauth.storage.models import (
    BothDestinations,
    OtpChallenge,
    OtpChannel,
    OtpPurpose,
    PhoneDestination,
    RevokedToken,
    TwoFactorMethod,
)
from hrauth.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class PhoneTaken(errors.UniqueViolation):
    @property
    def diag(self):
        return SimpleNamespace(constraint_name="app_account_phone_key")


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def execute(self, sql, params=None):
        self.pool.executed.append((" ".join(sql.split()), params))
        if self.pool.raise_on_execute is not None:
            raise self.pool.raise_on_execute
        return self.pool.results.pop(0) if self.pool.results else FakeCursor()


class FakePool:
    def __init__(self, *results):
        self.results = list(results)
        self.executed = []
        self.raise_on_execute = None

    @contextmanager
    def connection(self):
        yield FakeConnection(self)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    return store


def _challenge_row(**overrides):
    row = {
        "id": "handle-1",
        "account_id": 7,
        "channel": "all",
        "destination": {"email": "worker@example.com", "phone": "+15550100"},
        "purpose": "login",
        "code_hash": "$argon2id$stub",
        "expires_at": NOW + timedelta(minutes=5),
        "consumed_at": None,
        "attempts": 1,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_account_from_row_maps_two_factor_method():
    account = PostgresStore._account_from_row(
        {
            "id": 3,
            "email": "worker@example.com",
            "phone": None,
            "role": "employee",
            "password_hash": "h",
            "password_algo": "argon2id",
            "is_active": True,
            "two_factor_enabled": True,
            "two_factor_method": "sms",
            "token_version": 4,
            "last_login_at": None,
            "created_at": NOW,
        }
    )

    assert account.two_factor_method == TwoFactorMethod.SMS
    assert account.token_version == 4


def test_challenge_from_row_rebuilds_destination():
    challenge = PostgresStore._challenge_from_row(_challenge_row())

    assert challenge.destination == BothDestinations("worker@example.com", "+15550100")
    assert challenge.channel == OtpChannel.ALL
    assert challenge.purpose == OtpPurpose.LOGIN


def test_challenge_from_row_accepts_json_text():
    challenge = PostgresStore._challenge_from_row(
        _challenge_row(channel="sms", destination='{"email": null, "phone": "+15550100"}')
    )

    assert challenge.destination == PhoneDestination("+15550100")


def test_record_attempt_is_single_guarded_update():
    pool = FakePool(FakeCursor(_challenge_row(attempts=2)))
    store = _store(pool)

    challenge = store.record_challenge_attempt("handle-1", NOW)

    sql, params = pool.executed[0]
    assert len(pool.executed) == 1
    assert sql.startswith("UPDATE otp_challenge SET attempts = attempts + 1")
    assert "consumed_at IS NULL AND expires_at >= %s RETURNING *" in sql
    assert params == (NOW, "handle-1", NOW)
    assert challenge.attempts == 2


def test_record_attempt_returns_none_when_guard_fails():
    store = _store(FakePool(FakeCursor(None)))

    assert store.record_challenge_attempt("handle-1", NOW) is None


def test_consume_is_conditional_on_unconsumed_and_hash():
    pool = FakePool(FakeCursor(None))
    store = _store(pool)

    assert store.consume_challenge("handle-1", "$argon2id$stub", NOW) is None
    sql, params = pool.executed[0]
    assert "WHERE id = %s AND consumed_at IS NULL AND code_hash = %s" in sql
    assert params == (NOW, NOW, "handle-1", "$argon2id$stub")


def test_replace_code_resets_attempts():
    pool = FakePool(FakeCursor(_challenge_row(attempts=0)))
    store = _store(pool)

    store.replace_challenge_code("handle-1", "$argon2id$new", NOW + timedelta(minutes=5), NOW)

    sql, params = pool.executed[0]
    assert "attempts = 0" in sql
    assert "consumed_at IS NULL" in sql
    assert params[0] == "$argon2id$new"


def test_increment_token_version_is_atomic():
    pool = FakePool(FakeCursor({"token_version": 5}))
    store = _store(pool)

    assert store.increment_token_version(7) == 5
    sql, params = pool.executed[0]
    assert "SET token_version = token_version + 1" in sql
    assert sql.endswith("RETURNING token_version")
    assert params == (7,)


def test_increment_token_version_missing_account():
    store = _store(FakePool(FakeCursor(None)))

    assert store.increment_token_version(404) is None


def test_create_challenge_serializes_destination():
    challenge = OtpChallenge.new(
        7,
        PhoneDestination("+15550100"),
        OtpPurpose.ENABLE_2FA,
        "$argon2id$stub",
        ttl_seconds=300,
        now=NOW,
    )
    pool = FakePool(
        FakeCursor(
            _challenge_row(
                id=challenge.id,
                channel="sms",
                destination={"email": None, "phone": "+15550100"},
                purpose="enable_2fa",
            )
        )
    )
    store = _store(pool)

    stored = store.create_challenge(challenge)

    _, params = pool.executed[0]
    assert params[2] == "sms"
    assert params[3] == '{"email": null, "phone": "+15550100"}'
    assert stored.destination == PhoneDestination("+15550100")


def test_create_account_duplicate_maps_to_constraint_violation():
    pool = FakePool()
    pool.raise_on_execute = errors.UniqueViolation("duplicate key")
    store = _store(pool)

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_account("worker@example.com")

    assert excinfo.value.detail == {"field": "email"}


def test_duplicate_phone_reports_phone_field():
    pool = FakePool()
    pool.raise_on_execute = PhoneTaken("duplicate key")
    store = _store(pool)

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_account("other@example.com", phone="+15550100")

    assert excinfo.value.detail == {"field": "phone"}
    assert excinfo.value.message == "phone already exists"


def test_revoke_token_is_idempotent_insert():
    pool = FakePool(FakeCursor({"jti": "abc"}), FakeCursor(None))
    store = _store(pool)
    token = RevokedToken(jti="abc", account_id=7, expires_at=NOW, created_at=NOW)

    assert store.revoke_token(token) is True
    assert store.revoke_token(token) is False
    sql, _ = pool.executed[0]
    assert "ON CONFLICT (jti) DO NOTHING" in sql


def test_purge_reports_rowcount():
    pool = FakePool(FakeCursor(rowcount=3), FakeCursor(rowcount=0))
    store = _store(pool)

    assert store.purge_expired_challenges(NOW) == 3
    assert store.purge_expired_revocations(NOW) == 0


def test_store_without_stubbed_pool_never_connects():
    store = _store(DummyPool())

    with pytest.raises(AssertionError):
        store.get_account(1)
