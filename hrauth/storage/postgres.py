from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from hrauth.logging import get_logger
from hrauth.storage.errors import ConstraintViolation
from hrauth.storage.models import (
    Account,
    OtpChallenge,
    OtpChannel,
    OtpPurpose,
    RevokedToken,
    TwoFactorMethod,
    destination_from_dict,
    destination_to_dict,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_account (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        phone TEXT UNIQUE,
        role TEXT NOT NULL DEFAULT 'employee',
        password_hash TEXT,
        password_algo TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_method TEXT CHECK (two_factor_method IN ('email', 'sms', 'all')),
        token_version INTEGER NOT NULL DEFAULT 0,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS otp_challenge (
        id TEXT PRIMARY KEY,
        account_id BIGINT REFERENCES app_account(id) ON DELETE CASCADE,
        channel TEXT NOT NULL CHECK (channel IN ('email', 'sms', 'all')),
        destination JSONB NOT NULL,
        purpose TEXT NOT NULL CHECK (purpose IN ('login', 'enable_2fa', 'reset_password')),
        code_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        consumed_at TIMESTAMPTZ,
        attempts INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS otp_challenge_expires_at_idx ON otp_challenge (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS revoked_token (
        jti TEXT PRIMARY KEY,
        account_id BIGINT NOT NULL REFERENCES app_account(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS revoked_token_expires_at_idx ON revoked_token (expires_at)",
)


class PostgresStore:
    """Postgres-backed credential, challenge and revocation store.

    State transitions that must not race (attempt counting, consumption, code
    replacement, token version bumps) are single ``UPDATE ... RETURNING``
    statements guarded in their ``WHERE`` clause, so concurrent requests on the
    same row serialize on the row lock instead of a read-then-write.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the account, challenge and revocation tables when missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        method = row.get("two_factor_method")
        return Account(
            id=int(row["id"]),
            email=row["email"],
            phone=row.get("phone"),
            role=row.get("role") or "employee",
            password_hash=row.get("password_hash"),
            password_algo=row.get("password_algo"),
            is_active=row.get("is_active", True),
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            two_factor_method=TwoFactorMethod(method) if method else None,
            token_version=int(row.get("token_version") or 0),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _challenge_from_row(row: Dict[str, Any]) -> OtpChallenge:
        destination = row["destination"]
        if isinstance(destination, str):
            destination = json.loads(destination)
        channel = OtpChannel(row["channel"])
        return OtpChallenge(
            id=row["id"],
            account_id=row.get("account_id"),
            channel=channel,
            destination=destination_from_dict(channel, destination),
            purpose=OtpPurpose(row["purpose"]),
            code_hash=row["code_hash"],
            expires_at=row["expires_at"],
            consumed_at=row.get("consumed_at"),
            attempts=int(row.get("attempts") or 0),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # -- credential store -------------------------------------------------

    def create_account(
        self,
        email: str,
        *,
        phone: Optional[str] = None,
        role: str = "employee",
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        is_active: bool = True,
        two_factor_enabled: bool = False,
        two_factor_method: Optional[TwoFactorMethod] = None,
    ) -> Account:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_account (
                        email, phone, role, password_hash, password_algo,
                        is_active, two_factor_enabled, two_factor_method
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        email.strip().lower(),
                        phone,
                        role,
                        password_hash,
                        password_algo,
                        is_active,
                        two_factor_enabled,
                        two_factor_method.value if two_factor_method else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            # Inline UNIQUE columns are named app_account_<column>_key
            field = "phone" if "phone" in (exc.diag.constraint_name or "") else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._account_from_row(row)

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_account WHERE lower(email) = lower(%s)",
                (email.strip(),),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def find_active_account(self, identifier: str) -> Optional[Account]:
        needle = identifier.strip()
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM app_account
                WHERE (lower(email) = lower(%s) OR phone = %s) AND is_active
                ORDER BY id
                LIMIT 1
                """,
                (needle, needle),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def save_password(self, account_id: int, password_hash: str, password_algo: str) -> None:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_account
                SET password_hash = %s, password_algo = %s, updated_at = now()
                WHERE id = %s
                RETURNING id
                """,
                (password_hash, password_algo, account_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation(
                "account not found for credentials", {"account_id": account_id}
            )

    def touch_last_login(self, account_id: int, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_account SET last_login_at = %s WHERE id = %s",
                (when, account_id),
            )

    def set_two_factor(
        self,
        account_id: int,
        enabled: bool,
        method: Optional[TwoFactorMethod],
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_account
                SET two_factor_enabled = %s, two_factor_method = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (enabled, method.value if method else None, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def increment_token_version(self, account_id: int) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_account
                SET token_version = token_version + 1, updated_at = now()
                WHERE id = %s
                RETURNING token_version
                """,
                (account_id,),
            ).fetchone()
        return int(row["token_version"]) if row else None

    # -- challenge store --------------------------------------------------

    def create_challenge(self, challenge: OtpChallenge) -> OtpChallenge:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO otp_challenge (
                        id, account_id, channel, destination, purpose, code_hash,
                        expires_at, consumed_at, attempts, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        challenge.id,
                        challenge.account_id,
                        challenge.channel.value,
                        json.dumps(destination_to_dict(challenge.destination)),
                        challenge.purpose.value,
                        challenge.code_hash,
                        challenge.expires_at,
                        challenge.consumed_at,
                        challenge.attempts,
                        challenge.created_at,
                        challenge.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("challenge id collision", {"id": challenge.id})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for challenge", {"account_id": challenge.account_id}
            )
        return self._challenge_from_row(row)

    def get_challenge(self, challenge_id: str) -> Optional[OtpChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM otp_challenge WHERE id = %s", (challenge_id,)
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def record_challenge_attempt(
        self, challenge_id: str, now: datetime
    ) -> Optional[OtpChallenge]:
        """Atomically increment attempts on a live challenge and return the row.

        Returns None when the challenge is missing, consumed or expired.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_challenge
                SET attempts = attempts + 1, updated_at = %s
                WHERE id = %s AND consumed_at IS NULL AND expires_at >= %s
                RETURNING *
                """,
                (now, challenge_id, now),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def consume_challenge(
        self, challenge_id: str, code_hash: str, now: datetime
    ) -> Optional[OtpChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_challenge
                SET consumed_at = %s, updated_at = %s
                WHERE id = %s AND consumed_at IS NULL AND code_hash = %s
                RETURNING *
                """,
                (now, now, challenge_id, code_hash),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def replace_challenge_code(
        self,
        challenge_id: str,
        code_hash: str,
        expires_at: datetime,
        now: datetime,
    ) -> Optional[OtpChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_challenge
                SET code_hash = %s, expires_at = %s, attempts = 0, updated_at = %s
                WHERE id = %s AND consumed_at IS NULL
                RETURNING *
                """,
                (code_hash, expires_at, now, challenge_id),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def purge_expired_challenges(self, now: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM otp_challenge WHERE expires_at < %s", (now,))
            return cursor.rowcount or 0

    # -- revocation store -------------------------------------------------

    def revoke_token(self, token: RevokedToken) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO revoked_token (jti, account_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (jti) DO NOTHING
                    RETURNING jti
                    """,
                    (token.jti, token.account_id, token.expires_at, token.created_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for revocation", {"account_id": token.account_id}
            )
        return row is not None

    def is_token_revoked(self, jti: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS revoked FROM revoked_token WHERE jti = %s", (jti,)
            ).fetchone()
        return row is not None

    def purge_expired_revocations(self, now: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM revoked_token WHERE expires_at < %s", (now,))
            return cursor.rowcount or 0
