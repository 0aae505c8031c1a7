from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional

from hrauth.logging import get_logger
from hrauth.storage.errors import ConstraintViolation
from hrauth.storage.models import (
    Account,
    OtpChallenge,
    RevokedToken,
    TwoFactorMethod,
)


class MemoryStore:
    """In-process credential, challenge and revocation store.

    Every read-modify-write runs under a single re-entrant lock so the atomic
    operations (attempt counting, consumption, token version bumps) behave like
    their single-statement Postgres counterparts. Records are copied on the way
    in and out so callers never hold references into the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[int, Account] = {}
        self.challenges: Dict[str, OtpChallenge] = {}
        self.revoked_tokens: Dict[str, RevokedToken] = {}
        self._account_ids = itertools.count(1)
        self._data_lock = threading.RLock()

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
        with self._data_lock:
            normalized = email.strip().lower()
            if any(a.email.lower() == normalized for a in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if phone and any(a.phone == phone for a in self.accounts.values()):
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            account = Account(
                id=next(self._account_ids),
                email=normalized,
                phone=phone,
                role=role,
                password_hash=password_hash,
                password_algo=password_algo,
                is_active=is_active,
                two_factor_enabled=two_factor_enabled,
                two_factor_method=two_factor_method,
            )
            self.accounts[account.id] = account
            return replace(account)

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = email.strip().lower()
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email.lower() == normalized), None
            )
            return replace(account) if account else None

    def find_active_account(self, identifier: str) -> Optional[Account]:
        """Match an active account by email (case-insensitive) or phone."""
        needle = identifier.strip()
        with self._data_lock:
            for account in self.accounts.values():
                if not account.is_active:
                    continue
                if account.email.lower() == needle.lower() or (
                    account.phone and account.phone == needle
                ):
                    return replace(account)
            return None

    def save_password(self, account_id: int, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            account.password_hash = password_hash
            account.password_algo = password_algo

    def touch_last_login(self, account_id: int, when: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is not None:
                account.last_login_at = when

    def set_two_factor(
        self,
        account_id: int,
        enabled: bool,
        method: Optional[TwoFactorMethod],
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            account.two_factor_enabled = enabled
            account.two_factor_method = method
            return replace(account)

    def increment_token_version(self, account_id: int) -> Optional[int]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            account.token_version += 1
            return account.token_version

    # -- challenge store --------------------------------------------------

    def create_challenge(self, challenge: OtpChallenge) -> OtpChallenge:
        with self._data_lock:
            if challenge.id in self.challenges:
                raise ConstraintViolation("challenge id collision", {"id": challenge.id})
            self.challenges[challenge.id] = replace(challenge)
            return replace(challenge)

    def get_challenge(self, challenge_id: str) -> Optional[OtpChallenge]:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            return replace(challenge) if challenge else None

    def record_challenge_attempt(
        self, challenge_id: str, now: datetime
    ) -> Optional[OtpChallenge]:
        """Increment attempts on a live challenge and return the updated row.

        Returns None when the challenge is missing, consumed or expired.
        """
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if challenge is None or challenge.consumed_at is not None:
                return None
            if challenge.expires_at < now:
                return None
            challenge.attempts += 1
            challenge.updated_at = now
            return replace(challenge)

    def consume_challenge(
        self, challenge_id: str, code_hash: str, now: datetime
    ) -> Optional[OtpChallenge]:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if challenge is None or challenge.consumed_at is not None:
                return None
            if challenge.code_hash != code_hash:
                return None
            challenge.consumed_at = now
            challenge.updated_at = now
            return replace(challenge)

    def replace_challenge_code(
        self,
        challenge_id: str,
        code_hash: str,
        expires_at: datetime,
        now: datetime,
    ) -> Optional[OtpChallenge]:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if challenge is None or challenge.consumed_at is not None:
                return None
            challenge.code_hash = code_hash
            challenge.expires_at = expires_at
            challenge.attempts = 0
            challenge.updated_at = now
            return replace(challenge)

    def purge_expired_challenges(self, now: datetime) -> int:
        with self._data_lock:
            expired = [cid for cid, c in self.challenges.items() if c.expires_at < now]
            for cid in expired:
                del self.challenges[cid]
            return len(expired)

    # -- revocation store -------------------------------------------------

    def revoke_token(self, token: RevokedToken) -> bool:
        """Record a revoked jti. Returns False when it was already present."""
        with self._data_lock:
            if token.jti in self.revoked_tokens:
                return False
            self.revoked_tokens[token.jti] = replace(token)
            return True

    def is_token_revoked(self, jti: str) -> bool:
        with self._data_lock:
            return jti in self.revoked_tokens

    def purge_expired_revocations(self, now: datetime) -> int:
        with self._data_lock:
            expired = [jti for jti, t in self.revoked_tokens.items() if t.expires_at < now]
            for jti in expired:
                del self.revoked_tokens[jti]
            return len(expired)

    def verify_connection(self) -> None:
        return None
