"""
auth/passwords.py -- Argon2id password hashing bound to the account id.

Security design decisions:
  Input: the plaintext is never hashed alone. It is combined with the numeric
       user id as "{id}:{plaintext}" first, so the same password produces an
       unrelated hash on every account even before Argon2's own random salt
       is applied.

  Parameters: Argon2id with time_cost=8 and memory_cost=65536 KiB, 32-byte
       salt and digest. No secret key (pepper) is mixed in: the packaging bot
       verifies the same hashes independently and does not hold one.
       The encoded PHC string carries its own parameters, so hashes produced
       by other Argon2 implementations with other settings still verify.

  Fail closed: verify() returns False for a mismatch, a malformed stored hash,
       or an account without a hash. It never raises for bad input.

  Timing equalization: check_password() runs a dummy verification when the
       username is unknown, so response time does not reveal which usernames
       exist.

  Threading: hash and verify are CPU-bound and run on the CryptoPool; store
       lookups run on starlette's threadpool.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from auth.errors import InternalError
from auth.store import CredentialStore
from auth.workers import CryptoPool

logger = logging.getLogger("pakreq.auth")

TIME_COST = 8
MEMORY_COST_KIB = 65536
_PARALLELISM = 4
_HASH_LEN = 32
_SALT_LEN = 32

# Not a real credential; only used to spend the same time as a real verify.
_DUMMY_PLAINTEXT = "pakreq_timing_dummy"  # nosec B105


def _encode(user_id: int, plaintext: str) -> str:
    return f"{user_id}:{plaintext}"


class PasswordEngine:
    """Hash and verify account passwords.

    hash() and verify() are plain synchronous functions, safe to call from a
    worker thread or a CLI. check_password() and set_password() are the async
    entry points used by request handlers; they look the account up and
    dispatch the crypto to the pool.
    """

    def __init__(self, pool: CryptoPool) -> None:
        self._pool = pool
        self._hasher = PasswordHasher(
            time_cost=TIME_COST,
            memory_cost=MEMORY_COST_KIB,
            parallelism=_PARALLELISM,
            hash_len=_HASH_LEN,
            salt_len=_SALT_LEN,
            type=Type.ID,
        )
        # Computed once; every unknown-user miss then costs exactly one verify.
        self._dummy_hash = self.hash(0, _DUMMY_PLAINTEXT)

    def hash(self, user_id: int, plaintext: str) -> str:
        """Return the encoded Argon2id hash of "{user_id}:{plaintext}"."""
        return self._hasher.hash(_encode(user_id, plaintext))

    def verify(self, user_id: int, plaintext: str, stored_hash: str | None) -> bool:
        """Return True only if stored_hash was produced from this id and plaintext."""
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, _encode(user_id, plaintext))
        except (VerificationError, InvalidHashError):
            return False

    def _equalize(self, plaintext: str) -> bool:
        self.verify(0, plaintext, self._dummy_hash)
        return False

    async def check_password(self, store: CredentialStore, username: str, plaintext: str) -> bool:
        """Verify a login attempt against the stored hash.

        Returns False for an unknown username, an account without a password,
        or a wrong password. Raises InternalError only when the store itself
        is unavailable.
        """
        try:
            user = await run_in_threadpool(store.lookup_user_by_username, username)
        except SQLAlchemyError as exc:
            logger.error("Credential store lookup failed: %s", exc)
            raise InternalError("credential store unavailable") from exc

        if user is None or user.password_hash is None:
            # Equalize timing -- do NOT return before spending a verification.
            return await self._pool.run(self._equalize, plaintext)
        return await self._pool.run(self.verify, user.id, plaintext, user.password_hash)

    async def set_password(self, store: CredentialStore, username: str, plaintext: str) -> None:
        """Rehash plaintext for the account and persist it.

        Bearer tokens issued before the change stay valid until they expire;
        there is no revocation list.
        """
        try:
            user = await run_in_threadpool(store.lookup_user_by_username, username)
            if user is None:
                raise InternalError(f"no account named {username!r}")
            new_hash = await self._pool.run(self.hash, user.id, plaintext)
            await run_in_threadpool(store.update_password_hash, username, new_hash)
        except SQLAlchemyError as exc:
            logger.error("Credential store update failed: %s", exc)
            raise InternalError("credential store unavailable") from exc
        logger.info("Password changed for %s", username)
