"""
Hashing Utilities for Member PII

Provides the one-way transforms applied to member data before storage:
- Phone numbers: Argon2id keyed by the owning organization
- Passwords: Argon2id keyed by the secret member salt
- Login fingerprints: HMAC-SHA256 keyed by the census

Usage:
    from utils.hashing import get_hasher, fingerprint_digest

    hasher = get_hasher()
    phone_hash = hasher.hash_org_data(org_id, "+34600000001")
    password_hash = hasher.hash_password(salt, "secret")

    fingerprint = fingerprint_digest(census_id, ["1234", "Ada", "ada@example.org"])

Security Notes:
    - Never log plaintext phone numbers or passwords
    - Changing the Argon2 parameters invalidates every stored hash
    - Argon2 output is deterministic for a given salt so re-syncs are idempotent
"""

import hashlib
import hmac
import logging
from functools import lru_cache
from typing import Sequence

from argon2.low_level import Type, hash_secret_raw

logger = logging.getLogger(__name__)

# Separator between fingerprint values (ASCII unit separator)
FINGERPRINT_SEPARATOR = "\x1f"

HASH_LENGTH = 32


class HashingError(Exception):
    """Raised when a value cannot be hashed"""
    pass


class Argon2Hasher:
    """
    Deterministic Argon2id hasher for member secrets.

    The password salt and the organization id are stretched with SHA-256
    into a fixed 32 byte Argon2 salt, so short identifiers are accepted.
    """

    def __init__(
        self,
        time_cost: int = 4,
        memory_cost: int = 64 * 1024,
        parallelism: int = 8,
        hash_len: int = HASH_LENGTH,
    ):
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism
        self.hash_len = hash_len

    def hash(self, data: str, salt: str) -> str:
        """Hash `data` with `salt`, returning a hex digest."""
        if not salt:
            raise HashingError("salt cannot be empty")

        derived_salt = hashlib.sha256(salt.encode("utf-8")).digest()
        raw = hash_secret_raw(
            secret=data.encode("utf-8"),
            salt=derived_salt,
            time_cost=self.time_cost,
            memory_cost=self.memory_cost,
            parallelism=self.parallelism,
            hash_len=self.hash_len,
            type=Type.ID,
        )
        return raw.hex()

    def hash_password(self, salt: str, password: str) -> str:
        """Salted hash of a member password."""
        return self.hash(password, salt)

    def hash_org_data(self, org_id: str, data: str) -> str:
        """
        Hash organization scoped data (phone numbers).

        The organization id is the salt, so the same value stored by two
        organizations never produces the same hash.
        """
        return self.hash(data, f"org:{org_id}")


def fingerprint_digest(key: str, values: Sequence[str]) -> str:
    """
    Keyed digest over an ordered list of field values.

    Args:
        key: HMAC key (the census id)
        values: Field values in declaration order

    Returns:
        Hex encoded HMAC-SHA256
    """
    message = FINGERPRINT_SEPARATOR.join(values).encode("utf-8")
    return hmac.new(key.encode("utf-8"), message, hashlib.sha256).hexdigest()


@lru_cache(maxsize=1)
def get_hasher() -> Argon2Hasher:
    """
    Get the Argon2 hasher configured from settings.
    Cached for the process lifetime.
    """
    from config import get_settings

    settings = get_settings()
    return Argon2Hasher(
        time_cost=settings.ARGON2_TIME_COST,
        memory_cost=settings.ARGON2_MEMORY_COST,
        parallelism=settings.ARGON2_PARALLELISM,
    )


def clear_hasher_cache():
    """Clear cached hasher (for testing or settings reload)."""
    get_hasher.cache_clear()
