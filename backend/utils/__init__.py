"""
Utils Package

Provides utility modules for:
- hashing: One-way hashing of member PII and login fingerprints
"""

from .hashing import (
    Argon2Hasher,
    HashingError,
    fingerprint_digest,
    get_hasher,
    clear_hasher_cache,
)

__all__ = [
    'Argon2Hasher',
    'HashingError',
    'fingerprint_digest',
    'get_hasher',
    'clear_hasher_cache',
]
