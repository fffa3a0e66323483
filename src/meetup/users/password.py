"""
Password hashing and validation using argon2id.

New digests are argon2id. Accounts created by earlier app versions carry
``hash_<sha256(password + salt)>`` or the short ``hash_<base36>`` fallback;
both still verify (in constant time) and are flagged for rehash so the
next successful login upgrades them.
"""

from __future__ import annotations

import hashlib
import hmac
import re

import argon2

from meetup.errors import InvalidError

LEGACY_SALT = "meetup_salt_v2_2024_secure"
LEGACY_PREFIX = "hash_"

_hasher = argon2.PasswordHasher(
    time_cost=2,
    memory_cost=65536,  # 64 MB
    parallelism=1,
    hash_len=32,
    salt_len=16,
    type=argon2.Type.ID,  # argon2id
)

_LETTER = re.compile(r"[a-zA-Z]")


class PasswordStrengthError(InvalidError):
    """Raised when a password does not meet strength requirements."""

    code = "weak_password"


def hash_password(password: str) -> str:
    """Hash a password using argon2id. Returns the full hash string."""
    return _hasher.hash(password)


def legacy_sha256_digest(password: str) -> str:
    return LEGACY_PREFIX + hashlib.sha256((password + LEGACY_SALT).encode("utf-8")).hexdigest()


def legacy_fallback_digest(password: str) -> str:
    """The non-cryptographic fallback digest older clients wrote."""
    data = (password + LEGACY_SALT).encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        # only the shift wraps to 32 bits; the rest is float arithmetic
        h = abs(_int32(_int32(h) << 5) - h + unit)
    return LEGACY_PREFIX + _base36(h)


def _int32(n: int) -> int:
    n &= 0xFFFFFFFF
    return n - 0x100000000 if n >= 0x80000000 else n


def _base36(n: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(digits[r])
    return "".join(reversed(out))


def is_legacy_hash(password_hash: str) -> bool:
    return password_hash.startswith(LEGACY_PREFIX)


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify a password against its stored digest.

    Returns True if the password matches. Never raises on mismatch.
    """
    if not password or not password_hash:
        return False
    if is_legacy_hash(password_hash):
        candidates = (legacy_sha256_digest(password), legacy_fallback_digest(password))
        matched = False
        for candidate in candidates:
            matched |= hmac.compare_digest(candidate.encode("utf-8"), password_hash.encode("utf-8"))
        return matched
    try:
        return _hasher.verify(password_hash, password)
    except argon2.exceptions.VerifyMismatchError:
        return False
    except argon2.exceptions.InvalidHashError:
        return False


def check_needs_rehash(password_hash: str) -> bool:
    """Check if the hash needs to be updated (legacy scheme or parameters changed)."""
    if is_legacy_hash(password_hash):
        return True
    try:
        return _hasher.check_needs_rehash(password_hash)
    except argon2.exceptions.InvalidHashError:
        return True


def validate_password_strength(password: str, min_length: int = 8, max_length: int = 128) -> None:
    """
    Validate password meets minimum strength requirements.

    Raises PasswordStrengthError if the password is too weak.

    Requirements:
    - Minimum 8 characters
    - Maximum 128 characters (prevent DoS via huge passwords)
    - At least one latin letter
    - At least one digit
    - Must not be empty or whitespace-only
    """
    if not password or not password.strip():
        msg = "Password cannot be empty"
        raise PasswordStrengthError(msg)
    if len(password) < min_length:
        msg = f"Password must be at least {min_length} characters"
        raise PasswordStrengthError(msg)
    if len(password) > max_length:
        msg = f"Password must not exceed {max_length} characters"
        raise PasswordStrengthError(msg)
    if not _LETTER.search(password):
        msg = "Password must contain letters"
        raise PasswordStrengthError(msg)
    if not any(c.isdigit() for c in password):
        msg = "Password must contain digits"
        raise PasswordStrengthError(msg)
