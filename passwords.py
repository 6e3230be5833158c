"""scrypt password hashing in the ``scrypt:<salt>:<hex digest>`` format."""

import hashlib
import hmac
import secrets

_SCRYPT_N = 16384
_SCRYPT_R = 8
_SCRYPT_P = 1
_KEY_LEN = 64
_PREFIX = "scrypt"


def _scrypt_hex(password: str, salt: str) -> str:
    return hashlib.scrypt(
        password.encode("utf-8"),
        salt=salt.encode("utf-8"),
        n=_SCRYPT_N,
        r=_SCRYPT_R,
        p=_SCRYPT_P,
        maxmem=64 * 1024 * 1024,
        dklen=_KEY_LEN,
    ).hex()


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    return f"{_PREFIX}:{salt}:{_scrypt_hex(password, salt)}"


def verify_password(password: str, stored_hash: str) -> bool:
    if not stored_hash or not stored_hash.startswith(f"{_PREFIX}:"):
        return False
    parts = stored_hash.split(":")
    if len(parts) != 3:
        return False
    _, salt, expected = parts
    return hmac.compare_digest(_scrypt_hex(password, salt), expected)
