"""
Credential hashing.

Older records store the password verbatim and were compared with plain
equality. New and updated credentials are stored as PBKDF2 hashes;
``verify_password`` accepts both forms so legacy accounts keep working
until their next password change.
"""

import hashlib
import hmac
import secrets

HASH_SCHEME = "pbkdf2_sha256"
DEFAULT_ITERATIONS = 120_000
SALT_BYTES = 16


def is_hashed(value: str | None) -> bool:
    """Check whether a stored credential is already a hash."""
    return bool(value) and value.startswith(f"{HASH_SCHEME}$") and value.count("$") == 3


def hash_password(password: str, iterations: int = DEFAULT_ITERATIONS) -> str:
    """Hash a password for storage.

    Returns:
        ``pbkdf2_sha256$<iterations>$<salt hex>$<digest hex>``
    """
    salt = secrets.token_hex(SALT_BYTES)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), iterations)
    return f"{HASH_SCHEME}${iterations}${salt}${digest.hex()}"


def verify_password(password: str, stored: str | None) -> bool:
    """Check a password against a stored credential.

    Args:
        password: Password as typed by the user
        stored: Hash or legacy plain value

    Returns:
        True on match. Never raises on malformed input.
    """
    if not stored:
        return False

    if not is_hashed(stored):
        return hmac.compare_digest(password.encode("utf-8"), stored.encode("utf-8"))

    _, iterations_str, salt, expected = stored.split("$")
    try:
        iterations = int(iterations_str)
        salt_bytes = salt.encode("ascii")
    except (ValueError, UnicodeEncodeError):
        return False
    if iterations <= 0:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt_bytes, iterations)
    return hmac.compare_digest(digest.hex().encode("ascii"), expected.encode("utf-8"))


def ensure_hashed(value: str | None) -> str | None:
    """Hash a credential unless it already is one."""
    if value is None or is_hashed(value):
        return value
    return hash_password(value)
