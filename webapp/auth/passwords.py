from __future__ import annotations

import hashlib
import hmac
import os
import re as _re
import secrets


def _pbkdf2_hash(password: str, salt: bytes | None = None, iterations: int = 260_000) -> str:
    """Hash a password using PBKDF2-HMAC-SHA256 (stdlib, no external deps).

    Returns a string in the format: pbkdf2:iterations:hex_salt:hex_hash
    """
    if salt is None:
        salt = os.urandom(16)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations, dklen=32)
    return f"pbkdf2:{iterations}:{salt.hex()}:{dk.hex()}"


def hash_password(password: str) -> str:
    """Create a secure password hash."""
    return _pbkdf2_hash(password)


def verify_password(password: str, stored_hash: str) -> bool:
    """Verify a password against a stored hash."""
    parts = (stored_hash or "").split(":")
    if len(parts) != 4 or parts[0] != "pbkdf2":
        return False
    try:
        iterations = int(parts[1])
        salt = bytes.fromhex(parts[2])
    except ValueError:
        return False
    expected = _pbkdf2_hash(password, salt=salt, iterations=iterations)
    return hmac.compare_digest(expected, stored_hash)


def generate_token(nbytes: int = 32) -> str:
    """Generate a cryptographically secure hex token."""
    return secrets.token_hex(nbytes)


def generate_verification_code() -> str:
    """Six-digit numeric code for email verification."""
    return f"{secrets.randbelow(900_000) + 100_000}"


def hash_token(token: str) -> str:
    """One-way digest for tokens kept at rest (reset tokens, verification codes)."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


_CHARACTER_RULES = (
    (r"[a-z]", "one lowercase letter"),
    (r"[A-Z]", "one uppercase letter"),
    (r"\d", "one digit"),
    (r"[^a-zA-Z0-9]", "one special character"),
)

# policy -> (minimum length, how many of _CHARACTER_RULES apply)
PASSWORD_POLICIES = {
    "none": (1, 0),
    "basic": (8, 0),
    "medium": (8, 3),
    "strong": (12, 4),
}


def validate_password_strength(password: str, policy: str) -> str | None:
    """Return an error message, or None when ``password`` satisfies ``policy``.

    Unknown policy names are treated as "medium".
    """
    if not password:
        return "Password is required"
    min_len, rule_count = PASSWORD_POLICIES.get(policy, PASSWORD_POLICIES["medium"])
    if len(password) < min_len:
        return f"Password must be at least {min_len} characters long"
    for pattern, label in _CHARACTER_RULES[:rule_count]:
        if not _re.search(pattern, password):
            return f"Password must include at least {label}"
    return None
