"""
GoalSync - Password Hashing Utilities

Password hashing using bcrypt. Work factor defaults to 12.

Security:
- Never log or expose plaintext passwords
- bcrypt includes salt automatically
- Verification is constant-time
"""

import bcrypt


# Work factor for bcrypt (2^12 = 4096 iterations)
BCRYPT_WORK_FACTOR = 12


def hash_password(password: str, work_factor: int = BCRYPT_WORK_FACTOR) -> str:
    """
    Hash a password using bcrypt.

    Example:
        >>> hashed = hash_password("Passw0rd!")
        >>> hashed.startswith("$2b$")
        True
    """
    password_bytes = password.encode("utf-8")
    salt = bcrypt.gensalt(rounds=work_factor)
    hashed = bcrypt.hashpw(password_bytes, salt)
    return hashed.decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against a bcrypt hash.

    Returns False (never raises) for an empty or malformed hash, so OAuth-only
    credentials without a password simply fail verification.
    """
    if not hashed_password:
        return False
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except (ValueError, TypeError):
        return False


def needs_rehash(hashed_password: str, target_work_factor: int = BCRYPT_WORK_FACTOR) -> bool:
    """
    Check if a password hash should be upgraded to the current work factor.
    """
    try:
        # bcrypt hash format: $2b$XX$...
        _, work_factor_str, _ = hashed_password.split("$")[1:4]
        return int(work_factor_str) < target_work_factor
    except (ValueError, IndexError):
        return True
