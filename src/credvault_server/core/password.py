"""Password hashing utilities using Argon2."""

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

# Create password hasher with secure defaults
_hasher = PasswordHasher()

# Compared against when there is no real hash to check, so "no such user"
# costs the same as "wrong password".
DUMMY_PASSWORD_HASH = _hasher.hash("dummy_password_to_prevent_timing_attack")


def hash_password(password: str) -> str:
    """Hash a password using Argon2.

    Args:
        password: Plain text password

    Returns:
        Hashed password string
    """
    return _hasher.hash(password)


def verify_password(password: str, hash: str) -> bool:
    """Verify a password against its hash.

    Args:
        password: Plain text password to verify
        hash: Stored password hash

    Returns:
        True if password matches, False otherwise
    """
    try:
        _hasher.verify(hash, password)
        return True
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


def burn_password_check(password: str | None) -> None:
    """Run a comparison against the dummy hash and discard the result."""
    verify_password(password or "", DUMMY_PASSWORD_HASH)
