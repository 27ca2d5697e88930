"""Security utilities for password hashing and token generation."""
import bcrypt
import secrets
import hashlib


def hash_password(password: str) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plain text password

    Returns:
        Bcrypt hash string
    """
    password_bytes = password.encode('utf-8')
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(password_bytes, salt)
    return hashed.decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against a bcrypt hash.

    Returns:
        True if password matches, False otherwise
    """
    try:
        return bcrypt.checkpw(
            plain_password.encode('utf-8'),
            hashed_password.encode('utf-8')
        )
    except ValueError:
        return False


def generate_session_token(length: int = 32) -> str:
    """
    Generate a cryptographically secure random session token.

    Args:
        length: Number of bytes (token will be URL-safe base64 encoded)
    """
    return secrets.token_urlsafe(length)


def hash_token(token: str) -> str:
    """Hex-encoded SHA-256 of a token, used as its storage key."""
    return hashlib.sha256(token.encode('utf-8')).hexdigest()
