"""JWT authentication utilities."""
import jwt
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from matchguard.core.config import Settings


def _require_secret(settings: Settings) -> str:
    if not settings.JWT_SECRET_KEY:
        raise ValueError("JWT_SECRET_KEY not configured")
    return settings.JWT_SECRET_KEY


def create_user_token(
    settings: Settings,
    user_id: str,
    session_token: Optional[str] = None,
    is_admin: bool = False,
) -> str:
    """
    Create JWT token for a logged-in user.

    Args:
        settings: Application settings (secret, algorithm, lifetime)
        user_id: Authenticated user ID
        session_token: Platform session token bound to this JWT
        is_admin: Whether user has admin privileges

    Returns:
        JWT token string
    """
    secret = _require_secret(settings)
    now = datetime.now(timezone.utc)
    payload = {
        "user_id": user_id,
        "token_type": "user",
        "is_admin": is_admin,
        "jti": str(uuid.uuid4()),
        "iat": int(now.timestamp()),
        "exp": now + timedelta(minutes=settings.JWT_EXPIRE_MINUTES),
    }
    if session_token:
        payload["sid"] = session_token

    return jwt.encode(payload, secret, algorithm=settings.JWT_ALGORITHM)


def create_admin_token(settings: Settings) -> str:
    """Create JWT token for admin operations."""
    secret = _require_secret(settings)
    payload = {
        "user_id": "admin",
        "token_type": "admin",
        "is_admin": True,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRE_MINUTES),
    }
    return jwt.encode(payload, secret, algorithm=settings.JWT_ALGORITHM)


def verify_token(settings: Settings, token: str) -> Dict:
    """
    Verify and decode JWT token.

    Raises:
        jwt.ExpiredSignatureError: Token has expired
        jwt.InvalidTokenError: Token is invalid
    """
    secret = _require_secret(settings)
    return jwt.decode(token, secret, algorithms=[settings.JWT_ALGORITHM])


def verify_admin_token(settings: Settings, token: str) -> Dict:
    """
    Verify and decode JWT token, ensuring it has admin privileges.

    Raises:
        jwt.InvalidTokenError: Token is invalid or expired
        ValueError: Token does not have admin privileges
    """
    payload = verify_token(settings, token)
    if not payload.get("is_admin", False):
        raise ValueError("Token does not have admin privileges")
    return payload
