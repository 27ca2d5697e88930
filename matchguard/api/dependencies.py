"""FastAPI dependency injection functions for the login defense layer."""
import logging
from typing import Dict, Optional

import jwt
from fastapi import Depends, Header, Request

from matchguard.core.auth import verify_admin_token, verify_token
from matchguard.core.client_ip import RequestContext
from matchguard.core.exceptions import (
    ForbiddenError,
    SessionInvalidatedError,
    UnauthorizedError,
)
from matchguard.services.container import SecurityServices

logger = logging.getLogger(__name__)


def get_services(request: Request) -> SecurityServices:
    """Return the service container built at startup."""
    return request.app.state.services


def get_request_context(request: Request) -> RequestContext:
    """Per-request context shared by every dependency of one request."""
    return RequestContext.from_request(request)


def enforce_ip_ban(
    ctx: RequestContext = Depends(get_request_context),
    services: SecurityServices = Depends(get_services),
) -> None:
    """Router-level gate: refuse every request from a banned address."""
    error = services.guard.check_ip_ban(ctx)
    if error is not None:
        raise error


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract JWT token from 'Authorization: Bearer <token>' header.

    Returns:
        Token string if valid format, None otherwise.
    """
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def _decode(services: SecurityServices, authorization: Optional[str]) -> Dict:
    token = _extract_bearer_token(authorization)
    if not token:
        raise UnauthorizedError("Missing authentication credentials")
    try:
        return verify_token(services.settings, token)
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token has expired")
    except jwt.InvalidTokenError:
        raise UnauthorizedError("Invalid token")


def get_current_user(
    authorization: Optional[str] = Header(None),
    ctx: RequestContext = Depends(get_request_context),
    services: SecurityServices = Depends(get_services),
) -> Dict:
    """
    Dependency to get the current authenticated user.

    The JWT's ``sid`` must still be a live platform session, and the session
    monitor must accept the request; otherwise the session is over and the
    caller has to log in again.

    Raises:
        UnauthorizedError: token missing, invalid, or its session revoked
        SessionInvalidatedError: the monitor invalidated the session
    """
    payload = _decode(services, authorization)
    user_id = payload.get("user_id")
    session_token = payload.get("sid")
    if payload.get("token_type") != "user" or not user_id or not session_token:
        raise UnauthorizedError("User authentication required. Please log in.")

    if not services.tokens.verify(user_id, session_token):
        raise UnauthorizedError("Session is no longer active. Please log in.")

    ctx.user_id = user_id
    ctx.session_token = session_token
    result = services.monitor.validate_session(ctx)
    if not result.valid:
        raise SessionInvalidatedError(result.reason or "invalid")

    return payload


def verify_admin(
    authorization: Optional[str] = Header(None),
    services: SecurityServices = Depends(get_services),
) -> Dict:
    """
    Dependency to verify admin privileges.

    Raises:
        UnauthorizedError: token missing or invalid
        ForbiddenError: token lacks admin privileges
    """
    token = _extract_bearer_token(authorization)
    if not token:
        raise UnauthorizedError("Missing authentication credentials")
    try:
        return verify_admin_token(services.settings, token)
    except jwt.InvalidTokenError:
        raise UnauthorizedError("Invalid token")
    except ValueError:
        raise ForbiddenError()
