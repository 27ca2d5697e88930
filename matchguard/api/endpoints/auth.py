"""Authentication API endpoints.

Login runs through the brute-force guard before credentials are checked;
successful logins start a monitored session bound to a platform token.
"""
import logging
import secrets
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException

from matchguard.api.dependencies import get_current_user, get_request_context, get_services
from matchguard.core.auth import create_admin_token, create_user_token
from matchguard.core.client_ip import RequestContext, mask_ip_for_logging
from matchguard.core.exceptions import (
    AppException,
    InvalidCredentialsError,
    TemporaryBlockError,
    UnauthorizedError,
)
from matchguard.schemas.admin import StatusResponse
from matchguard.schemas.auth import (
    AdminLoginRequest,
    AdminLoginResponse,
    AuthResponse,
    LoginRequest,
    RegisterRequest,
    SessionResponse,
    UserResponse,
)
from matchguard.services.container import SecurityServices

router = APIRouter(prefix="/auth", tags=["authentication"])
logger = logging.getLogger(__name__)

ADMIN_USERNAME = "admin"


@router.post("/register", response_model=UserResponse, status_code=201)
def register(
    body: RegisterRequest,
    ctx: RequestContext = Depends(get_request_context),
    services: SecurityServices = Depends(get_services),
):
    """
    Register a new account.

    Rate limited per client address by the ``registration`` rule.
    """
    result = services.rate_limiter.apply_rate_limit("registration", ctx=ctx)
    if not result.success:
        raise TemporaryBlockError.rate_limited(result.retry_after or 0)

    user = services.users.register(body.username, body.email, body.password)
    return UserResponse(id=user["id"], username=user["username"], email=user["email"])


@router.post("/login", response_model=AuthResponse)
def login(
    body: LoginRequest,
    ctx: RequestContext = Depends(get_request_context),
    services: SecurityServices = Depends(get_services),
):
    """
    Log in with username and password.

    Banned or locked-out addresses are refused before the password is
    checked. A failed check feeds the brute-force guard.
    """
    guard = services.guard
    gate = guard.check_login_attempt(None, body.username, body.password, ctx)
    if isinstance(gate, AppException):
        raise gate

    if not body.username or not body.password:
        raise InvalidCredentialsError()

    user = services.users.authenticate(body.username, body.password)
    if user is None:
        guard.on_login_failed(body.username, ctx)
        raise InvalidCredentialsError()

    guard.on_login_success(body.username, ctx)

    identity = services.resolver.resolve(ctx)
    session_token = services.tokens.create(user["id"], identity, ctx.user_agent)
    ctx.user_id = user["id"]
    ctx.session_token = session_token
    services.monitor.on_login(user["id"], ctx)

    access_token = create_user_token(services.settings, user["id"], session_token=session_token)
    logger.info(f"User {user['id']} logged in from {mask_ip_for_logging(identity)}")
    return AuthResponse(
        access_token=access_token,
        user=UserResponse(id=user["id"], username=user["username"], email=user["email"]),
    )


@router.post("/logout", response_model=StatusResponse)
def logout(
    current_user: Dict = Depends(get_current_user),
    services: SecurityServices = Depends(get_services),
):
    """End the current session and revoke its platform token."""
    user_id = current_user["user_id"]
    services.monitor.on_logout(user_id)
    services.tokens.destroy(user_id, current_user["sid"])
    return StatusResponse(status="ok", message="Logged out")


@router.get("/session", response_model=SessionResponse)
def current_session(
    current_user: Dict = Depends(get_current_user),
    services: SecurityServices = Depends(get_services),
):
    """Details of the caller's monitored session."""
    user_id = current_user["user_id"]
    info = services.monitor.get_session_info(user_id)
    if info is None:
        return SessionResponse(user_id=user_id)
    return SessionResponse(**info.model_dump(exclude={"is_expired"}))


@router.post("/admin-login", response_model=AdminLoginResponse)
def admin_login(
    body: AdminLoginRequest,
    ctx: RequestContext = Depends(get_request_context),
    services: SecurityServices = Depends(get_services),
):
    """
    Login to the admin console with the password configured in ADMIN_PASSWORD.

    Security:
    - Uses constant-time comparison to prevent timing attacks
    - Guarded by the same lockout and ban escalation as user logins
    """
    guard = services.guard
    gate = guard.check_login_attempt(None, ADMIN_USERNAME, body.password, ctx)
    if isinstance(gate, AppException):
        raise gate

    if not services.settings.ADMIN_PASSWORD:
        logger.warning("Admin login attempted but ADMIN_PASSWORD is not configured")
        raise HTTPException(
            status_code=503,
            detail="Admin password authentication is not configured"
        )

    if not secrets.compare_digest(body.password, services.settings.ADMIN_PASSWORD):
        guard.on_login_failed(ADMIN_USERNAME, ctx)
        logger.warning(
            f"Admin login failed from {mask_ip_for_logging(services.resolver.resolve(ctx))}"
        )
        raise UnauthorizedError("Invalid admin password")

    guard.on_login_success(ADMIN_USERNAME, ctx)
    return AdminLoginResponse(access_token=create_admin_token(services.settings))
