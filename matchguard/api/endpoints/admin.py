"""Admin security console endpoints."""
import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from matchguard.api.dependencies import get_services, verify_admin
from matchguard.core.client_ip import normalize_ip
from matchguard.core.exceptions import InvalidIdentityError
from matchguard.schemas.admin import (
    ClearCounterRequest,
    ClearCounterResponse,
    ManualBanRequest,
    RuleUpdateRequest,
    SecurityEventsResponse,
    StatusResponse,
)
from matchguard.schemas.security import (
    BanRecord,
    GuardStatus,
    RateLimitRule,
    SecurityStats,
    SessionInfo,
)
from matchguard.services.container import SecurityServices

router = APIRouter(prefix="/admin/security", tags=["admin"])
logger = logging.getLogger(__name__)


@router.get("/stats", response_model=SecurityStats)
def security_stats(
    actor: Dict = Depends(verify_admin),
    services: SecurityServices = Depends(get_services),
):
    """
    Aggregate counts from the security logs and ban registry.
    GET /api/admin/security/stats
    """
    return services.guard.get_security_stats()


@router.get("/events", response_model=SecurityEventsResponse)
def security_events(
    user_id: Optional[str] = Query(None),
    actor: Dict = Depends(verify_admin),
    services: SecurityServices = Depends(get_services),
):
    """Recent log entries, globally or for one user."""
    events = services.events
    return SecurityEventsResponse(
        login_attempts=events.recent_login_attempts(user_id),
        blocked_attempts=events.recent_blocked_attempts() if user_id is None else [],
        security_events=events.recent_security_events(user_id),
    )


@router.get("/bans", response_model=list[BanRecord])
def list_bans(
    actor: Dict = Depends(verify_admin),
    services: SecurityServices = Depends(get_services),
):
    return services.guard.list_bans()


@router.post("/bans", response_model=BanRecord, status_code=201)
def ban_ip(
    body: ManualBanRequest,
    actor: Dict = Depends(verify_admin),
    services: SecurityServices = Depends(get_services),
):
    """
    Manually ban an address. Lockout history is not required.
    POST /api/admin/security/bans
    """
    ban = services.guard.manual_ban_ip(body.ip, body.reason, body.duration)
    logger.warning(f"MANUAL_BAN ip={ban.identity} by actor={actor.get('user_id', 'unknown')}")
    return ban


@router.delete("/bans/{ip}", response_model=StatusResponse)
def unban_ip(
    ip: str,
    actor: Dict = Depends(verify_admin),
    services: SecurityServices = Depends(get_services),
):
    services.guard.manual_unban_ip(ip)
    ip = normalize_ip(ip)
    logger.warning(f"MANUAL_UNBAN ip={ip} by actor={actor.get('user_id', 'unknown')}")
    return StatusResponse(status="ok", message=f"Ban lifted for {ip}")


@router.get("/ips/{ip}", response_model=GuardStatus)
def identity_state(
    ip: str,
    actor: Dict = Depends(verify_admin),
    services: SecurityServices = Depends(get_services),
):
    """Guard state (normal, locked out, banned) of one address."""
    identity = normalize_ip(ip)
    if identity is None:
        raise InvalidIdentityError(ip)
    return services.guard.get_state(identity)


@router.get("/rules", response_model=dict[str, RateLimitRule])
def list_rules(
    actor: Dict = Depends(verify_admin),
    services: SecurityServices = Depends(get_services),
):
    return services.rate_limiter.get_rules()


@router.put("/rules/{action}", response_model=RateLimitRule)
def update_rule(
    action: str,
    body: RuleUpdateRequest,
    actor: Dict = Depends(verify_admin),
    services: SecurityServices = Depends(get_services),
):
    """
    Change a rule for this process. Not persisted across restarts.
    PUT /api/admin/security/rules/{action}
    """
    return services.rate_limiter.update_rule(action, body.limit, body.window)


@router.post("/counters/clear", response_model=ClearCounterResponse)
def clear_counter(
    body: ClearCounterRequest,
    actor: Dict = Depends(verify_admin),
    services: SecurityServices = Depends(get_services),
):
    cleared = services.rate_limiter.clear_rate_limit(
        body.action, user_id=body.user_id, identifier=body.identifier
    )
    return ClearCounterResponse(action=body.action, cleared=cleared)


@router.get("/sessions/{user_id}", response_model=SessionInfo)
def session_info(
    user_id: str,
    actor: Dict = Depends(verify_admin),
    services: SecurityServices = Depends(get_services),
):
    info = services.monitor.get_session_info(user_id)
    if info is None:
        raise HTTPException(status_code=404, detail="No active session state for user")
    return info
