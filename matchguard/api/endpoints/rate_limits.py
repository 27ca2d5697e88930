"""Rate limit status endpoints."""
from fastapi import APIRouter, Depends, HTTPException

from matchguard.api.dependencies import get_request_context, get_services
from matchguard.core.client_ip import RequestContext
from matchguard.schemas.security import RateLimitInfo
from matchguard.services.container import SecurityServices

router = APIRouter(prefix="/rate-limits", tags=["rate-limits"])


@router.get("/{action}", response_model=RateLimitInfo)
def get_rate_limit(
    action: str,
    ctx: RequestContext = Depends(get_request_context),
    services: SecurityServices = Depends(get_services),
):
    """
    Caller's counter for an action, keyed by client address.
    GET /api/rate-limits/{action}
    """
    info = services.rate_limiter.get_rate_limit_info(action, ctx=ctx)
    if info is None:
        raise HTTPException(status_code=404, detail=f"No rate limit configured for {action}")
    return info
