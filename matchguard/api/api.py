"""API router aggregation."""
from fastapi import APIRouter, Depends

from matchguard.api.dependencies import enforce_ip_ban
from matchguard.api.endpoints import admin, auth, rate_limits

api_router = APIRouter(prefix="/api", dependencies=[Depends(enforce_ip_ban)])
api_router.include_router(auth.router)
api_router.include_router(rate_limits.router)
api_router.include_router(admin.router)
