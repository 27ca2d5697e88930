"""Admin security console schemas."""
from typing import Any, Optional

from pydantic import BaseModel, Field


class ManualBanRequest(BaseModel):
    """Request payload for a manual ban."""

    ip: str = Field(..., min_length=1, max_length=64)
    reason: str = Field(default="Manual ban", max_length=500)
    duration: Optional[int] = Field(default=None, gt=0)


class RuleUpdateRequest(BaseModel):
    limit: int
    window: int


class ClearCounterRequest(BaseModel):
    """Identifies one rate-limit counter."""

    action: str = Field(..., min_length=1)
    user_id: Optional[str] = None
    identifier: str = Field(..., min_length=1)


class ClearCounterResponse(BaseModel):
    action: str
    cleared: bool


class SecurityEventsResponse(BaseModel):
    login_attempts: list[dict[str, Any]]
    blocked_attempts: list[dict[str, Any]]
    security_events: list[dict[str, Any]]


class StatusResponse(BaseModel):
    status: str
    message: str
