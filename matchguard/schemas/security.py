"""Login defense state and report schemas.

Records stored in the cache and durable store are plain dicts; these models
validate them on the way out and dump them on the way in. Timestamps are
epoch seconds taken from the service clock.
"""
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class GuardState(str, Enum):
    """Per-identity brute-force guard state."""
    NORMAL = "normal"
    LOCKED_OUT = "locked_out"
    BANNED = "banned"


class Severity(str, Enum):
    """Security event severity."""
    INFO = "info"
    HIGH = "high"


class AttemptRecord(BaseModel):
    """A single failed login kept in the per-identity attempt list."""
    identity: str
    username: str
    timestamp: float
    user_agent: str = ""


class LockoutState(BaseModel):
    """Temporary lockout of an identity. Duration is fixed at creation."""
    identity: str
    started_at: float
    duration: int

    @property
    def expires_at(self) -> float:
        return self.started_at + self.duration

    def remaining(self, now: float) -> float:
        return self.expires_at - now


class BanRecord(BaseModel):
    """Ban of an identity, written to both the cache and the durable registry."""
    identity: str
    started_at: float
    duration: int
    reason: str
    manual: bool = False

    @property
    def expires_at(self) -> float:
        return self.started_at + self.duration

    def remaining(self, now: float) -> float:
        return self.expires_at - now


class SessionState(BaseModel):
    """Single-slot session record for an authenticated user."""
    user_id: str
    login_time: float
    last_activity: float
    ip_address: str
    user_agent: str = ""
    session_token: str
    login_count: int = 1


class LoginAttemptEntry(BaseModel):
    timestamp: float
    identity: str
    username: Optional[str] = None
    user_id: Optional[str] = None
    success: bool
    user_agent: str = ""


class BlockedAttemptEntry(BaseModel):
    timestamp: float
    identity: str
    user_agent: str = ""
    request_path: str = ""


class SecurityEvent(BaseModel):
    timestamp: float
    event_type: str
    identity: str
    user_id: Optional[str] = None
    user_agent: str = ""
    severity: Severity = Severity.INFO
    data: dict[str, Any] = Field(default_factory=dict)


class RateLimitRule(BaseModel):
    """Request limit per window for one named action."""
    limit: int = Field(..., gt=0)
    window: int = Field(..., gt=0)


class RateLimitInfo(BaseModel):
    """Snapshot of one caller's counter for an action."""
    action: str
    limit: int
    window: int
    remaining_attempts: int
    is_rate_limited: bool
    time_until_reset: int


class RateLimitResult(BaseModel):
    """Outcome of apply_rate_limit."""
    success: bool
    message: Optional[str] = None
    remaining_attempts: Optional[int] = None
    retry_after: Optional[int] = None


class GuardStatus(BaseModel):
    identity: str
    state: GuardState
    retry_after: Optional[int] = None
    lockout_count: int = 0


class SecurityStats(BaseModel):
    total_login_attempts: int
    failed_attempts_24h: int
    blocked_attempts: int
    security_events: int
    banned_ips: int
    active_lockouts: int


class SessionInfo(BaseModel):
    user_id: str
    login_time: float
    last_activity: float
    ip_address: str
    login_count: int
    session_age: int
    time_since_activity: int
    is_expired: bool


class SessionValidation(BaseModel):
    """Result of validating a request against the stored session state."""
    valid: bool
    reason: Optional[str] = None
