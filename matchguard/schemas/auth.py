"""Authentication request and response schemas."""
from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class RegisterRequest(BaseModel):
    """User registration request."""
    username: str = Field(..., min_length=2, max_length=60)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=100)


class LoginRequest(BaseModel):
    """User login request. Empty credentials are rejected by the login flow."""
    username: str = ""
    password: str = ""


class UserResponse(BaseModel):
    id: str
    username: str
    email: str


class AuthResponse(BaseModel):
    """Authentication success response."""
    access_token: str
    token_type: str = "bearer"
    user: UserResponse


class AdminLoginRequest(BaseModel):
    """Request body for admin password login."""
    password: str


class AdminLoginResponse(BaseModel):
    """Response for admin login."""
    access_token: str
    token_type: str = "bearer"


class SessionResponse(BaseModel):
    """Current session details for the caller."""
    user_id: str
    login_time: Optional[float] = None
    last_activity: Optional[float] = None
    ip_address: Optional[str] = None
    login_count: Optional[int] = None
    session_age: Optional[int] = None
    time_since_activity: Optional[int] = None
