"""Custom exceptions for the application.

Provides standardized error handling across the application. The security
gates return these as values (structured results); the HTTP layer raises
them and the exception handler in main.py renders them.
"""
from math import ceil
from typing import Optional

from fastapi import status


class AppException(Exception):
    """Base exception for application errors."""

    http_status: int = status.HTTP_400_BAD_REQUEST

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[dict] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details
        }


class SecurityBlockError(AppException):
    """A request refused by the login defense layer."""

    http_status = status.HTTP_403_FORBIDDEN
    retry_after: Optional[int] = None

    def headers(self) -> dict[str, str]:
        if self.retry_after is None:
            return {}
        return {"Retry-After": str(self.retry_after)}


class PermanentBlockError(SecurityBlockError):
    """Raised when the client identity is banned."""

    def __init__(self, identity: str, message: Optional[str] = None):
        super().__init__(
            message=message or (
                "Your IP address has been banned due to too many failed login attempts. "
                "Please try again later."
            ),
            code="IP_BANNED",
            details={"identity": identity}
        )
        self.identity = identity


class TemporaryBlockError(SecurityBlockError):
    """Raised when the client is locked out or rate limited."""

    http_status = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str, retry_after: int, code: str = "IP_LOCKED_OUT"):
        super().__init__(
            message=message,
            code=code,
            details={"retry_after": retry_after}
        )
        self.retry_after = retry_after

    @classmethod
    def locked_out(cls, retry_after: int) -> "TemporaryBlockError":
        minutes = ceil(retry_after / 60)
        return cls(
            f"Too many failed login attempts. Please try again in {minutes} minutes.",
            retry_after=retry_after,
        )

    @classmethod
    def rate_limited(cls, retry_after: int) -> "TemporaryBlockError":
        minutes = ceil(retry_after / 60)
        return cls(
            f"Rate limit exceeded. Please try again in {minutes} minutes.",
            retry_after=retry_after,
            code="RATE_LIMITED",
        )


class InvalidIdentityError(AppException):
    """Raised when a malformed IP address is passed to an admin operation."""

    def __init__(self, identity: str):
        super().__init__(
            message=f"Invalid IP address: {identity}",
            code="INVALID_IP",
            details={"identity": identity}
        )


class InvalidBanDurationError(AppException):
    """Raised when a manual ban is requested with a non-positive duration."""

    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, duration: int):
        super().__init__(
            message=f"Ban duration must be positive, got {duration}",
            code="INVALID_BAN_DURATION",
            details={"duration": duration}
        )


class InvalidRuleError(AppException):
    """Raised when a rate-limit rule update carries non-positive values."""

    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, action: str, message: str):
        super().__init__(
            message=message,
            code="INVALID_RULE",
            details={"action": action}
        )


class StorageUnavailableError(AppException):
    """Raised by storage backends when the cache or durable store call fails."""

    http_status = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, operation: str, key: str):
        super().__init__(
            message=f"Storage {operation} failed for {key}",
            code="STORAGE_UNAVAILABLE",
            details={"operation": operation, "key": key}
        )


class AuthException(AppException):
    """Authentication-related exceptions."""

    http_status = status.HTTP_401_UNAUTHORIZED


class InvalidCredentialsError(AuthException):
    """Raised when credentials are invalid."""

    def __init__(self):
        super().__init__(
            message="Invalid username or password",
            code="INVALID_CREDENTIALS"
        )


class UnauthorizedError(AuthException):
    """Raised when user is not authenticated."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(
            message=message,
            code="UNAUTHORIZED"
        )


class SessionInvalidatedError(AuthException):
    """Raised when the session monitor has invalidated the current session."""

    def __init__(self, reason: str):
        super().__init__(
            message="Your session has ended. Please log in again.",
            code="SESSION_INVALID",
            details={"reason": reason}
        )


class ForbiddenError(AppException):
    """Raised when an authenticated caller lacks admin rights."""

    http_status = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str = "Admin privileges required"):
        super().__init__(
            message=message,
            code="FORBIDDEN"
        )


class ConflictError(AppException):
    """Raised when a resource already exists."""

    http_status = status.HTTP_409_CONFLICT

    def __init__(self, message: str):
        super().__init__(
            message=message,
            code="CONFLICT"
        )
