from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code carried in the response envelope:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - dependency_error (502)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400).

    ``errors`` holds every violated rule, not just the first one found.
    """

    status_code = 400
    error_code = "validation_error"

    def __init__(self, message: str, *, errors: Optional[list[str]] = None) -> None:
        self.errors = list(errors) if errors else [message]
        super().__init__(message, detail={"errors": self.errors})

    @classmethod
    def from_errors(cls, errors: list[str]) -> "ValidationError":
        return cls(", ".join(errors), errors=errors)


class AuthFailureReason(str, Enum):
    """Closed set of reasons an authentication attempt can be refused."""

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_NOT_ACTIVE = "account_not_active"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    INVALID_PROVIDER_TOKEN = "invalid_provider_token"
    CODE_EXCHANGE_FAILED = "code_exchange_failed"
    NOT_A_MEMBER = "not_a_member"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""

    status_code = 401
    error_code = "unauthorized"

    def __init__(
        self,
        reason: AuthFailureReason,
        message: str,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        self.reason = AuthFailureReason(reason)
        super().__init__(message, detail={"reason": self.reason.value, **(detail or {})})


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""

    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""

    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""

    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""

    status_code = 500
    error_code = "server_error"


class DependencyError(ServerError):
    """Upstream provider or data store failed (502).

    The message is always generic; the cause goes to the log only.
    """

    status_code = 502
    error_code = "dependency_error"


__all__ = [
    "AuthFailureReason",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "DependencyError",
]
