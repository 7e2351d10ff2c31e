from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from thurayya.storage.models import (
    FederatedSession,
    Language,
    SessionBundle,
    TenantView,
    UserView,
    WhoAmI,
)

MAX_STRING_LENGTH = 256

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "dependency_error",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable, machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# Registration fields default to "" so the service reports every missing field at once
class RegisterRequest(BaseModel):
    name: str = Field(default="", max_length=MAX_STRING_LENGTH)
    email: str = Field(default="", max_length=MAX_STRING_LENGTH)
    password: str = Field(default="", max_length=128)
    tenant_name: str = Field(default="", max_length=MAX_STRING_LENGTH)
    country: str = Field(default="", max_length=64)
    currency: str = Field(default="", max_length=16)
    language: Language = Language.EN


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=MAX_STRING_LENGTH)
    password: str = Field(..., max_length=128)


class CheckEmailRequest(BaseModel):
    email: str = Field(default="", max_length=MAX_STRING_LENGTH)


class CheckEmailResponse(BaseModel):
    exists: bool
    is_valid: bool


class GoogleCredentialRequest(BaseModel):
    credential: str = Field(..., min_length=1, max_length=8192)
    tenant_name: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    country: Optional[str] = Field(default=None, max_length=64)
    currency: Optional[str] = Field(default=None, max_length=16)


class GoogleCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=2048)
    tenant_slug: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    is_new_org: bool = False


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    role: str
    branch_id: Optional[str] = None
    branch_name: Optional[str] = None
    status: str
    avatar: Optional[str] = None

    @classmethod
    def from_view(cls, view: UserView) -> "UserResponse":
        return cls(
            id=view.id,
            name=view.name,
            email=view.email,
            role=view.role,
            branch_id=view.branch_id,
            branch_name=view.branch_name,
            status=view.status,
            avatar=view.avatar,
        )


class TenantResponse(BaseModel):
    id: str
    name: str
    slug: str
    country: str
    currency: str
    language: str

    @classmethod
    def from_view(cls, view: Optional[TenantView]) -> Optional["TenantResponse"]:
        if view is None:
            return None
        return cls(
            id=view.id,
            name=view.name,
            slug=view.slug,
            country=view.country,
            currency=view.currency,
            language=view.language,
        )


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: UserResponse

    @classmethod
    def from_bundle(cls, bundle: SessionBundle) -> "AuthResponse":
        return cls(
            access_token=bundle.access_token,
            refresh_token=bundle.refresh_token,
            expires_at=bundle.expires_at,
            user=UserResponse.from_view(bundle.user),
        )


class FederatedAuthResponse(AuthResponse):
    is_new_user: bool = False
    tenant: Optional[TenantResponse] = None

    @classmethod
    def from_federated(cls, result: FederatedSession) -> "FederatedAuthResponse":
        bundle = result.session
        return cls(
            access_token=bundle.access_token,
            refresh_token=bundle.refresh_token,
            expires_at=bundle.expires_at,
            user=UserResponse.from_view(bundle.user),
            is_new_user=result.is_new_user,
            tenant=TenantResponse.from_view(result.tenant),
        )


class WhoAmIResponse(BaseModel):
    user: UserResponse
    tenant: Optional[TenantResponse] = None

    @classmethod
    def from_who_am_i(cls, result: WhoAmI) -> "WhoAmIResponse":
        return cls(
            user=UserResponse.from_view(result.user),
            tenant=TenantResponse.from_view(result.tenant),
        )


class LogoutResponse(BaseModel):
    logged_out: bool = True
