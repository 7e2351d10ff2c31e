from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from thurayya.api.schemas import (
    AuthResponse,
    CheckEmailRequest,
    CheckEmailResponse,
    Envelope,
    FederatedAuthResponse,
    GoogleCodeRequest,
    GoogleCredentialRequest,
    LoginRequest,
    LogoutResponse,
    RegisterRequest,
    TokenRefreshRequest,
    WhoAmIResponse,
)
from thurayya.logging import get_logger
from thurayya.service.runtime import check_rate_limit, get_runtime
from thurayya.service.tokens import AuthContext
from thurayya.service.validation import normalize_email

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

RATE_LIMIT_WINDOW_SECONDS = 60


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one request from ``key``'s bucket or raise 429."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0])
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after_seconds": reset_seconds},
        )
    return info


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "invalid or expired access token", status_code=401)
    return ctx


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a new organisation together with its first SuperAdmin user.

    Raises:
        400: One or more fields fail validation (all messages in details.errors)
        409: The email is already registered
        429: Rate limit exceeded for this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_key(request)}",
        runtime.settings.auth_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
        response=response,
    )
    bundle = await runtime.auth.register(
        body.name,
        body.email,
        body.password,
        body.tenant_name,
        body.country,
        body.currency,
        language=body.language,
    )
    return Envelope(status="ok", data=AuthResponse.from_bundle(bundle))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Raises:
        401: Invalid credentials, locked account, or inactive account (details.reason)
        429: Rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{normalize_email(body.email)}",
        runtime.settings.auth_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
        response=response,
    )
    bundle = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=AuthResponse.from_bundle(bundle))


@router.post("/auth/check-email", response_model=Envelope, tags=["auth"])
async def check_email(body: CheckEmailRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"check-email:{_client_key(request)}",
        runtime.settings.auth_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
        response=response,
    )
    exists, is_valid = runtime.auth.check_email(body.email)
    return Envelope(status="ok", data=CheckEmailResponse(exists=exists, is_valid=is_valid))


@router.post("/auth/google", response_model=Envelope, tags=["auth"])
async def google_sign_in(body: GoogleCredentialRequest, request: Request, response: Response):
    """Sign in or sign up with a Google ID token obtained by the client."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"google:{_client_key(request)}",
        runtime.settings.auth_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
        response=response,
    )
    result = await runtime.auth.federated_auth_id_token(
        body.credential,
        tenant_name=body.tenant_name,
        country=body.country,
        currency=body.currency,
    )
    return Envelope(status="ok", data=FederatedAuthResponse.from_federated(result))


@router.post("/auth/google-code", response_model=Envelope, tags=["auth"])
async def google_code_sign_in(body: GoogleCodeRequest, request: Request, response: Response):
    """Exchange a Google authorization code server-side, then sign in or sign up.

    With ``tenant_slug`` the user must already belong to that organisation;
    with ``is_new_org`` a fresh organisation is created.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"google:{_client_key(request)}",
        runtime.settings.auth_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
        response=response,
    )
    result = await runtime.auth.federated_auth_code(
        body.code,
        tenant_slug=body.tenant_slug,
        is_new_org=body.is_new_org,
    )
    return Envelope(status="ok", data=FederatedAuthResponse.from_federated(result))


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(body: TokenRefreshRequest):
    """Rotate a refresh token. The presented token stops working on success."""
    runtime = get_runtime()
    bundle = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=AuthResponse.from_bundle(bundle))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def who_am_i(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    result = await runtime.auth.who_am_i(principal.user_id)
    return Envelope(status="ok", data=WhoAmIResponse.from_who_am_i(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.user_id)
    return Envelope(status="ok", data=LogoutResponse())
