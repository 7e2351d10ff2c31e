from __future__ import annotations

import base64
import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt

from thurayya.config import Settings
from thurayya.logging import get_logger
from thurayya.storage.models import User, UserRole

logger = get_logger(__name__)

ALGORITHM = "HS256"
REFRESH_TOKEN_BYTES = 64


@dataclass
class AccessToken:
    token: str
    jti: str
    expires_at: datetime


@dataclass
class AuthContext:
    user_id: str
    tenant_id: str
    role: str
    email: str
    branch_id: Optional[str] = None
    jti: Optional[str] = None


def generate_refresh_token() -> str:
    """64 random bytes, standard base64; opaque to the client."""
    return base64.b64encode(secrets.token_bytes(REFRESH_TOKEN_BYTES)).decode("ascii")


def hash_refresh_token(token: str) -> str:
    """Digest stored server-side in place of the raw refresh token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenService:
    """Mints and checks the signed access tokens every other subsystem consumes."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        # Allowance for small clock skew across nodes
        self._leeway = timedelta(seconds=30)

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    def issue_access_token(self, user: User, *, now: Optional[datetime] = None) -> AccessToken:
        issued_at = now or datetime.now(timezone.utc)
        expires_at = issued_at + self.access_ttl
        jti = str(uuid.uuid4())
        payload = {
            "sub": user.id,
            "email": user.email,
            "tenantId": user.tenant_id,
            "role": UserRole(user.role).value,
            "branchId": user.branch_id or "",
            "jti": jti,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        token = jwt.encode(payload, self.settings.jwt_secret, algorithm=ALGORITHM)
        return AccessToken(token=token, jti=jti, expires_at=expires_at)

    def decode_access_token(self, token: str) -> Optional[dict[str, Any]]:
        """Return verified claims, or None for any bad, expired or foreign token."""
        try:
            return jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[ALGORITHM],
                audience=self.settings.jwt_audience,
                issuer=self.settings.jwt_issuer,
                leeway=self._leeway,
                options={"require": ["sub", "tenantId", "role", "jti", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            logger.info("access_token_expired")
            return None
        except jwt.InvalidTokenError as exc:
            logger.warning("access_token_invalid", error=str(exc))
            return None

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if not token:
            return None
        payload = self.decode_access_token(token)
        if not payload:
            return None
        return AuthContext(
            user_id=str(payload["sub"]),
            tenant_id=str(payload["tenantId"]),
            role=str(payload["role"]),
            email=str(payload.get("email", "")),
            branch_id=payload.get("branchId") or None,
            jti=payload.get("jti"),
        )

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
