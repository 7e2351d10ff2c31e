from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx
import jwt
from jwt.exceptions import PyJWKClientConnectionError, PyJWKClientError

from thurayya.config import Settings
from thurayya.logging import get_logger
from thurayya.service.errors import DependencyError

logger = get_logger(__name__)

GOOGLE_PROVIDER = {
    "token_url": "https://oauth2.googleapis.com/token",
    "certs_url": "https://www.googleapis.com/oauth2/v3/certs",
    "issuers": ("accounts.google.com", "https://accounts.google.com"),
}


@dataclass
class GoogleIdentity:
    """Verified claims lifted from a Google ID token."""

    email: str
    subject: str
    name: Optional[str] = None
    picture: Optional[str] = None
    email_verified: bool = False


class GoogleIdentityClient:
    """Verifies Google ID tokens and exchanges one-time authorization codes.

    Returns ``None`` for anything the provider or the signature check rejects.
    Raises ``DependencyError`` only when Google cannot be reached at all.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        jwks_client: Any = None,
        http_client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ) -> None:
        self.settings = settings
        self._jwks_client = jwks_client
        self._http_client_factory = http_client_factory or (
            lambda: httpx.AsyncClient(timeout=30.0, follow_redirects=False)
        )
        self.logger = logger

    @property
    def jwks_client(self) -> Any:
        if self._jwks_client is None:
            self._jwks_client = jwt.PyJWKClient(GOOGLE_PROVIDER["certs_url"], cache_keys=True)
        return self._jwks_client

    async def verify_id_token(self, id_token: str) -> Optional[GoogleIdentity]:
        if not id_token:
            return None
        if not self.settings.google_client_id:
            self.logger.error("google_client_id_missing")
            return None
        return await asyncio.to_thread(self._verify_sync, id_token)

    def _verify_sync(self, id_token: str) -> Optional[GoogleIdentity]:
        try:
            signing_key = self.jwks_client.get_signing_key_from_jwt(id_token)
            claims = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self.settings.google_client_id,
                options={"require": ["iss", "sub", "aud", "exp"]},
            )
        except PyJWKClientConnectionError as exc:
            self.logger.error("google_jwks_unreachable", error=str(exc))
            raise DependencyError("identity provider unavailable") from exc
        except (PyJWKClientError, jwt.InvalidTokenError) as exc:
            self.logger.warning("google_token_invalid", error=str(exc))
            return None

        if claims.get("iss") not in GOOGLE_PROVIDER["issuers"]:
            self.logger.warning("google_token_invalid", error="unexpected issuer")
            return None
        return self._parse_identity(claims)

    def _parse_identity(self, claims: dict[str, Any]) -> Optional[GoogleIdentity]:
        email = claims.get("email")
        subject = claims.get("sub")
        if not email or not subject:
            self.logger.warning("google_token_missing_identity")
            return None
        verified = claims.get("email_verified", False)
        if isinstance(verified, str):
            verified = verified.lower() == "true"
        return GoogleIdentity(
            email=str(email),
            subject=str(subject),
            name=claims.get("name") or None,
            picture=claims.get("picture") or None,
            email_verified=bool(verified),
        )

    async def exchange_code(self, code: str) -> Optional[str]:
        """Trade an authorization code for the ID token Google issues with it."""
        client_id = self.settings.google_client_id
        client_secret = self.settings.google_client_secret
        if not client_id or not client_secret:
            self.logger.error("google_credentials_missing")
            return None
        if not code:
            return None

        token_data = {
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": self.settings.google_redirect_uri,
            "grant_type": "authorization_code",
        }
        try:
            async with self._http_client_factory() as client:
                response = await client.post(
                    GOOGLE_PROVIDER["token_url"],
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                token_result = response.json()
        except httpx.HTTPStatusError as exc:
            self.logger.warning(
                "google_code_exchange_failed",
                status_code=exc.response.status_code,
                error=exc.response.text[:200],
            )
            return None
        except httpx.TransportError as exc:
            self.logger.error("google_code_exchange_unreachable", error=str(exc))
            raise DependencyError("identity provider unavailable") from exc
        except ValueError as exc:
            self.logger.warning("google_code_exchange_bad_payload", error=str(exc))
            return None

        id_token = token_result.get("id_token") if isinstance(token_result, dict) else None
        if not id_token:
            self.logger.warning("google_code_exchange_missing_id_token")
            return None
        return id_token
