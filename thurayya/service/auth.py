from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from thurayya.config import Settings
from thurayya.logging import get_logger
from thurayya.service.errors import (
    AuthenticationError,
    AuthFailureReason,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from thurayya.service.federation import GoogleIdentity, GoogleIdentityClient
from thurayya.service.passwords import PasswordService
from thurayya.service.tokens import (
    AuthContext,
    TokenService,
    generate_refresh_token,
    hash_refresh_token,
)
from thurayya.service.validation import (
    RegistrationInput,
    is_valid_email,
    normalize_email,
    unique_slug,
    validate_registration,
)
from thurayya.storage.errors import ConstraintViolation
from thurayya.storage.models import (
    FederatedSession,
    Language,
    SessionBundle,
    Tenant,
    TenantView,
    User,
    UserRole,
    UserStatus,
    UserView,
    WhoAmI,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password."
DUPLICATE_EMAIL_MESSAGE = "Email already exists"

STATUS_MESSAGES = {
    UserStatus.INVITED: "Your account is pending activation. Please check your email.",
    UserStatus.SUSPENDED: "Your account has been suspended. Please contact support.",
}

DEFAULT_FEDERATED_COUNTRY = "Unknown"
DEFAULT_FEDERATED_CURRENCY = "USD"

# Attempts at picking a free slug when a concurrent signup takes ours
_SLUG_RETRIES = 3


class AuthStore(Protocol):
    def create_tenant_with_user(self, tenant: Tenant, user: User) -> tuple[Tenant, User]: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]: ...

    def tenant_slug_exists(self, slug: str) -> bool: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_refresh_token_hash(self, token_hash: str) -> Optional[User]: ...

    def record_login_failure(
        self, user_id: str, failed_attempts: int, lockout_end_time: Optional[datetime]
    ) -> None: ...

    def record_login_success(self, user_id: str, last_login_at: datetime) -> None: ...

    def set_refresh_token(
        self, user_id: str, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> bool: ...

    def rotate_refresh_token(
        self, user_id: str, expected_hash: str, new_hash: str, expires_at: datetime
    ) -> bool: ...

    def link_google_identity(
        self,
        user_id: str,
        google_id: str,
        *,
        avatar: Optional[str],
        email_verified: bool,
    ) -> Optional[User]: ...

    def activate_user(self, user_id: str) -> Optional[User]: ...


def status_message(status: UserStatus) -> str:
    return STATUS_MESSAGES.get(UserStatus(status), "Your account is not active.")


class AuthService:
    """Registration, password login with lockout, token rotation and Google federation.

    All mutable session state lives on the user row in the store; the service
    itself keeps nothing between calls.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        passwords: Optional[PasswordService] = None,
        tokens: Optional[TokenService] = None,
        identity: Optional[GoogleIdentityClient] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.passwords = passwords or PasswordService()
        self.tokens = tokens or TokenService(settings)
        self.identity = identity or GoogleIdentityClient(settings)
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # -- registration ----------------------------------------------------

    async def register(
        self,
        name: str,
        email: str,
        password: str,
        tenant_name: str,
        country: str,
        currency: str,
        *,
        language: Language = Language.EN,
    ) -> SessionBundle:
        errors = validate_registration(
            RegistrationInput(
                name=name,
                email=email,
                password=password,
                tenant_name=tenant_name,
                country=country,
                currency=currency,
            )
        )
        if errors:
            raise ValidationError.from_errors(errors)

        normalized_email = normalize_email(email)
        if self.store.get_user_by_email(normalized_email):
            raise ConflictError(DUPLICATE_EMAIL_MESSAGE, detail={"field": "email"})

        password_hash = self.passwords.hash_password(password)
        try:
            tenant, user = self._create_tenant_with_owner(
                tenant_name.strip(),
                country.strip(),
                currency.strip(),
                language,
                lambda tenant_id: User.new(
                    tenant_id,
                    normalized_email,
                    name.strip(),
                    password_hash=password_hash,
                    role=UserRole.SUPER_ADMIN,
                    status=UserStatus.ACTIVE,
                ),
            )
        except ConstraintViolation as exc:
            if exc.detail.get("field") != "email":
                raise
            # Lost a race with a concurrent registration for the same address
            raise ConflictError(DUPLICATE_EMAIL_MESSAGE, detail={"field": "email"}) from exc

        self.logger.info("user_registered", user_id=user.id, tenant_id=tenant.id)
        return self.issue_session(user)

    def _create_tenant_with_owner(
        self,
        tenant_name: str,
        country: str,
        currency: str,
        language: Language,
        build_user,
    ) -> tuple[Tenant, User]:
        attempt = 0
        while True:
            slug = unique_slug(tenant_name, self.store.tenant_slug_exists)
            tenant = Tenant.new(tenant_name, slug, country, currency, language)
            try:
                return self.store.create_tenant_with_user(tenant, build_user(tenant.id))
            except ConstraintViolation as exc:
                attempt += 1
                if exc.detail.get("field") != "slug" or attempt >= _SLUG_RETRIES:
                    raise
                self.logger.info("tenant_slug_taken_retrying", slug=slug)

    # -- password login --------------------------------------------------

    async def login(self, email: str, password: str) -> SessionBundle:
        normalized_email = normalize_email(email)
        user = self.store.get_user_by_email(normalized_email) if normalized_email else None
        now = self._now()

        if user is None:
            # Same hashing cost as a real account so timing does not reveal existence
            self.passwords.dummy_verify(password)
            self.logger.info("login_failed", reason="unknown_email")
            raise AuthenticationError(
                AuthFailureReason.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE
            )

        if user.is_locked(now):
            minutes = self._minutes_until(user.lockout_end_time, now)
            self.logger.info("login_rejected_locked", user_id=user.id, minutes=minutes)
            raise self._locked_error(minutes)

        if not self.passwords.verify_password(password, user.password_hash):
            self._register_failed_attempt(user, now)

        if not user.is_active:
            self.logger.info(
                "login_rejected_inactive", user_id=user.id, status=UserStatus(user.status).value
            )
            raise AuthenticationError(
                AuthFailureReason.ACCOUNT_NOT_ACTIVE,
                status_message(user.status),
                detail={"status": UserStatus(user.status).value},
            )

        self.store.record_login_success(user.id, now)
        self.logger.info("login_succeeded", user_id=user.id, tenant_id=user.tenant_id)
        return self.issue_session(user, now=now)

    def _register_failed_attempt(self, user: User, now: datetime) -> None:
        """Persist the failed attempt and raise the matching error.

        The counter is written as an absolute value derived from the row we
        read, so two concurrent failures can collapse into one increment.
        """
        max_attempts = self.settings.max_failed_login_attempts
        attempts = max(user.failed_login_attempts or 0, 0) + 1
        if attempts >= max_attempts:
            lockout_end = now + timedelta(minutes=self.settings.lockout_minutes)
            self.store.record_login_failure(user.id, 0, lockout_end)
            self.logger.warning(
                "account_locked", user_id=user.id, lockout_minutes=self.settings.lockout_minutes
            )
            raise self._locked_error(self.settings.lockout_minutes)

        self.store.record_login_failure(user.id, attempts, None)
        remaining = max_attempts - attempts
        self.logger.info("login_failed", user_id=user.id, attempts=attempts, remaining=remaining)
        raise AuthenticationError(
            AuthFailureReason.INVALID_CREDENTIALS,
            f"Invalid email or password. {remaining} attempt(s) remaining.",
            detail={"remaining_attempts": remaining},
        )

    @staticmethod
    def _minutes_until(until: Optional[datetime], now: datetime) -> int:
        if until is None:
            return 0
        return max(1, math.ceil((until - now).total_seconds() / 60))

    @staticmethod
    def _locked_error(minutes: int) -> AuthenticationError:
        return AuthenticationError(
            AuthFailureReason.ACCOUNT_LOCKED,
            f"Account is locked. Try again in {minutes} minute(s).",
            detail={"minutes": minutes},
        )

    # -- tokens ----------------------------------------------------------

    def issue_session(
        self,
        user: User,
        *,
        now: Optional[datetime] = None,
        rotate_from: Optional[str] = None,
    ) -> SessionBundle:
        """Mint an access token and a fresh refresh token for ``user``.

        Storing the new refresh digest overwrites the previous one, which is
        what retires it. With ``rotate_from`` the overwrite only happens if the
        stored digest is still that value.
        """
        issued_at = now or self._now()
        access = self.tokens.issue_access_token(user, now=issued_at)
        refresh_token = generate_refresh_token()
        refresh_hash = hash_refresh_token(refresh_token)
        refresh_expiry = issued_at + self.tokens.refresh_ttl

        if rotate_from is not None:
            swapped = self.store.rotate_refresh_token(
                user.id, rotate_from, refresh_hash, refresh_expiry
            )
            if not swapped:
                self.logger.warning("refresh_rotation_lost_race", user_id=user.id)
                raise AuthenticationError(
                    AuthFailureReason.INVALID_TOKEN, "Invalid refresh token"
                )
        else:
            self.store.set_refresh_token(user.id, refresh_hash, refresh_expiry)

        return SessionBundle(
            access_token=access.token,
            refresh_token=refresh_token,
            expires_at=access.expires_at,
            user=UserView.from_user(user),
        )

    async def refresh(self, refresh_token: str) -> SessionBundle:
        if not refresh_token:
            raise AuthenticationError(AuthFailureReason.INVALID_TOKEN, "Invalid refresh token")
        presented_hash = hash_refresh_token(refresh_token)
        user = self.store.get_user_by_refresh_token_hash(presented_hash)
        if not user:
            self.logger.info("refresh_rejected", reason="unknown_token")
            raise AuthenticationError(AuthFailureReason.INVALID_TOKEN, "Invalid refresh token")

        now = self._now()
        expiry = user.refresh_token_expiry_time
        if expiry is None or expiry <= now:
            self.logger.info("refresh_rejected", reason="expired", user_id=user.id)
            raise AuthenticationError(
                AuthFailureReason.TOKEN_EXPIRED, "Refresh token has expired"
            )
        if not user.is_active:
            self.logger.info("refresh_rejected", reason="inactive", user_id=user.id)
            raise AuthenticationError(
                AuthFailureReason.ACCOUNT_NOT_ACTIVE,
                status_message(user.status),
                detail={"status": UserStatus(user.status).value},
            )
        return self.issue_session(user, now=now, rotate_from=presented_hash)

    async def logout(self, user_id: str) -> None:
        """Drop the user's refresh token. Never fails from the caller's view."""
        if not self.store.set_refresh_token(user_id, None, None):
            self.logger.info("logout_user_missing", user_id=user_id)
            return
        self.logger.info("logout_succeeded", user_id=user_id)

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        return self.tokens.authenticate(authorization)

    # -- current session -------------------------------------------------

    async def who_am_i(self, user_id: str) -> WhoAmI:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        if not user.is_active:
            raise AuthenticationError(
                AuthFailureReason.ACCOUNT_NOT_ACTIVE,
                status_message(user.status),
                detail={"status": UserStatus(user.status).value},
            )
        tenant = self.store.get_tenant(user.tenant_id)
        return WhoAmI(
            user=UserView.from_user(user),
            tenant=TenantView.from_tenant(tenant) if tenant else None,
        )

    def check_email(self, email: str) -> tuple[bool, bool]:
        """Return ``(exists, is_valid)`` for a sign-up form lookup."""
        if not email or not is_valid_email(email):
            return False, False
        return self.store.get_user_by_email(normalize_email(email)) is not None, True

    # -- federation ------------------------------------------------------

    async def federated_auth_id_token(
        self,
        credential: str,
        *,
        tenant_name: Optional[str] = None,
        country: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> FederatedSession:
        identity = await self.identity.verify_id_token(credential)
        if not identity:
            raise AuthenticationError(
                AuthFailureReason.INVALID_PROVIDER_TOKEN, "Invalid Google token"
            )
        return self._complete_federation(
            identity, tenant_name=tenant_name, country=country, currency=currency
        )

    async def federated_auth_code(
        self,
        code: str,
        *,
        tenant_slug: Optional[str] = None,
        is_new_org: bool = False,
    ) -> FederatedSession:
        id_token = await self.identity.exchange_code(code)
        if not id_token:
            raise AuthenticationError(
                AuthFailureReason.CODE_EXCHANGE_FAILED, "Failed to exchange code for tokens"
            )
        identity = await self.identity.verify_id_token(id_token)
        if not identity:
            raise AuthenticationError(
                AuthFailureReason.INVALID_PROVIDER_TOKEN, "Invalid Google token from code"
            )
        if is_new_org or tenant_slug:
            return self._federate_into_tenant(identity, tenant_slug, is_new_org)
        return self._complete_federation(identity)

    def _complete_federation(
        self,
        identity: GoogleIdentity,
        *,
        tenant_name: Optional[str] = None,
        country: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> FederatedSession:
        email = normalize_email(identity.email)
        user = self.store.get_user_by_email(email)
        if user:
            return self._sign_in_federated_user(user, identity)
        return self._provision_federated_user(
            identity, email, tenant_name=tenant_name, country=country, currency=currency
        )

    def _federate_into_tenant(
        self,
        identity: GoogleIdentity,
        tenant_slug: Optional[str],
        is_new_org: bool,
    ) -> FederatedSession:
        """Code-flow variant where the client names the organisation up front."""
        email = normalize_email(identity.email)
        user = self.store.get_user_by_email(email)

        if is_new_org:
            if user:
                existing = self.store.get_tenant(user.tenant_id)
                raise ValidationError(
                    "This email is already registered with organization "
                    f"'{existing.name if existing else 'Unknown'}'. "
                    "Please sign in to that organization instead."
                )
            return self._provision_federated_user(identity, email)

        if not tenant_slug:
            raise ValidationError("Organization slug is required for existing organization login")
        tenant = self.store.get_tenant_by_slug(tenant_slug)
        if not tenant:
            raise ValidationError("Organization not found")

        if not user:
            self.logger.info("federated_login_not_member", tenant_id=tenant.id)
            raise AuthenticationError(
                AuthFailureReason.NOT_A_MEMBER,
                "You are not a member of this organization. "
                "Please ask an administrator to invite you.",
            )
        if user.tenant_id != tenant.id:
            own = self.store.get_tenant(user.tenant_id)
            self.logger.info(
                "federated_login_wrong_tenant", user_id=user.id, tenant_id=tenant.id
            )
            raise AuthenticationError(
                AuthFailureReason.NOT_A_MEMBER,
                "This email is registered with a different organization "
                f"('{own.name if own else 'Unknown'}'). "
                "Please sign in to that organization or use a different email.",
            )
        if user.status == UserStatus.INVITED:
            user = self.store.activate_user(user.id) or user
            self.logger.info("invited_user_activated", user_id=user.id, tenant_id=tenant.id)
        return self._sign_in_federated_user(user, identity)

    def _sign_in_federated_user(self, user: User, identity: GoogleIdentity) -> FederatedSession:
        if not user.is_active:
            self.logger.info(
                "federated_login_rejected_inactive",
                user_id=user.id,
                status=UserStatus(user.status).value,
            )
            raise AuthenticationError(
                AuthFailureReason.ACCOUNT_NOT_ACTIVE,
                status_message(user.status),
                detail={"status": UserStatus(user.status).value},
            )
        if user.google_id and user.google_id != identity.subject:
            # First link wins; a different subject for the same email is not re-linked
            self.logger.warning("federated_subject_mismatch", user_id=user.id)

        linked = self.store.link_google_identity(
            user.id,
            identity.subject,
            avatar=identity.picture,
            email_verified=identity.email_verified,
        ) or user
        bundle = self.issue_session(linked)
        tenant = self.store.get_tenant(linked.tenant_id)
        self.logger.info("federated_login_succeeded", user_id=linked.id, is_new_user=False)
        return FederatedSession(
            session=bundle,
            is_new_user=False,
            tenant=TenantView.from_tenant(tenant) if tenant else None,
        )

    def _provision_federated_user(
        self,
        identity: GoogleIdentity,
        email: str,
        *,
        tenant_name: Optional[str] = None,
        country: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> FederatedSession:
        name = (identity.name or "").strip()
        organisation = (tenant_name or "").strip() or f"{name or 'My'}'s Organization"
        try:
            tenant, user = self._create_tenant_with_owner(
                organisation,
                (country or "").strip() or DEFAULT_FEDERATED_COUNTRY,
                (currency or "").strip() or DEFAULT_FEDERATED_CURRENCY,
                Language.EN,
                lambda tenant_id: User.new(
                    tenant_id,
                    email,
                    name or email,
                    password_hash="",
                    role=UserRole.SUPER_ADMIN,
                    status=UserStatus.ACTIVE,
                    google_id=identity.subject,
                    avatar=identity.picture,
                    email_verified=identity.email_verified,
                ),
            )
        except ConstraintViolation:
            # A concurrent first login created the account; treat this one as a sign-in
            existing = self.store.get_user_by_email(email)
            if not existing:
                raise
            return self._sign_in_federated_user(existing, identity)

        bundle = self.issue_session(user)
        self.logger.info(
            "federated_user_provisioned", user_id=user.id, tenant_id=tenant.id
        )
        return FederatedSession(
            session=bundle,
            is_new_user=True,
            tenant=TenantView.from_tenant(tenant),
        )
