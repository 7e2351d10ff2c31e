from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    SUPER_ADMIN = "SuperAdmin"
    BRANCH_ADMIN = "BranchAdmin"
    SECTION_ADMIN = "SectionAdmin"


class UserStatus(str, Enum):
    ACTIVE = "Active"
    INVITED = "Invited"
    SUSPENDED = "Suspended"


class Language(str, Enum):
    EN = "En"
    AR = "Ar"


@dataclass
class Tenant:
    id: str
    name: str
    slug: str
    country: str
    currency: str
    language: Language = Language.EN
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        name: str,
        slug: str,
        country: str,
        currency: str,
        language: Language = Language.EN,
    ) -> "Tenant":
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            slug=slug,
            country=country,
            currency=currency,
            language=Language(language),
        )


@dataclass
class User:
    """A login identity. Exactly one tenant owns each user."""

    id: str
    tenant_id: str
    email: str
    name: str
    password_hash: str = ""
    role: UserRole = UserRole.SUPER_ADMIN
    status: UserStatus = UserStatus.ACTIVE
    branch_id: Optional[str] = None
    branch_name: Optional[str] = None
    google_id: Optional[str] = None
    avatar: Optional[str] = None
    email_verified: bool = False
    failed_login_attempts: Optional[int] = 0
    lockout_end_time: Optional[datetime] = None
    # SHA-256 hex digest of the single live refresh token
    refresh_token_hash: Optional[str] = None
    refresh_token_expiry_time: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        tenant_id: str,
        email: str,
        name: str,
        *,
        password_hash: str = "",
        role: UserRole = UserRole.SUPER_ADMIN,
        status: UserStatus = UserStatus.ACTIVE,
        google_id: Optional[str] = None,
        avatar: Optional[str] = None,
        email_verified: bool = False,
        branch_id: Optional[str] = None,
        branch_name: Optional[str] = None,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            email=email,
            name=name,
            password_hash=password_hash,
            role=UserRole(role),
            status=UserStatus(status),
            google_id=google_id,
            avatar=avatar,
            email_verified=email_verified,
            branch_id=branch_id,
            branch_name=branch_name,
        )

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def is_locked(self, now: datetime) -> bool:
        return self.lockout_end_time is not None and self.lockout_end_time > now


@dataclass
class UserView:
    id: str
    name: str
    email: str
    role: str
    branch_id: Optional[str]
    branch_name: Optional[str]
    status: str
    avatar: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "UserView":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            role=UserRole(user.role).value,
            branch_id=user.branch_id,
            branch_name=user.branch_name,
            status=UserStatus(user.status).value,
            avatar=user.avatar,
        )


@dataclass
class TenantView:
    id: str
    name: str
    slug: str
    country: str
    currency: str
    language: str

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> "TenantView":
        return cls(
            id=tenant.id,
            name=tenant.name,
            slug=tenant.slug,
            country=tenant.country,
            currency=tenant.currency,
            language=Language(tenant.language).value,
        )


@dataclass
class SessionBundle:
    access_token: str
    refresh_token: str
    expires_at: datetime
    user: UserView


@dataclass
class FederatedSession:
    session: SessionBundle
    is_new_user: bool
    tenant: Optional[TenantView] = None


@dataclass
class WhoAmI:
    user: UserView
    tenant: Optional[TenantView] = None
