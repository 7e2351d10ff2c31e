from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from thurayya.logging import get_logger
from thurayya.storage.errors import ConstraintViolation
from thurayya.storage.models import Language, Tenant, User, UserRole, UserStatus


class MemoryStore:
    """In-process credential store persisted to a JSON snapshot.

    Rows are handed out as copies so callers see read-then-write semantics
    similar to a database round trip.
    """

    def __init__(self, fs_root: str = "/tmp/thurayya") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.tenants: Dict[str, Tenant] = {}
        # RLock so helpers can nest under a public operation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- tenants ---------------------------------------------------------

    def create_tenant_with_user(self, tenant: Tenant, user: User) -> tuple[Tenant, User]:
        """Insert a tenant and its first user together, or neither."""
        with self._data_lock:
            if any(t.slug == tenant.slug for t in self.tenants.values()):
                raise ConstraintViolation("tenant slug already exists", {"field": "slug"})
            if any(u.email == user.email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.tenant_id != tenant.id:
                raise ConstraintViolation(
                    "user must belong to the new tenant", {"field": "tenant_id"}
                )
            self.tenants[tenant.id] = replace(tenant)
            self.users[user.id] = replace(user)
            self._persist_state()
            return replace(tenant), replace(user)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return replace(tenant) if tenant else None

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = next((t for t in self.tenants.values() if t.slug == slug), None)
            return replace(tenant) if tenant else None

    def tenant_slug_exists(self, slug: str) -> bool:
        with self._data_lock:
            return any(t.slug == slug for t in self.tenants.values())

    # -- users -----------------------------------------------------------

    def create_user(self, user: User) -> User:
        with self._data_lock:
            if any(existing.email == user.email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.tenant_id not in self.tenants:
                raise ConstraintViolation(
                    "tenant not found for user", {"tenant_id": user.tenant_id}
                )
            self.users[user.id] = replace(user)
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_refresh_token_hash(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.refresh_token_hash == token_hash),
                None,
            )
            return replace(user) if user else None

    def record_login_failure(
        self,
        user_id: str,
        failed_attempts: int,
        lockout_end_time: Optional[datetime],
    ) -> None:
        """Overwrite the attempt counter and lockout with caller-computed values."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_login_attempts = failed_attempts
            user.lockout_end_time = lockout_end_time
            self._persist_state()

    def record_login_success(self, user_id: str, last_login_at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_login_attempts = 0
            user.lockout_end_time = None
            user.last_login_at = last_login_at
            self._persist_state()

    def set_refresh_token(
        self,
        user_id: str,
        token_hash: Optional[str],
        expires_at: Optional[datetime],
    ) -> bool:
        """Replace whatever refresh token the user holds; ``None`` clears it."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.refresh_token_hash = token_hash
            user.refresh_token_expiry_time = expires_at if token_hash else None
            self._persist_state()
            return True

    def rotate_refresh_token(
        self,
        user_id: str,
        expected_hash: str,
        new_hash: str,
        expires_at: datetime,
    ) -> bool:
        """Swap the refresh token only if the stored one is still ``expected_hash``."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.refresh_token_hash != expected_hash:
                return False
            user.refresh_token_hash = new_hash
            user.refresh_token_expiry_time = expires_at
            self._persist_state()
            return True

    def link_google_identity(
        self,
        user_id: str,
        google_id: str,
        *,
        avatar: Optional[str],
        email_verified: bool,
    ) -> Optional[User]:
        """Attach a Google subject unless one is already linked; take a changed avatar."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if not user.google_id:
                user.google_id = google_id
            if avatar and avatar != user.avatar:
                user.avatar = avatar
            user.email_verified = email_verified
            self._persist_state()
            return replace(user)

    def activate_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = UserStatus.ACTIVE
            self._persist_state()
            return replace(user)

    def set_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = UserStatus(status)
            self._persist_state()
            return replace(user)

    # -- persistence -----------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "tenants": [self._serialize_tenant(t) for t in self.tenants.values()],
            "users": [self._serialize_user(u) for u in self.users.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Read directly instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.tenants = {
            t["id"]: self._deserialize_tenant(t) for t in data.get("tenants", [])
        }
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.logger.info(
            "memory_store_loaded", tenants=len(self.tenants), users=len(self.users)
        )
        return True

    def _serialize_tenant(self, tenant: Tenant) -> dict:
        return {
            "id": tenant.id,
            "name": tenant.name,
            "slug": tenant.slug,
            "country": tenant.country,
            "currency": tenant.currency,
            "language": Language(tenant.language).value,
            "created_at": self._serialize_datetime(tenant.created_at),
        }

    def _deserialize_tenant(self, data: dict) -> Tenant:
        return Tenant(
            id=str(data["id"]),
            name=data["name"],
            slug=data["slug"],
            country=data["country"],
            currency=data["currency"],
            language=Language(data.get("language", Language.EN.value)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "tenant_id": user.tenant_id,
            "email": user.email,
            "name": user.name,
            "password_hash": user.password_hash,
            "role": UserRole(user.role).value,
            "status": UserStatus(user.status).value,
            "branch_id": user.branch_id,
            "branch_name": user.branch_name,
            "google_id": user.google_id,
            "avatar": user.avatar,
            "email_verified": user.email_verified,
            "failed_login_attempts": user.failed_login_attempts,
            "lockout_end_time": self._serialize_datetime(user.lockout_end_time),
            "refresh_token_hash": user.refresh_token_hash,
            "refresh_token_expiry_time": self._serialize_datetime(
                user.refresh_token_expiry_time
            ),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            tenant_id=str(data["tenant_id"]),
            email=data["email"],
            name=data.get("name", ""),
            password_hash=data.get("password_hash") or "",
            role=UserRole(data.get("role", UserRole.SUPER_ADMIN.value)),
            status=UserStatus(data.get("status", UserStatus.ACTIVE.value)),
            branch_id=data.get("branch_id"),
            branch_name=data.get("branch_name"),
            google_id=data.get("google_id"),
            avatar=data.get("avatar"),
            email_verified=bool(data.get("email_verified", False)),
            failed_login_attempts=data.get("failed_login_attempts"),
            lockout_end_time=self._deserialize_datetime(data.get("lockout_end_time")),
            refresh_token_hash=data.get("refresh_token_hash"),
            refresh_token_expiry_time=self._deserialize_datetime(
                data.get("refresh_token_expiry_time")
            ),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
