from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from thurayya.logging import get_logger
from thurayya.storage.errors import ConstraintViolation, StoreUnavailable
from thurayya.storage.models import Language, Tenant, User, UserRole, UserStatus

_USER_COLUMNS = """
    id, tenant_id, email, name, password_hash, role, status, branch_id, branch_name,
    google_id, avatar, email_verified, failed_login_attempts, lockout_end_time,
    refresh_token_hash, refresh_token_expiry_time, last_login_at, created_at
"""

_TENANT_COLUMNS = "id, name, slug, country, currency, language, created_at"


class PostgresStore:
    """Postgres-backed credential store; each method runs in its own transaction."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure identity tables exist before serving requests."""

        required_tables = ["tenant", "app_user"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

            citext_ext = conn.execute(
                "SELECT extname FROM pg_extension WHERE extname = 'citext'"
            ).fetchone()
            if not citext_ext:
                raise RuntimeError(
                    "citext extension is missing; case-insensitive email uniqueness depends on it."
                )

    # -- row mapping -----------------------------------------------------

    @staticmethod
    def _row_to_user(row: dict) -> User:
        attempts = row.get("failed_login_attempts")
        return User(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            email=str(row["email"]),
            name=row.get("name") or "",
            password_hash=row.get("password_hash") or "",
            role=UserRole(row.get("role") or UserRole.SUPER_ADMIN.value),
            status=UserStatus(row.get("status") or UserStatus.ACTIVE.value),
            branch_id=str(row["branch_id"]) if row.get("branch_id") else None,
            branch_name=row.get("branch_name"),
            google_id=row.get("google_id"),
            avatar=row.get("avatar"),
            email_verified=bool(row.get("email_verified", False)),
            failed_login_attempts=int(attempts) if attempts is not None else None,
            lockout_end_time=row.get("lockout_end_time"),
            refresh_token_hash=row.get("refresh_token_hash"),
            refresh_token_expiry_time=row.get("refresh_token_expiry_time"),
            last_login_at=row.get("last_login_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_tenant(row: dict) -> Tenant:
        return Tenant(
            id=str(row["id"]),
            name=row["name"],
            slug=row["slug"],
            country=row["country"],
            currency=row["currency"],
            language=Language(row.get("language") or Language.EN.value),
            created_at=row["created_at"],
        )

    @staticmethod
    def _user_params(user: User) -> tuple:
        return (
            user.id,
            user.tenant_id,
            user.email,
            user.name,
            user.password_hash,
            UserRole(user.role).value,
            UserStatus(user.status).value,
            user.branch_id,
            user.branch_name,
            user.google_id,
            user.avatar,
            user.email_verified,
            user.failed_login_attempts,
            user.lockout_end_time,
            user.refresh_token_hash,
            user.refresh_token_expiry_time,
            user.last_login_at,
            user.created_at,
        )

    def _insert_user(self, conn: Any, user: User) -> dict:
        return conn.execute(
            f"""
            INSERT INTO app_user ({_USER_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {_USER_COLUMNS}
            """,
            self._user_params(user),
        ).fetchone()

    @staticmethod
    def _unique_violation_field(exc: errors.UniqueViolation) -> str:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
        return "slug" if "slug" in constraint else "email"

    # -- tenants ---------------------------------------------------------

    def create_tenant_with_user(self, tenant: Tenant, user: User) -> tuple[Tenant, User]:
        try:
            with self._connect() as conn:
                tenant_row = conn.execute(
                    f"""
                    INSERT INTO tenant ({_TENANT_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_TENANT_COLUMNS}
                    """,
                    (
                        tenant.id,
                        tenant.name,
                        tenant.slug,
                        tenant.country,
                        tenant.currency,
                        Language(tenant.language).value,
                        tenant.created_at,
                    ),
                ).fetchone()
                user_row = self._insert_user(conn, user)
        except errors.UniqueViolation as exc:
            field = self._unique_violation_field(exc)
            label = "tenant slug" if field == "slug" else "email"
            raise ConstraintViolation(f"{label} already exists", {"field": field})
        return self._row_to_tenant(tenant_row), self._row_to_user(user_row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TENANT_COLUMNS} FROM tenant WHERE id = %s", (tenant_id,)
            ).fetchone()
        return self._row_to_tenant(row) if row else None

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TENANT_COLUMNS} FROM tenant WHERE slug = %s", (slug,)
            ).fetchone()
        return self._row_to_tenant(row) if row else None

    def tenant_slug_exists(self, slug: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS found FROM tenant WHERE slug = %s", (slug,)
            ).fetchone()
        return row is not None

    # -- users -----------------------------------------------------------

    def create_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                row = self._insert_user(conn, user)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "tenant not found for user", {"tenant_id": user.tenant_id}
            )
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_refresh_token_hash(self, token_hash: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE refresh_token_hash = %s",
                (token_hash,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def record_login_failure(
        self,
        user_id: str,
        failed_attempts: int,
        lockout_end_time: Optional[datetime],
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = %s, lockout_end_time = %s
                WHERE id = %s
                """,
                (failed_attempts, lockout_end_time, user_id),
            )

    def record_login_success(self, user_id: str, last_login_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = 0, lockout_end_time = NULL, last_login_at = %s
                WHERE id = %s
                """,
                (last_login_at, user_id),
            )

    def set_refresh_token(
        self,
        user_id: str,
        token_hash: Optional[str],
        expires_at: Optional[datetime],
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET refresh_token_hash = %s, refresh_token_expiry_time = %s
                WHERE id = %s
                RETURNING id
                """,
                (token_hash, expires_at if token_hash else None, user_id),
            ).fetchone()
        return row is not None

    def rotate_refresh_token(
        self,
        user_id: str,
        expected_hash: str,
        new_hash: str,
        expires_at: datetime,
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET refresh_token_hash = %s, refresh_token_expiry_time = %s
                WHERE id = %s AND refresh_token_hash = %s
                RETURNING id
                """,
                (new_hash, expires_at, user_id, expected_hash),
            ).fetchone()
        return row is not None

    def link_google_identity(
        self,
        user_id: str,
        google_id: str,
        *,
        avatar: Optional[str],
        email_verified: bool,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user
                SET google_id = COALESCE(NULLIF(google_id, ''), %s),
                    avatar = COALESCE(NULLIF(%s, ''), avatar),
                    email_verified = %s
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (google_id, avatar, email_verified, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def activate_user(self, user_id: str) -> Optional[User]:
        return self.set_user_status(user_id, UserStatus.ACTIVE)

    def set_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user SET status = %s WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (UserStatus(status).value, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None
