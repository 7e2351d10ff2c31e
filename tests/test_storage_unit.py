"""Unit tests for the in-memory credential store."""

from datetime import datetime, timedelta, timezone

import pytest

from thurayya.storage.errors import ConstraintViolation
from thurayya.storage.memory import MemoryStore
from thurayya.storage.models import Language, Tenant, User, UserStatus


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def _tenant_with_owner(slug="aisha-pharmacy", email="aisha@example.com"):
    tenant = Tenant.new("Aisha Pharmacy", slug, "SA", "SAR", Language.AR)
    user = User.new(tenant.id, email, "Aisha", password_hash="$argon2id$fake")
    return tenant, user


class TestTenantCreation:
    def test_tenant_and_owner_are_created_together(self, store):
        tenant, user = _tenant_with_owner()

        created_tenant, created_user = store.create_tenant_with_user(tenant, user)

        assert created_tenant.id == tenant.id
        assert created_user.tenant_id == tenant.id
        assert store.get_tenant_by_slug("aisha-pharmacy").language == Language.AR
        assert store.tenant_slug_exists("aisha-pharmacy")
        assert not store.tenant_slug_exists("other")

    def test_duplicate_email_creates_nothing(self, store):
        store.create_tenant_with_user(*_tenant_with_owner())

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_tenant_with_user(*_tenant_with_owner(slug="second"))

        assert exc_info.value.detail == {"field": "email"}
        assert not store.tenant_slug_exists("second")

    def test_duplicate_slug_is_reported(self, store):
        store.create_tenant_with_user(*_tenant_with_owner())

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_tenant_with_user(*_tenant_with_owner(email="other@example.com"))

        assert exc_info.value.detail == {"field": "slug"}
        assert store.get_user_by_email("other@example.com") is None

    def test_create_user_requires_existing_tenant(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_user(User.new("missing-tenant", "x@example.com", "X"))


class TestUserMutations:
    def test_reads_return_copies(self, store):
        _, user = store.create_tenant_with_user(*_tenant_with_owner())

        fetched = store.get_user(user.id)
        fetched.status = UserStatus.SUSPENDED

        assert store.get_user(user.id).status == UserStatus.ACTIVE

    def test_login_failure_and_success_bookkeeping(self, store):
        _, user = store.create_tenant_with_user(*_tenant_with_owner())
        lockout = datetime.now(timezone.utc) + timedelta(minutes=15)

        store.record_login_failure(user.id, 0, lockout)
        assert store.get_user(user.id).lockout_end_time == lockout

        now = datetime.now(timezone.utc)
        store.record_login_success(user.id, now)
        stored = store.get_user(user.id)
        assert stored.failed_login_attempts == 0
        assert stored.lockout_end_time is None
        assert stored.last_login_at == now

    def test_refresh_token_compare_and_swap(self, store):
        _, user = store.create_tenant_with_user(*_tenant_with_owner())
        expiry = datetime.now(timezone.utc) + timedelta(days=7)
        store.set_refresh_token(user.id, "hash-1", expiry)

        assert store.rotate_refresh_token(user.id, "hash-1", "hash-2", expiry)
        assert not store.rotate_refresh_token(user.id, "hash-1", "hash-3", expiry)
        assert store.get_user_by_refresh_token_hash("hash-2").id == user.id
        assert store.get_user_by_refresh_token_hash("hash-1") is None

    def test_clearing_refresh_token_clears_expiry(self, store):
        _, user = store.create_tenant_with_user(*_tenant_with_owner())
        store.set_refresh_token(user.id, "hash-1", datetime.now(timezone.utc))

        assert store.set_refresh_token(user.id, None, None)
        assert store.get_user(user.id).refresh_token_expiry_time is None
        assert not store.set_refresh_token("missing", None, None)

    def test_google_link_keeps_first_subject(self, store):
        _, user = store.create_tenant_with_user(*_tenant_with_owner())

        store.link_google_identity(user.id, "sub-1", avatar="a.png", email_verified=True)
        linked = store.link_google_identity(
            user.id, "sub-2", avatar=None, email_verified=False
        )

        assert linked.google_id == "sub-1"
        assert linked.avatar == "a.png"
        assert linked.email_verified is False

    def test_activate_invited_user(self, store):
        tenant, _ = store.create_tenant_with_user(*_tenant_with_owner())
        invited = store.create_user(
            User.new(tenant.id, "invitee@example.com", "Invitee", status=UserStatus.INVITED)
        )

        assert store.activate_user(invited.id).status == UserStatus.ACTIVE
        assert store.activate_user("missing") is None


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        tenant, user = store.create_tenant_with_user(*_tenant_with_owner())
        expiry = datetime.now(timezone.utc) + timedelta(days=7)
        store.set_refresh_token(user.id, "hash-1", expiry)

        reloaded = MemoryStore(fs_root=str(tmp_path))

        stored = reloaded.get_user_by_email("aisha@example.com")
        assert stored.id == user.id
        assert stored.refresh_token_hash == "hash-1"
        assert stored.refresh_token_expiry_time == expiry
        assert stored.password_hash == "$argon2id$fake"
        assert reloaded.get_tenant(tenant.id).slug == "aisha-pharmacy"
        assert (tmp_path / "state" / "memory_store.json").exists()
