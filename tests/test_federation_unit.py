"""Unit tests for Google federation in the auth service."""

import pytest
from argon2 import PasswordHasher, Type

from fakes import FakeIdentityClient
from thurayya.config import Settings
from thurayya.service.auth import AuthService
from thurayya.service.errors import (
    AuthenticationError,
    AuthFailureReason,
    ValidationError,
)
from thurayya.service.federation import GoogleIdentity
from thurayya.service.passwords import PasswordService
from thurayya.storage.memory import MemoryStore
from thurayya.storage.models import User, UserRole, UserStatus

LAYLA = GoogleIdentity(
    email="Layla@Example.com",
    subject="google-sub-layla",
    name="Layla Hassan",
    picture="https://example.com/layla.png",
    email_verified=True,
)


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def identity():
    return FakeIdentityClient(LAYLA)


@pytest.fixture
def auth_service(memory_store, identity, tmp_path):
    settings = Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
    )
    passwords = PasswordService(
        PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
    )
    return AuthService(memory_store, settings, passwords=passwords, identity=identity)


async def _register_password_user(service, email="layla@example.com"):
    return await service.register(
        "Layla", email, "Str0ngPass", "Layla Pharmacy", "AE", "AED"
    )


class TestIdTokenFlow:
    """Sign-in and sign-up with a client-obtained Google ID token."""

    async def test_first_sign_in_provisions_tenant_and_user(self, auth_service, memory_store):
        result = await auth_service.federated_auth_id_token("credential")

        assert result.is_new_user is True
        assert result.tenant.name == "Layla Hassan's Organization"
        assert result.tenant.country == "Unknown"
        assert result.tenant.currency == "USD"
        assert result.session.user.role == UserRole.SUPER_ADMIN.value

        stored = memory_store.get_user_by_email("layla@example.com")
        assert stored.google_id == "google-sub-layla"
        assert stored.password_hash == ""
        assert stored.email_verified is True
        assert stored.avatar == "https://example.com/layla.png"

    async def test_tenant_hints_override_defaults(self, auth_service):
        result = await auth_service.federated_auth_id_token(
            "credential", tenant_name="Dubai Care", country="AE", currency="AED"
        )

        assert result.tenant.name == "Dubai Care"
        assert result.tenant.slug == "dubai-care"
        assert (result.tenant.country, result.tenant.currency) == ("AE", "AED")

    async def test_missing_name_falls_back_to_my_organization(
        self, auth_service, identity, memory_store
    ):
        identity.identity = GoogleIdentity(email="anon@example.com", subject="sub-anon")

        result = await auth_service.federated_auth_id_token("credential")

        assert result.tenant.name == "My's Organization"
        assert memory_store.get_user_by_email("anon@example.com").name == "anon@example.com"

    async def test_repeat_sign_in_is_idempotent(self, auth_service, memory_store):
        first = await auth_service.federated_auth_id_token("credential")
        second = await auth_service.federated_auth_id_token("credential")

        assert second.is_new_user is False
        assert second.session.user.id == first.session.user.id
        assert second.tenant.id == first.tenant.id
        assert len(memory_store.users) == 1
        assert len(memory_store.tenants) == 1
        assert memory_store.get_user(first.session.user.id).google_id == "google-sub-layla"

    async def test_existing_password_user_gets_linked(self, auth_service, memory_store):
        await _register_password_user(auth_service)

        result = await auth_service.federated_auth_id_token("credential")

        assert result.is_new_user is False
        assert result.tenant.name == "Layla Pharmacy"
        stored = memory_store.get_user_by_email("layla@example.com")
        assert stored.google_id == "google-sub-layla"
        assert stored.email_verified is True
        assert stored.avatar == "https://example.com/layla.png"
        assert stored.password_hash.startswith("$argon2id$")

    async def test_first_link_wins_and_avatar_follows_provider(
        self, auth_service, identity, memory_store
    ):
        await auth_service.federated_auth_id_token("credential")
        identity.identity = GoogleIdentity(
            email="layla@example.com",
            subject="another-subject",
            name="Layla Hassan",
            picture="https://example.com/new.png",
            email_verified=False,
        )

        await auth_service.federated_auth_id_token("credential")

        stored = memory_store.get_user_by_email("layla@example.com")
        assert stored.google_id == "google-sub-layla"
        assert stored.avatar == "https://example.com/new.png"
        assert stored.email_verified is False

    async def test_invalid_token_is_rejected(self, auth_service, identity, memory_store):
        identity.identity = None

        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.federated_auth_id_token("forged")

        assert exc_info.value.reason == AuthFailureReason.INVALID_PROVIDER_TOKEN
        assert memory_store.users == {}

    async def test_suspended_user_cannot_federate(self, auth_service, memory_store):
        await _register_password_user(auth_service)
        user = memory_store.get_user_by_email("layla@example.com")
        memory_store.set_user_status(user.id, UserStatus.SUSPENDED)

        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.federated_auth_id_token("credential")

        assert exc_info.value.reason == AuthFailureReason.ACCOUNT_NOT_ACTIVE
        assert memory_store.get_user(user.id).google_id is None
        assert memory_store.get_user(user.id).refresh_token_hash is not None

    async def test_federated_session_refreshes(self, auth_service):
        result = await auth_service.federated_auth_id_token("credential")

        rotated = await auth_service.refresh(result.session.refresh_token)

        assert rotated.user.id == result.session.user.id


class TestCodeFlow:
    """Server-side authorization-code exchange."""

    async def test_code_exchange_then_sign_up(self, auth_service, identity):
        result = await auth_service.federated_auth_code("auth-code")

        assert identity.exchanged == ["auth-code"]
        assert identity.verified == ["google-id-token"]
        assert result.is_new_user is True

    async def test_failed_exchange_is_rejected(self, auth_service, identity):
        identity.id_token = None

        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.federated_auth_code("auth-code")

        assert exc_info.value.reason == AuthFailureReason.CODE_EXCHANGE_FAILED
        assert identity.verified == []

    async def test_unverifiable_id_token_from_code(self, auth_service, identity):
        identity.identity = None

        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.federated_auth_code("auth-code")

        assert exc_info.value.reason == AuthFailureReason.INVALID_PROVIDER_TOKEN


class TestTenantFirstCodeFlow:
    """Code flow where the client names the organisation up front."""

    async def test_new_org_provisions_tenant(self, auth_service):
        result = await auth_service.federated_auth_code("auth-code", is_new_org=True)

        assert result.is_new_user is True
        assert result.tenant.name == "Layla Hassan's Organization"

    async def test_new_org_with_registered_email_is_rejected(self, auth_service):
        await _register_password_user(auth_service)

        with pytest.raises(ValidationError) as exc_info:
            await auth_service.federated_auth_code("auth-code", is_new_org=True)

        assert exc_info.value.message == (
            "This email is already registered with organization 'Layla Pharmacy'. "
            "Please sign in to that organization instead."
        )

    async def test_existing_org_requires_known_slug(self, auth_service):
        with pytest.raises(ValidationError) as exc_info:
            await auth_service.federated_auth_code("auth-code", tenant_slug="missing-org")
        assert exc_info.value.message == "Organization not found"

    async def test_existing_org_member_signs_in(self, auth_service, memory_store):
        await _register_password_user(auth_service)

        result = await auth_service.federated_auth_code(
            "auth-code", tenant_slug="layla-pharmacy"
        )

        assert result.is_new_user is False
        assert result.tenant.slug == "layla-pharmacy"
        assert memory_store.get_user_by_email("layla@example.com").google_id == "google-sub-layla"

    async def test_non_member_is_rejected(self, auth_service, memory_store):
        await _register_password_user(auth_service, email="owner@example.com")

        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.federated_auth_code("auth-code", tenant_slug="layla-pharmacy")

        assert exc_info.value.reason == AuthFailureReason.NOT_A_MEMBER
        assert "not a member of this organization" in exc_info.value.message
        assert memory_store.get_user_by_email("layla@example.com") is None

    async def test_member_of_other_org_is_rejected(self, auth_service):
        await _register_password_user(auth_service)
        await auth_service.register(
            "Omar", "omar@example.com", "Str0ngPass", "Omar Pharmacy", "EG", "EGP"
        )

        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.federated_auth_code("auth-code", tenant_slug="omar-pharmacy")

        assert exc_info.value.reason == AuthFailureReason.NOT_A_MEMBER
        assert "('Layla Pharmacy')" in exc_info.value.message

    async def test_invited_member_is_activated(self, auth_service, memory_store):
        await auth_service.register(
            "Omar", "omar@example.com", "Str0ngPass", "Omar Pharmacy", "EG", "EGP"
        )
        tenant = memory_store.get_tenant_by_slug("omar-pharmacy")
        invited = memory_store.create_user(
            User.new(
                tenant.id,
                "layla@example.com",
                "Layla",
                role=UserRole.BRANCH_ADMIN,
                status=UserStatus.INVITED,
            )
        )

        result = await auth_service.federated_auth_code(
            "auth-code", tenant_slug="omar-pharmacy"
        )

        assert result.session.user.id == invited.id
        assert result.session.user.status == UserStatus.ACTIVE.value
        assert result.session.user.role == UserRole.BRANCH_ADMIN.value
        stored = memory_store.get_user(invited.id)
        assert stored.status == UserStatus.ACTIVE
        assert stored.google_id == "google-sub-layla"

    async def test_invited_user_without_tenant_context_stays_inactive(
        self, auth_service, memory_store
    ):
        await auth_service.register(
            "Omar", "omar@example.com", "Str0ngPass", "Omar Pharmacy", "EG", "EGP"
        )
        tenant = memory_store.get_tenant_by_slug("omar-pharmacy")
        memory_store.create_user(
            User.new(tenant.id, "layla@example.com", "Layla", status=UserStatus.INVITED)
        )

        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.federated_auth_id_token("credential")

        assert exc_info.value.reason == AuthFailureReason.ACCOUNT_NOT_ACTIVE
