"""Tests for SSO identity resolution and identity management."""

import pytest

from authcore.service.errors import (
    ConflictError,
    InvariantViolation,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from authcore.service.identity_provider import ProviderTokens, SsoProfile
from authcore.service.linking import AccountLinkingEngine
from authcore.storage.models import AuthProvider, User, AuthIdentity, new_id


class StubSsoProvider:
    """Provider double that hands back a fixed profile for any code."""

    def __init__(self, profile, name=AuthProvider.GOOGLE):
        self.name = name
        self.profile = profile
        self.exchanged = []

    def authorization_url(self, state, redirect_uri):
        return f"https://idp.example.com/authorize?state={state}&redirect_uri={redirect_uri}"

    async def exchange_code(self, code, redirect_uri):
        self.exchanged.append((code, redirect_uri))
        return self.profile

    async def refresh(self, refresh_token):
        return ProviderTokens(refresh_token=refresh_token)


def _profile(subject="g-123", email="alice@example.com", verified=True):
    return SsoProfile(
        subject=subject,
        email=email,
        email_verified=verified,
        display_name="Alice",
        profile={"name": "Alice"},
        tokens=ProviderTokens(access_token="at", refresh_token="rt"),
    )


@pytest.fixture
def linking(memory_store, clock):
    return AccountLinkingEngine(memory_store, clock=clock)


def _local_user(memory_store, email="alice@example.com", verified=False):
    user = User(id=new_id(), email=email, email_verified=verified)
    identity = AuthIdentity(
        id=new_id(),
        user_id=user.id,
        provider="password",
        provider_subject=new_id(),
        email=email,
        is_verified=verified,
        is_primary=verified,
    )
    return memory_store.create_user_with_identity(user, identity)[0]


class TestResolveOrCreate:
    """Match order: identity, then same email, then a new user."""

    def test_creates_new_user_with_primary_verified_identity(self, linking):
        result = linking.resolve_or_create_user(
            "google", "g-1", email="New@Example.com", email_verified=True
        )
        assert result.created
        assert result.user.email == "new@example.com"
        assert result.user.email_verified
        assert result.identity.is_primary and result.identity.is_verified

    def test_existing_identity_returns_owner(self, linking):
        first = linking.resolve_or_create_user("google", "g-1", email="a@example.com", email_verified=True)
        again = linking.resolve_or_create_user("google", "g-1", email="changed@example.com", email_verified=True)
        assert again.user.id == first.user.id
        assert not again.created and not again.linked

    def test_verified_assertion_links_onto_unverified_local_user(self, linking, memory_store):
        local = _local_user(memory_store)
        result = linking.resolve_or_create_user(
            "google", "g-1", email="alice@example.com", email_verified=True
        )
        assert result.linked
        assert result.user.id == local.id
        assert result.user.email_verified
        assert len(memory_store.list_identities(local.id)) == 2

    def test_verified_local_user_accepts_unverified_assertion(self, linking, memory_store):
        local = _local_user(memory_store, verified=True)
        result = linking.resolve_or_create_user(
            "microsoft", "m-1", email="alice@example.com", email_verified=False
        )
        assert result.user.id == local.id

    def test_neither_side_verified_is_a_conflict(self, linking, memory_store):
        _local_user(memory_store)
        with pytest.raises(ConflictError) as exc:
            linking.resolve_or_create_user(
                "github", "gh-1", email="alice@example.com", email_verified=False
            )
        assert exc.value.detail["reason"] == "email_unverified"

    def test_missing_email_rejected(self, linking):
        with pytest.raises(ValidationError):
            linking.resolve_or_create_user("github", "gh-1", email=None, email_verified=False)


class TestIdentityManagement:
    def test_link_identity_is_idempotent_for_owner(self, linking, memory_store):
        user = _local_user(memory_store, verified=True)
        first = linking.link_identity(user.id, "github", "gh-9")
        second = linking.link_identity(user.id, "github", "gh-9")
        assert first.id == second.id

    def test_link_identity_owned_elsewhere_conflicts(self, linking, memory_store):
        owner = _local_user(memory_store, verified=True)
        other = _local_user(memory_store, email="eve@example.com", verified=True)
        linking.link_identity(owner.id, "github", "gh-9")
        with pytest.raises(ConflictError):
            linking.link_identity(other.id, "github", "gh-9")

    def test_link_identity_unknown_user(self, linking):
        with pytest.raises(NotFoundError):
            linking.link_identity(new_id(), "github", "gh-9")

    def test_unlink_last_identity_rejected(self, linking, memory_store):
        user = _local_user(memory_store, verified=True)
        only = linking.list_identities(user.id)[0]
        with pytest.raises(InvariantViolation):
            linking.unlink_identity(user.id, only.id)

    def test_unlink_unknown_identity(self, linking, memory_store):
        user = _local_user(memory_store, verified=True)
        with pytest.raises(NotFoundError):
            linking.unlink_identity(user.id, new_id())

    def test_set_primary_unverified_is_invariant_violation(self, linking, memory_store):
        user = _local_user(memory_store, verified=True)
        unverified = linking.link_identity(user.id, "github", "gh-9", is_verified=False)
        with pytest.raises(InvariantViolation):
            linking.set_primary(user.id, unverified.id)


class TestSsoFlow:
    """SSO through the auth service: state handling, linking and sessions."""

    async def test_sso_callback_creates_session(self, auth_service):
        provider = StubSsoProvider(_profile())
        auth_service.sso_providers["google"] = provider
        start = await auth_service.sso_authorization_url("google", return_url="/dashboard")
        assert start["state"] in start["authorization_url"]

        result = await auth_service.sso_callback("google", "code-1", start["state"])
        assert result.created
        assert result.session is not None
        assert result.return_url == "/dashboard"
        assert provider.exchanged[0][1].endswith("/v1/auth/sso/google/callback")
        check = await auth_service.validate(result.session.token)
        assert check.valid and check.user_id == result.user.id

    async def test_state_is_single_use(self, auth_service):
        auth_service.sso_providers["google"] = StubSsoProvider(_profile())
        start = await auth_service.sso_authorization_url("google")
        await auth_service.sso_callback("google", "code-1", start["state"])
        with pytest.raises(UnauthorizedError):
            await auth_service.sso_callback("google", "code-1", start["state"])

    async def test_state_bound_to_provider(self, auth_service):
        auth_service.sso_providers["google"] = StubSsoProvider(_profile())
        auth_service.sso_providers["github"] = StubSsoProvider(_profile(), name=AuthProvider.GITHUB)
        start = await auth_service.sso_authorization_url("google")
        with pytest.raises(UnauthorizedError):
            await auth_service.sso_callback("github", "code-1", start["state"])

    async def test_foreign_return_url_rejected(self, auth_service):
        auth_service.sso_providers["google"] = StubSsoProvider(_profile())
        with pytest.raises(ValidationError) as exc:
            await auth_service.sso_authorization_url(
                "google", return_url="https://evil.example.net/steal"
            )
        assert exc.value.detail["reason"] == "invalid_redirect"

    async def test_unconfigured_provider_not_found(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.sso_authorization_url("microsoft")

    async def test_password_is_not_an_sso_provider(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.sso_authorization_url("password")

    async def test_link_flow_attaches_identity_to_signed_in_user(
        self, auth_service, verified_user
    ):
        user = await verified_user()
        auth_service.sso_providers["github"] = StubSsoProvider(
            _profile(subject="gh-42", email="alice-gh@example.com"), name=AuthProvider.GITHUB
        )
        start = await auth_service.link_sso(user.id, "github")
        result = await auth_service.sso_callback("github", "code-1", start["state"])
        assert result.linked
        assert result.session is None
        providers = {i.provider for i in auth_service.list_identities(user.id)}
        assert providers == {"password", "github"}

    async def test_sso_login_with_mfa_returns_challenge(self, auth_service, memory_store):
        auth_service.sso_providers["google"] = StubSsoProvider(_profile())
        start = await auth_service.sso_authorization_url("google")
        first = await auth_service.sso_callback("google", "c", start["state"])
        memory_store.users[first.user.id].mfa_enabled = True

        start = await auth_service.sso_authorization_url("google")
        result = await auth_service.sso_callback("google", "c", start["state"])
        assert result.requires_mfa
        assert result.session is None
        assert result.challenge.challenge_type == "email"
