"""Upstream clients: retrying HTTP, credential authorities and SSO userinfo mapping."""

import json

import httpx
import pytest

from authcore.service.errors import ConflictError, ExternalServiceError
from authcore.service.identity_provider import (
    GitHubProvider,
    GoogleProvider,
    HttpCredentialAuthority,
    LocalCredentialAuthority,
    MicrosoftProvider,
    ProviderHttp,
    build_sso_providers,
)


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _http(handler, *, max_attempts=3, sleep=None):
    return ProviderHttp(
        max_attempts=max_attempts,
        backoff_seconds=0.1,
        transport=httpx.MockTransport(handler),
        sleep=sleep or SleepRecorder(),
    )


class TestProviderHttp:
    async def test_retries_transient_statuses_with_backoff(self):
        statuses = iter([503, 502, 200])
        sleep = SleepRecorder()
        http = _http(lambda request: httpx.Response(next(statuses)), sleep=sleep)
        response = await http.request("GET", "https://idp.example.com/x", service="idp")
        assert response.status_code == 200
        assert sleep.delays == [0.1, 0.2]

    async def test_retries_transport_errors(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200)

        response = await _http(handler).request("GET", "https://idp.example.com/x", service="idp")
        assert response.status_code == 200
        assert len(calls) == 2

    async def test_gives_up_after_max_attempts(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(504)

        with pytest.raises(ExternalServiceError) as exc:
            await _http(handler, max_attempts=2).request(
                "GET", "https://idp.example.com/x", service="idp"
            )
        assert len(calls) == 2
        assert exc.value.detail == {"service": "idp", "attempts": 2}

    async def test_auth_failures_are_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401)

        response = await _http(handler).request("GET", "https://idp.example.com/x", service="idp")
        assert response.status_code == 401
        assert len(calls) == 1

    async def test_post_retries_only_unsent_failures(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectTimeout("connect timed out", request=request)
            if len(calls) == 2:
                return httpx.Response(503)
            return httpx.Response(201)

        response = await _http(handler).request("POST", "https://idp.example.com/x", service="idp")
        assert response.status_code == 201
        assert len(calls) == 3

    async def test_post_not_retried_after_read_timeout(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(ExternalServiceError) as exc:
            await _http(handler).request("POST", "https://idp.example.com/x", service="idp")
        assert len(calls) == 1
        assert exc.value.detail == {"service": "idp", "attempts": 1}

    async def test_post_gateway_timeout_returned_as_is(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(504)

        response = await _http(handler).request("POST", "https://idp.example.com/x", service="idp")
        assert response.status_code == 504
        assert len(calls) == 1

    async def test_idempotent_post_retries_read_timeout(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ReadTimeout("read timed out", request=request)
            return httpx.Response(200)

        response = await _http(handler).request(
            "POST", "https://idp.example.com/x", service="idp", idempotent=True
        )
        assert response.status_code == 200
        assert len(calls) == 2


class TestLocalCredentialAuthority:
    async def test_argon2_round_trip(self, memory_store):
        authority = LocalCredentialAuthority(memory_store)
        subject = await authority.create_credential("alice@example.com", "Correct-horse-1")
        record = memory_store.get_credential(subject)
        assert record.password_algo == "argon2id"
        assert record.password_hash.startswith("$argon2id$")
        assert await authority.authenticate(subject, "alice@example.com", "Correct-horse-1")
        assert await authority.authenticate(subject, "alice@example.com", "wrong") is None

    async def test_missing_or_foreign_record(self, memory_store):
        authority = LocalCredentialAuthority(memory_store)
        assert await authority.authenticate("nope", "a@example.com", "x") is None
        subject = await authority.create_credential("alice@example.com", "Correct-horse-1")
        record = memory_store.get_credential(subject)
        record.password_algo = "bcrypt"
        memory_store.save_credential(record)
        assert await authority.authenticate(subject, "alice@example.com", "Correct-horse-1") is None


class TestHttpCredentialAuthority:
    def _authority(self, handler):
        return HttpCredentialAuthority("https://gotrue.example.com/", "service-key", _http(handler))

    async def test_authenticate_maps_tokens(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["apikey"] = request.headers.get("apikey")
            return httpx.Response(
                200,
                json={"access_token": "at", "refresh_token": "rt", "expires_in": 3600, "user": {"id": "sub-1"}},
            )

        tokens = await self._authority(handler).authenticate("sub-1", "a@example.com", "pw")
        assert tokens.refresh_token == "rt"
        assert seen["url"] == "https://gotrue.example.com/token?grant_type=password"
        assert seen["apikey"] == "service-key"

    @pytest.mark.parametrize("status", [400, 401, 403])
    async def test_rejected_credentials_return_none(self, status):
        authority = self._authority(lambda request: httpx.Response(status))
        assert await authority.authenticate("sub-1", "a@example.com", "pw") is None

    async def test_subject_mismatch_is_a_failure(self):
        authority = self._authority(
            lambda request: httpx.Response(200, json={"access_token": "at", "user": {"id": "other"}})
        )
        assert await authority.authenticate("sub-1", "a@example.com", "pw") is None

    async def test_create_conflict_and_unexpected_status(self):
        with pytest.raises(ConflictError):
            await self._authority(lambda r: httpx.Response(422)).create_credential("a@example.com", "pw")
        with pytest.raises(ExternalServiceError):
            await self._authority(lambda r: httpx.Response(500)).create_credential("a@example.com", "pw")

    async def test_create_returns_subject(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["email_confirm"] is False
            return httpx.Response(201, json={"id": "sub-9"})

        assert await self._authority(handler).create_credential("a@example.com", "pw") == "sub-9"

    async def test_create_is_not_replayed_after_timeout(self):
        created = []

        def handler(request):
            if created:
                return httpx.Response(422, json={"msg": "already registered"})
            created.append({"id": "sub-1"})
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(ExternalServiceError):
            await self._authority(handler).create_credential("new@example.com", "pw")
        assert created == [{"id": "sub-1"}]

    async def test_delete_tolerates_missing_user(self):
        await self._authority(lambda r: httpx.Response(404)).delete_credential("sub-1")


class TestUserinfoMapping:
    def _provider(self, cls):
        return cls("client", "secret", _http(lambda r: httpx.Response(500)))

    def test_google(self):
        profile = self._provider(GoogleProvider).parse_userinfo(
            {"sub": "g-1", "email": "a@example.com", "email_verified": "true", "name": "A"}
        )
        assert profile.subject == "g-1"
        assert profile.email_verified
        assert profile.display_name == "A"

    def test_google_without_subject(self):
        assert self._provider(GoogleProvider).parse_userinfo({"email": "a@example.com"}) is None

    def test_microsoft_mail_is_verified(self):
        profile = self._provider(MicrosoftProvider).parse_userinfo(
            {"id": "m-1", "mail": "a@example.com", "userPrincipalName": "a@tenant.example.com"}
        )
        assert profile.email == "a@example.com"
        assert profile.email_verified

    def test_microsoft_upn_only_is_unverified(self):
        profile = self._provider(MicrosoftProvider).parse_userinfo(
            {"id": "m-1", "userPrincipalName": "a@tenant.example.com"}
        )
        assert profile.email == "a@tenant.example.com"
        assert not profile.email_verified

    def test_authorization_url_carries_state(self):
        url = self._provider(GoogleProvider).authorization_url("st4te", "https://auth.example.com/cb")
        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert "state=st4te" in url
        assert "access_type=offline" in url


class TestGitHubExchange:
    def _handler(self, emails):
        def handler(request):
            if request.url.path == "/login/oauth/access_token":
                return httpx.Response(200, json={"access_token": "gho_token"})
            if request.url.path == "/user":
                assert request.headers["Authorization"] == "Bearer gho_token"
                return httpx.Response(200, json={"id": 42, "login": "octo", "email": "public@example.com"})
            if request.url.path == "/user/emails":
                return httpx.Response(200, json=emails)
            return httpx.Response(404)

        return handler

    async def test_primary_verified_email_wins(self):
        provider = GitHubProvider(
            "client", "secret",
            _http(self._handler([
                {"email": "public@example.com", "primary": False, "verified": False},
                {"email": "octo@example.com", "primary": True, "verified": True},
            ])),
        )
        profile = await provider.exchange_code("code", "https://auth.example.com/cb")
        assert profile.subject == "42"
        assert profile.email == "octo@example.com"
        assert profile.email_verified
        assert profile.tokens.access_token == "gho_token"

    async def test_unverified_public_email(self):
        provider = GitHubProvider(
            "client", "secret",
            _http(self._handler([{"email": "public@example.com", "primary": False, "verified": False}])),
        )
        profile = await provider.exchange_code("code", "https://auth.example.com/cb")
        assert profile.email == "public@example.com"
        assert not profile.email_verified

    async def test_rejected_code(self):
        provider = GitHubProvider("client", "secret", _http(lambda r: httpx.Response(400)))
        assert await provider.exchange_code("bad", "https://auth.example.com/cb") is None


def test_only_configured_providers_are_built(settings):
    configured = settings.model_copy(
        update={"oauth_github_client_id": "id", "oauth_github_client_secret": "secret"}
    )
    providers = build_sso_providers(configured, ProviderHttp())
    assert list(providers) == ["github"]
