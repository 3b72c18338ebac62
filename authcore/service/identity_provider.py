from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol
from urllib.parse import urlencode

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import ConflictError, ExternalServiceError, ValidationError
from authcore.storage.models import AuthProvider, PasswordCredential, new_id, utcnow

logger = get_logger(__name__)

# Upstream statuses treated as transient and retried
RETRYABLE_STATUSES = frozenset({502, 503, 504})
# A gateway timeout may hide a request the upstream already applied
UNAPPLIED_STATUSES = frozenset({502, 503})
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})
# Failures raised before the request reached the upstream
UNSENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


@dataclass
class ProviderTokens:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None


@dataclass
class SsoProfile:
    """Normalized identity assertion returned by an SSO provider."""

    subject: str
    email: Optional[str]
    email_verified: bool
    display_name: Optional[str] = None
    profile: Dict[str, Any] = field(default_factory=dict)
    tokens: ProviderTokens = field(default_factory=ProviderTokens)


class ProviderHttp:
    """httpx wrapper that retries transport failures with exponential backoff.

    Idempotent requests retry any transport error and 502/503/504. Other
    requests retry only failures that prove the upstream never applied them:
    connect-phase errors and 502/503. Any other response, including
    authentication failures, is returned to the caller on the first attempt.
    """

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.transport = transport
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "ProviderHttp":
        return cls(
            timeout=settings.provider_timeout_seconds,
            max_attempts=settings.provider_max_attempts,
            backoff_seconds=settings.provider_backoff_seconds,
            **kwargs,
        )

    async def request(
        self,
        method: str,
        url: str,
        *,
        service: str,
        idempotent: Optional[bool] = None,
        **kwargs,
    ) -> httpx.Response:
        if idempotent is None:
            idempotent = method.upper() in IDEMPOTENT_METHODS
        retry_errors = httpx.TransportError if idempotent else UNSENT_ERRORS
        retry_statuses = RETRYABLE_STATUSES if idempotent else UNAPPLIED_STATUSES
        last_error: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with httpx.AsyncClient(
                    timeout=self.timeout, transport=self.transport, follow_redirects=False
                ) as client:
                    response = await client.request(method, url, **kwargs)
            except retry_errors as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            except httpx.TransportError as exc:
                logger.error(
                    "provider_request_outcome_unknown",
                    service=service,
                    method=method,
                    error=f"{type(exc).__name__}: {exc}",
                )
                raise ExternalServiceError(
                    f"{service} is temporarily unavailable",
                    detail={"service": service, "attempts": attempt},
                ) from exc
            else:
                if response.status_code not in retry_statuses:
                    return response
                last_error = f"status {response.status_code}"
            logger.warning(
                "provider_request_retry",
                service=service,
                attempt=attempt,
                max_attempts=self.max_attempts,
                error=last_error,
            )
            if attempt < self.max_attempts:
                await self._sleep(self.backoff_seconds * (2 ** (attempt - 1)))
        logger.error("provider_unavailable", service=service, error=last_error)
        raise ExternalServiceError(
            f"{service} is temporarily unavailable",
            detail={"service": service, "attempts": self.max_attempts},
        )


class CredentialAuthority(Protocol):
    """External or built-in holder of password credentials."""

    async def authenticate(
        self, subject: str, email: str, password: str
    ) -> Optional[ProviderTokens]: ...

    async def create_credential(self, email: str, password: str) -> str: ...

    async def update_credential(self, subject: str, password: str) -> None: ...

    async def delete_credential(self, subject: str) -> None: ...

    async def refresh_tokens(self, refresh_token: str) -> Optional[ProviderTokens]: ...


class LocalCredentialAuthority:
    """Credential authority backed by argon2id hashes in the identity store."""

    algo = "argon2id"

    def __init__(self, store) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    async def authenticate(
        self, subject: str, email: str, password: str
    ) -> Optional[ProviderTokens]:
        record = self.store.get_credential(subject)
        if not record:
            logger.warning("password_record_missing", subject=subject)
            return None
        if record.password_algo != self.algo:
            logger.warning("password_algo_mismatch", subject=subject, algo=record.password_algo)
            return None
        try:
            self._pwd_hasher.verify(record.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return None
        if self._pwd_hasher.check_needs_rehash(record.password_hash):
            self._save(subject, password)
        return ProviderTokens()

    def _save(self, subject: str, password: str) -> None:
        self.store.save_credential(
            PasswordCredential(
                subject=subject,
                password_hash=self._pwd_hasher.hash(password),
                password_algo=self.algo,
                last_updated_at=utcnow(),
            )
        )

    async def create_credential(self, email: str, password: str) -> str:
        subject = new_id()
        self._save(subject, password)
        return subject

    async def update_credential(self, subject: str, password: str) -> None:
        self._save(subject, password)

    async def delete_credential(self, subject: str) -> None:
        self.store.delete_credential(subject)

    async def refresh_tokens(self, refresh_token: str) -> Optional[ProviderTokens]:
        return None


class HttpCredentialAuthority:
    """Client for a GoTrue-compatible credential authority."""

    def __init__(self, base_url: str, api_key: Optional[str], http: ProviderHttp) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.http = http

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _tokens(payload: dict) -> ProviderTokens:
        return ProviderTokens(
            access_token=payload.get("access_token"),
            refresh_token=payload.get("refresh_token"),
            expires_in=payload.get("expires_in"),
        )

    def _unexpected(self, response: httpx.Response, operation: str) -> ExternalServiceError:
        logger.error(
            "credential_authority_unexpected_status",
            operation=operation,
            status_code=response.status_code,
        )
        return ExternalServiceError(
            "credential authority rejected the request",
            detail={"service": "credential_authority", "status": response.status_code},
        )

    async def authenticate(
        self, subject: str, email: str, password: str
    ) -> Optional[ProviderTokens]:
        response = await self.http.request(
            "POST",
            f"{self.base_url}/token?grant_type=password",
            service="credential_authority",
            idempotent=True,
            json={"email": email, "password": password},
            headers=self._headers(),
        )
        if response.status_code in (400, 401, 403):
            return None
        if response.status_code != 200:
            raise self._unexpected(response, "authenticate")
        payload = response.json()
        returned_subject = (payload.get("user") or {}).get("id")
        if returned_subject and returned_subject != subject:
            logger.warning("credential_subject_mismatch", subject=subject)
            return None
        return self._tokens(payload)

    async def create_credential(self, email: str, password: str) -> str:
        response = await self.http.request(
            "POST",
            f"{self.base_url}/admin/users",
            service="credential_authority",
            json={"email": email, "password": password, "email_confirm": False},
            headers=self._headers(),
        )
        if response.status_code in (409, 422):
            raise ConflictError("email already registered", detail={"field": "email"})
        if response.status_code == 400:
            raise ValidationError(
                "password rejected by credential authority", field="password", reason="rejected"
            )
        if response.status_code not in (200, 201):
            raise self._unexpected(response, "create_credential")
        return str(response.json()["id"])

    async def update_credential(self, subject: str, password: str) -> None:
        response = await self.http.request(
            "PUT",
            f"{self.base_url}/admin/users/{subject}",
            service="credential_authority",
            json={"password": password},
            headers=self._headers(),
        )
        if response.status_code == 400:
            raise ValidationError(
                "password rejected by credential authority", field="password", reason="rejected"
            )
        if response.status_code != 200:
            raise self._unexpected(response, "update_credential")

    async def delete_credential(self, subject: str) -> None:
        response = await self.http.request(
            "DELETE",
            f"{self.base_url}/admin/users/{subject}",
            service="credential_authority",
            headers=self._headers(),
        )
        if response.status_code not in (200, 204, 404):
            raise self._unexpected(response, "delete_credential")

    async def refresh_tokens(self, refresh_token: str) -> Optional[ProviderTokens]:
        response = await self.http.request(
            "POST",
            f"{self.base_url}/token?grant_type=refresh_token",
            service="credential_authority",
            json={"refresh_token": refresh_token},
            headers=self._headers(),
        )
        if response.status_code in (400, 401, 403):
            return None
        if response.status_code != 200:
            raise self._unexpected(response, "refresh_tokens")
        return self._tokens(response.json())


class SsoProvider:
    """OAuth2 authorization-code provider. Subclasses map userinfo payloads."""

    name: AuthProvider
    auth_url: str
    token_url: str
    userinfo_url: str
    scope: str
    extra_auth_params: Dict[str, str] = {}

    def __init__(self, client_id: str, client_secret: str, http: ProviderHttp) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.http = http

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
            **self.extra_auth_params,
        }
        return f"{self.auth_url}?{urlencode(params)}"

    def _userinfo_headers(self, access_token: str) -> dict:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    async def _token_request(self, data: dict) -> Optional[dict]:
        response = await self.http.request(
            "POST",
            self.token_url,
            service=f"sso_{self.name.value}",
            data={"client_id": self.client_id, "client_secret": self.client_secret, **data},
            headers={"Accept": "application/json"},
        )
        if response.status_code != 200:
            logger.warning(
                "sso_token_rejected", provider=self.name.value, status_code=response.status_code
            )
            return None
        try:
            payload = response.json()
        except ValueError:
            logger.error("sso_token_parse_error", provider=self.name.value)
            return None
        if not isinstance(payload, dict) or not payload.get("access_token"):
            logger.error("sso_no_access_token", provider=self.name.value)
            return None
        return payload

    async def exchange_code(self, code: str, redirect_uri: str) -> Optional[SsoProfile]:
        token_payload = await self._token_request(
            {"code": code, "redirect_uri": redirect_uri, "grant_type": "authorization_code"}
        )
        if not token_payload:
            return None
        headers = self._userinfo_headers(token_payload["access_token"])
        response = await self.http.request(
            "GET", self.userinfo_url, service=f"sso_{self.name.value}", headers=headers
        )
        if response.status_code != 200:
            logger.warning(
                "sso_userinfo_rejected", provider=self.name.value, status_code=response.status_code
            )
            return None
        userinfo = response.json()
        if not isinstance(userinfo, dict):
            logger.error("sso_userinfo_invalid_format", provider=self.name.value)
            return None
        profile = self.parse_userinfo(userinfo)
        if profile is None:
            return None
        profile = await self._complete_profile(profile, headers)
        profile.tokens = ProviderTokens(
            access_token=token_payload.get("access_token"),
            refresh_token=token_payload.get("refresh_token"),
            expires_in=token_payload.get("expires_in"),
        )
        logger.info("sso_exchange_success", provider=self.name.value, subject=profile.subject)
        return profile

    async def _complete_profile(self, profile: SsoProfile, headers: dict) -> SsoProfile:
        return profile

    async def refresh(self, refresh_token: str) -> Optional[ProviderTokens]:
        payload = await self._token_request(
            {"refresh_token": refresh_token, "grant_type": "refresh_token"}
        )
        if not payload:
            return None
        return ProviderTokens(
            access_token=payload.get("access_token"),
            # Providers may omit the refresh token when it is not rotated
            refresh_token=payload.get("refresh_token") or refresh_token,
            expires_in=payload.get("expires_in"),
        )

    def parse_userinfo(self, userinfo: dict) -> Optional[SsoProfile]:
        raise NotImplementedError


class GoogleProvider(SsoProvider):
    name = AuthProvider.GOOGLE
    auth_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    userinfo_url = "https://openidconnect.googleapis.com/v1/userinfo"
    scope = "openid email profile"
    extra_auth_params = {"access_type": "offline", "prompt": "consent"}

    def parse_userinfo(self, userinfo: dict) -> Optional[SsoProfile]:
        subject = userinfo.get("sub") or userinfo.get("id")
        if not subject:
            return None
        verified = userinfo.get("email_verified", userinfo.get("verified_email", False))
        return SsoProfile(
            subject=str(subject),
            email=userinfo.get("email"),
            email_verified=verified is True or str(verified).lower() == "true",
            display_name=userinfo.get("name"),
            profile={
                "name": userinfo.get("name"),
                "picture": userinfo.get("picture"),
                "locale": userinfo.get("locale"),
            },
        )


class MicrosoftProvider(SsoProvider):
    name = AuthProvider.MICROSOFT
    userinfo_url = "https://graph.microsoft.com/v1.0/me"
    scope = "openid email profile offline_access User.Read"

    def __init__(self, client_id: str, client_secret: str, http: ProviderHttp, *, tenant: str = "common") -> None:
        super().__init__(client_id, client_secret, http)
        base = f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0"
        self.auth_url = f"{base}/authorize"
        self.token_url = f"{base}/token"

    def parse_userinfo(self, userinfo: dict) -> Optional[SsoProfile]:
        subject = userinfo.get("id")
        if not subject:
            return None
        # ``mail`` is directory-managed; a bare userPrincipalName is not proof of mailbox ownership
        mail = userinfo.get("mail")
        return SsoProfile(
            subject=str(subject),
            email=mail or userinfo.get("userPrincipalName"),
            email_verified=bool(mail),
            display_name=userinfo.get("displayName"),
            profile={
                "name": userinfo.get("displayName"),
                "job_title": userinfo.get("jobTitle"),
                "preferred_language": userinfo.get("preferredLanguage"),
            },
        )


class GitHubProvider(SsoProvider):
    name = AuthProvider.GITHUB
    auth_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"
    userinfo_url = "https://api.github.com/user"
    emails_url = "https://api.github.com/user/emails"
    scope = "read:user user:email"

    def _userinfo_headers(self, access_token: str) -> dict:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/vnd.github+json"}

    def parse_userinfo(self, userinfo: dict) -> Optional[SsoProfile]:
        subject = userinfo.get("id")
        if subject is None:
            return None
        return SsoProfile(
            subject=str(subject),
            email=userinfo.get("email"),
            # The public profile email carries no verification flag; see _complete_profile
            email_verified=False,
            display_name=userinfo.get("name") or userinfo.get("login"),
            profile={
                "login": userinfo.get("login"),
                "name": userinfo.get("name"),
                "avatar_url": userinfo.get("avatar_url"),
            },
        )

    async def _complete_profile(self, profile: SsoProfile, headers: dict) -> SsoProfile:
        response = await self.http.request(
            "GET", self.emails_url, service="sso_github", headers=headers
        )
        if response.status_code != 200:
            return profile
        emails = response.json()
        if not isinstance(emails, list):
            return profile
        primary = next((e for e in emails if e.get("primary") and e.get("verified")), None)
        if primary:
            profile.email = primary["email"]
            profile.email_verified = True
        elif profile.email:
            match = next((e for e in emails if e.get("email") == profile.email), None)
            profile.email_verified = bool(match and match.get("verified"))
        return profile

    async def refresh(self, refresh_token: str) -> Optional[ProviderTokens]:
        # OAuth app tokens do not expire and cannot be refreshed
        return None


def build_sso_providers(settings: Settings, http: ProviderHttp) -> Dict[str, SsoProvider]:
    """Instantiate every SSO provider whose client credentials are configured."""
    providers: Dict[str, SsoProvider] = {}
    if settings.oauth_google_client_id and settings.oauth_google_client_secret:
        providers[AuthProvider.GOOGLE.value] = GoogleProvider(
            settings.oauth_google_client_id, settings.oauth_google_client_secret, http
        )
    if settings.oauth_microsoft_client_id and settings.oauth_microsoft_client_secret:
        providers[AuthProvider.MICROSOFT.value] = MicrosoftProvider(
            settings.oauth_microsoft_client_id,
            settings.oauth_microsoft_client_secret,
            http,
            tenant=settings.oauth_microsoft_tenant,
        )
    if settings.oauth_github_client_id and settings.oauth_github_client_secret:
        providers[AuthProvider.GITHUB.value] = GitHubProvider(
            settings.oauth_github_client_id, settings.oauth_github_client_secret, http
        )
    return providers


def build_credential_authority(settings: Settings, store, http: ProviderHttp) -> CredentialAuthority:
    if settings.credential_authority_url:
        return HttpCredentialAuthority(
            settings.credential_authority_url, settings.credential_authority_api_key, http
        )
    return LocalCredentialAuthority(store)
