from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from urllib.parse import urlparse

from authcore.config import Settings
from authcore.logging import get_logger, redact_email
from authcore.service.crypto import SecretCipher, generate_token, hash_token
from authcore.service.email import EmailService
from authcore.service.errors import (
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    TooManyRequestsError,
    UnauthorizedError,
    ValidationError,
)
from authcore.service.identity_provider import CredentialAuthority, SsoProvider
from authcore.service.linking import AccountLinkingEngine
from authcore.service.mfa import MfaEngine, MfaSetup
from authcore.service.passwords import check_password_policy, normalize_email
from authcore.service.rate_limit import LoginRateLimiter, infer_location
from authcore.service.sessions import IssuedSession, SessionManager, SessionValidation
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    AuthIdentity,
    AuthProvider,
    LoginFailureReason,
    LoginHistory,
    MfaChallenge,
    MfaDevice,
    MfaType,
    PasswordReset,
    User,
    UserSession,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "invalid email or password"


@dataclass
class AuthResult:
    """Outcome of a sign-in step: a session, a pending MFA challenge, or a link."""

    user: User
    session: Optional[IssuedSession] = None
    challenge: Optional[MfaChallenge] = None
    identity: Optional[AuthIdentity] = None
    return_url: Optional[str] = None
    created: bool = False
    linked: bool = False

    @property
    def requires_mfa(self) -> bool:
        return self.challenge is not None


class AuthService:
    """Coordinates credential checks, account linking, sessions and MFA."""

    def __init__(
        self,
        store,
        cache,
        settings: Settings,
        *,
        authority: CredentialAuthority,
        email_service: EmailService,
        cipher: SecretCipher,
        sso_providers: Optional[Dict[str, SsoProvider]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.authority = authority
        self.email = email_service
        self.sso_providers = sso_providers if sso_providers is not None else {}
        self._clock = clock
        self.linking = AccountLinkingEngine(store, clock=clock)
        self.sessions = SessionManager(
            store,
            cache,
            settings,
            authority=authority,
            sso_providers=self.sso_providers,
            clock=clock,
        )
        self.mfa = MfaEngine(store, cache, cipher, settings, clock=clock)
        self.limiter = LoginRateLimiter(store, settings, clock=clock)

    # helpers
    def _record(
        self,
        email: str,
        auth_method: str,
        *,
        success: bool,
        user_id: Optional[str] = None,
        reason: Optional[LoginFailureReason] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.store.record_login_attempt(
            LoginHistory(
                id=new_id(),
                email=email,
                success=success,
                auth_method=auth_method,
                attempted_at=self._clock(),
                user_id=user_id,
                failure_reason=reason.value if reason else None,
                ip_addr=ip_addr,
                user_agent=user_agent,
                location=infer_location(ip_addr),
            )
        )

    def _reject_registration(self, email: str, reason: LoginFailureReason, **context) -> None:
        self._record(email, AuthProvider.PASSWORD.value, success=False, reason=reason, **context)

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def _password_identity(self, user_id: str) -> Optional[AuthIdentity]:
        return next(
            (
                i
                for i in self.store.list_identities(user_id)
                if i.provider == AuthProvider.PASSWORD.value
            ),
            None,
        )

    def _provider(self, name: str) -> SsoProvider:
        try:
            provider = AuthProvider(name)
        except ValueError:
            provider = None
        if provider is None or not provider.is_sso:
            raise ValidationError(
                "unsupported identity provider", field="provider", reason="unsupported"
            )
        configured = self.sso_providers.get(provider.value)
        if configured is None:
            raise NotFoundError(
                "identity provider is not configured", detail={"provider": provider.value}
            )
        return configured

    def _redirect_uri(self, provider: str) -> str:
        if self.settings.oauth_redirect_uri:
            return self.settings.oauth_redirect_uri.replace("{provider}", provider)
        return f"{self.settings.app_base_url.rstrip('/')}/v1/auth/sso/{provider}/callback"

    def _safe_return_url(self, return_url: Optional[str]) -> Optional[str]:
        if not return_url:
            return None
        parsed = urlparse(return_url)
        if not parsed.scheme and not parsed.netloc:
            if return_url.startswith("/") and not return_url.startswith("//"):
                return return_url
        else:
            base = urlparse(self.settings.app_base_url)
            if (parsed.scheme, parsed.netloc) == (base.scheme, base.netloc):
                return return_url
        raise ValidationError(
            "return_url must point to this site", field="return_url", reason="invalid_redirect"
        )

    async def _start_mfa(
        self,
        user: User,
        auth_method: str,
        *,
        remember_me: bool,
        ip_addr: Optional[str],
        user_agent: Optional[str],
        mfa_method: Optional[str] = None,
    ) -> MfaChallenge:
        issued = self.mfa.issue_challenge(
            user.id,
            challenge_type=mfa_method,
            remember_me=remember_me,
            auth_method=auth_method,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        if issued.challenge.challenge_type == MfaType.EMAIL.value and issued.code:
            await self.email.send_mfa_code(
                user.email, issued.code, ttl_minutes=self.settings.mfa_challenge_ttl_minutes
            )
        return issued.challenge

    # registration and email verification
    async def register(
        self,
        email: str,
        password: str,
        *,
        display_name: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        if not self.settings.allow_signup:
            raise UnauthorizedError("registration is disabled")
        email = normalize_email(email)
        check_password_policy(password, min_length=self.settings.password_min_length, email=email)
        context = {"ip_addr": ip_addr, "user_agent": user_agent}
        if self.store.get_user_by_email(email):
            self._reject_registration(email, LoginFailureReason.REGISTRATION_REJECTED, **context)
            raise ConflictError("email already registered", detail={"field": "email"})

        try:
            subject = await self.authority.create_credential(email, password)
        except ExternalServiceError:
            self._reject_registration(email, LoginFailureReason.PROVIDER_ERROR, **context)
            raise
        except (ConflictError, ValidationError):
            self._reject_registration(email, LoginFailureReason.REGISTRATION_REJECTED, **context)
            raise
        now = self._clock()
        user = User(
            id=new_id(), email=email, display_name=display_name, created_at=now
        )
        identity = AuthIdentity(
            id=new_id(),
            user_id=user.id,
            provider=AuthProvider.PASSWORD.value,
            provider_subject=subject,
            email=email,
            display_name=display_name,
            is_verified=False,
            is_primary=False,
            created_at=now,
        )
        try:
            user, _ = self.store.create_user_with_identity(user, identity)
        except ConstraintViolation as exc:
            self._reject_registration(email, LoginFailureReason.REGISTRATION_REJECTED, **context)
            try:
                await self.authority.delete_credential(subject)
            except ExternalServiceError as cleanup_exc:
                logger.error(
                    "credential_cleanup_failed", subject=subject, error=str(cleanup_exc)
                )
            raise ConflictError("email already registered", detail={"field": "email"}) from exc

        await self.request_email_verification(user.id)
        logger.info("user_registered", user_id=user.id, email=redact_email(email))
        return user

    async def request_email_verification(self, user_id: str) -> Optional[str]:
        """Mail a fresh verification link; returns the raw token, or None if already verified."""
        user = self._require_user(user_id)
        if user.email_verified:
            return None
        token = generate_token()
        ttl = int(timedelta(hours=self.settings.email_verification_ttl_hours).total_seconds())
        await self.cache.set_email_verification(hash_token(token), user.id, ttl)
        await self.email.send_email_verification(user.email, token)
        logger.info("email_verification_requested", user_id=user.id)
        return token

    async def resend_verification(self, email: str) -> None:
        try:
            normalized = normalize_email(email)
        except ValidationError:
            return
        user = self.store.get_user_by_email(normalized)
        if user is None or user.email_verified or not user.is_active:
            return
        await self.request_email_verification(user.id)

    async def verify_email(self, token: Optional[str]) -> User:
        if not token:
            raise ValidationError("verification token is required", field="token", reason="required")
        user_id = await self.cache.pop_email_verification(hash_token(token))
        if not user_id:
            logger.warning("email_verification_invalid_token")
            raise UnauthorizedError("invalid or expired verification token")
        user = self.store.mark_email_verified(user_id)
        if user is None:
            raise NotFoundError("user not found")
        logger.info("email_verified", user_id=user.id)
        return user

    # password login
    async def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        mfa_method: Optional[str] = None,
    ) -> AuthResult:
        method = AuthProvider.PASSWORD.value
        email = normalize_email(email)
        context = {"ip_addr": ip_addr, "user_agent": user_agent}

        try:
            self.limiter.check(email)
        except TooManyRequestsError:
            self._record(email, method, success=False, reason=LoginFailureReason.RATE_LIMITED, **context)
            raise

        user = self.store.get_user_by_email(email)
        if user is None:
            self._record(email, method, success=False, reason=LoginFailureReason.UNKNOWN_ACCOUNT, **context)
            raise UnauthorizedError(INVALID_CREDENTIALS_MESSAGE)

        identity = self._password_identity(user.id)
        if identity is None:
            # SSO-only accounts have no password to check
            self._record(
                email, method, success=False, user_id=user.id,
                reason=LoginFailureReason.INVALID_CREDENTIALS, **context,
            )
            raise UnauthorizedError(INVALID_CREDENTIALS_MESSAGE)

        try:
            tokens = await self.authority.authenticate(identity.provider_subject, email, password)
        except ExternalServiceError:
            self._record(
                email, method, success=False, user_id=user.id,
                reason=LoginFailureReason.PROVIDER_ERROR, **context,
            )
            raise
        if tokens is None:
            self._record(
                email, method, success=False, user_id=user.id,
                reason=LoginFailureReason.INVALID_CREDENTIALS, **context,
            )
            logger.info("login_failed", user_id=user.id, reason="invalid_credentials")
            raise UnauthorizedError(INVALID_CREDENTIALS_MESSAGE)

        if not user.is_active:
            self._record(
                email, method, success=False, user_id=user.id,
                reason=LoginFailureReason.ACCOUNT_INACTIVE, **context,
            )
            raise UnauthorizedError("account is deactivated")
        if not user.email_verified:
            self._record(
                email, method, success=False, user_id=user.id,
                reason=LoginFailureReason.EMAIL_NOT_VERIFIED, **context,
            )
            raise UnauthorizedError("Email not verified", detail={"reason": "email_not_verified"})

        self.store.touch_identity(identity.id, self._clock())
        if user.mfa_enabled:
            challenge = await self._start_mfa(
                user, method, remember_me=remember_me, mfa_method=mfa_method, **context
            )
            return AuthResult(user=user, challenge=challenge, identity=identity)

        issued = await self.sessions.create_session(
            user.id,
            method,
            remember_me=remember_me,
            provider_refresh_token=tokens.refresh_token,
            **context,
        )
        self._record(email, method, success=True, user_id=user.id, **context)
        return AuthResult(user=user, session=issued, identity=identity)

    async def verify_mfa(self, challenge_id: str, code: Optional[str]) -> AuthResult:
        try:
            challenge = self.mfa.verify_challenge(challenge_id, code)
        except (ValidationError, UnauthorizedError, TooManyRequestsError) as exc:
            if isinstance(exc, ValidationError) and "attempts_remaining" not in exc.detail:
                raise
            pending = self.store.get_mfa_challenge(challenge_id)
            owner = self.store.get_user(pending.user_id) if pending else None
            if owner is not None:
                self._record(
                    owner.email,
                    pending.auth_method,
                    success=False,
                    user_id=owner.id,
                    reason=LoginFailureReason.MFA_FAILED,
                    ip_addr=pending.ip_addr,
                    user_agent=pending.user_agent,
                )
            raise
        user = self._require_user(challenge.user_id)
        if not user.is_active:
            raise UnauthorizedError("account is deactivated")
        issued = await self.sessions.create_session(
            user.id,
            challenge.auth_method,
            remember_me=challenge.remember_me,
            ip_addr=challenge.ip_addr,
            user_agent=challenge.user_agent,
        )
        self._record(
            user.email,
            challenge.auth_method,
            success=True,
            user_id=user.id,
            ip_addr=challenge.ip_addr,
            user_agent=challenge.user_agent,
        )
        return AuthResult(user=user, session=issued)

    # single sign-on
    async def sso_authorization_url(
        self,
        provider: str,
        *,
        return_url: Optional[str] = None,
        link_user_id: Optional[str] = None,
    ) -> dict:
        sso = self._provider(provider)
        safe_return = self._safe_return_url(return_url)
        redirect_uri = self._redirect_uri(sso.name.value)
        state = generate_token(24)
        expires_at = self._clock() + timedelta(minutes=self.settings.sso_state_ttl_minutes)
        await self.cache.set_sso_state(
            state,
            {
                "provider": sso.name.value,
                "redirect_uri": redirect_uri,
                "return_url": safe_return,
                "link_user_id": link_user_id,
            },
            expires_at,
        )
        logger.info("sso_started", provider=sso.name.value, linking=bool(link_user_id))
        return {
            "authorization_url": sso.authorization_url(state, redirect_uri),
            "state": state,
            "provider": sso.name.value,
        }

    async def link_sso(self, user_id: str, provider: str, *, return_url: Optional[str] = None) -> dict:
        self._require_user(user_id)
        return await self.sso_authorization_url(
            provider, return_url=return_url, link_user_id=user_id
        )

    async def sso_callback(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        *,
        remember_me: bool = False,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        if not code or not state:
            raise ValidationError("code and state are required", field="code", reason="required")
        sso = self._provider(provider)
        stored = await self.cache.pop_sso_state(state)
        if not stored or stored.get("provider") != sso.name.value:
            logger.warning("sso_state_invalid", provider=sso.name.value)
            raise UnauthorizedError("invalid or expired sign-in state")

        profile = await sso.exchange_code(code, stored["redirect_uri"])
        if profile is None:
            raise UnauthorizedError("identity provider rejected the sign-in")
        return_url = stored.get("return_url")
        context = {"ip_addr": ip_addr, "user_agent": user_agent}

        link_user_id = stored.get("link_user_id")
        if link_user_id:
            identity = self.linking.link_identity(
                link_user_id,
                sso.name.value,
                profile.subject,
                email=profile.email,
                display_name=profile.display_name,
                profile=profile.profile,
            )
            user = self._require_user(link_user_id)
            return AuthResult(user=user, identity=identity, return_url=return_url, linked=True)

        try:
            resolution = self.linking.resolve_or_create_user(
                sso.name.value,
                profile.subject,
                email=profile.email,
                email_verified=profile.email_verified,
                display_name=profile.display_name,
                profile=profile.profile,
            )
        except ConflictError:
            if profile.email:
                self._record(
                    profile.email.lower(), sso.name.value, success=False,
                    reason=LoginFailureReason.REGISTRATION_REJECTED, **context,
                )
            raise

        user = resolution.user
        if not user.is_active:
            self._record(
                user.email, sso.name.value, success=False, user_id=user.id,
                reason=LoginFailureReason.ACCOUNT_INACTIVE, **context,
            )
            raise UnauthorizedError("account is deactivated")

        result = AuthResult(
            user=user,
            identity=resolution.identity,
            return_url=return_url,
            created=resolution.created,
            linked=resolution.linked,
        )
        if user.mfa_enabled:
            result.challenge = await self._start_mfa(
                user, sso.name.value, remember_me=remember_me, **context
            )
            return result

        result.session = await self.sessions.create_session(
            user.id,
            sso.name.value,
            remember_me=remember_me,
            provider_refresh_token=profile.tokens.refresh_token,
            **context,
        )
        self._record(user.email, sso.name.value, success=True, user_id=user.id, **context)
        return result

    # sessions
    async def validate(self, token: Optional[str]) -> SessionValidation:
        return await self.sessions.validate_session(token)

    async def refresh(
        self,
        refresh_token: Optional[str],
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        return await self.sessions.refresh_session(
            refresh_token, ip_addr=ip_addr, user_agent=user_agent
        )

    async def logout(self, user_id: str, session_id: str, *, all_devices: bool = False) -> int:
        if all_devices:
            return await self.sessions.invalidate_all_sessions(user_id, reason="logout_all")
        return 1 if await self.sessions.invalidate_session(session_id, reason="logout") else 0

    def list_sessions(self, user_id: str) -> List[UserSession]:
        return self.sessions.list_sessions(user_id)

    async def revoke_session(self, user_id: str, session_id: str) -> None:
        session = self.sessions.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError("session not found")
        await self.sessions.invalidate_session(session_id, reason="user_revoked")

    async def revoke_other_sessions(self, user_id: str, current_session_id: str) -> int:
        return await self.sessions.invalidate_all_sessions(
            user_id, reason="revoke_others", except_session_id=current_session_id
        )

    async def deactivate_user(self, user_id: str) -> User:
        user = self.store.set_user_active(user_id, False)
        if user is None:
            raise NotFoundError("user not found")
        # Cached sessions are dropped so the next validation reaches the store
        await self.sessions.evict_user(user_id)
        logger.info("user_deactivated", user_id=user_id)
        return user

    async def reactivate_user(self, user_id: str) -> User:
        user = self.store.set_user_active(user_id, True)
        if user is None:
            raise NotFoundError("user not found")
        self.sessions.restore_user(user_id)
        logger.info("user_reactivated", user_id=user_id)
        return user

    # passwords
    async def request_password_reset(self, email: str) -> Optional[str]:
        """Start a reset; callers always answer generically.

        Returns the raw token when one was mailed, otherwise None.
        """
        try:
            normalized = normalize_email(email)
        except ValidationError:
            return None
        allowed, _, _ = await self.cache.check_rate_limit(
            f"reset:{normalized}", self.settings.reset_rate_limit_per_minute, 60
        )
        if not allowed:
            logger.warning("password_reset_throttled", email=redact_email(normalized))
            return None
        user = self.store.get_user_by_email(normalized)
        if user is None or not user.is_active:
            logger.info("password_reset_unknown_account", email=redact_email(normalized))
            return None
        if self._password_identity(user.id) is None:
            providers = sorted({i.provider for i in self.store.list_identities(user.id)})
            await self.email.send_sso_only_notice(user.email, providers)
            logger.info("password_reset_sso_only", user_id=user.id)
            return None

        token = generate_token()
        now = self._clock()
        self.store.create_password_reset(
            PasswordReset(
                id=new_id(),
                user_id=user.id,
                token_hash=hash_token(token),
                created_at=now,
                expires_at=now + timedelta(minutes=self.settings.password_reset_ttl_minutes),
            )
        )
        await self.email.send_password_reset(user.email, token)
        logger.info("password_reset_requested", user_id=user.id)
        return token

    async def complete_password_reset(self, token: Optional[str], new_password: str) -> int:
        if not token:
            raise ValidationError("reset token is required", field="token", reason="required")
        check_password_policy(new_password, min_length=self.settings.password_min_length)

        reset = self.store.consume_password_reset(hash_token(token), now=self._clock())
        if reset is None:
            logger.warning("password_reset_invalid_token")
            raise UnauthorizedError("invalid or expired reset token")

        user = self.store.get_user(reset.user_id)
        identity = self._password_identity(reset.user_id) if user else None
        if user is None or identity is None:
            raise UnauthorizedError("invalid or expired reset token")
        try:
            check_password_policy(
                new_password, min_length=self.settings.password_min_length, email=user.email
            )
            await self.authority.update_credential(identity.provider_subject, new_password)
        except (ValidationError, ExternalServiceError):
            self.store.release_password_reset(reset.id)
            logger.warning("password_reset_released", user_id=user.id)
            raise

        revoked = await self.sessions.invalidate_all_sessions(user.id, reason="password_reset")
        if not user.email_verified:
            # Following the mailed link proves control of the address
            self.store.mark_email_verified(user.id)
        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return revoked

    async def change_password(
        self,
        user_id: str,
        session_id: Optional[str],
        current_password: str,
        new_password: str,
    ) -> int:
        user = self._require_user(user_id)
        identity = self._password_identity(user_id)
        if identity is None:
            raise ValidationError(
                "account has no password", field="current_password", reason="no_password"
            )
        if not current_password:
            raise ValidationError(
                "current password is required", field="current_password", reason="required"
            )
        tokens = await self.authority.authenticate(
            identity.provider_subject, user.email, current_password
        )
        if tokens is None:
            logger.info("password_change_rejected", user_id=user_id)
            raise UnauthorizedError("current password is incorrect")
        check_password_policy(
            new_password, min_length=self.settings.password_min_length, email=user.email
        )
        if new_password == current_password:
            raise ValidationError(
                "new password must differ from the current one",
                field="new_password",
                reason="unchanged",
            )
        await self.authority.update_credential(identity.provider_subject, new_password)
        revoked = await self.sessions.invalidate_all_sessions(
            user_id, reason="password_change", except_session_id=session_id
        )
        logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)
        return revoked

    # mfa management
    async def start_mfa_setup(self, user_id: str) -> MfaSetup:
        return await self.mfa.enable_mfa(user_id)

    async def confirm_mfa_setup(self, user_id: str, code: str) -> MfaDevice:
        device = await self.mfa.verify_setup(user_id, code)
        user = self._require_user(user_id)
        await self.email.send_mfa_setup_confirmation(user.email)
        return device

    def mfa_status(self, user_id: str) -> dict:
        return self.mfa.status(user_id)

    async def disable_mfa(
        self, user_id: str, code: Optional[str], *, session_id: Optional[str] = None
    ) -> int:
        """Turn MFA off and sign out every other session; returns how many were revoked."""
        self.mfa.disable_mfa(user_id, code)
        return await self.sessions.invalidate_all_sessions(
            user_id, reason="mfa_disabled", except_session_id=session_id
        )

    # identities and profile
    def list_identities(self, user_id: str) -> List[AuthIdentity]:
        return self.linking.list_identities(user_id)

    async def unlink_identity(self, user_id: str, identity_id: str) -> AuthIdentity:
        removed = self.linking.unlink_identity(user_id, identity_id)
        if removed.provider == AuthProvider.PASSWORD.value:
            try:
                await self.authority.delete_credential(removed.provider_subject)
            except ExternalServiceError as exc:
                logger.error(
                    "credential_cleanup_failed", user_id=user_id, error=str(exc)
                )
        return removed

    def set_primary_identity(self, user_id: str, identity_id: str) -> AuthIdentity:
        return self.linking.set_primary(user_id, identity_id)

    def me(self, user_id: str) -> User:
        return self._require_user(user_id)
