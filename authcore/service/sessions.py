from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.crypto import generate_token, hash_token
from authcore.service.errors import UnauthorizedError
from authcore.storage.models import AuthProvider, SessionState, UserSession, new_id, utcnow

logger = get_logger(__name__)


@dataclass
class IssuedSession:
    """A freshly minted session; the only place raw tokens ever appear."""

    session: UserSession
    token: str
    refresh_token: str


@dataclass
class SessionValidation:
    valid: bool
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None


class SessionManager:
    """Session lifecycle: the store is authoritative, the cache is a fast path.

    Invalidation always writes the store first. If the cache eviction that
    follows fails, the token hash is remembered in a process-local revocation
    set that is consulted before trusting a cache hit. A failed eviction on
    deactivation suspends the user instead, so cache hits for them fall
    through to the store until they are restored.
    """

    def __init__(
        self,
        store,
        cache,
        settings: Settings,
        *,
        authority=None,
        sso_providers: Optional[Dict[str, object]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.authority = authority
        self.sso_providers = sso_providers if sso_providers is not None else {}
        self._clock = clock
        self._revoked_lock = threading.Lock()
        self.revoked_tokens: Dict[str, datetime] = {}
        # Users whose cached sessions could not be evicted on deactivation
        self.suspended_users: Dict[str, datetime] = {}

    def _lifetime(self, remember_me: bool) -> timedelta:
        if remember_me:
            return timedelta(days=self.settings.remember_me_ttl_days)
        return timedelta(hours=self.settings.session_ttl_hours)

    def _new_session(
        self,
        user_id: str,
        auth_method: str,
        *,
        remember_me: bool,
        ip_addr: Optional[str],
        user_agent: Optional[str],
        provider_refresh_token: Optional[str],
    ) -> IssuedSession:
        now = self._clock()
        token = generate_token()
        refresh_token = generate_token()
        session = UserSession(
            id=new_id(),
            user_id=user_id,
            token_hash=hash_token(token),
            refresh_token_hash=hash_token(refresh_token),
            auth_method=auth_method,
            remember_me=remember_me,
            created_at=now,
            expires_at=now + self._lifetime(remember_me),
            last_activity_at=now,
            ip_addr=ip_addr,
            user_agent=user_agent,
            provider_refresh_token=provider_refresh_token,
        )
        return IssuedSession(session=session, token=token, refresh_token=refresh_token)

    async def _publish(self, session: UserSession) -> None:
        try:
            await self.cache.cache_session(
                session.token_hash, session.id, session.user_id, session.expires_at
            )
        except Exception as exc:
            logger.warning("session_cache_publish_failed", session_id=session.id, error=str(exc))

    async def _evict(self, token_hash: str, user_id: Optional[str], expires_at: datetime) -> None:
        try:
            await self.cache.evict_session(token_hash, user_id)
        except Exception as exc:
            logger.warning("session_cache_evict_failed", user_id=user_id, error=str(exc))
            self._remember_revoked(token_hash, expires_at)

    def _remember_revoked(self, token_hash: str, expires_at: datetime) -> None:
        now = self._clock()
        with self._revoked_lock:
            for stale in [k for k, exp in self.revoked_tokens.items() if exp <= now]:
                self.revoked_tokens.pop(stale, None)
            self.revoked_tokens[token_hash] = expires_at

    def _is_locally_revoked(self, token_hash: str) -> bool:
        with self._revoked_lock:
            return token_hash in self.revoked_tokens

    def _is_suspended(self, user_id: Optional[str]) -> bool:
        with self._revoked_lock:
            expires_at = self.suspended_users.get(user_id)
            if expires_at is not None and expires_at <= self._clock():
                self.suspended_users.pop(user_id, None)
                return False
            return expires_at is not None

    async def create_session(
        self,
        user_id: str,
        auth_method: str,
        *,
        remember_me: bool = False,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        provider_refresh_token: Optional[str] = None,
    ) -> IssuedSession:
        issued = self._new_session(
            user_id,
            auth_method,
            remember_me=remember_me,
            ip_addr=ip_addr,
            user_agent=user_agent,
            provider_refresh_token=provider_refresh_token,
        )
        self.store.create_session(issued.session)
        self.store.update_user_login(
            user_id, at=issued.session.created_at, method=auth_method, ip_addr=ip_addr
        )
        await self._publish(issued.session)
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=issued.session.id,
            auth_method=auth_method,
            remember_me=remember_me,
        )
        return issued

    async def validate_session(self, token: Optional[str]) -> SessionValidation:
        if not token:
            return SessionValidation(valid=False, reason="missing_token")
        token_hash = hash_token(token)
        now = self._clock()
        if self._is_locally_revoked(token_hash):
            return SessionValidation(valid=False, reason="revoked")

        cached = None
        try:
            cached = await self.cache.get_session(token_hash)
        except Exception as exc:
            logger.warning("session_cache_read_failed", error=str(exc))
        if cached and not self._is_suspended(cached.get("user_id")):
            if cached["expires_at"] > now:
                return SessionValidation(
                    valid=True,
                    user_id=cached["user_id"],
                    session_id=cached["session_id"],
                    expires_at=cached["expires_at"],
                )
            await self._evict(token_hash, cached.get("user_id"), cached["expires_at"])

        session = self.store.get_session_by_token_hash(token_hash)
        if session is None:
            return SessionValidation(valid=False, reason="invalid_token")
        state = session.state(now)
        if state != SessionState.ACTIVE:
            return SessionValidation(
                valid=False,
                user_id=session.user_id,
                session_id=session.id,
                reason=state.value.lower(),
            )
        user = self.store.get_user(session.user_id)
        if user is None or not user.is_active:
            return SessionValidation(
                valid=False,
                user_id=session.user_id,
                session_id=session.id,
                reason="user_deactivated",
            )
        self.restore_user(session.user_id)
        self.store.touch_session(session.id, now)
        await self._publish(session)
        return SessionValidation(
            valid=True,
            user_id=session.user_id,
            session_id=session.id,
            expires_at=session.expires_at,
        )

    async def _refresh_provider_token(self, session: UserSession) -> Optional[str]:
        if not session.provider_refresh_token:
            return None
        if session.auth_method == AuthProvider.PASSWORD.value:
            refresher = self.authority.refresh_tokens if self.authority else None
        else:
            provider = self.sso_providers.get(session.auth_method)
            refresher = provider.refresh if provider else None
        if refresher is None:
            logger.warning("provider_refresh_unavailable", auth_method=session.auth_method)
            return session.provider_refresh_token
        tokens = await refresher(session.provider_refresh_token)
        if tokens is None:
            await self.invalidate_session(session.id, reason="provider_refresh_rejected")
            raise UnauthorizedError("provider session is no longer valid")
        return tokens.refresh_token or session.provider_refresh_token

    async def refresh_session(
        self,
        refresh_token: Optional[str],
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        """Rotate a session: the old one is revoked and a new one issued atomically."""
        if not refresh_token:
            raise UnauthorizedError("refresh token required")
        now = self._clock()
        current = self.store.get_session_by_refresh_hash(hash_token(refresh_token))
        if current is None or current.state(now) != SessionState.ACTIVE:
            raise UnauthorizedError("invalid or expired refresh token")
        user = self.store.get_user(current.user_id)
        if user is None or not user.is_active:
            raise UnauthorizedError("account is deactivated")

        # Provider failures surface before anything is rotated
        provider_refresh_token = await self._refresh_provider_token(current)

        issued = self._new_session(
            current.user_id,
            current.auth_method,
            remember_me=current.remember_me,
            ip_addr=ip_addr or current.ip_addr,
            user_agent=user_agent or current.user_agent,
            provider_refresh_token=provider_refresh_token,
        )
        rotated = self.store.rotate_session(current.id, issued.session, now=now)
        if rotated is None:
            raise UnauthorizedError("refresh token already used")
        await self._evict(current.token_hash, current.user_id, current.expires_at)
        await self._publish(issued.session)
        logger.info(
            "session_rotated",
            user_id=current.user_id,
            old_session_id=current.id,
            session_id=issued.session.id,
        )
        return issued

    async def invalidate_session(self, session_id: str, *, reason: str = "logout") -> bool:
        revoked = self.store.revoke_session(session_id, reason=reason, at=self._clock())
        if revoked is None:
            return False
        await self._evict(revoked.token_hash, revoked.user_id, revoked.expires_at)
        logger.info("session_revoked", session_id=session_id, user_id=revoked.user_id, reason=reason)
        return True

    async def invalidate_all_sessions(
        self,
        user_id: str,
        *,
        reason: str = "logout_all",
        except_session_id: Optional[str] = None,
    ) -> int:
        now = self._clock()
        token_hashes = self.store.revoke_user_sessions(
            user_id, reason=reason, at=now, except_session_id=except_session_id
        )
        # Worst-case lifetime bounds how long a stale cache entry could live
        horizon = now + self._lifetime(True)
        for token_hash in token_hashes:
            await self._evict(token_hash, user_id, horizon)
        logger.info(
            "user_sessions_revoked", user_id=user_id, count=len(token_hashes), reason=reason
        )
        return len(token_hashes)

    async def evict_user(self, user_id: str) -> int:
        try:
            return await self.cache.evict_user_sessions(user_id)
        except Exception as exc:
            logger.warning("session_cache_evict_failed", user_id=user_id, error=str(exc))
            # Cache hits for this user are bypassed until the user is restored
            with self._revoked_lock:
                self.suspended_users[user_id] = self._clock() + self._lifetime(True)
            return 0

    def restore_user(self, user_id: str) -> None:
        with self._revoked_lock:
            self.suspended_users.pop(user_id, None)

    def get_session(self, session_id: str) -> Optional[UserSession]:
        return self.store.get_session(session_id)

    def list_sessions(self, user_id: str) -> List[UserSession]:
        now = self._clock()
        return [
            s for s in self.store.list_sessions(user_id) if s.state(now) == SessionState.ACTIVE
        ]
