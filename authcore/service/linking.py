from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from authcore.logging import get_logger
from authcore.service.errors import (
    ConflictError,
    InvariantViolation,
    NotFoundError,
    ServerError,
    ValidationError,
)
from authcore.service.passwords import normalize_email
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import AuthIdentity, User, new_id, utcnow

logger = get_logger(__name__)


@dataclass
class Resolution:
    user: User
    identity: AuthIdentity
    created: bool = False
    linked: bool = False


class AccountLinkingEngine:
    """Binds provider identities to users while keeping every user reachable.

    All writes go through single atomic store calls, so a failure can never
    leave a half-created user or an orphaned identity behind.
    """

    def __init__(self, store, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock

    def list_identities(self, user_id: str) -> List[AuthIdentity]:
        return self.store.list_identities(user_id)

    def link_identity(
        self,
        user_id: str,
        provider: str,
        provider_subject: str,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        profile: Optional[dict] = None,
        is_verified: bool = True,
    ) -> AuthIdentity:
        existing = self.store.get_identity_by_subject(provider, provider_subject)
        if existing:
            if existing.user_id == user_id:
                return existing
            raise ConflictError(
                "identity is already linked to another account",
                detail={"provider": provider},
            )
        identity = AuthIdentity(
            id=new_id(),
            user_id=user_id,
            provider=provider,
            provider_subject=provider_subject,
            email=email,
            display_name=display_name,
            profile=profile,
            is_verified=is_verified,
            created_at=self._clock(),
        )
        try:
            created = self.store.create_identity(identity)
        except ConstraintViolation as exc:
            if exc.reason == "user_not_found":
                raise NotFoundError("user not found") from exc
            if exc.reason == "identity_taken":
                winner = self.store.get_identity_by_subject(provider, provider_subject)
                if winner and winner.user_id == user_id:
                    return winner
                raise ConflictError(
                    "identity is already linked to another account",
                    detail={"provider": provider},
                ) from exc
            raise
        logger.info("identity_linked", user_id=user_id, provider=provider)
        return created

    def unlink_identity(self, user_id: str, identity_id: str) -> AuthIdentity:
        try:
            removed = self.store.remove_identity(user_id, identity_id)
        except ConstraintViolation as exc:
            if exc.reason == "identity_not_found":
                raise NotFoundError("identity not found") from exc
            if exc.reason == "last_identity":
                raise InvariantViolation(
                    "cannot remove the last sign-in method",
                    detail={"reason": exc.reason},
                ) from exc
            if exc.reason == "no_verified_successor":
                raise InvariantViolation(
                    "no other verified sign-in method can become primary",
                    detail={"reason": exc.reason},
                ) from exc
            raise
        logger.info(
            "identity_unlinked", user_id=user_id, provider=removed.provider, was_primary=removed.is_primary
        )
        return removed

    def set_primary(self, user_id: str, identity_id: str) -> AuthIdentity:
        try:
            return self.store.set_primary_identity(user_id, identity_id)
        except ConstraintViolation as exc:
            if exc.reason == "identity_not_found":
                raise NotFoundError("identity not found") from exc
            if exc.reason == "identity_unverified":
                raise InvariantViolation(
                    "primary identity must be verified", detail={"reason": exc.reason}
                ) from exc
            raise

    def resolve_or_create_user(
        self,
        provider: str,
        provider_subject: str,
        *,
        email: Optional[str],
        email_verified: bool,
        display_name: Optional[str] = None,
        profile: Optional[dict] = None,
    ) -> Resolution:
        """Map an SSO assertion onto exactly one user.

        Order: existing identity, then an existing user with the same email
        (when the provider or the local record has verified the address),
        else a new user. A lost creation race is resolved by re-running the
        lookup once.
        """
        for attempt in range(2):
            try:
                return self._resolve_once(
                    provider,
                    provider_subject,
                    email=email,
                    email_verified=email_verified,
                    display_name=display_name,
                    profile=profile,
                )
            except ConstraintViolation as exc:
                if attempt == 0 and exc.reason in ("identity_taken", "email_taken"):
                    logger.info(
                        "sso_resolution_race", provider=provider, reason=exc.reason
                    )
                    continue
                raise ConflictError("account resolution conflict", detail=exc.detail) from exc
        raise ServerError("account resolution did not converge")

    def _resolve_once(
        self,
        provider: str,
        provider_subject: str,
        *,
        email: Optional[str],
        email_verified: bool,
        display_name: Optional[str],
        profile: Optional[dict],
    ) -> Resolution:
        now = self._clock()
        identity = self.store.get_identity_by_subject(provider, provider_subject)
        if identity:
            user = self.store.get_user(identity.user_id)
            if user is None:
                raise ServerError("identity owner missing")
            self.store.touch_identity(identity.id, now)
            return Resolution(user=user, identity=identity)

        if not email:
            raise ValidationError(
                "identity provider did not return an email address",
                field="email",
                reason="missing",
            )
        email = normalize_email(email)

        user = self.store.get_user_by_email(email)
        if user:
            if not email_verified and not user.email_verified:
                raise ConflictError(
                    "an account with this email already exists; sign in and link this provider",
                    detail={"reason": "email_unverified", "provider": provider},
                )
            identity = self.store.create_identity(
                AuthIdentity(
                    id=new_id(),
                    user_id=user.id,
                    provider=provider,
                    provider_subject=provider_subject,
                    email=email,
                    display_name=display_name,
                    profile=profile,
                    is_verified=True,
                    created_at=now,
                    last_used_at=now,
                ),
                verify_user_email=email_verified and not user.email_verified,
            )
            logger.info(
                "sso_identity_auto_linked",
                user_id=user.id,
                provider=provider,
                verified_user_email=email_verified and not user.email_verified,
            )
            return Resolution(
                user=self.store.get_user(user.id), identity=identity, linked=True
            )

        new_user = User(
            id=new_id(),
            email=email,
            email_verified=email_verified,
            display_name=display_name,
            created_at=now,
        )
        new_identity = AuthIdentity(
            id=new_id(),
            user_id=new_user.id,
            provider=provider,
            provider_subject=provider_subject,
            email=email,
            display_name=display_name,
            profile=profile,
            is_verified=True,
            is_primary=True,
            created_at=now,
            last_used_at=now,
        )
        user, identity = self.store.create_user_with_identity(new_user, new_identity)
        logger.info("sso_user_created", user_id=user.id, provider=provider)
        return Resolution(user=user, identity=identity, created=True)
