from __future__ import annotations

import copy
import json
import threading
from dataclasses import fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

from authcore.logging import get_logger
from authcore.service.crypto import SecretCipher
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    AuthIdentity,
    ChallengeStatus,
    LoginHistory,
    MfaChallenge,
    MfaDevice,
    PasswordCredential,
    PasswordReset,
    User,
    UserSession,
)

T = TypeVar("T")


class MemoryStore:
    """In-process identity store persisted to a JSON snapshot under ``fs_root``.

    Every mutation runs under one re-entrant lock, so the conditional updates
    (token consumption, attempt counting, session rotation, identity removal)
    are atomic with respect to each other.
    """

    def __init__(self, fs_root: str = "/tmp/authcore", *, cipher: SecretCipher) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.identities: Dict[str, AuthIdentity] = {}
        self.sessions: Dict[str, UserSession] = {}
        self.login_history: List[LoginHistory] = []
        self.password_resets: Dict[str, PasswordReset] = {}
        self.mfa_devices: Dict[str, MfaDevice] = {}
        self.mfa_challenges: Dict[str, MfaChallenge] = {}
        self.credentials: Dict[str, PasswordCredential] = {}
        # RLock so composite operations can call the single-record helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = cipher
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _copy(obj: Optional[T]) -> Optional[T]:
        return copy.deepcopy(obj) if obj is not None else None

    @staticmethod
    def _norm_email(email: Optional[str]) -> Optional[str]:
        return email.strip().lower() if email else email

    # users
    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._copy(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = self._norm_email(email)
        with self._data_lock:
            return self._copy(
                next((u for u in self.users.values() if u.email == normalized), None)
            )

    def create_user_with_identity(
        self, user: User, identity: AuthIdentity
    ) -> tuple[User, AuthIdentity]:
        with self._data_lock:
            user = replace(user, email=self._norm_email(user.email))
            if any(existing.email == user.email for existing in self.users.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email", "reason": "email_taken"}
                )
            self._ensure_identity_free(identity.provider, identity.provider_subject)
            identity = replace(identity, user_id=user.id, email=self._norm_email(identity.email))
            self.users[user.id] = user
            self.identities[identity.id] = identity
            self._persist_state()
            return self._copy(user), self._copy(identity)

    def update_user_login(
        self, user_id: str, *, at: datetime, method: str, ip_addr: Optional[str] = None
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = at
            user.last_login_method = method
            user.last_login_ip = ip_addr
            self._persist_state()

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        """Flag the user's email and their password identity as verified.

        A password identity becomes primary when the user has no primary yet.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            owned = [i for i in self.identities.values() if i.user_id == user_id]
            for identity in owned:
                if identity.provider == "password":
                    identity.is_verified = True
            self._ensure_primary(owned)
            self._persist_state()
            return self._copy(user)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return self._copy(user)

    # identities
    def _ensure_identity_free(self, provider: str, subject: str) -> None:
        for existing in self.identities.values():
            if existing.provider == provider and existing.provider_subject == subject:
                raise ConstraintViolation(
                    "identity already linked",
                    {
                        "reason": "identity_taken",
                        "provider": provider,
                        "user_id": existing.user_id,
                    },
                )

    @staticmethod
    def _ensure_primary(owned: List[AuthIdentity]) -> None:
        if any(i.is_primary for i in owned):
            return
        verified = sorted((i for i in owned if i.is_verified), key=lambda i: i.created_at)
        if verified:
            verified[0].is_primary = True

    def get_identity(self, identity_id: str) -> Optional[AuthIdentity]:
        with self._data_lock:
            return self._copy(self.identities.get(identity_id))

    def get_identity_by_subject(
        self, provider: str, provider_subject: str
    ) -> Optional[AuthIdentity]:
        with self._data_lock:
            return self._copy(
                next(
                    (
                        i
                        for i in self.identities.values()
                        if i.provider == provider and i.provider_subject == provider_subject
                    ),
                    None,
                )
            )

    def list_identities(self, user_id: str) -> List[AuthIdentity]:
        with self._data_lock:
            owned = [i for i in self.identities.values() if i.user_id == user_id]
            return [self._copy(i) for i in sorted(owned, key=lambda i: i.created_at)]

    def create_identity(
        self, identity: AuthIdentity, *, verify_user_email: bool = False
    ) -> AuthIdentity:
        """Bind an identity to an existing user in one step.

        With ``verify_user_email`` the owning user's email is marked verified in
        the same operation (SSO assertion of the same address).
        """
        with self._data_lock:
            user = self.users.get(identity.user_id)
            if not user:
                raise ConstraintViolation(
                    "user does not exist",
                    {"reason": "user_not_found", "user_id": identity.user_id},
                )
            self._ensure_identity_free(identity.provider, identity.provider_subject)
            identity = replace(identity, email=self._norm_email(identity.email), is_primary=False)
            self.identities[identity.id] = identity
            if verify_user_email:
                user.email_verified = True
            self._ensure_primary(
                [i for i in self.identities.values() if i.user_id == user.id]
            )
            self._persist_state()
            return self._copy(identity)

    def remove_identity(self, user_id: str, identity_id: str) -> AuthIdentity:
        with self._data_lock:
            target = self.identities.get(identity_id)
            if not target or target.user_id != user_id:
                raise ConstraintViolation(
                    "identity not found", {"reason": "identity_not_found"}
                )
            remaining = [
                i
                for i in self.identities.values()
                if i.user_id == user_id and i.id != identity_id
            ]
            if not remaining:
                raise ConstraintViolation(
                    "cannot remove the last identity", {"reason": "last_identity"}
                )
            successor = None
            if target.is_primary:
                verified = sorted(
                    (i for i in remaining if i.is_verified), key=lambda i: i.created_at
                )
                if not verified:
                    raise ConstraintViolation(
                        "no verified identity to promote",
                        {"reason": "no_verified_successor"},
                    )
                successor = verified[0]
            self.identities.pop(identity_id, None)
            if successor is not None:
                successor.is_primary = True
            self._persist_state()
            return self._copy(target)

    def set_primary_identity(self, user_id: str, identity_id: str) -> AuthIdentity:
        with self._data_lock:
            target = self.identities.get(identity_id)
            if not target or target.user_id != user_id:
                raise ConstraintViolation(
                    "identity not found", {"reason": "identity_not_found"}
                )
            if not target.is_verified:
                raise ConstraintViolation(
                    "primary identity must be verified", {"reason": "identity_unverified"}
                )
            for identity in self.identities.values():
                if identity.user_id == user_id:
                    identity.is_primary = identity.id == identity_id
            self._persist_state()
            return self._copy(target)

    def touch_identity(self, identity_id: str, at: datetime) -> None:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity:
                identity.last_used_at = at
                self._persist_state()

    # sessions
    def _decrypt_session(self, sess: Optional[UserSession]) -> Optional[UserSession]:
        if sess is None:
            return None
        out = self._copy(sess)
        if out.provider_refresh_token:
            out.provider_refresh_token = self._cipher.decrypt(out.provider_refresh_token)
        return out

    def _encrypt_session(self, sess: UserSession) -> UserSession:
        stored = self._copy(sess)
        if stored.provider_refresh_token:
            stored.provider_refresh_token = self._cipher.encrypt(stored.provider_refresh_token)
        return stored

    def create_session(self, session: UserSession) -> UserSession:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"reason": "user_not_found", "user_id": session.user_id}
                )
            self.sessions[session.id] = self._encrypt_session(session)
            self._persist_state()
            return self._copy(session)

    def get_session(self, session_id: str) -> Optional[UserSession]:
        with self._data_lock:
            return self._decrypt_session(self.sessions.get(session_id))

    def get_session_by_token_hash(self, token_hash: str) -> Optional[UserSession]:
        with self._data_lock:
            return self._decrypt_session(
                next((s for s in self.sessions.values() if s.token_hash == token_hash), None)
            )

    def get_session_by_refresh_hash(self, refresh_hash: str) -> Optional[UserSession]:
        with self._data_lock:
            return self._decrypt_session(
                next(
                    (s for s in self.sessions.values() if s.refresh_token_hash == refresh_hash),
                    None,
                )
            )

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[UserSession]:
        with self._data_lock:
            owned = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and (s.is_active or not active_only)
            ]
            owned.sort(key=lambda s: s.created_at, reverse=True)
            return [self._decrypt_session(s) for s in owned]

    def touch_session(self, session_id: str, at: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess and sess.is_active:
                sess.last_activity_at = at
                self._persist_state()

    def rotate_session(
        self, old_session_id: str, new_session: UserSession, *, now: datetime
    ) -> Optional[UserSession]:
        """Revoke ``old_session_id`` and insert ``new_session`` if the old one is still live."""
        with self._data_lock:
            old = self.sessions.get(old_session_id)
            if not old or not old.is_active or old.expires_at <= now:
                return None
            old.is_active = False
            old.revoked_at = now
            old.revoke_reason = "rotated"
            self.sessions[new_session.id] = self._encrypt_session(new_session)
            self._persist_state()
            return self._copy(new_session)

    def revoke_session(
        self, session_id: str, *, reason: str, at: datetime
    ) -> Optional[UserSession]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return None
            sess.is_active = False
            sess.revoked_at = at
            sess.revoke_reason = reason
            self._persist_state()
            return self._decrypt_session(sess)

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        reason: str,
        at: datetime,
        except_session_id: Optional[str] = None,
    ) -> List[str]:
        """Revoke every active session of a user; returns the revoked token hashes."""
        with self._data_lock:
            revoked: List[str] = []
            for sess in self.sessions.values():
                if sess.user_id != user_id or not sess.is_active:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                sess.is_active = False
                sess.revoked_at = at
                sess.revoke_reason = reason
                revoked.append(sess.token_hash)
            if revoked:
                self._persist_state()
            return revoked

    # login history
    def record_login_attempt(self, entry: LoginHistory) -> LoginHistory:
        with self._data_lock:
            entry = replace(entry, email=self._norm_email(entry.email))
            self.login_history.append(entry)
            self._persist_state()
            return self._copy(entry)

    def list_login_history(
        self,
        *,
        email: Optional[str] = None,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[LoginHistory]:
        normalized = self._norm_email(email)
        with self._data_lock:
            rows = [
                h
                for h in self.login_history
                if (normalized is None or h.email == normalized)
                and (user_id is None or h.user_id == user_id)
                and (since is None or h.attempted_at >= since)
            ]
            rows.sort(key=lambda h: h.attempted_at)
            return [self._copy(h) for h in rows]

    # password reset
    def create_password_reset(self, reset: PasswordReset) -> PasswordReset:
        with self._data_lock:
            self.password_resets[reset.id] = reset
            self._persist_state()
            return self._copy(reset)

    def consume_password_reset(
        self, token_hash: str, *, now: datetime
    ) -> Optional[PasswordReset]:
        with self._data_lock:
            reset = next(
                (r for r in self.password_resets.values() if r.token_hash == token_hash),
                None,
            )
            if not reset or reset.used or reset.expires_at <= now:
                return None
            reset.used = True
            reset.used_at = now
            self._persist_state()
            return self._copy(reset)

    def release_password_reset(self, reset_id: str) -> None:
        with self._data_lock:
            reset = self.password_resets.get(reset_id)
            if reset and reset.used:
                reset.used = False
                reset.used_at = None
                self._persist_state()

    # mfa devices
    def _decrypt_device(self, device: Optional[MfaDevice]) -> Optional[MfaDevice]:
        if device is None:
            return None
        out = self._copy(device)
        out.secret = self._cipher.decrypt(out.secret)
        return out

    def enable_mfa_device(self, device: MfaDevice) -> MfaDevice:
        """Persist a verified device and flag the owner as MFA-enabled."""
        with self._data_lock:
            user = self.users.get(device.user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for mfa", {"reason": "user_not_found", "user_id": device.user_id}
                )
            if device.is_primary:
                for existing in self.mfa_devices.values():
                    if existing.user_id == device.user_id:
                        existing.is_primary = False
            stored = self._copy(device)
            stored.secret = self._cipher.encrypt(device.secret)
            self.mfa_devices[device.id] = stored
            user.mfa_enabled = True
            self._persist_state()
            return self._copy(device)

    def list_mfa_devices(self, user_id: str) -> List[MfaDevice]:
        with self._data_lock:
            owned = [d for d in self.mfa_devices.values() if d.user_id == user_id]
            owned.sort(key=lambda d: (not d.is_primary, d.created_at))
            return [self._decrypt_device(d) for d in owned]

    def disable_mfa(self, user_id: str) -> int:
        with self._data_lock:
            stale = [d.id for d in self.mfa_devices.values() if d.user_id == user_id]
            for device_id in stale:
                self.mfa_devices.pop(device_id, None)
            user = self.users.get(user_id)
            if user:
                user.mfa_enabled = False
            self._persist_state()
            return len(stale)

    def consume_backup_code(self, device_id: str, code_hash: str, *, at: datetime) -> bool:
        with self._data_lock:
            device = self.mfa_devices.get(device_id)
            if not device or code_hash not in device.backup_code_hashes:
                return False
            device.backup_code_hashes = [h for h in device.backup_code_hashes if h != code_hash]
            device.last_used_at = at
            self._persist_state()
            return True

    def advance_totp_step(self, device_id: str, step: int, *, at: datetime) -> bool:
        with self._data_lock:
            device = self.mfa_devices.get(device_id)
            if not device:
                return False
            if device.last_totp_step is not None and step <= device.last_totp_step:
                return False
            device.last_totp_step = step
            device.last_used_at = at
            self._persist_state()
            return True

    # mfa challenges
    def create_mfa_challenge(self, challenge: MfaChallenge) -> MfaChallenge:
        with self._data_lock:
            self.mfa_challenges[challenge.id] = challenge
            self._persist_state()
            return self._copy(challenge)

    def get_mfa_challenge(self, challenge_id: str) -> Optional[MfaChallenge]:
        with self._data_lock:
            return self._copy(self.mfa_challenges.get(challenge_id))

    def record_challenge_attempt(
        self, challenge_id: str, *, now: datetime
    ) -> Optional[MfaChallenge]:
        with self._data_lock:
            challenge = self.mfa_challenges.get(challenge_id)
            if (
                not challenge
                or challenge.status != ChallengeStatus.PENDING.value
                or challenge.expires_at <= now
                or challenge.attempts >= challenge.max_attempts
            ):
                return None
            challenge.attempts += 1
            self._persist_state()
            return self._copy(challenge)

    def complete_challenge(self, challenge_id: str, *, now: datetime) -> Optional[MfaChallenge]:
        with self._data_lock:
            challenge = self.mfa_challenges.get(challenge_id)
            if not challenge or challenge.status != ChallengeStatus.PENDING.value:
                return None
            challenge.status = ChallengeStatus.VERIFIED.value
            challenge.verified_at = now
            self._persist_state()
            return self._copy(challenge)

    def exhaust_challenge(self, challenge_id: str) -> None:
        with self._data_lock:
            challenge = self.mfa_challenges.get(challenge_id)
            if challenge and challenge.status == ChallengeStatus.PENDING.value:
                challenge.status = ChallengeStatus.EXHAUSTED.value
                self._persist_state()

    # credentials held by the local credential authority
    def save_credential(self, credential: PasswordCredential) -> None:
        with self._data_lock:
            self.credentials[credential.subject] = credential
            self._persist_state()

    def get_credential(self, subject: str) -> Optional[PasswordCredential]:
        with self._data_lock:
            return self._copy(self.credentials.get(subject))

    def delete_credential(self, subject: str) -> None:
        with self._data_lock:
            if self.credentials.pop(subject, None) is not None:
                self._persist_state()

    # persistence
    _COLLECTIONS: Dict[str, Type[Any]] = {
        "users": User,
        "identities": AuthIdentity,
        "sessions": UserSession,
        "password_resets": PasswordReset,
        "mfa_devices": MfaDevice,
        "mfa_challenges": MfaChallenge,
    }

    @staticmethod
    def _serialize(obj: Any) -> dict:
        out: dict[str, Any] = {}
        for f in fields(obj):
            value = getattr(obj, f.name)
            out[f.name] = value.isoformat() if isinstance(value, datetime) else value
        return out

    @staticmethod
    def _deserialize(model: Type[T], data: dict) -> T:
        known = {f.name: f for f in fields(model)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            f = known.get(key)
            if f is None:
                continue
            if isinstance(value, str) and "datetime" in str(f.type):
                value = datetime.fromisoformat(value)
            kwargs[key] = value
        return model(**kwargs)

    def _persist_state(self) -> None:
        state: dict[str, Any] = {
            name: [self._serialize(obj) for obj in getattr(self, name).values()]
            for name in self._COLLECTIONS
        }
        state["login_history"] = [self._serialize(h) for h in self.login_history]
        state["credentials"] = [self._serialize(c) for c in self.credentials.values()]
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for name, model in self._COLLECTIONS.items():
            loaded = [self._deserialize(model, row) for row in data.get(name, [])]
            setattr(self, name, {obj.id: obj for obj in loaded})
        self.login_history = [
            self._deserialize(LoginHistory, row) for row in data.get("login_history", [])
        ]
        self.credentials = {
            row["subject"]: self._deserialize(PasswordCredential, row)
            for row in data.get("credentials", [])
        }
        self.logger.info("memory_store_loaded", path=str(path), users=len(self.users))
        return True
