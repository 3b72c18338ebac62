from __future__ import annotations

import json
import uuid
from dataclasses import fields
from datetime import datetime
from typing import Any, List, Optional, Type, TypeVar

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SESSION_COLUMNS = (
    "id, user_id, token_hash, refresh_token_hash, auth_method, remember_me, created_at, "
    "expires_at, is_active, last_activity_at, revoked_at, revoke_reason, ip_addr, "
    "user_agent, provider_refresh_token"
)


class PostgresStore:
    """Postgres-backed identity store.

    Racing mutations are single conditional statements (``UPDATE ... WHERE
    ... RETURNING``) or run inside one transaction with ``SELECT ... FOR
    UPDATE`` on the rows they depend on.
    """

    def __init__(self, dsn: str, *, cipher: SecretCipher) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = cipher
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        required_tables = [
            "app_user",
            "auth_identity",
            "user_session",
            "login_history",
            "password_reset",
            "mfa_device",
            "mfa_challenge",
            "password_credential",
        ]
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
                    "Missing required Postgres tables: {}. Apply authcore/sql/schema.sql.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )
            citext_ext = conn.execute(
                "SELECT extname FROM pg_extension WHERE extname = 'citext'"
            ).fetchone()
            if not citext_ext:
                raise RuntimeError(
                    "citext extension is missing. Install it and apply authcore/sql/schema.sql."
                )

    @staticmethod
    def _row_to(model: Type[T], row: Optional[dict]) -> Optional[T]:
        if not row:
            return None
        kwargs: dict[str, Any] = {}
        for f in fields(model):
            if f.name not in row:
                continue
            value = row[f.name]
            if isinstance(value, uuid.UUID):
                value = str(value)
            elif f.name == "profile" and isinstance(value, str):
                value = json.loads(value)
            elif f.name == "backup_code_hashes" and value is None:
                value = []
            kwargs[f.name] = value
        return model(**kwargs)

    # users
    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to(User, row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to(User, row)

    def _insert_identity(self, conn, identity: AuthIdentity) -> None:
        conn.execute(
            """
            INSERT INTO auth_identity (id, user_id, provider, provider_subject, email, display_name,
                                       profile, is_verified, is_primary, created_at, last_used_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                identity.id,
                identity.user_id,
                identity.provider,
                identity.provider_subject,
                identity.email.strip().lower() if identity.email else None,
                identity.display_name,
                json.dumps(identity.profile) if identity.profile is not None else None,
                identity.is_verified,
                identity.is_primary,
                identity.created_at,
                identity.last_used_at,
            ),
        )

    def create_user_with_identity(
        self, user: User, identity: AuthIdentity
    ) -> tuple[User, AuthIdentity]:
        user.email = user.email.strip().lower()
        identity.user_id = user.id
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        """
                        INSERT INTO app_user (id, email, email_verified, is_active, mfa_enabled,
                                              display_name, locale, timezone, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            user.id,
                            user.email,
                            user.email_verified,
                            user.is_active,
                            user.mfa_enabled,
                            user.display_name,
                            user.locale,
                            user.timezone,
                            user.created_at,
                        ),
                    )
                    self._insert_identity(conn, identity)
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            if "email" in constraint:
                raise ConstraintViolation(
                    "email already exists", {"field": "email", "reason": "email_taken"}
                ) from exc
            raise ConstraintViolation(
                "identity already linked", {"reason": "identity_taken", "provider": identity.provider}
            ) from exc
        return user, identity

    def update_user_login(
        self, user_id: str, *, at: datetime, method: str, ip_addr: Optional[str] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user SET last_login_at = %s, last_login_method = %s, last_login_ip = %s
                WHERE id = %s
                """,
                (at, method, ip_addr, user_id),
            )

    def _promote_primary_if_missing(self, conn, user_id: str) -> None:
        conn.execute(
            """
            UPDATE auth_identity SET is_primary = TRUE
            WHERE id = (
                SELECT id FROM auth_identity
                WHERE user_id = %s AND is_verified
                ORDER BY created_at LIMIT 1
            )
            AND NOT EXISTS (
                SELECT 1 FROM auth_identity WHERE user_id = %s AND is_primary
            )
            """,
            (user_id, user_id),
        )

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "UPDATE app_user SET email_verified = TRUE WHERE id = %s RETURNING *",
                    (user_id,),
                ).fetchone()
                if not row:
                    return None
                conn.execute(
                    "UPDATE auth_identity SET is_verified = TRUE WHERE user_id = %s AND provider = 'password'",
                    (user_id,),
                )
                self._promote_primary_if_missing(conn, user_id)
        return self._row_to(User, row)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._row_to(User, row)

    # identities
    def get_identity(self, identity_id: str) -> Optional[AuthIdentity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return self._row_to(AuthIdentity, row)

    def get_identity_by_subject(
        self, provider: str, provider_subject: str
    ) -> Optional[AuthIdentity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_identity WHERE provider = %s AND provider_subject = %s",
                (provider, provider_subject),
            ).fetchone()
        return self._row_to(AuthIdentity, row)

    def list_identities(self, user_id: str) -> List[AuthIdentity]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_identity WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to(AuthIdentity, row) for row in rows]

    def create_identity(
        self, identity: AuthIdentity, *, verify_user_email: bool = False
    ) -> AuthIdentity:
        identity.is_primary = False
        try:
            with self._connect() as conn:
                with conn.transaction():
                    user = conn.execute(
                        "SELECT id FROM app_user WHERE id = %s FOR UPDATE", (identity.user_id,)
                    ).fetchone()
                    if not user:
                        raise ConstraintViolation(
                            "user does not exist",
                            {"reason": "user_not_found", "user_id": identity.user_id},
                        )
                    self._insert_identity(conn, identity)
                    if verify_user_email:
                        conn.execute(
                            "UPDATE app_user SET email_verified = TRUE WHERE id = %s",
                            (identity.user_id,),
                        )
                    self._promote_primary_if_missing(conn, identity.user_id)
                    row = conn.execute(
                        "SELECT * FROM auth_identity WHERE id = %s", (identity.id,)
                    ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "identity already linked", {"reason": "identity_taken", "provider": identity.provider}
            ) from exc
        return self._row_to(AuthIdentity, row)

    def remove_identity(self, user_id: str, identity_id: str) -> AuthIdentity:
        with self._connect() as conn:
            with conn.transaction():
                rows = conn.execute(
                    "SELECT * FROM auth_identity WHERE user_id = %s ORDER BY created_at FOR UPDATE",
                    (user_id,),
                ).fetchall()
                owned = [self._row_to(AuthIdentity, row) for row in rows]
                target = next((i for i in owned if i.id == identity_id), None)
                if target is None:
                    raise ConstraintViolation(
                        "identity not found", {"reason": "identity_not_found"}
                    )
                remaining = [i for i in owned if i.id != identity_id]
                if not remaining:
                    raise ConstraintViolation(
                        "cannot remove the last identity", {"reason": "last_identity"}
                    )
                successor = None
                if target.is_primary:
                    successor = next((i for i in remaining if i.is_verified), None)
                    if successor is None:
                        raise ConstraintViolation(
                            "no verified identity to promote",
                            {"reason": "no_verified_successor"},
                        )
                conn.execute("DELETE FROM auth_identity WHERE id = %s", (identity_id,))
                if successor is not None:
                    conn.execute(
                        "UPDATE auth_identity SET is_primary = TRUE WHERE id = %s",
                        (successor.id,),
                    )
        return target

    def set_primary_identity(self, user_id: str, identity_id: str) -> AuthIdentity:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM auth_identity WHERE id = %s AND user_id = %s FOR UPDATE",
                    (identity_id, user_id),
                ).fetchone()
                target = self._row_to(AuthIdentity, row)
                if target is None:
                    raise ConstraintViolation(
                        "identity not found", {"reason": "identity_not_found"}
                    )
                if not target.is_verified:
                    raise ConstraintViolation(
                        "primary identity must be verified", {"reason": "identity_unverified"}
                    )
                conn.execute(
                    "UPDATE auth_identity SET is_primary = FALSE WHERE user_id = %s AND is_primary",
                    (user_id,),
                )
                conn.execute(
                    "UPDATE auth_identity SET is_primary = TRUE WHERE id = %s", (identity_id,)
                )
        target.is_primary = True
        return target

    def touch_identity(self, identity_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_identity SET last_used_at = %s WHERE id = %s", (at, identity_id)
            )

    # sessions
    def _session_from_row(self, row: Optional[dict]) -> Optional[UserSession]:
        sess = self._row_to(UserSession, row)
        if sess and sess.provider_refresh_token:
            sess.provider_refresh_token = self._cipher.decrypt(sess.provider_refresh_token)
        return sess

    def _insert_session(self, conn, session: UserSession) -> None:
        conn.execute(
            f"""
            INSERT INTO user_session ({_SESSION_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.user_id,
                session.token_hash,
                session.refresh_token_hash,
                session.auth_method,
                session.remember_me,
                session.created_at,
                session.expires_at,
                session.is_active,
                session.last_activity_at,
                session.revoked_at,
                session.revoke_reason,
                session.ip_addr,
                session.user_agent,
                self._cipher.encrypt(session.provider_refresh_token)
                if session.provider_refresh_token
                else None,
            ),
        )

    def create_session(self, session: UserSession) -> UserSession:
        try:
            with self._connect() as conn:
                self._insert_session(conn, session)
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "session user missing", {"reason": "user_not_found", "user_id": session.user_id}
            ) from exc
        return session

    def get_session(self, session_id: str) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row)

    def get_session_by_token_hash(self, token_hash: str) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._session_from_row(row)

    def get_session_by_refresh_hash(self, refresh_hash: str) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE refresh_token_hash = %s", (refresh_hash,)
            ).fetchone()
        return self._session_from_row(row)

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[UserSession]:
        query = "SELECT * FROM user_session WHERE user_id = %s"
        if active_only:
            query += " AND is_active"
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._session_from_row(row) for row in rows]

    def touch_session(self, session_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_session SET last_activity_at = %s WHERE id = %s AND is_active",
                (at, session_id),
            )

    def rotate_session(
        self, old_session_id: str, new_session: UserSession, *, now: datetime
    ) -> Optional[UserSession]:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE user_session
                    SET is_active = FALSE, revoked_at = %s, revoke_reason = 'rotated'
                    WHERE id = %s AND is_active AND expires_at > %s
                    RETURNING id
                    """,
                    (now, old_session_id, now),
                ).fetchone()
                if not row:
                    return None
                self._insert_session(conn, new_session)
        return new_session

    def revoke_session(
        self, session_id: str, *, reason: str, at: datetime
    ) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_session SET is_active = FALSE, revoked_at = %s, revoke_reason = %s
                WHERE id = %s AND is_active
                RETURNING *
                """,
                (at, reason, session_id),
            ).fetchone()
        return self._session_from_row(row)

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        reason: str,
        at: datetime,
        except_session_id: Optional[str] = None,
    ) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE user_session SET is_active = FALSE, revoked_at = %s, revoke_reason = %s
                WHERE user_id = %s AND is_active AND (%s::uuid IS NULL OR id <> %s::uuid)
                RETURNING token_hash
                """,
                (at, reason, user_id, except_session_id, except_session_id),
            ).fetchall()
        return [row["token_hash"] for row in rows]

    # login history
    def record_login_attempt(self, entry: LoginHistory) -> LoginHistory:
        entry.email = entry.email.strip().lower()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_history (id, email, user_id, attempted_at, success, auth_method,
                                           failure_reason, ip_addr, user_agent, location)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.email,
                    entry.user_id,
                    entry.attempted_at,
                    entry.success,
                    entry.auth_method,
                    entry.failure_reason,
                    entry.ip_addr,
                    entry.user_agent,
                    entry.location,
                ),
            )
        return entry

    def list_login_history(
        self,
        *,
        email: Optional[str] = None,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[LoginHistory]:
        clauses: list[str] = []
        params: list[Any] = []
        if email is not None:
            clauses.append("email = %s")
            params.append(email.strip().lower())
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if since is not None:
            clauses.append("attempted_at >= %s")
            params.append(since)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM login_history {where} ORDER BY attempted_at", params
            ).fetchall()
        return [self._row_to(LoginHistory, row) for row in rows]

    # password reset
    def create_password_reset(self, reset: PasswordReset) -> PasswordReset:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_reset (id, user_id, token_hash, created_at, expires_at, used)
                VALUES (%s, %s, %s, %s, %s, FALSE)
                """,
                (reset.id, reset.user_id, reset.token_hash, reset.created_at, reset.expires_at),
            )
        return reset

    def consume_password_reset(
        self, token_hash: str, *, now: datetime
    ) -> Optional[PasswordReset]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset SET used = TRUE, used_at = %s
                WHERE token_hash = %s AND NOT used AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, now),
            ).fetchone()
        return self._row_to(PasswordReset, row)

    def release_password_reset(self, reset_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE password_reset SET used = FALSE, used_at = NULL WHERE id = %s AND used",
                (reset_id,),
            )

    # mfa devices
    def _device_from_row(self, row: Optional[dict]) -> Optional[MfaDevice]:
        device = self._row_to(MfaDevice, row)
        if device:
            device.secret = self._cipher.decrypt(device.secret)
        return device

    def enable_mfa_device(self, device: MfaDevice) -> MfaDevice:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    if device.is_primary:
                        conn.execute(
                            "UPDATE mfa_device SET is_primary = FALSE WHERE user_id = %s",
                            (device.user_id,),
                        )
                    conn.execute(
                        """
                        INSERT INTO mfa_device (id, user_id, device_type, secret, backup_code_hashes,
                                                is_primary, name, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            device.id,
                            device.user_id,
                            device.device_type,
                            self._cipher.encrypt(device.secret),
                            list(device.backup_code_hashes),
                            device.is_primary,
                            device.name,
                            device.created_at,
                        ),
                    )
                    conn.execute(
                        "UPDATE app_user SET mfa_enabled = TRUE WHERE id = %s", (device.user_id,)
                    )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found for mfa", {"reason": "user_not_found", "user_id": device.user_id}
            ) from exc
        return device

    def list_mfa_devices(self, user_id: str) -> List[MfaDevice]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM mfa_device WHERE user_id = %s ORDER BY is_primary DESC, created_at",
                (user_id,),
            ).fetchall()
        return [self._device_from_row(row) for row in rows]

    def disable_mfa(self, user_id: str) -> int:
        with self._connect() as conn:
            with conn.transaction():
                result = conn.execute("DELETE FROM mfa_device WHERE user_id = %s", (user_id,))
                conn.execute(
                    "UPDATE app_user SET mfa_enabled = FALSE WHERE id = %s", (user_id,)
                )
        return result.rowcount

    def consume_backup_code(self, device_id: str, code_hash: str, *, at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_device
                SET backup_code_hashes = array_remove(backup_code_hashes, %s), last_used_at = %s
                WHERE id = %s AND %s = ANY(backup_code_hashes)
                RETURNING id
                """,
                (code_hash, at, device_id, code_hash),
            ).fetchone()
        return row is not None

    def advance_totp_step(self, device_id: str, step: int, *, at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_device SET last_totp_step = %s, last_used_at = %s
                WHERE id = %s AND (last_totp_step IS NULL OR last_totp_step < %s)
                RETURNING id
                """,
                (step, at, device_id, step),
            ).fetchone()
        return row is not None

    # mfa challenges
    def create_mfa_challenge(self, challenge: MfaChallenge) -> MfaChallenge:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO mfa_challenge (id, user_id, challenge_type, code_hash, attempts,
                                           max_attempts, status, created_at, expires_at,
                                           remember_me, auth_method, ip_addr, user_agent)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    challenge.id,
                    challenge.user_id,
                    challenge.challenge_type,
                    challenge.code_hash,
                    challenge.attempts,
                    challenge.max_attempts,
                    challenge.status,
                    challenge.created_at,
                    challenge.expires_at,
                    challenge.remember_me,
                    challenge.auth_method,
                    challenge.ip_addr,
                    challenge.user_agent,
                ),
            )
        return challenge

    def get_mfa_challenge(self, challenge_id: str) -> Optional[MfaChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mfa_challenge WHERE id = %s", (challenge_id,)
            ).fetchone()
        return self._row_to(MfaChallenge, row)

    def record_challenge_attempt(
        self, challenge_id: str, *, now: datetime
    ) -> Optional[MfaChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_challenge SET attempts = attempts + 1
                WHERE id = %s AND status = %s AND expires_at > %s AND attempts < max_attempts
                RETURNING *
                """,
                (challenge_id, ChallengeStatus.PENDING.value, now),
            ).fetchone()
        return self._row_to(MfaChallenge, row)

    def complete_challenge(self, challenge_id: str, *, now: datetime) -> Optional[MfaChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_challenge SET status = %s, verified_at = %s
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (ChallengeStatus.VERIFIED.value, now, challenge_id, ChallengeStatus.PENDING.value),
            ).fetchone()
        return self._row_to(MfaChallenge, row)

    def exhaust_challenge(self, challenge_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE mfa_challenge SET status = %s WHERE id = %s AND status = %s",
                (ChallengeStatus.EXHAUSTED.value, challenge_id, ChallengeStatus.PENDING.value),
            )

    # credentials held by the local credential authority
    def save_credential(self, credential: PasswordCredential) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_credential (subject, password_hash, password_algo, created_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (subject) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    last_updated_at = now()
                """,
                (
                    credential.subject,
                    credential.password_hash,
                    credential.password_algo,
                    credential.created_at,
                ),
            )

    def get_credential(self, subject: str) -> Optional[PasswordCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_credential WHERE subject = %s", (subject,)
            ).fetchone()
        return self._row_to(PasswordCredential, row)

    def delete_credential(self, subject: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM password_credential WHERE subject = %s", (subject,))
