import contextlib
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import AuthIdentity, MfaDevice, User, UserSession
from authcore.storage.postgres import PostgresStore


class FakeResult:
    def __init__(self, rows, rowcount=None):
        self.rows = rows
        self.rowcount = len(rows) if rowcount is None else rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Records statements and replays queued results in order."""

    def __init__(self, results=None, raise_on=None):
        self.statements = []
        self.results = list(results or [])
        self.raise_on = raise_on

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.raise_on is not None and self.raise_on[0] in sql:
            raise self.raise_on[1]
        return self.results.pop(0) if self.results else FakeResult([])

    @contextlib.contextmanager
    def transaction(self):
        yield self


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextlib.contextmanager
    def connection(self):
        yield self.conn


def _store(cipher, conn):
    store = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    store._cipher = cipher
    return store


class TestRowConversion:
    def test_uuid_columns_become_strings(self):
        user_id = uuid.uuid4()
        user = PostgresStore._row_to(
            User, {"id": user_id, "email": "a@example.com", "unknown_column": 1}
        )
        assert user.id == str(user_id)
        assert user.email == "a@example.com"

    def test_profile_json_is_decoded(self):
        identity = PostgresStore._row_to(
            AuthIdentity,
            {
                "id": "i-1",
                "user_id": "u-1",
                "provider": "google",
                "provider_subject": "g-1",
                "profile": '{"name": "A"}',
            },
        )
        assert identity.profile == {"name": "A"}

    def test_null_backup_codes_become_empty_list(self):
        device = PostgresStore._row_to(
            MfaDevice, {"id": "d-1", "user_id": "u-1", "secret": "x", "backup_code_hashes": None}
        )
        assert device.backup_code_hashes == []

    def test_missing_row(self):
        assert PostgresStore._row_to(User, None) is None


class TestQueries:
    def test_email_lookup_is_normalized(self, cipher):
        conn = FakeConnection()
        assert _store(cipher, conn).get_user_by_email("  Alice@Example.COM ") is None
        assert conn.statements[0][1] == ("alice@example.com",)

    def test_session_provider_token_encrypted_at_rest(self, cipher):
        conn = FakeConnection()
        store = _store(cipher, conn)
        now = datetime.now(timezone.utc)
        session = UserSession(
            id=str(uuid.uuid4()),
            user_id=str(uuid.uuid4()),
            token_hash="th",
            expires_at=now + timedelta(hours=1),
            provider_refresh_token="provider-secret",
        )
        store.create_session(session)
        stored_token = conn.statements[0][1][-1]
        assert stored_token != "provider-secret"

        conn.results.append(FakeResult([{**session.__dict__, "provider_refresh_token": stored_token}]))
        loaded = store.get_session(session.id)
        assert loaded.provider_refresh_token == "provider-secret"

    def test_revoke_user_sessions_returns_token_hashes(self, cipher):
        conn = FakeConnection([FakeResult([{"token_hash": "a"}, {"token_hash": "b"}])])
        hashes = _store(cipher, conn).revoke_user_sessions(
            "u-1", reason="logout_all", at=datetime.now(timezone.utc), except_session_id=None
        )
        assert hashes == ["a", "b"]
        assert "RETURNING token_hash" in conn.statements[0][0]

    def test_backup_code_consumed_conditionally(self, cipher):
        conn = FakeConnection([FakeResult([])])
        consumed = _store(cipher, conn).consume_backup_code(
            "d-1", "digest", at=datetime.now(timezone.utc)
        )
        assert consumed is False
        assert "ANY(backup_code_hashes)" in conn.statements[0][0]

    def test_disable_mfa_reports_removed_devices(self, cipher):
        conn = FakeConnection([FakeResult([], rowcount=2)])
        assert _store(cipher, conn).disable_mfa("u-1") == 2
        assert "mfa_enabled = FALSE" in conn.statements[1][0]


class TestConstraintMapping:
    def test_unique_violation_becomes_constraint_violation(self, cipher):
        conn = FakeConnection(raise_on=("INSERT INTO auth_identity", errors.UniqueViolation("dup")))
        user = User(id=str(uuid.uuid4()), email="A@example.com")
        identity = AuthIdentity(
            id=str(uuid.uuid4()), user_id="", provider="google", provider_subject="g-1"
        )
        with pytest.raises(ConstraintViolation) as exc:
            _store(cipher, conn).create_user_with_identity(user, identity)
        assert exc.value.reason == "identity_taken"
        assert user.email == "a@example.com"
        assert identity.user_id == user.id
