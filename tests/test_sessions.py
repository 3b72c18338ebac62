"""Session lifecycle: creation, validation, rotation and revocation."""

import pytest

from authcore.service.errors import UnauthorizedError
from authcore.service.identity_provider import ProviderTokens
from authcore.service.sessions import SessionManager
from authcore.storage.models import AuthIdentity, User, new_id


class FailingCache:
    """Cache whose writes and evictions always fail; reads miss."""

    def __init__(self, inner):
        self.inner = inner

    async def cache_session(self, *args, **kwargs):
        raise ConnectionError("cache down")

    async def get_session(self, token_hash):
        return await self.inner.get_session(token_hash)

    async def evict_session(self, *args, **kwargs):
        raise ConnectionError("cache down")

    async def evict_user_sessions(self, *args, **kwargs):
        raise ConnectionError("cache down")


class RecordingAuthority:
    def __init__(self, result):
        self.result = result
        self.calls = []

    async def refresh_tokens(self, refresh_token):
        self.calls.append(refresh_token)
        return self.result


@pytest.fixture
def user(memory_store):
    u = User(id=new_id(), email="frank@example.com", email_verified=True)
    identity = AuthIdentity(
        id=new_id(), user_id=u.id, provider="password", provider_subject=new_id(),
        is_verified=True, is_primary=True,
    )
    return memory_store.create_user_with_identity(u, identity)[0]


@pytest.fixture
def sessions(memory_store, cache, settings, clock):
    return SessionManager(memory_store, cache, settings, clock=clock)


class TestCreateAndValidate:
    async def test_new_session_validates_from_cache(self, sessions, user):
        issued = await sessions.create_session(user.id, "password")
        result = await sessions.validate_session(issued.token)
        assert result.valid
        assert result.session_id == issued.session.id

    async def test_raw_tokens_never_stored(self, sessions, user, memory_store):
        issued = await sessions.create_session(user.id, "password")
        stored = memory_store.get_session(issued.session.id)
        assert issued.token not in (stored.token_hash, stored.refresh_token_hash)

    async def test_remember_me_extends_lifetime(self, sessions, user, settings):
        short = await sessions.create_session(user.id, "password")
        long = await sessions.create_session(user.id, "password", remember_me=True)
        assert (short.session.expires_at - short.session.created_at).total_seconds() == settings.session_ttl_hours * 3600
        assert (long.session.expires_at - long.session.created_at).days == settings.remember_me_ttl_days

    async def test_missing_and_unknown_tokens(self, sessions):
        assert (await sessions.validate_session(None)).reason == "missing_token"
        assert (await sessions.validate_session("nope")).reason == "invalid_token"

    async def test_expired_session_invalid(self, sessions, user, clock, settings):
        issued = await sessions.create_session(user.id, "password")
        clock.advance(hours=settings.session_ttl_hours, seconds=1)
        result = await sessions.validate_session(issued.token)
        assert not result.valid
        assert result.reason == "expired"

    async def test_cache_miss_falls_back_to_store(self, sessions, user, cache):
        issued = await sessions.create_session(user.id, "password")
        await cache.evict_session(issued.session.token_hash, user.id)
        result = await sessions.validate_session(issued.token)
        assert result.valid
        assert await cache.get_session(issued.session.token_hash) is not None

    async def test_deactivated_user_rejected_after_eviction(self, sessions, user, memory_store):
        issued = await sessions.create_session(user.id, "password")
        memory_store.set_user_active(user.id, False)
        await sessions.evict_user(user.id)
        result = await sessions.validate_session(issued.token)
        assert not result.valid
        assert result.reason == "user_deactivated"


class TestRevocation:
    async def test_invalidate_session_visible_immediately(self, sessions, user):
        issued = await sessions.create_session(user.id, "password")
        assert await sessions.invalidate_session(issued.session.id)
        result = await sessions.validate_session(issued.token)
        assert not result.valid
        assert result.reason == "revoked"

    async def test_invalidate_all_sessions(self, sessions, user):
        tokens = [await sessions.create_session(user.id, "password") for _ in range(3)]
        assert await sessions.invalidate_all_sessions(user.id) == 3
        for issued in tokens:
            assert not (await sessions.validate_session(issued.token)).valid
        assert sessions.list_sessions(user.id) == []

    async def test_invalidate_all_keeps_current(self, sessions, user):
        current = await sessions.create_session(user.id, "password")
        other = await sessions.create_session(user.id, "password")
        revoked = await sessions.invalidate_all_sessions(
            user.id, except_session_id=current.session.id
        )
        assert revoked == 1
        assert (await sessions.validate_session(current.token)).valid
        assert not (await sessions.validate_session(other.token)).valid

    async def test_failed_cache_eviction_still_revokes(self, memory_store, cache, settings, clock, user):
        """A revocation whose cache eviction fails is still honoured locally."""
        healthy = SessionManager(memory_store, cache, settings, clock=clock)
        issued = await healthy.create_session(user.id, "password")
        degraded = SessionManager(memory_store, FailingCache(cache), settings, clock=clock)
        assert await degraded.invalidate_session(issued.session.id)
        # The stale cache entry is still there, but the local revocation wins
        assert await cache.get_session(issued.session.token_hash) is not None
        result = await degraded.validate_session(issued.token)
        assert not result.valid

    async def test_failed_user_eviction_suspends_until_restored(
        self, memory_store, cache, settings, clock, user
    ):
        healthy = SessionManager(memory_store, cache, settings, clock=clock)
        issued = await healthy.create_session(user.id, "password")
        degraded = SessionManager(memory_store, FailingCache(cache), settings, clock=clock)

        memory_store.set_user_active(user.id, False)
        assert await degraded.evict_user(user.id) == 0
        assert degraded.revoked_tokens == {}
        result = await degraded.validate_session(issued.token)
        assert result.reason == "user_deactivated"

        memory_store.set_user_active(user.id, True)
        degraded.restore_user(user.id)
        assert (await degraded.validate_session(issued.token)).valid


class TestRefresh:
    async def test_refresh_rotates_session(self, sessions, user):
        issued = await sessions.create_session(user.id, "password")
        rotated = await sessions.refresh_session(issued.refresh_token)
        assert rotated.session.id != issued.session.id
        assert not (await sessions.validate_session(issued.token)).valid
        assert (await sessions.validate_session(rotated.token)).valid

    async def test_refresh_token_single_use(self, sessions, user):
        issued = await sessions.create_session(user.id, "password")
        await sessions.refresh_session(issued.refresh_token)
        with pytest.raises(UnauthorizedError):
            await sessions.refresh_session(issued.refresh_token)

    async def test_refresh_rejects_expired(self, sessions, user, clock, settings):
        issued = await sessions.create_session(user.id, "password")
        clock.advance(hours=settings.session_ttl_hours + 1)
        with pytest.raises(UnauthorizedError):
            await sessions.refresh_session(issued.refresh_token)

    async def test_refresh_rotates_provider_token(self, memory_store, cache, settings, clock, user):
        authority = RecordingAuthority(ProviderTokens(refresh_token="provider-2"))
        manager = SessionManager(memory_store, cache, settings, authority=authority, clock=clock)
        issued = await manager.create_session(
            user.id, "password", provider_refresh_token="provider-1"
        )
        rotated = await manager.refresh_session(issued.refresh_token)
        assert authority.calls == ["provider-1"]
        assert memory_store.get_session(rotated.session.id).provider_refresh_token == "provider-2"

    async def test_rejected_provider_refresh_revokes_session(
        self, memory_store, cache, settings, clock, user
    ):
        manager = SessionManager(
            memory_store, cache, settings, authority=RecordingAuthority(None), clock=clock
        )
        issued = await manager.create_session(
            user.id, "password", provider_refresh_token="provider-1"
        )
        with pytest.raises(UnauthorizedError):
            await manager.refresh_session(issued.refresh_token)
        assert not (await manager.validate_session(issued.token)).valid

    async def test_refresh_denied_for_deactivated_user(self, sessions, user, memory_store):
        issued = await sessions.create_session(user.id, "password")
        memory_store.set_user_active(user.id, False)
        with pytest.raises(UnauthorizedError):
            await sessions.refresh_session(issued.refresh_token)
