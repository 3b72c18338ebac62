from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis


class RedisCache:
    """Redis-backed ephemeral state: published sessions, pending MFA setup,
    SSO state, email verification tokens, throttles and alert de-duplication."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill + consume so concurrent requests cannot overdraw a bucket
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL from an absolute expiry, clamped to at least one second."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    # sessions
    async def cache_session(
        self, token_hash: str, session_id: str, user_id: str, expires_at: datetime
    ) -> None:
        ttl = self._ttl_seconds(expires_at)
        payload = json.dumps(
            {"session_id": session_id, "user_id": user_id, "expires_at": expires_at.isoformat()}
        )
        pipe = self.client.pipeline()
        pipe.set(f"auth:session:{token_hash}", payload, ex=ttl)
        # Track the user's tokens for bulk eviction
        pipe.sadd(f"auth:user_sessions:{user_id}", token_hash)
        pipe.expire(f"auth:user_sessions:{user_id}", ttl)
        await pipe.execute()

    async def get_session(self, token_hash: str) -> Optional[dict]:
        raw = await self.client.get(f"auth:session:{token_hash}")
        if not raw:
            return None
        try:
            data = json.loads(raw)
            data["expires_at"] = datetime.fromisoformat(data["expires_at"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            await self.client.delete(f"auth:session:{token_hash}")
            return None
        return data

    async def evict_session(self, token_hash: str, user_id: Optional[str] = None) -> None:
        pipe = self.client.pipeline()
        pipe.delete(f"auth:session:{token_hash}")
        if user_id:
            pipe.srem(f"auth:user_sessions:{user_id}", token_hash)
        await pipe.execute()

    async def evict_user_sessions(
        self, user_id: str, except_token_hash: Optional[str] = None
    ) -> int:
        user_sessions_key = f"auth:user_sessions:{user_id}"
        token_hashes = await self.client.smembers(user_sessions_key)
        if not token_hashes:
            return 0
        evicted = 0
        pipe = self.client.pipeline()
        for token_hash in token_hashes:
            if except_token_hash and token_hash == except_token_hash:
                continue
            pipe.delete(f"auth:session:{token_hash}")
            pipe.srem(user_sessions_key, token_hash)
            evicted += 1
        await pipe.execute()
        return evicted

    # pending MFA setup
    async def set_pending_mfa_setup(self, user_id: str, payload: str, ttl_seconds: int) -> None:
        await self.client.set(f"mfa:setup:{user_id}", payload, ex=max(1, ttl_seconds))

    async def get_pending_mfa_setup(self, user_id: str) -> Optional[str]:
        return await self.client.get(f"mfa:setup:{user_id}")

    async def delete_pending_mfa_setup(self, user_id: str) -> None:
        await self.client.delete(f"mfa:setup:{user_id}")

    # one-time tokens
    async def _pop(self, key: str) -> Optional[str]:
        """Atomically read and delete so a value can only be consumed once."""
        try:
            return await self.client.getdel(key)
        except AttributeError:
            lua_script = """
            local value = redis.call('GET', KEYS[1])
            if value then
                redis.call('DEL', KEYS[1])
            end
            return value
            """
            return await self.client.eval(lua_script, 1, key)

    async def set_sso_state(self, state: str, payload: dict, expires_at: datetime) -> None:
        ttl = self._ttl_seconds(expires_at)
        data = {**payload, "expires_at": expires_at.isoformat()}
        await self.client.set(f"auth:sso:{state}", json.dumps(data), ex=ttl)

    async def pop_sso_state(self, state: str) -> Optional[dict]:
        cached = await self._pop(f"auth:sso:{state}")
        if cached is None:
            return None
        try:
            data = json.loads(cached)
            data["expires_at"] = datetime.fromisoformat(data["expires_at"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None
        return data

    async def set_email_verification(self, token_hash: str, user_id: str, ttl_seconds: int) -> None:
        await self.client.set(f"auth:verify:{token_hash}", user_id, ex=max(1, ttl_seconds))

    async def pop_email_verification(self, token_hash: str) -> Optional[str]:
        return await self._pop(f"auth:verify:{token_hash}")

    # throttles and alerts
    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Token bucket check; returns ``(allowed, remaining, reset_seconds)``."""
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return bool(int(allowed)), max(0, int(float(tokens))), int(reset_after or 0)

    async def mark_alert_sent(self, key: str, ttl_seconds: int) -> bool:
        """Return True if this is the first alert for ``key`` within the TTL."""
        return bool(await self.client.set(f"security:alert:{key}", "1", ex=ttl_seconds, nx=True))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
