from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set, Tuple


class LocalCache:
    """Single-process stand-in for :class:`RedisCache`.

    Only used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV; entries live in
    this process and are invisible to other workers.
    """

    def __init__(self, *, sweep_interval_seconds: float = 60.0) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._user_sessions: Dict[str, Set[str]] = {}
        # key -> (tokens, last refill, window seconds)
        self._buckets: Dict[str, Tuple[float, float, float]] = {}
        self.sweep_interval_seconds = sweep_interval_seconds
        self._next_sweep = time.time() + sweep_interval_seconds

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def _set(self, key: str, value: Any, ttl_seconds: int) -> None:
        now = time.time()
        self._entries[key] = (value, now + max(1, ttl_seconds))
        self._maybe_sweep(now)

    def _maybe_sweep(self, now: float) -> None:
        if now >= self._next_sweep:
            self._sweep(now)

    def _sweep(self, now: float) -> None:
        for key in [k for k, (_, expires) in self._entries.items() if expires <= now]:
            del self._entries[key]
        for user_id in list(self._user_sessions):
            live = {h for h in self._user_sessions[user_id] if f"auth:session:{h}" in self._entries}
            if live:
                self._user_sessions[user_id] = live
            else:
                del self._user_sessions[user_id]
        # A bucket idle for a whole window has refilled and is equivalent to a missing one
        for key in [k for k, (_, last_ts, window) in self._buckets.items() if now - last_ts >= window]:
            del self._buckets[key]
        self._next_sweep = now + self.sweep_interval_seconds

    def sweep(self, now: Optional[float] = None) -> None:
        """Drop expired entries, empty session indexes and idle rate-limit buckets."""
        with self._lock:
            self._sweep(time.time() if now is None else now)

    def _get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires = entry
        if expires <= time.time():
            self._entries.pop(key, None)
            return None
        return value

    def _pop(self, key: str) -> Any:
        value = self._get(key)
        self._entries.pop(key, None)
        return value

    def verify_connection(self) -> None:
        return None

    # sessions
    async def cache_session(
        self, token_hash: str, session_id: str, user_id: str, expires_at: datetime
    ) -> None:
        with self._lock:
            self._set(
                f"auth:session:{token_hash}",
                {"session_id": session_id, "user_id": user_id, "expires_at": expires_at},
                self._ttl_seconds(expires_at),
            )
            self._user_sessions.setdefault(user_id, set()).add(token_hash)

    async def get_session(self, token_hash: str) -> Optional[dict]:
        with self._lock:
            value = self._get(f"auth:session:{token_hash}")
            return dict(value) if value else None

    async def evict_session(self, token_hash: str, user_id: Optional[str] = None) -> None:
        with self._lock:
            self._entries.pop(f"auth:session:{token_hash}", None)
            if user_id:
                self._user_sessions.get(user_id, set()).discard(token_hash)

    async def evict_user_sessions(
        self, user_id: str, except_token_hash: Optional[str] = None
    ) -> int:
        with self._lock:
            token_hashes = self._user_sessions.get(user_id, set())
            evicted = 0
            for token_hash in list(token_hashes):
                if except_token_hash and token_hash == except_token_hash:
                    continue
                self._entries.pop(f"auth:session:{token_hash}", None)
                token_hashes.discard(token_hash)
                evicted += 1
            return evicted

    # pending MFA setup
    async def set_pending_mfa_setup(self, user_id: str, payload: str, ttl_seconds: int) -> None:
        with self._lock:
            self._set(f"mfa:setup:{user_id}", payload, ttl_seconds)

    async def get_pending_mfa_setup(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._get(f"mfa:setup:{user_id}")

    async def delete_pending_mfa_setup(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(f"mfa:setup:{user_id}", None)

    # one-time tokens
    async def set_sso_state(self, state: str, payload: dict, expires_at: datetime) -> None:
        with self._lock:
            self._set(
                f"auth:sso:{state}",
                {**payload, "expires_at": expires_at},
                self._ttl_seconds(expires_at),
            )

    async def pop_sso_state(self, state: str) -> Optional[dict]:
        with self._lock:
            value = self._pop(f"auth:sso:{state}")
            return dict(value) if value else None

    async def set_email_verification(self, token_hash: str, user_id: str, ttl_seconds: int) -> None:
        with self._lock:
            self._set(f"auth:verify:{token_hash}", user_id, ttl_seconds)

    async def pop_email_verification(self, token_hash: str) -> Optional[str]:
        with self._lock:
            return self._pop(f"auth:verify:{token_hash}")

    # throttles and alerts
    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        now = time.time()
        refill_rate = float(limit) / float(window_seconds)
        with self._lock:
            self._maybe_sweep(now)
            tokens, last_ts, _ = self._buckets.get(key, (float(limit), now, window_seconds))
            tokens = min(float(limit), tokens + max(0.0, now - last_ts) * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now, float(window_seconds))
            reset_seconds = 0 if allowed else int((cost - tokens) / refill_rate) + 1
            return allowed, int(tokens), reset_seconds

    async def mark_alert_sent(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            alert_key = f"security:alert:{key}"
            if self._get(alert_key) is not None:
                return False
            self._set(alert_key, "1", ttl_seconds)
            return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
            self._user_sessions.clear()
            self._buckets.clear()
