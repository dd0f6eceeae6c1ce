from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

_OAUTH_STATE_PREFIX = "auth:oauth:"

OAuthState = Tuple[str, datetime]


def _ttl_seconds(expires_at: datetime) -> int:
    """TTL from an absolute expiry, clamped to at least one second."""
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = expires_at.astimezone(timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


def _encode_state(provider: str, expires_at: datetime) -> str:
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return json.dumps({"provider": provider, "expires_at": expires_at.isoformat()})


def _decode_state(raw: Optional[str]) -> Optional[OAuthState]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
        provider = data["provider"]
        expires_at = datetime.fromisoformat(data["expires_at"])
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        # Corrupted entry; GETDEL already removed it
        return None
    return provider, expires_at


class RedisCache:
    """Redis-backed store for short-lived OAuth ``state`` values."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        await self.client.set(
            f"{_OAUTH_STATE_PREFIX}{state}",
            _encode_state(provider, expires_at),
            ex=_ttl_seconds(expires_at),
        )

    async def pop_oauth_state(self, state: str) -> Optional[OAuthState]:
        """Atomically get and delete OAuth state so a callback cannot be replayed.

        Uses GETDEL (Redis 6.2+); two concurrent callbacks carrying the same
        state cannot both receive the payload.
        """
        cached = await self.client.getdel(f"{_OAUTH_STATE_PREFIX}{state}")
        return _decode_state(cached)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis client behind the async interface, for tests.

    Avoids binding a connection pool to the event loop of a single test.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        self.client.set(
            f"{_OAUTH_STATE_PREFIX}{state}",
            _encode_state(provider, expires_at),
            ex=_ttl_seconds(expires_at),
        )

    async def pop_oauth_state(self, state: str) -> Optional[OAuthState]:
        return _decode_state(self.client.getdel(f"{_OAUTH_STATE_PREFIX}{state}"))

    async def close(self) -> None:
        self.client.close()


class MemoryStateCache:
    """Process-local OAuth state, only for TEST_MODE or single-process development."""

    def __init__(self) -> None:
        self._states: Dict[str, str] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        with self._lock:
            self._prune_expired()
            self._states[state] = _encode_state(provider, expires_at)

    def _prune_expired(self) -> None:
        # abandoned flows never reach pop; Redis expires these by TTL instead
        now = datetime.now(timezone.utc)
        for key, raw in list(self._states.items()):
            entry = _decode_state(raw)
            if entry is None or entry[1] <= now:
                del self._states[key]

    async def pop_oauth_state(self, state: str) -> Optional[OAuthState]:
        with self._lock:
            raw = self._states.pop(state, None)
        return _decode_state(raw)

    async def close(self) -> None:
        with self._lock:
            self._states.clear()
