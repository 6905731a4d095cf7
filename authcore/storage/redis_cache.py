from __future__ import annotations

import asyncio
import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Awaitable, Optional, Protocol, Tuple, TypeVar, Union

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authcore.storage.errors import CacheUnavailable

T = TypeVar("T")

SESSION_KEY = "session:{}"
BLACKLIST_KEY = "blacklist:{}"
SECOND_FACTOR_ATTEMPTS_KEY = "2fa:attempts:{}"
SECOND_FACTOR_LOCKOUT_KEY = "2fa:lockout:{}"


class SessionCache(Protocol):
    """Operations the auth service needs from the shared ephemeral cache."""

    async def get_session(self, session_id: str) -> Optional[dict]: ...

    async def put_session(self, session_id: str, payload: dict, ttl_seconds: int) -> None: ...

    async def drop_session(self, session_id: str) -> None: ...

    async def revoke_jti(self, jti: str, ttl_seconds: int) -> None: ...

    async def is_jti_revoked(self, jti: str) -> bool: ...

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, return_remaining: bool = False
    ) -> Union[bool, Tuple[bool, int, int]]: ...

    async def record_second_factor_failure(
        self, account_id: str, max_attempts: int, lockout_seconds: int
    ) -> tuple[bool, int]: ...

    async def is_second_factor_locked(self, account_id: str) -> bool: ...

    async def clear_second_factor_failures(self, account_id: str) -> None: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


async def bounded(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await a cache call with a deadline, mapping transport failures to CacheUnavailable."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise CacheUnavailable(operation, exc) from exc
    except (RedisError, OSError) as exc:
        raise CacheUnavailable(operation, exc) from exc


def ttl_until(expires_at: datetime) -> int:
    """Seconds until ``expires_at``, clamped to at least one so Redis accepts it."""

    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = expires_at.astimezone(timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


def normalize_rate_key(key: str) -> str:
    """Hash rate limit subjects so caller-supplied text cannot collide on delimiters."""

    return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"


class RedisCache:
    """Redis-backed session cache, token blacklist, rate limiter and 2FA lockout."""

    # Atomic refill + consume token bucket
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
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # Check lockout, count the failure and trip the lockout in one step
    _SECOND_FACTOR_FAILURE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])

if attempts >= tonumber(ARGV[1]) then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end

return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._second_factor_failure = self.client.register_script(
            self._SECOND_FACTOR_FAILURE_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client keeps the async client off a temporary event loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_session(self, session_id: str) -> Optional[dict]:
        raw = await self.client.get(SESSION_KEY.format(session_id))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            # Corrupt entries are treated as misses; the durable store is authoritative
            await self.client.delete(SESSION_KEY.format(session_id))
            return None

    async def put_session(self, session_id: str, payload: dict, ttl_seconds: int) -> None:
        await self.client.set(
            SESSION_KEY.format(session_id), json.dumps(payload), ex=max(1, int(ttl_seconds))
        )

    async def drop_session(self, session_id: str) -> None:
        await self.client.delete(SESSION_KEY.format(session_id))

    async def revoke_jti(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(BLACKLIST_KEY.format(jti), "1", ex=int(ttl_seconds))

    async def is_jti_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(BLACKLIST_KEY.format(jti)))

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, 1],
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def record_second_factor_failure(
        self, account_id: str, max_attempts: int, lockout_seconds: int
    ) -> tuple[bool, int]:
        """Record a failed second-factor attempt.

        Returns:
            Tuple of (locked_out, attempts); attempts is -1 when already locked.
        """
        result = await self._second_factor_failure(
            keys=[
                SECOND_FACTOR_LOCKOUT_KEY.format(account_id),
                SECOND_FACTOR_ATTEMPTS_KEY.format(account_id),
            ],
            args=[max_attempts, lockout_seconds],
        )
        return (bool(int(result[0])), int(result[1]))

    async def is_second_factor_locked(self, account_id: str) -> bool:
        return bool(await self.client.exists(SECOND_FACTOR_LOCKOUT_KEY.format(account_id)))

    async def clear_second_factor_failures(self, account_id: str) -> None:
        await self.client.delete(SECOND_FACTOR_ATTEMPTS_KEY.format(account_id))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
