from __future__ import annotations

import copy
import threading
import time
from typing import Callable, Dict, Optional, Tuple, Union

from authcore.storage.redis_cache import (
    BLACKLIST_KEY,
    SECOND_FACTOR_ATTEMPTS_KEY,
    SECOND_FACTOR_LOCKOUT_KEY,
    SESSION_KEY,
    normalize_rate_key,
)


class MemoryCache:
    """Process-local stand-in for RedisCache used in tests and dev fallback.

    Keys and expiry semantics mirror the Redis layout so the service layer
    cannot tell the two apart. State is not shared between processes.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[object, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _get(self, key: str) -> Optional[object]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return value

    def _set(self, key: str, value: object, ttl_seconds: Optional[float]) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        self._values[key] = (value, expires_at)

    def verify_connection(self) -> None:
        return None

    async def get_session(self, session_id: str) -> Optional[dict]:
        with self._lock:
            value = self._get(SESSION_KEY.format(session_id))
            return copy.deepcopy(value) if value is not None else None

    async def put_session(self, session_id: str, payload: dict, ttl_seconds: int) -> None:
        with self._lock:
            self._set(SESSION_KEY.format(session_id), copy.deepcopy(payload), max(1, int(ttl_seconds)))

    async def drop_session(self, session_id: str) -> None:
        with self._lock:
            self._values.pop(SESSION_KEY.format(session_id), None)

    async def revoke_jti(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._set(BLACKLIST_KEY.format(jti), "1", int(ttl_seconds))

    async def is_jti_revoked(self, jti: str) -> bool:
        with self._lock:
            return self._get(BLACKLIST_KEY.format(jti)) is not None

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
        now = self._clock()
        with self._lock:
            bucket = self._get(safe_key)
            if bucket is None:
                tokens, last = float(limit), now
            else:
                tokens, last = bucket
            tokens = min(float(limit), tokens + max(0.0, now - last) * refill_rate)
            if tokens < 1:
                reset_after = int(-(-(1 - tokens) // refill_rate))
                self._set(safe_key, (tokens, now), max(reset_after, 1))
                allowed, remaining, reset_seconds = False, 0, reset_after
            else:
                tokens -= 1
                self._set(safe_key, (tokens, now), max(window_seconds, 1))
                allowed, remaining, reset_seconds = True, int(tokens), 0
        if return_remaining:
            return (allowed, remaining, reset_seconds)
        return allowed

    async def record_second_factor_failure(
        self, account_id: str, max_attempts: int, lockout_seconds: int
    ) -> tuple[bool, int]:
        lockout_key = SECOND_FACTOR_LOCKOUT_KEY.format(account_id)
        attempts_key = SECOND_FACTOR_ATTEMPTS_KEY.format(account_id)
        with self._lock:
            if self._get(lockout_key) is not None:
                return (True, -1)
            attempts = int(self._get(attempts_key) or 0) + 1
            self._set(attempts_key, attempts, lockout_seconds)
            if attempts >= max_attempts:
                self._set(lockout_key, "1", lockout_seconds)
                self._values.pop(attempts_key, None)
                return (True, attempts)
            return (False, attempts)

    async def is_second_factor_locked(self, account_id: str) -> bool:
        with self._lock:
            return self._get(SECOND_FACTOR_LOCKOUT_KEY.format(account_id)) is not None

    async def clear_second_factor_failures(self, account_id: str) -> None:
        with self._lock:
            self._values.pop(SECOND_FACTOR_ATTEMPTS_KEY.format(account_id), None)

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
