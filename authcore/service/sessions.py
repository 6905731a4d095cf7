from __future__ import annotations

import hashlib
import hmac
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from authcore.logging import get_logger
from authcore.service.tokens import TokenManager, hash_token
from authcore.storage.common import serialize_datetime, session_from_dict, session_to_dict
from authcore.storage.errors import CacheUnavailable
from authcore.storage.models import DeviceInfo, Session, utcnow
from authcore.storage.redis_cache import SessionCache, bounded, ttl_until

logger = get_logger(__name__)


def device_fingerprint(
    user_agent: Optional[str],
    accept_language: Optional[str],
    accept_encoding: Optional[str],
    ip_address: Optional[str],
) -> str:
    """Derive a stable device id from request attributes when the client sends none."""
    material = f"{user_agent or ''}{accept_language or ''}{accept_encoding or ''}{ip_address or ''}"
    return hashlib.sha256(material.encode()).hexdigest()[:16]


class SessionStore:
    """Durable per-device sessions with a cache-aside mirror.

    Every mutation is written to the durable store first; the cache entry is
    refreshed or dropped afterwards. A cache miss or outage falls back to the
    durable store and is never read as "no session".
    """

    def __init__(
        self,
        store: Any,
        cache: Optional[SessionCache],
        tokens: TokenManager,
        *,
        max_sessions: int = 10,
        session_ttl: timedelta = timedelta(days=7),
        remember_me_ttl: timedelta = timedelta(days=30),
        cache_timeout: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.tokens = tokens
        self.max_sessions = max_sessions
        self.session_ttl = session_ttl
        self.remember_me_ttl = remember_me_ttl
        self.cache_timeout = cache_timeout
        self._clock = clock

    def ttl_for(self, remember_me: bool) -> timedelta:
        return self.remember_me_ttl if remember_me else self.session_ttl

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    async def _cache_get(self, session_id: str) -> Optional[Session]:
        if self.cache is None:
            return None
        try:
            payload = await bounded(
                self.cache.get_session(session_id), self.cache_timeout, "get_session"
            )
        except CacheUnavailable as exc:
            logger.warning("session_cache_read_failed", session_id=session_id, error=str(exc))
            return None
        if not payload:
            return None
        try:
            return session_from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("session_cache_payload_invalid", session_id=session_id, error=str(exc))
            return None

    async def _cache_put(self, session: Session) -> None:
        if self.cache is None or not session.is_active(self._clock()):
            return
        try:
            await bounded(
                self.cache.put_session(
                    session.id, session_to_dict(session), ttl_until(session.expires_at)
                ),
                self.cache_timeout,
                "put_session",
            )
        except CacheUnavailable as exc:
            logger.warning("session_cache_write_failed", session_id=session.id, error=str(exc))

    async def _cache_drop(self, session_id: str) -> None:
        if self.cache is None:
            return
        try:
            await bounded(self.cache.drop_session(session_id), self.cache_timeout, "drop_session")
        except CacheUnavailable as exc:
            logger.error("session_cache_invalidate_failed", session_id=session_id, error=str(exc))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create(
        self,
        account_id: str,
        device: DeviceInfo,
        refresh_token: str,
        remember_me: bool = False,
        *,
        session_id: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> Session:
        """Open a session for ``device``, replacing its previous one and enforcing the cap.

        The cap is a soft bound: two concurrent logins can both see room for
        one more session and briefly leave the account above ``max_sessions``.
        The next login for the account evicts back down to the cap.
        """
        now = self._clock()
        active = self.store.list_sessions(account_id, active_at=now)

        others: List[Session] = []
        for existing in active:
            if existing.device_id == device.device_id:
                await self._revoke_one(existing, "replaced", now)
            else:
                others.append(existing)

        others.sort(key=lambda s: s.last_active_at, reverse=True)
        keep = max(self.max_sessions - 1, 0)
        for stale in others[keep:]:
            await self._revoke_one(stale, "evicted", now)
            logger.info("session_evicted", session_id=stale.id, account_id=account_id)

        session = Session.new(
            account_id,
            device,
            hash_token(refresh_token),
            self.ttl_for(remember_me),
            now=now,
            session_id=session_id,
            meta=meta,
        )
        self.store.insert_session(session)
        await self._cache_put(session)
        logger.info(
            "session_created",
            session_id=session.id,
            account_id=account_id,
            device_type=session.device_type,
            remember_me=remember_me,
        )
        return session

    async def get(self, session_id: str) -> Optional[Session]:
        cached = await self._cache_get(session_id)
        if cached is not None:
            return cached
        session = self.store.get_session(session_id)
        if session is not None:
            await self._cache_put(session)
        return session

    async def confirm_active(self, session_id: str) -> Optional[Session]:
        """Read ``session_id`` from the durable store; None unless it is still active.

        A cached copy that disagrees with the durable row is dropped.
        """
        session = self.store.get_session(session_id)
        if session is None or not session.is_active(self._clock()):
            await self._cache_drop(session_id)
            return None
        return session

    async def validate(self, session_id: str, refresh_token: str) -> Optional[Session]:
        """Return the active session whose stored hash matches ``refresh_token``.

        Mismatches and inactive sessions return None without touching the session.
        """
        now = self._clock()
        session = await self.get(session_id)
        if session is None:
            return None
        if not session.is_active(now):
            await self._cache_drop(session_id)
            return None
        if not hmac.compare_digest(session.refresh_token_hash, hash_token(refresh_token)):
            logger.warning("session_refresh_token_mismatch", session_id=session_id)
            return None
        if not self.store.touch_session(session_id, now):
            await self._cache_drop(session_id)
            logger.warning("session_cache_stale", session_id=session_id)
            return None
        session.last_active_at = now
        await self._cache_put(session)
        return session

    async def touch(self, session_id: str) -> Optional[Session]:
        """Bump ``last_active_at`` on a live session; None when it is no longer active."""
        now = self._clock()
        if not self.store.touch_session(session_id, now):
            await self._cache_drop(session_id)
            return None
        session = self.store.get_session(session_id)
        if session is not None:
            await self._cache_put(session)
        return session

    async def _revoke_one(self, session: Session, reason: str, now: datetime) -> bool:
        changed = self.store.revoke_session(session.id, now, reason)
        await self._cache_drop(session.id)
        meta = session.meta or {}
        for jti_key, exp_key in (("access_jti", "access_exp"), ("refresh_jti", "refresh_exp")):
            jti = meta.get(jti_key)
            if jti:
                await self.tokens.revoke_jti(jti, meta.get(exp_key))
        return changed

    async def revoke(self, session_id: str, reason: str = "logout") -> bool:
        session = self.store.get_session(session_id)
        if session is None:
            await self._cache_drop(session_id)
            return False
        changed = await self._revoke_one(session, reason, self._clock())
        if changed:
            logger.info("session_revoked", session_id=session_id, reason=reason)
        return changed

    async def revoke_all(
        self,
        account_id: str,
        except_session_id: Optional[str] = None,
        reason: str = "logout_all",
    ) -> int:
        now = self._clock()
        revoked = 0
        for session in self.store.list_sessions(account_id, active_at=now):
            if session.id == except_session_id:
                continue
            if await self._revoke_one(session, reason, now):
                revoked += 1
        logger.info(
            "sessions_revoked",
            account_id=account_id,
            count=revoked,
            kept_session_id=except_session_id,
            reason=reason,
        )
        return revoked

    def list_active(self, account_id: str) -> List[Session]:
        return self.store.list_sessions(account_id, active_at=self._clock())

    def list_recent(self, account_id: str, since: datetime) -> List[Session]:
        return self.store.list_sessions(account_id, created_since=since)

    async def record_access_token(self, session_id: str, jti: str, exp: int) -> None:
        session = self.store.get_session(session_id)
        if session is None:
            return
        meta = dict(session.meta or {})
        meta.update({"access_jti": jti, "access_exp": exp})
        self.store.set_session_meta(session_id, meta)
        session.meta = meta
        await self._cache_put(session)

    def stats(self, account_id: str) -> Dict[str, Any]:
        now = self._clock()
        sessions = self.store.list_sessions(account_id)
        created = [s.created_at for s in sessions]
        return {
            "total": len(sessions),
            "active": sum(1 for s in sessions if s.is_active(now)),
            "expired": sum(1 for s in sessions if s.revoked_at is None and s.expires_at <= now),
            "revoked": sum(1 for s in sessions if s.revoked_at is not None),
            "device_types": dict(Counter(s.device_type for s in sessions if s.device_type)),
            "platforms": dict(Counter(s.platform for s in sessions if s.platform)),
            "oldest_session": serialize_datetime(min(created)) if created else None,
            "newest_session": serialize_datetime(max(created)) if created else None,
        }

    def purge_expired(self, retention: timedelta) -> int:
        purged = self.store.purge_sessions(self._clock() - retention)
        if purged:
            logger.info("expired_sessions_purged", count=purged)
        return purged
