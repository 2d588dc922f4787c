from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Optional

from venueauth.logging import get_logger

logger = get_logger(__name__)

# Used when a session carries no recorded access-token expiry
DEFAULT_BLACKLIST_LIFETIME = timedelta(hours=4)


class TokenBlacklist:
    """Access-token revocation list keyed by jti.

    Entries live in Redis with a TTL equal to the token's remaining lifetime.
    Without a cache (tests, dev fallback) a process-local dict with the same
    expiry semantics is used instead. Lookups are O(1) in both cases.
    """

    def __init__(self, cache=None, *, fail_closed: bool = True) -> None:
        self.cache = cache
        self.fail_closed = fail_closed
        self._local: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def blacklist(self, jti: str, expires_at: datetime) -> bool:
        """Revoke ``jti`` until ``expires_at``. Already-expired tokens are skipped."""
        if not jti:
            return False
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= self._now():
            return False
        if self.cache:
            try:
                return await self.cache.blacklist_token(jti, expires_at)
            except Exception as exc:
                logger.warning("blacklist_cache_write_failed", jti=jti, error=str(exc))
        with self._lock:
            self._local[jti] = expires_at
        return True

    async def is_blacklisted(self, jti: str) -> bool:
        if not jti:
            return False
        with self._lock:
            expiry = self._local.get(jti)
        if expiry is not None:
            if expiry > self._now():
                return True
            with self._lock:
                self._local.pop(jti, None)
        if not self.cache:
            return False
        try:
            return await self.cache.is_token_blacklisted(jti)
        except Exception as exc:
            logger.warning("blacklist_cache_read_failed", jti=jti, error=str(exc))
            # Unknown revocation state: reject rather than risk honoring a revoked token
            return self.fail_closed

    async def blacklist_sessions(self, sessions: Iterable) -> int:
        """Blacklist the current access token of each session; returns how many were written."""
        count = 0
        now = self._now()
        for session in sessions:
            jti = getattr(session, "access_token_jti", None)
            if not jti:
                continue
            expiry: Optional[datetime] = getattr(session, "access_token_expiry", None)
            if expiry is None:
                expiry = now + DEFAULT_BLACKLIST_LIFETIME
            if await self.blacklist(jti, expiry):
                count += 1
        return count

    def purge_expired(self) -> int:
        """Drop local entries whose tokens have expired; Redis expires its own keys."""
        now = self._now()
        with self._lock:
            stale = [jti for jti, exp in self._local.items() if exp <= now]
            for jti in stale:
                self._local.pop(jti, None)
        return len(stale)
