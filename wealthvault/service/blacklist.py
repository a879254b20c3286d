from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from wealthvault.config import Settings
from wealthvault.logging import get_logger
from wealthvault.service.store_calls import call_store
from wealthvault.service.tokens import hash_token
from wealthvault.storage.common import SessionStore
from wealthvault.storage.models import (
    BlacklistEntry,
    RevocationReason,
    TokenType,
    utcnow,
)

logger = get_logger(__name__)


class BlacklistCacheBackend(Protocol):
    """Fast, disposable lookup tier for revoked-token hashes."""

    async def ping(self) -> bool: ...

    async def set_blacklisted(self, token_hash: str, reason: str, ttl_seconds: int) -> None: ...

    async def get_blacklisted(self, token_hash: str) -> Optional[str]: ...

    async def clear_blacklist(self) -> int: ...


class BlacklistCache:
    """Revoked-token lookups backed by the store, accelerated by a cache.

    The store is the only source of truth. A cache hit proves revocation; a
    cache miss, timeout or error says nothing and falls through to the store.
    Writes go to the store first and then, best effort, to the cache.

    The cache health flag is re-probed at most every
    ``cache_health_interval_seconds`` so a cache that comes back is used again.
    """

    def __init__(
        self,
        store: SessionStore,
        cache: Optional[BlacklistCacheBackend],
        settings: Settings,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._clock = clock or time.monotonic
        self._cache_healthy = cache is not None
        self._last_probe: Optional[float] = None
        self._probe_lock = asyncio.Lock()

    @property
    def cache_healthy(self) -> bool:
        return self.cache is not None and self._cache_healthy

    def _mark_cache_failure(self, operation: str, exc: BaseException) -> None:
        if self._cache_healthy:
            logger.warning(
                "blacklist_cache_marked_unhealthy",
                operation=operation,
                error=str(exc) or type(exc).__name__,
            )
        self._cache_healthy = False
        self._last_probe = self._clock()

    async def cache_available(self) -> bool:
        """Capability check consulted before every cache call."""
        if self.cache is None:
            return False
        now = self._clock()
        if self._last_probe is not None and (
            now - self._last_probe < self.settings.cache_health_interval_seconds
        ):
            return self._cache_healthy
        async with self._probe_lock:
            # another caller may have probed while we waited
            if self._last_probe is not None and (
                self._clock() - self._last_probe < self.settings.cache_health_interval_seconds
            ):
                return self._cache_healthy
            await self.probe_cache()
        return self._cache_healthy

    async def probe_cache(self) -> bool:
        if self.cache is None:
            return False
        was_healthy = self._cache_healthy
        try:
            await asyncio.wait_for(self.cache.ping(), self.settings.cache_timeout_seconds)
        except Exception as exc:
            self._mark_cache_failure("ping", exc)
            return False
        self._cache_healthy = True
        self._last_probe = self._clock()
        if not was_healthy:
            logger.info("blacklist_cache_recovered")
        return True

    async def _store_call(self, operation: str, func, *args, **kwargs):
        return await call_store(
            func,
            *args,
            timeout=self.settings.store_timeout_seconds,
            operation=operation,
            **kwargs,
        )

    async def _cache_write(self, entry: BlacklistEntry) -> bool:
        ttl = entry.ttl_seconds()
        if ttl <= 0 or not await self.cache_available():
            return False
        try:
            await asyncio.wait_for(
                self.cache.set_blacklisted(entry.token_hash, entry.reason.value, ttl),
                self.settings.cache_timeout_seconds,
            )
        except Exception as exc:
            logger.warning(
                "blacklist_cache_write_failed",
                token_hash_fp=entry.token_hash[:12],
                error=str(exc) or type(exc).__name__,
            )
            self._mark_cache_failure("set_blacklisted", exc)
            return False
        return True

    async def add(
        self,
        token: str,
        token_type: TokenType,
        user_id: Optional[str],
        reason: RevocationReason = RevocationReason.LOGOUT,
        *,
        expires_at: Optional[datetime] = None,
    ) -> BlacklistEntry:
        """Durably revoke ``token``.

        ``expires_at`` should mirror the token's own expiry; when omitted the
        configured lifetime for ``token_type`` is assumed.

        Raises:
            ServiceUnavailableError: the store write did not complete.
        """
        token_type = TokenType(token_type)
        if expires_at is None:
            lifetime = (
                timedelta(minutes=self.settings.access_token_ttl_minutes)
                if token_type == TokenType.ACCESS
                else timedelta(days=self.settings.refresh_token_ttl_days)
            )
            expires_at = utcnow() + lifetime
        entry = BlacklistEntry(
            token_hash=hash_token(token),
            token_type=token_type,
            user_id=user_id,
            reason=RevocationReason(reason),
            expires_at=expires_at,
        )
        return await self.add_entry(entry)

    async def add_entry(self, entry: BlacklistEntry) -> BlacklistEntry:
        """Store-then-cache write for an entry whose token is already hashed."""
        stored = await self._store_call("add_blacklist_entry", self.store.add_blacklist_entry, entry)
        cached = await self._cache_write(stored)
        logger.info(
            "token_blacklisted",
            token_hash_fp=entry.token_hash[:12],
            token_type=entry.token_type.value,
            user_id=entry.user_id,
            reason=entry.reason.value,
            cached=cached,
        )
        return stored

    async def is_blacklisted(self, token: str) -> bool:
        """Whether ``token`` has been revoked.

        Raises:
            ServiceUnavailableError: the store could not answer; the token must
                be treated as unverifiable.
        """
        token_hash = hash_token(token)
        if await self.cache_available():
            try:
                hit = await asyncio.wait_for(
                    self.cache.get_blacklisted(token_hash),
                    self.settings.cache_timeout_seconds,
                )
            except Exception as exc:
                self._mark_cache_failure("get_blacklisted", exc)
                hit = None
            if hit is not None:
                return True

        entry = await self._store_call(
            "get_blacklist_entry", self.store.get_blacklist_entry, token_hash
        )
        if entry is None:
            return False
        if await self._cache_write(entry):
            logger.debug("blacklist_cache_backfilled", token_hash_fp=token_hash[:12])
        return True

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        return await self._store_call(
            "purge_expired_blacklist", self.store.purge_expired_blacklist, now or utcnow()
        )
