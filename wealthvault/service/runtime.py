from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from wealthvault.config import get_settings, reset_settings_cache
from wealthvault.logging import get_logger
from wealthvault.service.auth import AuthService
from wealthvault.service.blacklist import BlacklistCache
from wealthvault.service.credentials import CredentialVerifier, PasswordCredentialVerifier
from wealthvault.service.mfa import MFAVerifier
from wealthvault.service.security import GeoLocator, Notifier, SecurityMonitor
from wealthvault.service.sessions import SessionManager
from wealthvault.service.sweeper import SessionSweeper
from wealthvault.service.tokens import TokenCodec
from wealthvault.storage.memory import MemoryStore
from wealthvault.storage.postgres import PostgresStore
from wealthvault.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except Exception:
        return "***url_parse_error***"


class Runtime:
    """Holds the wired store, cache and auth services for one process."""

    def __init__(
        self,
        *,
        credentials: Optional[CredentialVerifier] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        # fails startup on a missing or short signing secret
        self.codec = TokenCodec(self.settings)
        mfa_key = self.settings.mfa_encryption_key or self.settings.jwt_secret

        try:
            self.store = (
                MemoryStore(
                    fs_root=None if self.settings.test_mode else self.settings.state_root,
                    mfa_encryption_key=mfa_key,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    mfa_encryption_key=mfa_key,
                    statement_timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        if self.settings.redis_url:
            if self.settings.test_mode:
                cache = SyncRedisCache(self.settings.redis_url)
            else:
                cache = RedisCache(self.settings.redis_url)
            try:
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                if not self.settings.allow_cache_fallback:
                    raise RuntimeError(
                        "Redis is unreachable; start Redis or set ALLOW_CACHE_FALLBACK=true "
                        "to run blacklist lookups against the store only."
                    ) from exc
                logger.warning(
                    "blacklist_cache_unavailable_at_startup",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                # the async client is re-probed later; the sync one would block the loop
                self.cache = None if self.settings.test_mode else cache

        self.blacklist = BlacklistCache(self.store, self.cache, self.settings)
        self.sessions = SessionManager(self.store, self.blacklist, self.codec, self.settings)
        self.mfa = MFAVerifier(self.store, self.settings)
        self.monitor = SecurityMonitor(self.store, self.settings)
        self.geolocator = GeoLocator(self.settings)
        self.credentials = credentials or PasswordCredentialVerifier()
        self.auth = AuthService(
            self.credentials,
            self.sessions,
            self.mfa,
            self.monitor,
            self.blacklist,
            self.codec,
            self.settings,
            geolocator=self.geolocator,
        )
        self.sweeper = SessionSweeper(
            self.sessions,
            self.monitor,
            blacklist=self.blacklist,
            notifier=notifier,
            interval=self.settings.sweep_interval_seconds,
        )
        logger.info(
            "runtime_initialized",
            cache_enabled=self.cache is not None,
            geoip_enabled=self.settings.geoip_enabled,
            notifier_configured=notifier is not None,
        )

    async def close(self) -> None:
        await self.sweeper.stop()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    asyncio.run(runtime.cache.close())
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
