"""
Composition root for the authentication security services.

One AuthSecurityControlPlane is built per process (the app lifespan does
it) and handed to request handlers through ``app.state``. Nothing here is
a module-level singleton; tests build their own from a Settings object
and a store.
"""

import logging
import time
from collections.abc import Callable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from authguard.core.config import Settings
from authguard.db.session import create_engine, create_sessionmaker, create_tables
from authguard.services.cache_store import CacheStore
from authguard.services.error_handler import AuthErrorHandler
from authguard.services.feature_flags import AuthFeatureFlags, FeatureFlagService, FlagSource
from authguard.services.lockout import LockoutManager
from authguard.services.login_protection import LoginProtection
from authguard.services.rate_limit import RateLimiter
from authguard.services.security_logger import SecurityLogger
from authguard.services.tokens import TokenCache

logger = logging.getLogger(__name__)


class AuthSecurityControlPlane:
    """Holds every security service wired to one store and one database."""

    def __init__(
        self,
        settings: Settings,
        store: CacheStore,
        sessionmaker: async_sessionmaker[AsyncSession] | None = None,
        engine: AsyncEngine | None = None,
        flag_source: FlagSource | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.store = store
        self.sessionmaker = sessionmaker
        self.engine = engine

        self.rate_limiter = RateLimiter(store, use_script=settings.RATE_LIMIT_USE_SCRIPT, clock=clock)
        self.lockout = LockoutManager(
            store,
            login_attempts_ttl=settings.LOGIN_ATTEMPTS_TTL,
            clock=clock,
            default_lockout_ttl=settings.ACCOUNT_LOCKOUT_TTL,
        )
        self.tokens = TokenCache(store, clock=clock, token_ttl=settings.TOKEN_TTL)
        self.feature_flags = FeatureFlagService(flag_source, cache_ttl=settings.FEATURE_FLAG_CACHE_TTL)
        self.auth_flags = AuthFeatureFlags(self.feature_flags)
        self.security_logger = SecurityLogger(
            store,
            sessionmaker,
            max_events=settings.SECURITY_EVENTS_MAX,
            events_ttl=settings.SECURITY_EVENTS_TTL,
            clock=clock,
            db_timeout=settings.DATABASE_TIMEOUT_SECONDS,
        )
        self.login_protection = LoginProtection(
            self.lockout,
            self.security_logger,
            max_failed_attempts=settings.MAX_FAILED_ATTEMPTS,
            base_lockout_minutes=settings.BASE_LOCKOUT_MINUTES,
            max_lockout_minutes=settings.MAX_LOCKOUT_MINUTES,
            backoff_multiplier=settings.LOCKOUT_BACKOFF_MULTIPLIER,
        )
        self.error_handler = AuthErrorHandler(self.security_logger, clock=clock)

    @classmethod
    async def from_settings(cls, settings: Settings) -> "AuthSecurityControlPlane":
        """Connect to the store and the database and create missing tables."""
        store = CacheStore.from_settings(settings)
        engine = create_engine(settings)
        await create_tables(engine)
        return cls(settings, store, create_sessionmaker(engine), engine=engine)

    async def close(self) -> None:
        logger.info("Closing security control plane")
        await self.store.close()
        if self.engine is not None:
            await self.engine.dispose()

    async def warm_cache(self) -> dict[str, Any]:
        """Preload feature flags and check the store. Run explicitly, e.g. at startup."""
        flags = await self.feature_flags.warm()
        store_ok = await self.store.ping()
        logger.info("Cache warm-up loaded %d flags, store reachable: %s", flags, store_ok)
        return {"flags_loaded": flags, "store_available": store_ok}

    async def cleanup(self, events_older_than_days: int = 90) -> dict[str, int]:
        """Maintenance: drop stale lockout index entries and old security events."""
        lockouts = await self.lockout.cleanup_expired_lockouts()
        events = await self.security_logger.cleanup_old_events(events_older_than_days)
        self.feature_flags.clear_cache()
        return {"lockout_index_entries_removed": lockouts, "security_events_removed": events}

    async def health_check(self) -> dict[str, Any]:
        store_health = await self.store.health_check()
        return {
            "status": store_health["status"],
            "store": store_health,
            "environment": self.settings.ENVIRONMENT,
        }
