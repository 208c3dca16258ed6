"""
Feature flags for gradual rollout of authentication behaviour.

Flags are read through a short-TTL in-process cache in front of a flag
source. The default source is an in-memory table of the built-in flags; a
deployment can plug in any object with the same ``get``/``all``/``save``
coroutines.

Examples:
    flags = FeatureFlagService(source=DefaultFlagSource(), cache_ttl=300)

    ctx = FeatureFlagContext(user_id="u-1", environment="production")
    if await flags.is_enabled("account-lockout", ctx):
        ...

    await flags.update_flag("password-reset-v2", rollout_percentage=50)

Percentage rollout hashes ``flag_name + subject`` with a pinned 32-bit
rolling hash (``h = h * 31 + code_unit`` in signed 32-bit arithmetic, seed
0, UTF-16 code units, absolute value). Changing it reshuffles which users
see a feature, so it must stay fixed for a deployment.
"""

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from fastapi import HTTPException, Request, status
from pydantic import BaseModel, Field, ValidationError

from authguard.utils.request import get_client_ip

logger = logging.getLogger(__name__)


class FeatureFlag(BaseModel):
    name: str
    enabled: bool = False
    rollout_percentage: int = Field(default=0, ge=0, le=100)
    enabled_users: set[str] = Field(default_factory=set)
    enabled_roles: set[str] = Field(default_factory=set)
    environment: set[str] = Field(default_factory=set)  # empty = every environment
    description: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    model_config = {"validate_assignment": True}


class FeatureFlagContext(BaseModel):
    user_id: str | None = None
    user_role: str | None = None
    email: str | None = None
    environment: str = "development"
    ip_address: str | None = None

    @property
    def subject(self) -> str:
        return self.user_id or self.email or self.ip_address or ""


UPDATABLE_FIELDS = {
    "enabled",
    "rollout_percentage",
    "enabled_users",
    "enabled_roles",
    "environment",
    "description",
}

ALL_ENVIRONMENTS = {"development", "staging", "production"}


def default_flags() -> dict[str, FeatureFlag]:
    """Built-in flag table."""
    return {
        flag.name: flag
        for flag in [
            FeatureFlag(
                name="secure-authentication",
                enabled=True,
                rollout_percentage=100,
                enabled_roles={"ADMIN"},
                environment=ALL_ENVIRONMENTS,
                description="Enable secure authentication system with strong password hashing",
            ),
            FeatureFlag(
                name="password-strength-validation",
                enabled=True,
                rollout_percentage=100,
                enabled_roles={"ADMIN"},
                environment=ALL_ENVIRONMENTS,
                description="Enable password strength validation requirements",
            ),
            FeatureFlag(
                name="account-lockout",
                enabled=True,
                rollout_percentage=50,
                enabled_roles={"ADMIN"},
                environment=ALL_ENVIRONMENTS,
                description="Enable account lockout after failed login attempts",
            ),
            FeatureFlag(
                name="email-verification-required",
                enabled=True,
                rollout_percentage=75,
                enabled_roles={"ADMIN"},
                environment={"staging", "production"},
                description="Require email verification for account access",
            ),
            FeatureFlag(
                name="rate-limiting",
                enabled=True,
                rollout_percentage=100,
                environment={"staging", "production"},
                description="Enable rate limiting for authentication endpoints",
            ),
            FeatureFlag(
                name="security-logging",
                enabled=True,
                rollout_percentage=100,
                environment=ALL_ENVIRONMENTS,
                description="Enable comprehensive security event logging",
            ),
            FeatureFlag(
                name="password-reset-v2",
                enabled=True,
                rollout_percentage=25,
                enabled_roles={"ADMIN"},
                environment={"development", "staging"},
                description="Enable new secure password reset flow",
            ),
            FeatureFlag(
                name="session-management-v2",
                enabled=True,
                rollout_percentage=10,
                enabled_roles={"ADMIN"},
                environment={"development"},
                description="Enable new session management system",
            ),
        ]
    }


def hash_string(value: str) -> int:
    """Stable 32-bit rolling string hash used for rollout buckets."""
    h = 0
    data = value.encode("utf-16-le")
    for i in range(0, len(data), 2):
        h = (h * 31 + (data[i] | (data[i + 1] << 8))) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 0x100000000
    return abs(h)


def rollout_bucket(flag_name: str, subject: str) -> int:
    """Deterministic slot in [1, 100] for a subject under a flag."""
    return (hash_string(flag_name + subject) % 100) + 1


class FlagSource(Protocol):
    async def get(self, name: str) -> FeatureFlag | None: ...

    async def all(self) -> list[FeatureFlag]: ...

    async def save(self, flag: FeatureFlag) -> None: ...


class DefaultFlagSource:
    """In-process flag table seeded with the built-in flags."""

    def __init__(self, flags: dict[str, FeatureFlag] | None = None):
        self._flags = flags if flags is not None else default_flags()

    async def get(self, name: str) -> FeatureFlag | None:
        flag = self._flags.get(name)
        return flag.model_copy(deep=True) if flag else None

    async def all(self) -> list[FeatureFlag]:
        return [flag.model_copy(deep=True) for flag in self._flags.values()]

    async def save(self, flag: FeatureFlag) -> None:
        self._flags[flag.name] = flag.model_copy(deep=True)


class FeatureFlagService:
    """Evaluate flags for a request context. Errors evaluate to disabled."""

    def __init__(
        self,
        source: FlagSource | None = None,
        cache_ttl: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source or DefaultFlagSource()
        self.cache_ttl = cache_ttl
        self.clock = clock
        # name -> (flag, expires_at); entries are replaced whole, never mutated
        self._cache: dict[str, tuple[FeatureFlag, float]] = {}

    async def is_enabled(self, flag_name: str, context: FeatureFlagContext) -> bool:
        """
        Decide whether ``flag_name`` is on for ``context``.

        Order: missing/disabled -> off; environment not allowed -> off;
        user allow-list -> on; role allow-list -> on; rollout bucket;
        otherwise off.
        """
        try:
            flag = await self.get_flag(flag_name)
            if flag is None or not flag.enabled:
                return False

            if flag.environment and context.environment not in flag.environment:
                return False

            if context.user_id and context.user_id in flag.enabled_users:
                return True

            if context.user_role and context.user_role in flag.enabled_roles:
                return True

            if flag.rollout_percentage > 0:
                return rollout_bucket(flag_name, context.subject) <= flag.rollout_percentage

            return False
        except Exception:
            logger.exception("Error checking feature flag %s", flag_name)
            return False

    async def get_flag(self, flag_name: str) -> FeatureFlag | None:
        cached = self._cache.get(flag_name)
        if cached and self.clock() < cached[1]:
            return cached[0]

        flag = await self.source.get(flag_name)
        if flag is not None:
            self._cache[flag_name] = (flag, self.clock() + self.cache_ttl)
        else:
            self._cache.pop(flag_name, None)
        return flag

    async def get_all_flags(self) -> list[FeatureFlag]:
        return sorted(await self.source.all(), key=lambda flag: flag.name)

    async def update_flag(self, flag_name: str, **updates: Any) -> FeatureFlag:
        """
        Update a flag in the source and refresh its cache entry.

        Raises:
            ValueError: If the flag does not exist, or an update names an
                unknown field or carries an invalid value
        """
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        current = await self.source.get(flag_name)
        if current is None:
            raise ValueError(f"Unknown feature flag: {flag_name}")

        try:
            updated = FeatureFlag.model_validate({
                **current.model_dump(),
                **updates,
                "updated_at": datetime.now(UTC),
            })
        except ValidationError as e:
            raise ValueError(f"Invalid update for flag {flag_name}") from e

        await self.source.save(updated)
        self._cache[flag_name] = (updated, self.clock() + self.cache_ttl)
        logger.info("Feature flag %s updated: %s", flag_name, sorted(updates))
        return updated

    def clear_cache(self, flag_name: str | None = None) -> None:
        if flag_name:
            self._cache.pop(flag_name, None)
        else:
            self._cache.clear()

    async def warm(self) -> int:
        """Load every flag into the cache. Returns the number cached."""
        expires_at = self.clock() + self.cache_ttl
        flags = await self.source.all()
        for flag in flags:
            self._cache[flag.name] = (flag, expires_at)
        return len(flags)


class AuthFeatureFlags:
    """Named checks for the built-in authentication flags."""

    def __init__(self, service: FeatureFlagService):
        self.service = service

    async def is_secure_auth_enabled(self, context: FeatureFlagContext) -> bool:
        return await self.service.is_enabled("secure-authentication", context)

    async def is_password_strength_validation_enabled(self, context: FeatureFlagContext) -> bool:
        return await self.service.is_enabled("password-strength-validation", context)

    async def is_account_lockout_enabled(self, context: FeatureFlagContext) -> bool:
        return await self.service.is_enabled("account-lockout", context)

    async def is_email_verification_required(self, context: FeatureFlagContext) -> bool:
        return await self.service.is_enabled("email-verification-required", context)

    async def is_rate_limiting_enabled(self, context: FeatureFlagContext) -> bool:
        return await self.service.is_enabled("rate-limiting", context)

    async def is_security_logging_enabled(self, context: FeatureFlagContext) -> bool:
        return await self.service.is_enabled("security-logging", context)

    async def is_password_reset_v2_enabled(self, context: FeatureFlagContext) -> bool:
        return await self.service.is_enabled("password-reset-v2", context)

    async def is_session_management_v2_enabled(self, context: FeatureFlagContext) -> bool:
        return await self.service.is_enabled("session-management-v2", context)


def require_feature(flag_name: str):
    """
    Dependency that hides an endpoint when ``flag_name`` is off.

    The subject comes from ``request.state`` (``user_id``, ``user_role``,
    ``email``) as set by the authentication layer. Client headers are never
    trusted for it.

    Usage:
        @router.post("/password-reset", dependencies=[Depends(require_feature("password-reset-v2"))])
        async def reset_password(...):
            ...
    """

    async def dependency(request: Request) -> None:
        plane = request.app.state.control_plane
        context = FeatureFlagContext(
            user_id=getattr(request.state, "user_id", None),
            user_role=getattr(request.state, "user_role", None),
            email=getattr(request.state, "email", None),
            environment=plane.settings.ENVIRONMENT,
            ip_address=get_client_ip(request),
        )
        if not await plane.feature_flags.is_enabled(flag_name, context):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Feature not available")

    return dependency
