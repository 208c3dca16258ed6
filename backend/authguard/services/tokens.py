"""
Cache for one-time e-mail verification and password reset tokens.

Tokens are stored under ``auth:token:<purpose>:<token>`` with a TTL equal to
their remaining lifetime. A secondary key ``auth:user_tokens:<user>:<purpose>``
points at the newest token so that issuing a new one can invalidate the
previous one: at most one live token per purpose per user.
"""

import json
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from authguard.core.errors import AuthError, AuthErrorType
from authguard.services.cache_store import CacheStore

logger = logging.getLogger(__name__)

TOKEN_KEY_PREFIX = "auth:token:"
USER_TOKEN_KEY_PREFIX = "auth:user_tokens:"


class TokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass(frozen=True)
class AuthToken:
    token: str
    purpose: TokenPurpose
    user_id: str
    email: str
    expires_at: datetime
    created_at: datetime


def _token_key(purpose: TokenPurpose, token: str) -> str:
    return f"{TOKEN_KEY_PREFIX}{TokenPurpose(purpose).value}:{token}"


def _user_token_key(user_id: str, purpose: TokenPurpose) -> str:
    return f"{USER_TOKEN_KEY_PREFIX}{user_id}:{TokenPurpose(purpose).value}"


class TokenCache:
    """Store, look up and invalidate one-time auth tokens."""

    def __init__(
        self,
        store: CacheStore,
        clock: Callable[[], float] = time.time,
        token_ttl: int = 3600,
    ):
        self.store = store
        self.clock = clock
        self.token_ttl = token_ttl

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=UTC)

    async def cache_token(
        self,
        token: str,
        purpose: TokenPurpose,
        user_id: str,
        email: str,
        expires_at: datetime | None = None,
    ) -> AuthToken | None:
        """
        Cache a newly issued token, replacing the user's previous one.

        Without ``expires_at`` the token lives for ``token_ttl`` seconds.

        Returns the stored token, or None when it is already expired or the
        store is unavailable.
        """
        purpose = TokenPurpose(purpose)
        now = self.now()
        if expires_at is None:
            expires_at = now + timedelta(seconds=self.token_ttl)
        elif expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        ttl = math.ceil((expires_at - now).total_seconds())
        if ttl <= 0:
            return None

        previous = await self.get_user_token(user_id, purpose)
        if previous and previous != token:
            await self.store.delete(_token_key(purpose, previous))

        record = AuthToken(
            token=token,
            purpose=purpose,
            user_id=user_id,
            email=email,
            expires_at=expires_at,
            created_at=now,
        )
        payload = {
            "userId": user_id,
            "email": email,
            "purpose": purpose.value,
            "expiresAt": expires_at.isoformat(),
            "createdAt": now.isoformat(),
        }

        results = await self.store.pipeline([
            ("setex", _token_key(purpose, token), ttl, json.dumps(payload)),
            ("setex", _user_token_key(user_id, purpose), ttl, token),
        ])
        if results is None:
            logger.error("Failed to cache %s token, store unavailable", purpose.value)
            return None
        return record

    async def get_token(self, token: str, purpose: TokenPurpose) -> AuthToken | None:
        """Look up a token. None when unknown, invalidated or evicted by its TTL."""
        purpose = TokenPurpose(purpose)
        return self._parse(token, purpose, await self.store.get_json(_token_key(purpose, token)))

    def _parse(self, token: str, purpose: TokenPurpose, raw: Any) -> AuthToken | None:
        if not raw:
            return None

        try:
            return AuthToken(
                token=token,
                purpose=purpose,
                user_id=raw["userId"],
                email=raw["email"],
                expires_at=datetime.fromisoformat(raw["expiresAt"]),
                created_at=datetime.fromisoformat(raw["createdAt"]),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed %s token record", purpose.value)
            return None

    async def get_user_token(self, user_id: str, purpose: TokenPurpose) -> str | None:
        """The newest live token issued to ``user_id`` for ``purpose``."""
        return await self.store.get(_user_token_key(user_id, purpose))

    async def invalidate_token(self, token: str, purpose: TokenPurpose) -> None:
        """Remove a token and, if it is still the user's newest, its index entry."""
        purpose = TokenPurpose(purpose)
        record = await self.get_token(token, purpose)
        if record is None:
            await self.store.delete(_token_key(purpose, token))
            return

        keys = [_token_key(purpose, token)]
        if await self.get_user_token(record.user_id, purpose) == token:
            keys.append(_user_token_key(record.user_id, purpose))
        await self.store.delete(*keys)

    async def consume_token(self, token: str, purpose: TokenPurpose) -> AuthToken:
        """
        Validate and burn a token.

        The record is taken with one GETDEL, so of several concurrent
        consumers exactly one gets it.

        Raises:
            AuthError: TOKEN_INVALID when unknown or already used,
                TOKEN_EXPIRED when past its expiry time
        """
        purpose = TokenPurpose(purpose)
        raw = await self.store.getdel(_token_key(purpose, token))
        try:
            payload = json.loads(raw) if raw is not None else None
        except json.JSONDecodeError:
            payload = None
        record = self._parse(token, purpose, payload)
        if record is None:
            raise AuthError(AuthErrorType.TOKEN_INVALID, log_message=f"Unknown {purpose.value} token")

        if await self.get_user_token(record.user_id, purpose) == token:
            await self.store.delete(_user_token_key(record.user_id, purpose))
        if record.expires_at <= self.now():
            raise AuthError(AuthErrorType.TOKEN_EXPIRED, log_message=f"Expired {record.purpose.value} token")
        return record
