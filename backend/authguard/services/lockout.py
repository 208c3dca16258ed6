"""
Login attempt counting and timed account lockout.

Lock state lives entirely in the cache store:

- ``auth:attempts:<email>`` is an integer counter whose TTL is renewed on
  every failed attempt.
- ``auth:lockout:<email>`` holds the LockoutRecord and expires when the lock
  does. Absence of the record is the only unlock signal; there is no expiry
  event.
- ``auth:lockouts:active`` is a sorted set (email -> locked-at ms) for admin
  enumeration. It does not share the record TTL, so it can list e-mails
  whose lock already expired; every candidate is re-checked against the
  record before it is reported.

Store failures degrade to "not locked / zero attempts" and never raise.
"""

import json
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from authguard.services.cache_store import CacheStore

logger = logging.getLogger(__name__)

ATTEMPTS_KEY_PREFIX = "auth:attempts:"
LOCKOUT_KEY_PREFIX = "auth:lockout:"
ACTIVE_LOCKOUTS_KEY = "auth:lockouts:active"


@dataclass(frozen=True)
class LockoutRecord:
    """A live lock on one e-mail address."""

    email: str
    locked_until: datetime
    reason: str
    locked_at: datetime

    def remaining_seconds(self, now: datetime) -> float:
        return max(0.0, (self.locked_until - now).total_seconds())

    def to_dict(self) -> dict:
        return {
            "email": self.email,
            "lockedUntil": self.locked_until.isoformat(),
            "reason": self.reason,
            "lockedAt": self.locked_at.isoformat(),
        }


def normalize_email(email: str) -> str:
    return email.strip().lower()


class LockoutManager:
    """Attempt counters and lock records for e-mail identities."""

    def __init__(
        self,
        store: CacheStore,
        login_attempts_ttl: int = 900,
        clock: Callable[[], float] = time.time,
        default_lockout_ttl: int = 1800,
    ):
        self.store = store
        self.login_attempts_ttl = login_attempts_ttl
        self.default_lockout_ttl = default_lockout_ttl
        self.clock = clock

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=UTC)

    # ------------------------------------------------------------------
    # Attempt counters
    # ------------------------------------------------------------------

    async def increment_login_attempts(self, email: str) -> int:
        """
        Count one failed attempt and renew the counter TTL.

        Returns the new count. When the store is unavailable the attempt
        cannot be counted and 1 is returned.
        """
        key = f"{ATTEMPTS_KEY_PREFIX}{normalize_email(email)}"
        count = await self.store.increment(key, ttl=self.login_attempts_ttl)
        if count is None:
            logger.warning("Could not record login attempt, store unavailable")
            return 1
        return count

    async def get_login_attempts(self, email: str) -> int:
        value = await self.store.get(f"{ATTEMPTS_KEY_PREFIX}{normalize_email(email)}")
        try:
            return int(value) if value else 0
        except ValueError:
            return 0

    async def reset_login_attempts(self, email: str) -> None:
        """Forget failed attempts, called after a successful login."""
        await self.store.delete(f"{ATTEMPTS_KEY_PREFIX}{normalize_email(email)}")

    # ------------------------------------------------------------------
    # Lock records
    # ------------------------------------------------------------------

    async def set_account_lockout(
        self,
        email: str,
        lockout_until: datetime | None = None,
        reason: str = "failed_attempts",
    ) -> LockoutRecord | None:
        """
        Lock an account until ``lockout_until`` (default: now plus
        ``default_lockout_ttl`` seconds).

        The record TTL equals the remaining lock time. A lock time already in
        the past is a no-op and returns None.
        """
        email = normalize_email(email)
        now = self.now()
        if lockout_until is None:
            lockout_until = now + timedelta(seconds=self.default_lockout_ttl)
        elif lockout_until.tzinfo is None:
            lockout_until = lockout_until.replace(tzinfo=UTC)
        ttl = math.ceil((lockout_until - now).total_seconds())
        if ttl <= 0:
            return None

        record = LockoutRecord(
            email=email,
            locked_until=lockout_until,
            reason=reason,
            locked_at=now,
        )
        payload = json.dumps({
            "lockedUntil": lockout_until.isoformat(),
            "reason": reason,
            "lockedAt": now.isoformat(),
        })

        results = await self.store.pipeline([
            ("setex", f"{LOCKOUT_KEY_PREFIX}{email}", ttl, payload),
            ("zadd", ACTIVE_LOCKOUTS_KEY, {email: int(now.timestamp() * 1000)}),
        ])
        if results is None:
            logger.error("Failed to persist account lockout, store unavailable")
            return None

        logger.info("Account locked until %s: %s", lockout_until.isoformat(), reason)
        return record

    async def get_account_lockout(self, email: str) -> LockoutRecord | None:
        """
        Return the live lock for ``email``, or None.

        None means unlocked: the record was never written, was cleared, or
        its lock time has elapsed.
        """
        email = normalize_email(email)
        raw = await self.store.get_json(f"{LOCKOUT_KEY_PREFIX}{email}")
        if not raw:
            return None

        try:
            record = LockoutRecord(
                email=email,
                locked_until=datetime.fromisoformat(raw["lockedUntil"]),
                reason=raw.get("reason", ""),
                locked_at=datetime.fromisoformat(raw["lockedAt"]),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed lockout record")
            return None

        if record.locked_until <= self.now():
            return None
        return record

    async def clear_account_lockout(self, email: str) -> None:
        """Explicit unlock: remove the record, its index entry and attempt counters."""
        email = normalize_email(email)
        results = await self.store.pipeline([
            ("delete", f"{LOCKOUT_KEY_PREFIX}{email}"),
            ("zrem", ACTIVE_LOCKOUTS_KEY, email),
            ("delete", f"{ATTEMPTS_KEY_PREFIX}{email}"),
        ])
        if results is None:
            logger.error("Failed to clear account lockout, store unavailable")

    async def is_locked(self, email: str) -> bool:
        return await self.get_account_lockout(email) is not None

    # ------------------------------------------------------------------
    # Admin enumeration and maintenance
    # ------------------------------------------------------------------

    async def get_active_lockouts(self) -> list[LockoutRecord]:
        """List live locks, newest first. Index entries without a live record are skipped."""
        candidates = await self.store.zrangebyscore(ACTIVE_LOCKOUTS_KEY, "-inf", "+inf")
        records = []
        for email in candidates:
            record = await self.get_account_lockout(email)
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: r.locked_at, reverse=True)
        return records

    async def cleanup_expired_lockouts(self) -> int:
        """Drop index entries whose record is gone. Returns how many were removed."""
        candidates = await self.store.zrangebyscore(ACTIVE_LOCKOUTS_KEY, "-inf", "+inf")
        stale = [email for email in candidates if await self.get_account_lockout(email) is None]
        if not stale:
            return 0

        removed = await self.store.zrem(ACTIVE_LOCKOUTS_KEY, *stale)
        logger.info("Removed %d stale lockout index entries", removed)
        return removed
