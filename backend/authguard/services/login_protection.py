"""
Login lockout policy on top of the LockoutManager.

After ``max_failed_attempts`` consecutive failures the account is locked.
Lock duration backs off exponentially for repeat offenders:

    minutes = base * multiplier ** ((attempts - max_failed_attempts) // max_failed_attempts)

capped at ``max_lockout_minutes``. With the defaults (5 attempts, 30 min,
x2, 24 h cap) the 5th failure locks for 30 minutes, the 10th for 60, the
15th for 120 and so on.
"""

import logging
import math
from datetime import timedelta

from authguard.core.errors import account_locked_error
from authguard.services.lockout import LockoutManager, LockoutRecord
from authguard.services.security_logger import SecurityLogger

logger = logging.getLogger(__name__)


class LoginProtection:
    def __init__(
        self,
        lockout: LockoutManager,
        security_logger: SecurityLogger,
        max_failed_attempts: int = 5,
        base_lockout_minutes: int = 30,
        max_lockout_minutes: int = 24 * 60,
        backoff_multiplier: int = 2,
    ):
        self.lockout = lockout
        self.security_logger = security_logger
        self.max_failed_attempts = max_failed_attempts
        self.base_lockout_minutes = base_lockout_minutes
        self.max_lockout_minutes = max_lockout_minutes
        self.backoff_multiplier = backoff_multiplier

    def lockout_minutes(self, attempts: int) -> int:
        """Lock duration for the given failed attempt count."""
        level = max(0, attempts - self.max_failed_attempts) // self.max_failed_attempts
        minutes = self.base_lockout_minutes * self.backoff_multiplier ** level
        return min(minutes, self.max_lockout_minutes)

    async def check_login_allowed(self, email: str) -> None:
        """
        Raise if the account is locked.

        Raises:
            AuthError: ACCOUNT_LOCKED with retry_after set to the remaining seconds
        """
        record = await self.lockout.get_account_lockout(email)
        if record is None:
            return

        remaining = math.ceil(record.remaining_seconds(self.lockout.now()))
        raise account_locked_error(max(1, math.ceil(remaining / 60)), retry_after=remaining)

    async def record_failed_login(
        self,
        email: str,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
        user_id: str | None = None,
        failure_reason: str = "invalid_credentials",
    ) -> LockoutRecord | None:
        """Count a failure and lock the account once the threshold is reached. Returns the new lock, if any."""
        attempts = await self.lockout.increment_login_attempts(email)
        await self.security_logger.log_authentication_attempt(
            email, False, ip_address, user_agent,
            user_id=user_id, failure_reason=failure_reason,
            details={"attempts": attempts},
        )

        if attempts < self.max_failed_attempts:
            return None

        minutes = self.lockout_minutes(attempts)
        reason = f"{attempts} failed login attempts"
        record = await self.lockout.set_account_lockout(
            email, self.lockout.now() + timedelta(minutes=minutes), reason
        )
        if record is None:
            logger.error("Lockout threshold reached but lock could not be stored")
            return None

        await self.security_logger.log_account_lockout(
            email, reason, minutes * 60, ip_address, user_agent,
            user_id=user_id, details={"attempts": attempts},
        )
        return record

    async def record_successful_login(
        self,
        email: str,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
        user_id: str | None = None,
    ) -> None:
        await self.lockout.reset_login_attempts(email)
        await self.security_logger.log_authentication_attempt(
            email, True, ip_address, user_agent, user_id=user_id,
        )

    async def unlock(
        self,
        email: str,
        admin_id: str | None = None,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
    ) -> bool:
        """Admin unlock. Returns False when the account was not locked."""
        was_locked = await self.lockout.is_locked(email)
        await self.lockout.clear_account_lockout(email)
        await self.security_logger.log_account_unlock(
            email, "admin", ip_address, user_agent, admin_id=admin_id,
            details={"wasLocked": was_locked},
        )
        return was_locked
