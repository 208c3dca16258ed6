"""
Security event audit trail.

Every authentication-relevant action produces one immutable SecurityEvent.
It is written twice:

- to a bounded most-recent-N list per subject in the cache store
  (``auth:events:user:<id>`` or ``auth:events:email:<email>``), refreshed
  with a TTL on every write;
- to the ``security_events`` table for reporting.

Logging never raises into the caller. A write that fails on either side
is reported on the fallback logger with the full event payload.

Usage:
    security_logger = SecurityLogger(store, sessionmaker)
    await security_logger.log_authentication_attempt(
        email, success=False, ip_address=ip, user_agent=ua,
        failure_reason="invalid_password",
    )
"""

import asyncio
import json
import logging
import time
from collections import Counter, defaultdict
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from authguard.core.logging import get_fallback_logger
from authguard.models.security_event import SecurityEventRecord, SecurityEventType
from authguard.services.cache_store import CacheStore

logger = logging.getLogger(__name__)

EVENTS_KEY_PREFIX = "auth:events:"

# Suspicious cluster thresholds used by the security report
BRUTE_FORCE_THRESHOLD = 10  # failed logins per IP
PASSWORD_RESET_ABUSE_THRESHOLD = 5  # reset requests per IP
CREDENTIAL_STUFFING_THRESHOLD = 5  # failed logins per e-mail...
CREDENTIAL_STUFFING_WINDOW = timedelta(minutes=15)  # ...inside this window
HIGH_ACTIVITY_THRESHOLD = 100  # events per IP
TOP_IP_LIMIT = 10


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=UTC)


@dataclass(frozen=True)
class SecurityEvent:
    """One authentication-relevant occurrence. Never mutated after creation."""

    event_type: SecurityEventType
    success: bool
    ip_address: str
    user_agent: str
    timestamp: datetime
    user_id: str | None = None
    email: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventType": self.event_type.value,
            "success": self.success,
            "userId": self.user_id,
            "email": self.email,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SecurityEvent":
        return cls(
            event_type=SecurityEventType(data["eventType"]),
            success=bool(data["success"]),
            user_id=data.get("userId"),
            email=data.get("email"),
            ip_address=data.get("ipAddress", "unknown"),
            user_agent=data.get("userAgent", "unknown"),
            timestamp=_as_utc(datetime.fromisoformat(data["timestamp"])),
            metadata=data.get("metadata") or {},
        )

    @classmethod
    def from_record(cls, record: SecurityEventRecord) -> "SecurityEvent":
        return cls(
            event_type=SecurityEventType(record.event_type),
            success=record.success,
            user_id=record.user_id,
            email=record.email,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            timestamp=_as_utc(record.timestamp),
            metadata=record.event_metadata or {},
        )


@dataclass
class SecurityEventFilter:
    """Criteria for querying stored events. Unset fields do not filter."""

    user_id: str | None = None
    email: str | None = None
    event_type: SecurityEventType | None = None
    success: bool | None = None
    ip_address: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int = 100
    offset: int = 0


def events_key(user_id: str | None, email: str | None) -> str | None:
    if user_id:
        return f"{EVENTS_KEY_PREFIX}user:{user_id}"
    if email:
        return f"{EVENTS_KEY_PREFIX}email:{email.strip().lower()}"
    return None


class SecurityLogger:
    """Append-only security audit log with reporting."""

    def __init__(
        self,
        store: CacheStore,
        sessionmaker: async_sessionmaker[AsyncSession] | None = None,
        max_events: int = 100,
        events_ttl: int = 86400,
        clock: Callable[[], float] = time.time,
        db_timeout: float = 5.0,
    ):
        self.store = store
        self.sessionmaker = sessionmaker
        self.max_events = max_events
        self.events_ttl = events_ttl
        self.clock = clock
        # Seconds allowed for each database round of a write or query
        self.db_timeout = db_timeout

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=UTC)

    async def log_security_event(
        self,
        event_type: SecurityEventType,
        success: bool,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
        user_id: str | None = None,
        email: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> SecurityEvent | None:
        """
        Record one event in the recent-events list and the durable table.

        Never raises. Returns the event that was logged, or None when the
        event could not be built (it then goes to the fallback logger only).
        """
        try:
            event = SecurityEvent(
                event_type=SecurityEventType(event_type),
                success=success,
                ip_address=ip_address or "unknown",
                user_agent=user_agent or "unknown",
                timestamp=self.now(),
                user_id=user_id,
                email=email,
                metadata=dict(metadata or {}),
            )
        except (TypeError, ValueError):
            logger.error("Rejected malformed security event of type %r", event_type)
            self._write_raw_fallback({
                "eventType": str(event_type),
                "success": success,
                "userId": user_id,
                "email": email,
                "ipAddress": ip_address,
                "userAgent": user_agent,
                "metadata": metadata,
            })
            return None

        failures = []
        try:
            if not await self._append_recent(event):
                failures.append("cache")
        except Exception:
            logger.exception("Unexpected error caching security event")
            failures.append("cache")

        try:
            await self._persist(event)
        except Exception as e:
            logger.error("Failed to store security event: %s", type(e).__name__)
            failures.append("database")

        if failures:
            self._write_fallback(event, failures)
        return event

    async def _append_recent(self, event: SecurityEvent) -> bool:
        key = events_key(event.user_id, event.email)
        if key is None:
            return True

        results = await self.store.pipeline([
            ("lpush", key, json.dumps(event.to_dict(), default=str)),
            ("ltrim", key, 0, self.max_events - 1),
            ("expire", key, self.events_ttl),
        ])
        return results is not None

    async def _persist(self, event: SecurityEvent) -> None:
        if self.sessionmaker is None:
            return
        await asyncio.wait_for(self._insert(event), timeout=self.db_timeout)

    async def _insert(self, event: SecurityEvent) -> None:
        async with self.sessionmaker() as session:
            session.add(SecurityEventRecord(
                event_type=event.event_type.value,
                success=event.success,
                user_id=event.user_id,
                email=event.email,
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                timestamp=event.timestamp,
                event_metadata=dict(event.metadata),
            ))
            await session.commit()

    def _write_fallback(self, event: SecurityEvent, failures: list[str]) -> None:
        try:
            get_fallback_logger().error(
                "Security event not persisted to %s: %s",
                ", ".join(failures),
                json.dumps(event.to_dict(), default=str),
            )
        except Exception:
            # Last resort; never propagate
            logger.exception("Fallback security log write failed")

    def _write_raw_fallback(self, payload: dict[str, Any]) -> None:
        try:
            get_fallback_logger().error(
                "Security event rejected: %s", json.dumps(payload, default=str)
            )
        except Exception:
            logger.exception("Fallback security log write failed")

    # ------------------------------------------------------------------
    # Category helpers
    # ------------------------------------------------------------------

    async def log_authentication_attempt(
        self,
        email: str,
        success: bool,
        ip_address: str,
        user_agent: str,
        user_id: str | None = None,
        failure_reason: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> SecurityEvent | None:
        metadata: dict[str, Any] = {"action": "login", **(details or {})}
        if failure_reason:
            metadata["failureReason"] = failure_reason
        return await self.log_security_event(
            SecurityEventType.LOGIN_ATTEMPT, success, ip_address, user_agent,
            user_id=user_id, email=email, metadata=metadata,
        )

    async def log_registration(
        self,
        email: str,
        success: bool,
        ip_address: str,
        user_agent: str,
        user_id: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> SecurityEvent | None:
        return await self.log_security_event(
            SecurityEventType.REGISTRATION, success, ip_address, user_agent,
            user_id=user_id, email=email, metadata={"action": "register", **(details or {})},
        )

    async def log_password_change(
        self,
        user_id: str,
        success: bool,
        ip_address: str,
        user_agent: str,
        email: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> SecurityEvent | None:
        return await self.log_security_event(
            SecurityEventType.PASSWORD_CHANGE, success, ip_address, user_agent,
            user_id=user_id, email=email, metadata={"action": "password_change", **(details or {})},
        )

    async def log_password_reset_request(
        self,
        email: str,
        success: bool,
        ip_address: str,
        user_agent: str,
        user_id: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> SecurityEvent | None:
        return await self.log_security_event(
            SecurityEventType.PASSWORD_RESET_REQUEST, success, ip_address, user_agent,
            user_id=user_id, email=email, metadata={"action": "password_reset_request", **(details or {})},
        )

    async def log_password_reset_complete(
        self,
        email: str,
        success: bool,
        ip_address: str,
        user_agent: str,
        user_id: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> SecurityEvent | None:
        return await self.log_security_event(
            SecurityEventType.PASSWORD_RESET_COMPLETE, success, ip_address, user_agent,
            user_id=user_id, email=email, metadata={"action": "password_reset_complete", **(details or {})},
        )

    async def log_email_verification(
        self,
        email: str,
        success: bool,
        ip_address: str,
        user_agent: str,
        user_id: str | None = None,
        resend: bool = False,
        details: Mapping[str, Any] | None = None,
    ) -> SecurityEvent | None:
        return await self.log_security_event(
            SecurityEventType.EMAIL_VERIFICATION, success, ip_address, user_agent,
            user_id=user_id, email=email,
            metadata={"action": "resend" if resend else "verify", **(details or {})},
        )

    async def log_account_lockout(
        self,
        email: str,
        reason: str,
        duration_seconds: int,
        ip_address: str,
        user_agent: str,
        user_id: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> SecurityEvent | None:
        """A lockout is a protective measure that succeeded, so ``success`` is True."""
        now = self.now()
        logger.warning("Account lockout applied for %ds: %s", duration_seconds, reason)
        return await self.log_security_event(
            SecurityEventType.ACCOUNT_LOCKOUT, True, ip_address, user_agent,
            user_id=user_id, email=email,
            metadata={
                "reason": reason,
                "duration": duration_seconds,
                "lockoutTime": now.isoformat(),
                "unlockTime": (now + timedelta(seconds=duration_seconds)).isoformat(),
                **(details or {}),
            },
        )

    async def log_account_unlock(
        self,
        email: str,
        method: str,
        ip_address: str,
        user_agent: str,
        user_id: str | None = None,
        admin_id: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> SecurityEvent | None:
        """``method`` is ``"automatic"`` or ``"admin"``."""
        return await self.log_security_event(
            SecurityEventType.ACCOUNT_UNLOCK, True, ip_address, user_agent,
            user_id=user_id, email=email,
            metadata={"method": method, "adminId": admin_id, **(details or {})},
        )

    async def log_suspicious_activity(
        self,
        description: str,
        severity: str,
        ip_address: str,
        user_agent: str,
        user_id: str | None = None,
        email: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> SecurityEvent | None:
        """Suspicious activity is always recorded as a failure. Severity: LOW, MEDIUM, HIGH, CRITICAL."""
        logger.warning("Suspicious activity detected (%s): %s", severity, description)
        return await self.log_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY, False, ip_address, user_agent,
            user_id=user_id, email=email,
            metadata={"description": description, "severity": severity, **(details or {})},
        )

    async def log_session_created(
        self,
        user_id: str,
        session_id: str,
        ip_address: str,
        user_agent: str,
        details: Mapping[str, Any] | None = None,
    ) -> SecurityEvent | None:
        return await self.log_security_event(
            SecurityEventType.SESSION_CREATED, True, ip_address, user_agent,
            user_id=user_id, metadata={"sessionId": session_id, **(details or {})},
        )

    async def log_session_expired(
        self,
        user_id: str,
        session_id: str,
        ip_address: str,
        user_agent: str,
        reason: str = "timeout",
        details: Mapping[str, Any] | None = None,
    ) -> SecurityEvent | None:
        """``reason`` is one of timeout, logout, password_change, admin_revoke."""
        return await self.log_security_event(
            SecurityEventType.SESSION_EXPIRED, True, ip_address, user_agent,
            user_id=user_id, metadata={"sessionId": session_id, "reason": reason, **(details or {})},
        )

    async def log_token_generated(
        self,
        token_type: str,
        user_id: str | None = None,
        email: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> SecurityEvent | None:
        return await self.log_security_event(
            SecurityEventType.TOKEN_GENERATED, True,
            ip_address or "system", user_agent or "system",
            user_id=user_id, email=email, metadata={"tokenType": token_type, **(details or {})},
        )

    async def log_token_used(
        self,
        token_type: str,
        success: bool,
        ip_address: str,
        user_agent: str,
        user_id: str | None = None,
        email: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> SecurityEvent | None:
        return await self.log_security_event(
            SecurityEventType.TOKEN_USED, success, ip_address, user_agent,
            user_id=user_id, email=email, metadata={"tokenType": token_type, **(details or {})},
        )

    async def log_error(
        self,
        operation: str,
        error_type: str,
        request_id: str,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
        user_id: str | None = None,
        email: str | None = None,
    ) -> SecurityEvent | None:
        """Record a handled request failure. Only the error type is stored, never its text."""
        return await self.log_security_event(
            SecurityEventType.ERROR_OCCURRED, False, ip_address, user_agent,
            user_id=user_id, email=email,
            metadata={"operation": operation, "errorType": error_type, "requestId": request_id},
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_user_security_events(
        self,
        user_id: str | None = None,
        email: str | None = None,
        limit: int = 50,
    ) -> list[SecurityEvent]:
        """Most recent events for a subject, newest first, from the cache list."""
        key = events_key(user_id, email)
        if key is None or limit <= 0:
            return []

        events = []
        for raw in await self.store.lrange(key, 0, min(limit, self.max_events) - 1):
            try:
                events.append(SecurityEvent.from_dict(json.loads(raw)))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed cached security event")
        return events

    async def get_security_events(self, event_filter: SecurityEventFilter) -> list[SecurityEvent]:
        """Query the durable table, newest first."""
        if self.sessionmaker is None:
            return []

        query = select(SecurityEventRecord)
        if event_filter.user_id is not None:
            query = query.where(SecurityEventRecord.user_id == event_filter.user_id)
        if event_filter.email is not None:
            query = query.where(SecurityEventRecord.email == event_filter.email)
        if event_filter.event_type is not None:
            query = query.where(SecurityEventRecord.event_type == SecurityEventType(event_filter.event_type).value)
        if event_filter.success is not None:
            query = query.where(SecurityEventRecord.success == event_filter.success)
        if event_filter.ip_address is not None:
            query = query.where(SecurityEventRecord.ip_address == event_filter.ip_address)
        if event_filter.start is not None:
            query = query.where(SecurityEventRecord.timestamp >= event_filter.start)
        if event_filter.end is not None:
            query = query.where(SecurityEventRecord.timestamp <= event_filter.end)

        query = (
            query.order_by(SecurityEventRecord.timestamp.desc(), SecurityEventRecord.id.desc())
            .offset(event_filter.offset)
            .limit(event_filter.limit)
        )

        return await asyncio.wait_for(self._fetch(query), timeout=self.db_timeout)

    async def _fetch(self, query) -> list[SecurityEvent]:
        async with self.sessionmaker() as session:
            result = await session.execute(query)
            return [SecurityEvent.from_record(record) for record in result.scalars().all()]

    # ------------------------------------------------------------------
    # Reporting and maintenance
    # ------------------------------------------------------------------

    async def generate_security_report(self, start: datetime, end: datetime) -> dict[str, Any]:
        """
        Aggregate stored events between ``start`` and ``end`` (inclusive).

        Returns:
            {"period": {...}, "total_events", "successful_events",
             "failed_events", "events_by_type", "events_by_hour",
             "top_ip_addresses": [{"ip_address", "count"}],
             "suspicious_activities": [{"type", "count", "description", ...}]}
        """
        events: list[SecurityEvent] = []
        if self.sessionmaker is not None:
            query = (
                select(SecurityEventRecord)
                .where(SecurityEventRecord.timestamp >= start, SecurityEventRecord.timestamp <= end)
                .order_by(SecurityEventRecord.timestamp)
            )
            events = await asyncio.wait_for(self._fetch(query), timeout=self.db_timeout)

        successful = sum(1 for event in events if event.success)
        by_type = Counter(event.event_type.value for event in events)
        by_hour = Counter(event.timestamp.strftime("%Y-%m-%dT%H:00") for event in events)
        by_ip = Counter(event.ip_address for event in events)

        return {
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "total_events": len(events),
            "successful_events": successful,
            "failed_events": len(events) - successful,
            "events_by_type": dict(by_type),
            "events_by_hour": dict(sorted(by_hour.items())),
            "top_ip_addresses": [
                {"ip_address": ip, "count": count} for ip, count in by_ip.most_common(TOP_IP_LIMIT)
            ],
            "suspicious_activities": detect_suspicious_activity(events),
        }

    async def cleanup_old_events(self, older_than_days: int = 90) -> int:
        """Delete stored events older than ``older_than_days``. Returns rows removed."""
        if self.sessionmaker is None:
            return 0

        cutoff = self.now() - timedelta(days=older_than_days)
        try:
            removed = await asyncio.wait_for(self._delete_before(cutoff), timeout=self.db_timeout)
        except (SQLAlchemyError, TimeoutError):
            logger.exception("Failed to clean up old security events")
            return 0

        removed = removed or 0
        logger.info("Removed %d security events older than %d days", removed, older_than_days)
        return removed

    async def _delete_before(self, cutoff: datetime) -> int:
        async with self.sessionmaker() as session:
            result = await session.execute(
                delete(SecurityEventRecord).where(SecurityEventRecord.timestamp < cutoff)
            )
            await session.commit()
            return result.rowcount


def detect_suspicious_activity(events: list[SecurityEvent]) -> list[dict[str, Any]]:
    """Find clusters of events that look like attacks. ``events`` must be sorted by time."""
    failed_logins_by_ip: Counter[str] = Counter()
    resets_by_ip: Counter[str] = Counter()
    events_by_ip: Counter[str] = Counter()
    failed_logins_by_email: dict[str, list[datetime]] = defaultdict(list)

    for event in events:
        events_by_ip[event.ip_address] += 1
        if event.event_type == SecurityEventType.LOGIN_ATTEMPT and not event.success:
            failed_logins_by_ip[event.ip_address] += 1
            if event.email:
                failed_logins_by_email[event.email.lower()].append(event.timestamp)
        elif event.event_type == SecurityEventType.PASSWORD_RESET_REQUEST:
            resets_by_ip[event.ip_address] += 1

    findings: list[dict[str, Any]] = []

    for ip, count in failed_logins_by_ip.items():
        if count >= BRUTE_FORCE_THRESHOLD:
            findings.append({
                "type": "brute_force_attempt",
                "ip_address": ip,
                "count": count,
                "description": f"{count} failed login attempts from one IP address",
            })

    for ip, count in resets_by_ip.items():
        if count >= PASSWORD_RESET_ABUSE_THRESHOLD:
            findings.append({
                "type": "password_reset_abuse",
                "ip_address": ip,
                "count": count,
                "description": f"{count} password reset requests from one IP address",
            })

    for email, timestamps in failed_logins_by_email.items():
        peak = _peak_in_window(timestamps, CREDENTIAL_STUFFING_WINDOW)
        if peak >= CREDENTIAL_STUFFING_THRESHOLD:
            findings.append({
                "type": "credential_stuffing",
                "email": email,
                "count": peak,
                "description": f"{peak} failed logins for one account within 15 minutes",
            })

    for ip, count in events_by_ip.items():
        if count >= HIGH_ACTIVITY_THRESHOLD:
            findings.append({
                "type": "high_activity_ip",
                "ip_address": ip,
                "count": count,
                "description": f"{count} security events from one IP address",
            })

    return findings


def _peak_in_window(timestamps: list[datetime], window: timedelta) -> int:
    """Largest number of sorted timestamps falling inside any span of ``window``."""
    peak = 0
    left = 0
    for right, ts in enumerate(timestamps):
        while ts - timestamps[left] > window:
            left += 1
        peak = max(peak, right - left + 1)
    return peak
