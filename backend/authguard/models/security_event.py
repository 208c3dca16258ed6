"""
Durable copy of security events, used for reporting.

The per-user recent-events list in the cache store is the hot path; this
table is append-only and only read by reports and admin queries.
"""

import enum
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from authguard.db.base import Base


class SecurityEventType(str, enum.Enum):
    LOGIN_ATTEMPT = "LOGIN_ATTEMPT"
    REGISTRATION = "REGISTRATION"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    PASSWORD_RESET_COMPLETE = "PASSWORD_RESET_COMPLETE"
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    ACCOUNT_LOCKOUT = "ACCOUNT_LOCKOUT"
    ACCOUNT_UNLOCK = "ACCOUNT_UNLOCK"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    TOKEN_GENERATED = "TOKEN_GENERATED"
    TOKEN_USED = "TOKEN_USED"
    ERROR_OCCURRED = "ERROR_OCCURRED"


class SecurityEventRecord(Base):
    """One stored security event."""

    __tablename__ = "security_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False)  # IPv6 max length
    user_agent: Mapped[str] = mapped_column(Text, nullable=False, default="unknown")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    event_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("idx_security_events_ip_timestamp", "ip_address", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<SecurityEventRecord {self.event_type} at {self.timestamp}>"
