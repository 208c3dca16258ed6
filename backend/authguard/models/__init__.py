from authguard.models.security_event import SecurityEventRecord, SecurityEventType

__all__ = [
    "SecurityEventRecord",
    "SecurityEventType",
]
