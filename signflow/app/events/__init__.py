from .models import AuditAction, AuditRecord, SubjectType
from .recorder import (
    AuditRecorder,
    LoggingAuditRecorder,
    NullAuditRecorder,
    SafeAuditor,
)
from .memory_recorder import MemoryAuditRecorder

__all__ = [
    "AuditAction",
    "AuditRecord",
    "SubjectType",
    "AuditRecorder",
    "LoggingAuditRecorder",
    "NullAuditRecorder",
    "SafeAuditor",
    "MemoryAuditRecorder",
]
