from __future__ import annotations

from typing import List

from signflow.app.events.models import AuditAction, AuditRecord


class MemoryAuditRecorder:
    """
    In-memory recorder.

    Keeps records in arrival order; used by tests and local runs.
    """

    def __init__(self) -> None:
        self.records: List[AuditRecord] = []

    async def record(self, record: AuditRecord) -> None:
        self.records.append(record)

    def of_action(self, action: AuditAction) -> List[AuditRecord]:
        return [r for r in self.records if r.action is action]
