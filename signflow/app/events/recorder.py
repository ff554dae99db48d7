from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from signflow.app.events.models import AuditAction, AuditRecord, SubjectType

logger = logging.getLogger("signflow.audit")


class AuditRecorder(Protocol):
    """
    Interface of the external audit collaborator.

    Implementations may raise; callers in the core go through
    ``SafeAuditor`` so a failed write never fails the originating
    operation.
    """

    async def record(self, record: AuditRecord) -> None:
        ...


class NullAuditRecorder:
    """A safe no-op recorder for tests and tooling that do not audit."""

    async def record(self, record: AuditRecord) -> None:
        return


class LoggingAuditRecorder:
    """
    Writes audit records to a dedicated structured logger.

    Intended to be shipped to an append-only sink by the log pipeline.
    """

    def __init__(self, logger_name: str = "signflow.audit.trail") -> None:
        self._log = logging.getLogger(logger_name)

    async def record(self, record: AuditRecord) -> None:
        self._log.info(
            "audit_record",
            extra={"audit": record.model_dump(mode="json")},
        )


class SafeAuditor:
    """
    Fire-and-forget front for an AuditRecorder.

    Recording failures are logged here and never propagated.
    """

    def __init__(self, recorder: AuditRecorder) -> None:
        self.recorder = recorder

    async def record(
        self,
        *,
        actor_id: Optional[str],
        action: AuditAction,
        subject_type: SubjectType,
        subject_id: str,
        client_ip: Optional[str] = None,
        **context: Any,
    ) -> None:
        try:
            await self.recorder.record(
                AuditRecord(
                    actor_id=actor_id,
                    action=action,
                    subject_type=subject_type,
                    subject_id=subject_id,
                    client_ip=client_ip,
                    context=context,
                )
            )
        except Exception:
            logger.exception(
                "audit_record_failed",
                extra={
                    "action": action.value,
                    "subject_id": subject_id,
                },
            )
