from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from signflow.app.events import AuditAction, SafeAuditor, SubjectType
from signflow.app.schemas.jobs import SigningJob, utcnow
from signflow.app.storage.jobs import JobStore

logger = logging.getLogger("signflow.sweeper")


class ExpirySweeper:
    """
    Periodically expires jobs the user never approved.

    Jobs past ``expires_at`` in INITIATED or AWAITING_USER become EXPIRED.
    Jobs in any later state are left alone.
    """

    def __init__(
        self,
        *,
        jobs: JobStore,
        auditor: SafeAuditor,
        interval_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.jobs = jobs
        self.auditor = auditor
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    async def run_once(self, now: Optional[datetime] = None) -> List[SigningJob]:
        expired = await self.jobs.expire_stale(now or self._clock())
        for job in expired:
            await self.auditor.record(
                actor_id=job.owner_id,
                action=AuditAction.SIGN_EXPIRED,
                subject_type=SubjectType.SIGNING_JOB,
                subject_id=str(job.id),
                variant=job.variant.value,
            )
        if expired:
            logger.info("signing_jobs_expired", extra={"count": len(expired)})
        return expired

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                logger.exception("expiry_sweep_failed")

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
