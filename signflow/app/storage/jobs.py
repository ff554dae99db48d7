from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional, Protocol
from uuid import UUID

from signflow.app.core.errors import JobNotFound
from signflow.app.schemas.jobs import SigningJob
from signflow.app.storage.snapshots import SnapshotTable

logger = logging.getLogger("signflow.storage.jobs")


class JobStore(Protocol):
    """
    Persistence contract for signing jobs.

    ``update`` is the only write path for existing jobs and serializes
    writers per job id.
    """

    async def save(self, job: SigningJob) -> SigningJob:
        ...

    async def get(self, job_id: UUID) -> Optional[SigningJob]:
        ...

    async def update(
        self,
        job_id: UUID,
        mutate: Callable[[SigningJob], SigningJob],
    ) -> SigningJob:
        ...

    async def find_by_external_id(self, external_id: str) -> Optional[SigningJob]:
        ...

    async def find_by_owner(self, owner_id: str) -> List[SigningJob]:
        ...

    async def expire_stale(self, now: datetime) -> List[SigningJob]:
        ...

    async def delete_for_owner(self, owner_id: str) -> int:
        ...


class InMemoryJobStore:
    def __init__(self) -> None:
        self._table: SnapshotTable[UUID, SigningJob] = SnapshotTable()

    async def save(self, job: SigningJob) -> SigningJob:
        return self._table.put(job.id, job)

    async def get(self, job_id: UUID) -> Optional[SigningJob]:
        return self._table.get(job_id)

    async def update(
        self,
        job_id: UUID,
        mutate: Callable[[SigningJob], SigningJob],
    ) -> SigningJob:
        updated = self._table.update(job_id, mutate)
        if updated is None:
            raise JobNotFound(f"Signing job not found: {job_id}")
        return updated

    async def find_by_external_id(self, external_id: str) -> Optional[SigningJob]:
        for job in self._table.values():
            if job.external_id == external_id:
                return job
        return None

    async def find_by_owner(self, owner_id: str) -> List[SigningJob]:
        jobs = [job for job in self._table.values() if job.owner_id == owner_id]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    async def expire_stale(self, now: datetime) -> List[SigningJob]:
        """
        Move every pre-approval job whose deadline passed to EXPIRED.

        The status is re-checked under the job lock, so a callback that
        landed after the scan wins over the sweeper.
        """
        expired: List[SigningJob] = []

        def _expire(job: SigningJob) -> SigningJob:
            if _is_stale(job, now):
                job = job.expire(at=now)
                expired.append(job)
            return job

        for candidate in self._table.values():
            if _is_stale(candidate, now):
                self._table.update(candidate.id, _expire)

        return expired

    async def delete_for_owner(self, owner_id: str) -> int:
        removed = 0
        for job in self._table.values():
            if job.owner_id == owner_id and self._table.delete(job.id):
                removed += 1
        logger.info(
            "signing_jobs_erased",
            extra={"owner_id": owner_id, "count": removed},
        )
        return removed


def _is_stale(job: SigningJob, now: datetime) -> bool:
    return (
        job.status.is_pre_approval
        and job.expires_at is not None
        and job.expires_at < now
    )
