from __future__ import annotations

from typing import List, Optional, Protocol
from uuid import UUID

from signflow.app.schemas.eseal import SealJob
from signflow.app.storage.snapshots import SnapshotTable


class SealJobStore(Protocol):
    async def save(self, job: SealJob) -> SealJob:
        ...

    async def get(self, job_id: UUID) -> Optional[SealJob]:
        ...

    async def find_by_requester(self, requested_by: str) -> List[SealJob]:
        ...

    async def delete_for_owner(self, owner_id: str) -> int:
        ...


class InMemorySealJobStore:
    def __init__(self) -> None:
        self._table: SnapshotTable[UUID, SealJob] = SnapshotTable()

    async def save(self, job: SealJob) -> SealJob:
        return self._table.put(job.id, job)

    async def get(self, job_id: UUID) -> Optional[SealJob]:
        return self._table.get(job_id)

    async def find_by_requester(self, requested_by: str) -> List[SealJob]:
        jobs = [j for j in self._table.values() if j.requested_by == requested_by]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    async def delete_for_owner(self, owner_id: str) -> int:
        removed = 0
        for job in self._table.values():
            if job.requested_by == owner_id and self._table.delete(job.id):
                removed += 1
        return removed
