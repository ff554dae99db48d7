from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Protocol
from uuid import UUID

from signflow.app.core.errors import JobNotFound
from signflow.app.schemas.reconfirmation import (
    IdentityReconfirmation,
    ReconfirmationStatus,
)
from signflow.app.storage.snapshots import SnapshotTable


class ReconfirmationStore(Protocol):
    async def save(self, record: IdentityReconfirmation) -> IdentityReconfirmation:
        ...

    async def get(self, record_id: UUID) -> Optional[IdentityReconfirmation]:
        ...

    async def update(
        self,
        record_id: UUID,
        mutate: Callable[[IdentityReconfirmation], IdentityReconfirmation],
    ) -> IdentityReconfirmation:
        ...

    async def find_recent_verified(
        self,
        owner_id: str,
        since: datetime,
    ) -> Optional[IdentityReconfirmation]:
        ...

    async def find_by_owner(self, owner_id: str) -> List[IdentityReconfirmation]:
        ...

    async def delete_for_owner(self, owner_id: str) -> int:
        ...


class InMemoryReconfirmationStore:
    def __init__(self) -> None:
        self._table: SnapshotTable[UUID, IdentityReconfirmation] = SnapshotTable()

    async def save(self, record: IdentityReconfirmation) -> IdentityReconfirmation:
        return self._table.put(record.id, record)

    async def get(self, record_id: UUID) -> Optional[IdentityReconfirmation]:
        return self._table.get(record_id)

    async def update(
        self,
        record_id: UUID,
        mutate: Callable[[IdentityReconfirmation], IdentityReconfirmation],
    ) -> IdentityReconfirmation:
        updated = self._table.update(record_id, mutate)
        if updated is None:
            raise JobNotFound(f"Re-confirmation not found: {record_id}")
        return updated

    async def find_recent_verified(
        self,
        owner_id: str,
        since: datetime,
    ) -> Optional[IdentityReconfirmation]:
        matches = [
            r
            for r in self._table.values()
            if r.owner_id == owner_id
            and r.status is ReconfirmationStatus.VERIFIED
            and r.match is True
            and r.verified_at is not None
            and r.verified_at >= since
        ]
        if not matches:
            return None
        return max(matches, key=lambda r: r.verified_at)

    async def find_by_owner(self, owner_id: str) -> List[IdentityReconfirmation]:
        records = [r for r in self._table.values() if r.owner_id == owner_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def delete_for_owner(self, owner_id: str) -> int:
        removed = 0
        for record in self._table.values():
            if record.owner_id == owner_id and self._table.delete(record.id):
                removed += 1
        return removed
