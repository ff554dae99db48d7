"""
In-memory job persistence.

Covers:
- lookup by the Provider-side process id
- owner erasure removes only that owner's jobs
- updates on unknown jobs raise JobNotFound
- writers on one key share a lock and the lock set stays fixed
"""

from uuid import uuid4

import pytest

from signflow.app.core.errors import JobNotFound
from signflow.app.schemas.jobs import JobStatus, SigningJob, SigningVariant
from signflow.app.storage.jobs import InMemoryJobStore
from signflow.app.storage.snapshots import SnapshotTable

pytestmark = pytest.mark.anyio


def _job(owner_id: str = "owner-1", external_id=None) -> SigningJob:
    return SigningJob(
        owner_id=owner_id,
        variant=SigningVariant.SINGLE,
        status=JobStatus.AWAITING_USER,
        external_id=external_id,
    )


async def test_find_by_external_id():
    jobs = InMemoryJobStore()
    first = await jobs.save(_job(external_id="proc-1"))
    await jobs.save(_job(external_id="proc-2"))
    await jobs.save(_job())

    found = await jobs.find_by_external_id("proc-1")

    assert found is not None
    assert found.id == first.id
    assert await jobs.find_by_external_id("proc-404") is None


async def test_delete_for_owner_is_scoped():
    jobs = InMemoryJobStore()
    await jobs.save(_job("owner-1"))
    await jobs.save(_job("owner-1"))
    kept = await jobs.save(_job("owner-2"))

    assert await jobs.delete_for_owner("owner-1") == 2
    assert await jobs.find_by_owner("owner-1") == []
    assert [j.id for j in await jobs.find_by_owner("owner-2")] == [kept.id]
    assert await jobs.delete_for_owner("owner-1") == 0


async def test_update_of_unknown_job():
    jobs = InMemoryJobStore()

    with pytest.raises(JobNotFound):
        await jobs.update(uuid4(), lambda current: current)


def test_lock_stripes_are_fixed():
    table = SnapshotTable(stripes=4)
    keys = [uuid4() for _ in range(100)]

    for key in keys:
        table.put(key, "row")
    for key in keys[:50]:
        table.delete(key)

    assert table.stripe_count == 4
    assert len(table) == 50
    assert table.lock_for(keys[0]) is table.lock_for(keys[0])
    assert len({id(table.lock_for(key)) for key in keys}) <= 4


def test_failed_mutation_leaves_row_untouched():
    table = SnapshotTable()
    key = uuid4()
    table.put(key, "before")

    def _boom(current):
        raise ValueError("rejected")

    with pytest.raises(ValueError):
        table.update(key, _boom)

    assert table.get(key) == "before"
    # The stripe is released after the failure
    assert table.update(key, lambda current: "after") == "after"


def test_invalid_stripe_count():
    with pytest.raises(ValueError):
        SnapshotTable(stripes=0)
