"""
Provider callback intake.

Covers:
- an accepted callback answers immediately and completion runs on the pool
- state tokens are single use; replays and expired tokens are rejected
- signer process id and flow kind must match the token's job
- a callback for a job no longer awaiting the user is ignored
- a saturated pool leaves the job in CALLBACK_RECEIVED
"""

import httpx
import pytest

from signflow.app.core.errors import InvalidToken, PoolSaturated
from signflow.app.schemas.jobs import JobStatus, utcnow
from signflow.app.services.correlation import (
    TOKEN_TTL_SECONDS,
    InMemoryCorrelationTokenStore,
)
from signflow.tests.helpers import (
    FakeProvider,
    build_test_services,
    make_caller,
    make_document,
    state_of,
)

pytestmark = pytest.mark.anyio


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


async def _initiated(services):
    result = await services.orchestrator.initiate_single(make_caller(), make_document())
    job = await services.jobs.get(result.job_id)
    return job, state_of(job.callback_url)


async def test_accepted_callback_completes_on_pool(tmp_path):
    provider = FakeProvider()
    services = build_test_services(tmp_path, provider)
    await services.pool.start()
    try:
        job, state = await _initiated(services)

        receipt = await services.callbacks.handle_sign(
            state=state, status="finished", signer_process_id="proc-1"
        )

        assert receipt.accepted is True
        assert receipt.job_id == job.id
        assert receipt.status is JobStatus.CALLBACK_RECEIVED

        await services.pool.drain()
        done = await services.jobs.get(job.id)
        assert done.status is JobStatus.SIGNED
        assert done.callback_status == "finished"
    finally:
        await services.pool.shutdown()


async def test_replayed_state_is_rejected(tmp_path):
    provider = FakeProvider()
    services = build_test_services(tmp_path, provider)
    await services.pool.start()
    try:
        job, state = await _initiated(services)
        await services.callbacks.handle_sign(
            state=state, status="finished", signer_process_id=None
        )

        with pytest.raises(InvalidToken):
            await services.callbacks.handle_sign(
                state=state, status="finished", signer_process_id=None
            )

        await services.pool.drain()
        assert provider.count("GET", "/content") == 1
    finally:
        await services.pool.shutdown()


async def test_expired_state_is_rejected(tmp_path):
    provider = FakeProvider()
    clock = FakeClock()
    services = build_test_services(
        tmp_path, provider, tokens=InMemoryCorrelationTokenStore(clock=clock)
    )
    job, state = await _initiated(services)

    clock.now += TOKEN_TTL_SECONDS + 1

    with pytest.raises(InvalidToken):
        await services.callbacks.handle_sign(
            state=state, status="finished", signer_process_id="proc-1"
        )
    assert (await services.jobs.get(job.id)).status is JobStatus.AWAITING_USER


async def test_unknown_state_is_rejected(tmp_path):
    services = build_test_services(tmp_path, FakeProvider())

    with pytest.raises(InvalidToken):
        await services.callbacks.handle_sign(
            state="not-a-token", status="finished", signer_process_id=None
        )


async def test_process_id_mismatch_is_rejected(tmp_path):
    provider = FakeProvider()
    services = build_test_services(tmp_path, provider)
    job, state = await _initiated(services)

    with pytest.raises(InvalidToken):
        await services.callbacks.handle_sign(
            state=state, status="finished", signer_process_id="proc-999"
        )
    assert (await services.jobs.get(job.id)).status is JobStatus.AWAITING_USER


async def test_hash_state_cannot_complete_interactive_flow(tmp_path):
    provider = FakeProvider()
    services = build_test_services(tmp_path, provider)
    result = await services.orchestrator.initiate_hash(make_caller(), make_document())
    state = httpx.URL(result.signing_url).params["state"]

    with pytest.raises(InvalidToken):
        await services.callbacks.handle_sign(
            state=state, status="finished", signer_process_id=None
        )


async def test_hash_callback_with_error_cancels(tmp_path):
    provider = FakeProvider()
    services = build_test_services(tmp_path, provider)
    await services.pool.start()
    try:
        result = await services.orchestrator.initiate_hash(make_caller(), make_document())
        state = httpx.URL(result.signing_url).params["state"]

        receipt = await services.callbacks.handle_hash_sign(
            state=state, code=None, error="access_denied"
        )
        assert receipt.accepted is True

        await services.pool.drain()
        assert (await services.jobs.get(result.job_id)).status is JobStatus.CANCELED
        assert provider.count("POST", "/idshub/token") == 0
    finally:
        await services.pool.shutdown()


async def test_callback_for_expired_job_is_ignored(tmp_path):
    provider = FakeProvider()
    services = build_test_services(tmp_path, provider)
    job, state = await _initiated(services)
    await services.jobs.update(job.id, lambda current: current.expire(at=utcnow()))

    receipt = await services.callbacks.handle_sign(
        state=state, status="finished", signer_process_id="proc-1"
    )

    assert receipt.accepted is False
    assert receipt.status is JobStatus.EXPIRED
    assert provider.count("GET", "/content") == 0


async def test_saturated_pool_leaves_callback_received(tmp_path):
    provider = FakeProvider()
    services = build_test_services(tmp_path, provider)
    job, state = await _initiated(services)

    # Pool never started: no capacity at all
    with pytest.raises(PoolSaturated):
        await services.callbacks.handle_sign(
            state=state, status="finished", signer_process_id="proc-1"
        )

    assert (await services.jobs.get(job.id)).status is JobStatus.CALLBACK_RECEIVED
