"""
Signing job lifecycle.

Covers:
- only the documented transitions are allowed
- terminal states are never left
- EXPIRED is reachable only from pre-approval states, via expire()
- terminal transitions are timestamped
- snapshots are immutable
"""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from signflow.app.core.errors import IllegalTransition
from signflow.app.schemas.jobs import (
    TERMINAL_STATUSES,
    DocumentEntry,
    DocumentStatus,
    JobStatus,
    SigningJob,
    SigningVariant,
    can_transition,
)


def _job(status: JobStatus = JobStatus.INITIATED) -> SigningJob:
    return SigningJob(
        owner_id="owner-1",
        variant=SigningVariant.SINGLE,
        status=status,
        documents=(DocumentEntry(index=0, name="a.pdf"),),
    )


def test_happy_path_transitions():
    job = _job()
    job = job.transition(JobStatus.AWAITING_USER)
    job = job.transition(JobStatus.CALLBACK_RECEIVED, callback_status="finished")
    job = job.transition(JobStatus.COMPLETING)
    job = job.transition(JobStatus.SIGNED, ltv_applied=True)

    assert job.status is JobStatus.SIGNED
    assert job.callback_status == "finished"
    assert job.ltv_applied is True
    assert job.completed_at is not None


@pytest.mark.parametrize(
    "source,target",
    [
        (JobStatus.INITIATED, JobStatus.SIGNED),
        (JobStatus.INITIATED, JobStatus.CALLBACK_RECEIVED),
        (JobStatus.AWAITING_USER, JobStatus.COMPLETING),
        (JobStatus.AWAITING_USER, JobStatus.SIGNED),
        (JobStatus.COMPLETING, JobStatus.CANCELED),
        (JobStatus.CALLBACK_RECEIVED, JobStatus.AWAITING_USER),
    ],
)
def test_illegal_transitions_rejected(source, target):
    with pytest.raises(IllegalTransition):
        _job(source).transition(target)


@pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
def test_terminal_states_are_final(terminal):
    for target in JobStatus:
        assert not can_transition(terminal, target)


def test_expired_only_via_expire():
    for source in JobStatus:
        assert not can_transition(source, JobStatus.EXPIRED)

    at = datetime(2026, 1, 1, tzinfo=timezone.utc)
    expired = _job(JobStatus.AWAITING_USER).expire(at=at)
    assert expired.status is JobStatus.EXPIRED
    assert expired.completed_at == at
    assert expired.error_message


@pytest.mark.parametrize(
    "status",
    [JobStatus.CALLBACK_RECEIVED, JobStatus.COMPLETING, JobStatus.SIGNED],
)
def test_post_approval_jobs_cannot_expire(status):
    with pytest.raises(IllegalTransition):
        _job(status).expire(at=datetime.now(timezone.utc))


def test_callback_received_may_close_unsuccessfully():
    job = _job(JobStatus.CALLBACK_RECEIVED)
    for target in (JobStatus.CANCELED, JobStatus.FAILED, JobStatus.FAILED_DOCUMENTS):
        closed = job.transition(target)
        assert closed.status is target
        assert closed.completed_at is not None


def test_snapshots_are_immutable():
    job = _job()
    with pytest.raises(PydanticValidationError):
        job.status = JobStatus.SIGNED

    moved = job.transition(JobStatus.AWAITING_USER)
    assert job.status is JobStatus.INITIATED
    assert moved.status is JobStatus.AWAITING_USER


def test_replace_document_and_final_key():
    job = _job()
    entry = job.documents[0].model_copy(
        update={"status": DocumentStatus.SIGNED, "signed_key": "signed/x.pdf"}
    )
    updated = job.replace_document(entry)
    assert updated.documents[0].final_key == "signed/x.pdf"

    with_ltv = updated.replace_document(
        updated.documents[0].model_copy(update={"ltv_key": "signed-ltv/x.pdf"})
    )
    assert with_ltv.documents[0].final_key == "signed-ltv/x.pdf"


def test_variant_flags():
    assert SigningVariant.HASH_BULK.is_hash and SigningVariant.HASH_BULK.is_batch
    assert SigningVariant.MULTIPLE.is_batch and not SigningVariant.MULTIPLE.is_hash
    assert not SigningVariant.SINGLE.is_batch
