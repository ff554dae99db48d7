"""
Signing job record and its lifecycle state machine.

A SigningJob is immutable once constructed. Every mutation goes through
``SigningJob.transition`` or ``model_copy`` and produces a new snapshot,
so readers polling the store always observe a complete record.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from signflow.app.core.errors import IllegalTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SigningVariant(str, Enum):
    SINGLE = "SINGLE"
    MULTIPLE = "MULTIPLE"
    HASH = "HASH"
    HASH_BULK = "HASH_BULK"

    @property
    def is_hash(self) -> bool:
        return self in (SigningVariant.HASH, SigningVariant.HASH_BULK)

    @property
    def is_batch(self) -> bool:
        return self in (SigningVariant.MULTIPLE, SigningVariant.HASH_BULK)


class JobStatus(str, Enum):
    INITIATED = "INITIATED"
    AWAITING_USER = "AWAITING_USER"
    CALLBACK_RECEIVED = "CALLBACK_RECEIVED"
    COMPLETING = "COMPLETING"
    SIGNED = "SIGNED"
    FAILED_DOCUMENTS = "FAILED_DOCUMENTS"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_pre_approval(self) -> bool:
        return self in PRE_APPROVAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        JobStatus.SIGNED,
        JobStatus.FAILED_DOCUMENTS,
        JobStatus.FAILED,
        JobStatus.CANCELED,
        JobStatus.EXPIRED,
    }
)

PRE_APPROVAL_STATUSES = frozenset({JobStatus.INITIATED, JobStatus.AWAITING_USER})

# EXPIRED is reachable only through the expiry sweeper (see ``expire``).
_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.INITIATED: frozenset({JobStatus.AWAITING_USER}),
    JobStatus.AWAITING_USER: frozenset(
        {JobStatus.CALLBACK_RECEIVED}
    ),
    JobStatus.CALLBACK_RECEIVED: frozenset(
        {
            JobStatus.COMPLETING,
            JobStatus.CANCELED,
            JobStatus.FAILED,
            JobStatus.FAILED_DOCUMENTS,
        }
    ),
    JobStatus.COMPLETING: frozenset(
        {
            JobStatus.SIGNED,
            JobStatus.FAILED_DOCUMENTS,
            JobStatus.FAILED,
        }
    ),
}


def can_transition(source: JobStatus, target: JobStatus) -> bool:
    return target in _TRANSITIONS.get(source, frozenset())


class DocumentStatus(str, Enum):
    PENDING = "PENDING"
    SIGNED = "SIGNED"
    FAILED = "FAILED"


class DocumentEntry(BaseModel):
    """
    Per-document metadata of a signing job.

    ``external_ref`` is the Provider document URL for SINGLE/MULTIPLE jobs
    and the co-process transaction id for HASH/HASH_BULK jobs.
    """

    index: int = Field(..., ge=0)
    name: str
    external_ref: Optional[str] = None
    sign_identity_id: Optional[str] = None
    digest: Optional[str] = Field(None, description="Hex digest from the co-process")
    sign_prop: Optional[str] = None

    status: DocumentStatus = DocumentStatus.PENDING
    error: Optional[str] = None

    unsigned_key: Optional[str] = None
    signed_key: Optional[str] = None
    ltv_key: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def final_key(self) -> Optional[str]:
        return self.ltv_key or self.signed_key


class SigningJob(BaseModel):
    """One signing attempt, from initiation to a terminal status."""

    id: UUID = Field(default_factory=uuid4)
    owner_id: str = Field(..., min_length=1)
    variant: SigningVariant
    status: JobStatus = JobStatus.INITIATED

    external_id: Optional[str] = Field(
        None,
        description="Provider signer process id (SINGLE/MULTIPLE)",
    )
    sign_identity_id: Optional[str] = None
    documents: Tuple[DocumentEntry, ...] = ()

    callback_url: Optional[str] = None
    callback_status: Optional[str] = None
    ltv_applied: bool = False
    error_message: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    initiated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(
        self,
        target: JobStatus,
        *,
        at: Optional[datetime] = None,
        **changes,
    ) -> "SigningJob":
        """
        Return a copy moved to ``target``.

        Terminal transitions are timestamped with ``completed_at``.
        """
        if not can_transition(self.status, target):
            raise IllegalTransition(
                f"Job {self.id}: {self.status.value} -> {target.value} is not allowed"
            )

        update = dict(changes)
        update["status"] = target
        if target.is_terminal:
            update["completed_at"] = at or utcnow()
        return self.model_copy(update=update)

    def expire(self, *, at: datetime) -> "SigningJob":
        """Sweeper-only transition for jobs stuck before user approval."""
        if not self.status.is_pre_approval:
            raise IllegalTransition(
                f"Job {self.id}: {self.status.value} cannot expire"
            )
        return self.model_copy(
            update={
                "status": JobStatus.EXPIRED,
                "completed_at": at,
                "error_message": "Signing request expired before user approval",
            }
        )

    def replace_document(self, entry: DocumentEntry) -> "SigningJob":
        documents = tuple(
            entry if doc.index == entry.index else doc
            for doc in self.documents
        )
        return self.model_copy(update={"documents": documents})
