"""
Data subject requests: erasure and export of an owner's records.

Erasure removes job, re-confirmation and seal records. Audit records and
stored artifacts are retained under their own retention policy.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from signflow.app.events import AuditAction, SafeAuditor, SubjectType
from signflow.app.schemas.eseal import SealJob
from signflow.app.schemas.jobs import JobStatus, SigningJob, SigningVariant, utcnow
from signflow.app.schemas.reconfirmation import IdentityReconfirmation, ReconfirmationStatus
from signflow.app.storage.jobs import JobStore
from signflow.app.storage.reconfirmations import ReconfirmationStore
from signflow.app.storage.seals import SealJobStore

logger = logging.getLogger("signflow.compliance")

ERASE_CONFIRMATION = "DELETE_MY_DATA"


class ErasureReport(BaseModel):
    signing_jobs_deleted: int
    reconfirmations_deleted: int
    seal_jobs_deleted: int
    audit_records_preserved: bool = True
    erased_at: datetime

    model_config = ConfigDict(frozen=True)


class SigningHistoryEntry(BaseModel):
    job_id: UUID
    variant: SigningVariant
    status: JobStatus
    document_count: int
    ltv_applied: bool
    created_at: datetime


class ReconfirmationHistoryEntry(BaseModel):
    verification_id: UUID
    status: ReconfirmationStatus
    purpose: str
    created_at: datetime
    verified_at: Optional[datetime] = None


class SealHistoryEntry(BaseModel):
    job_id: UUID
    seal_type: str
    status: str
    created_at: datetime


class DataExport(BaseModel):
    """Metadata only: document bytes and identity values are never exported."""

    owner_id: str
    signing_history: List[SigningHistoryEntry]
    reconfirmation_history: List[ReconfirmationHistoryEntry]
    seal_history: List[SealHistoryEntry]
    exported_at: datetime


class UserDataService:
    def __init__(
        self,
        *,
        jobs: JobStore,
        reconfirmations: ReconfirmationStore,
        seals: SealJobStore,
        auditor: SafeAuditor,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.jobs = jobs
        self.reconfirmations = reconfirmations
        self.seals = seals
        self.auditor = auditor
        self._clock = clock

    async def erase(self, owner_id: str, *, client_ip: Optional[str] = None) -> ErasureReport:
        report = ErasureReport(
            signing_jobs_deleted=await self.jobs.delete_for_owner(owner_id),
            reconfirmations_deleted=await self.reconfirmations.delete_for_owner(owner_id),
            seal_jobs_deleted=await self.seals.delete_for_owner(owner_id),
            erased_at=self._clock(),
        )

        logger.info(
            "user_data_erased",
            extra={
                "owner_id": owner_id,
                "signing_jobs": report.signing_jobs_deleted,
                "reconfirmations": report.reconfirmations_deleted,
                "seal_jobs": report.seal_jobs_deleted,
            },
        )
        await self.auditor.record(
            actor_id=owner_id,
            action=AuditAction.USER_DATA_ERASED,
            subject_type=SubjectType.USER,
            subject_id=owner_id,
            client_ip=client_ip,
            **report.model_dump(mode="json", exclude={"erased_at"}),
        )
        return report

    async def export(self, owner_id: str) -> DataExport:
        jobs: List[SigningJob] = await self.jobs.find_by_owner(owner_id)
        records: List[IdentityReconfirmation] = await self.reconfirmations.find_by_owner(owner_id)
        seals: List[SealJob] = await self.seals.find_by_requester(owner_id)

        return DataExport(
            owner_id=owner_id,
            signing_history=[
                SigningHistoryEntry(
                    job_id=job.id,
                    variant=job.variant,
                    status=job.status,
                    document_count=len(job.documents),
                    ltv_applied=job.ltv_applied,
                    created_at=job.created_at,
                )
                for job in jobs
            ],
            reconfirmation_history=[
                ReconfirmationHistoryEntry(
                    verification_id=record.id,
                    status=record.status,
                    purpose=record.purpose,
                    created_at=record.created_at,
                    verified_at=record.verified_at,
                )
                for record in records
            ],
            seal_history=[
                SealHistoryEntry(
                    job_id=seal.id,
                    seal_type=seal.seal_type.value,
                    status=seal.status.value,
                    created_at=seal.created_at,
                )
                for seal in seals
            ],
            exported_at=self._clock(),
        )
