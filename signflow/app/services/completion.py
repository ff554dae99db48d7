"""
Completion pipeline: runs off the callback thread, once per job.

Given a job in CALLBACK_RECEIVED and the outcome the Provider reported,
the pipeline either closes the job directly (cancel/failure, with no
remote calls at all) or:

1. moves the job to COMPLETING,
2. obtains each signed document (download, or co-process signing),
3. stores the signed artifact, then an LTV-enhanced copy when possible,
4. derives the terminal status from the per-document results,
5. cleans up Provider-side copies (best effort) and records the audit.

Only one pipeline run can win the CALLBACK_RECEIVED -> COMPLETING
transition; late duplicates observe the guard and return.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from signflow.app.core.config import Settings
from signflow.app.core.errors import IllegalTransition, SignflowError
from signflow.app.events import AuditAction, SafeAuditor, SubjectType
from signflow.app.schemas.jobs import (
    DocumentEntry,
    DocumentStatus,
    JobStatus,
    SigningJob,
    utcnow,
)
from signflow.app.services.credentials import ServiceCredentialCache
from signflow.app.services.hash_sdk import HashSigningSdkClient
from signflow.app.services.ltv import LtvEnhancer
from signflow.app.services.orchestrator import HASH_PREFIX, HASH_SIGN_CALLBACK_PATH
from signflow.app.services.provider_identity import ProviderIdentityClient
from signflow.app.services.signing_api import SigningApiClient
from signflow.app.storage.blobs import PDF, BlobStore, artifact_key
from signflow.app.storage.jobs import JobStore

logger = logging.getLogger("signflow.completion")

SIGN_FINISHED = "finished"
SIGN_CANCELED = "canceled"
SIGN_FAILED_DOCUMENTS = "failed_documents"
ACCESS_DENIED = "access_denied"

GENERIC_DOCUMENT_ERROR = "Document could not be signed"
GENERIC_JOB_ERROR = "Signing could not be completed. Please try again."


class ProviderOutcome(BaseModel):
    """
    What the Provider reported on the callback.

    Interactive signing reports a ``status`` word; hash signing reports
    either an authorization ``code`` or an ``error``.
    """

    status: str
    code: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_sign_callback(cls, status: str) -> "ProviderOutcome":
        return cls(status=(status or "").strip().lower() or "failed")

    @classmethod
    def from_hash_callback(
        cls,
        *,
        code: Optional[str],
        error: Optional[str],
    ) -> "ProviderOutcome":
        if error:
            return cls(status=error.strip().lower())
        if not code:
            return cls(status="failed")
        return cls(status=SIGN_FINISHED, code=code)

    @property
    def is_success(self) -> bool:
        return self.status == SIGN_FINISHED

    def terminal_status(self) -> JobStatus:
        """Terminal status for a non-success outcome."""
        if self.status in (SIGN_CANCELED, ACCESS_DENIED):
            return JobStatus.CANCELED
        if self.status == SIGN_FAILED_DOCUMENTS:
            return JobStatus.FAILED_DOCUMENTS
        return JobStatus.FAILED


def aggregate_status(documents: Tuple[DocumentEntry, ...]) -> JobStatus:
    signed = sum(1 for d in documents if d.status is DocumentStatus.SIGNED)
    if signed == len(documents) and signed > 0:
        return JobStatus.SIGNED
    if signed == 0:
        return JobStatus.FAILED
    return JobStatus.FAILED_DOCUMENTS


class CompletionPipeline:
    def __init__(
        self,
        *,
        settings: Settings,
        jobs: JobStore,
        blobs: BlobStore,
        signing_api: SigningApiClient,
        credentials: ServiceCredentialCache,
        hash_sdk: HashSigningSdkClient,
        provider: ProviderIdentityClient,
        ltv: LtvEnhancer,
        auditor: SafeAuditor,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.jobs = jobs
        self.blobs = blobs
        self.signing_api = signing_api
        self.credentials = credentials
        self.hash_sdk = hash_sdk
        self.provider = provider
        self.ltv = ltv
        self.auditor = auditor
        self._clock = clock

    async def complete(self, job_id: UUID, outcome: ProviderOutcome) -> Optional[SigningJob]:
        job = await self.jobs.get(job_id)
        if job is None:
            logger.error("completion_job_missing", extra={"job_id": str(job_id)})
            return None

        if job.status is not JobStatus.CALLBACK_RECEIVED:
            logger.info(
                "completion_skipped",
                extra={"job_id": str(job_id), "status": job.status.value},
            )
            return job

        if not outcome.is_success:
            return await self._close_unsuccessful(job, outcome)

        try:
            job = await self.jobs.update(
                job_id,
                lambda current: current.transition(JobStatus.COMPLETING),
            )
        except IllegalTransition:
            logger.info("completion_already_claimed", extra={"job_id": str(job_id)})
            return await self.jobs.get(job_id)

        logger.info(
            "completion_started",
            extra={
                "job_id": str(job.id),
                "variant": job.variant.value,
                "documents": len(job.documents),
            },
        )

        try:
            if job.variant.is_hash:
                documents = await self._complete_hash(job, outcome)
            else:
                documents = await self._complete_process(job)
        except SignflowError as exc:
            return await self._fail(job, exc.message)
        except Exception:
            logger.exception("completion_unexpected_error", extra={"job_id": str(job.id)})
            return await self._fail(job, GENERIC_JOB_ERROR)

        return await self._finish(job, documents)

    # ------------------------------------------------------------------
    # Non-success callbacks
    # ------------------------------------------------------------------

    async def _close_unsuccessful(
        self,
        job: SigningJob,
        outcome: ProviderOutcome,
    ) -> SigningJob:
        target = outcome.terminal_status()
        message = f"Signing {outcome.status} by user or Provider"
        try:
            job = await self.jobs.update(
                job.id,
                lambda current: current.transition(
                    target,
                    at=self._clock(),
                    error_message=message,
                ),
            )
        except IllegalTransition:
            logger.info("completion_already_claimed", extra={"job_id": str(job.id)})
            return await self.jobs.get(job.id)
        logger.info(
            "completion_closed_without_signature",
            extra={
                "job_id": str(job.id),
                "status": job.status.value,
                "provider_status": outcome.status,
            },
        )

        if target is JobStatus.CANCELED and not job.variant.is_hash:
            action = AuditAction.SIGN_CANCELED
        else:
            action = self._failed_action(job)
        await self.auditor.record(
            actor_id=job.owner_id,
            action=action,
            subject_type=SubjectType.SIGNING_JOB,
            subject_id=str(job.id),
            status=job.status.value,
            provider_status=outcome.status,
        )
        return job

    # ------------------------------------------------------------------
    # Per-variant signing
    # ------------------------------------------------------------------

    async def _complete_process(self, job: SigningJob) -> List[DocumentEntry]:
        credential = await self.credentials.get()
        results: List[DocumentEntry] = []
        for doc in job.documents:
            async def _obtain(entry: DocumentEntry = doc) -> bytes:
                return await self.signing_api.download(entry.external_ref, credential=credential)

            results.append(await self._sign_document(job, doc, _obtain))
        return results

    async def _complete_hash(
        self,
        job: SigningJob,
        outcome: ProviderOutcome,
    ) -> List[DocumentEntry]:
        access_token = await self.provider.exchange_code(
            code=outcome.code,
            redirect_uri=f"{self.settings.app_base_url.rstrip('/')}{HASH_SIGN_CALLBACK_PATH}",
        )
        results: List[DocumentEntry] = []
        for doc in job.documents:
            async def _obtain(entry: DocumentEntry = doc) -> bytes:
                return await self.hash_sdk.sign(
                    tx_id=entry.external_ref,
                    sign_identity_id=entry.sign_identity_id or job.sign_identity_id,
                    access_token=access_token,
                )

            results.append(await self._sign_document(job, doc, _obtain))
        return results

    async def _sign_document(
        self,
        job: SigningJob,
        doc: DocumentEntry,
        obtain: Callable,
    ) -> DocumentEntry:
        """Obtain, store and enhance one document; failures stay local to it."""
        prefix = HASH_PREFIX if job.variant.is_hash else ""
        index = doc.index if job.variant.is_batch else None

        try:
            signed = await obtain()
            signed_key = artifact_key("signed", job.id, index=index, prefix=prefix)
            await self.blobs.put(signed, signed_key, PDF)
        except SignflowError as exc:
            logger.warning(
                "document_signing_failed",
                extra={"job_id": str(job.id), "index": doc.index, "code": exc.code},
            )
            return doc.model_copy(update={"status": DocumentStatus.FAILED, "error": exc.message})
        except Exception:
            logger.exception(
                "document_signing_error",
                extra={"job_id": str(job.id), "index": doc.index},
            )
            return doc.model_copy(
                update={"status": DocumentStatus.FAILED, "error": GENERIC_DOCUMENT_ERROR}
            )

        return doc.model_copy(
            update={
                "status": DocumentStatus.SIGNED,
                "error": None,
                "signed_key": signed_key,
                "ltv_key": await self._store_ltv_copy(job, doc, signed, index, prefix),
            }
        )

    async def _store_ltv_copy(
        self,
        job: SigningJob,
        doc: DocumentEntry,
        signed: bytes,
        index: Optional[int],
        prefix: str,
    ) -> Optional[str]:
        """
        Enhance and store the LTV copy of a signed document.

        Returns the stored key, or None when the copy is not available. The
        signed artifact is already stored, so nothing here fails the document.
        """
        extra = {"job_id": str(job.id), "index": doc.index}
        try:
            result = await self.ltv.enhance(signed, job_id=str(job.id))
        except Exception:
            logger.exception("ltv_enhancer_error", extra=extra)
            return None
        if not result.applied:
            return None

        key = artifact_key("signed-ltv", job.id, index=index, prefix=prefix)
        try:
            await self.blobs.put(result.pdf, key, PDF)
        except Exception:
            logger.exception("ltv_artifact_store_failed", extra=extra)
            return None
        return key

    # ------------------------------------------------------------------
    # Terminal bookkeeping
    # ------------------------------------------------------------------

    async def _finish(self, job: SigningJob, documents: List[DocumentEntry]) -> SigningJob:
        final_docs = tuple(documents)
        status = aggregate_status(final_docs)
        signed = [d for d in final_docs if d.status is DocumentStatus.SIGNED]
        ltv_applied = bool(signed) and all(d.ltv_key is not None for d in signed)

        error_message = None
        if status is JobStatus.FAILED:
            error_message = next((d.error for d in final_docs if d.error), GENERIC_JOB_ERROR)
        elif status is JobStatus.FAILED_DOCUMENTS:
            failed = len(final_docs) - len(signed)
            error_message = f"{failed} of {len(final_docs)} documents failed to sign"

        job = await self.jobs.update(
            job.id,
            lambda current: current.transition(
                status,
                at=self._clock(),
                documents=final_docs,
                ltv_applied=ltv_applied,
                error_message=error_message,
            ),
        )
        logger.info(
            "completion_finished",
            extra={
                "job_id": str(job.id),
                "status": job.status.value,
                "signed": len(signed),
                "documents": len(final_docs),
                "ltv_applied": ltv_applied,
            },
        )

        if signed and not job.variant.is_hash:
            await self._cleanup(job, signed)

        await self.auditor.record(
            actor_id=job.owner_id,
            action=(
                self._completed_action(job)
                if job.status is not JobStatus.FAILED
                else self._failed_action(job)
            ),
            subject_type=SubjectType.SIGNING_JOB,
            subject_id=str(job.id),
            status=job.status.value,
            signed=len(signed),
            documents=len(final_docs),
            ltv_applied=ltv_applied,
        )
        return job

    async def _fail(self, job: SigningJob, message: str) -> SigningJob:
        job = await self.jobs.update(
            job.id,
            lambda current: current.transition(
                JobStatus.FAILED,
                at=self._clock(),
                error_message=message,
            ),
        )
        logger.warning(
            "completion_failed",
            extra={"job_id": str(job.id), "variant": job.variant.value},
        )
        await self.auditor.record(
            actor_id=job.owner_id,
            action=self._failed_action(job),
            subject_type=SubjectType.SIGNING_JOB,
            subject_id=str(job.id),
            status=job.status.value,
        )
        return job

    async def _cleanup(self, job: SigningJob, signed: List[DocumentEntry]) -> None:
        try:
            credential = await self.credentials.get()
        except SignflowError:
            logger.warning("provider_cleanup_skipped", extra={"job_id": str(job.id)})
            return
        for doc in signed:
            if doc.external_ref:
                await self.signing_api.delete(doc.external_ref, credential=credential)

    @staticmethod
    def _completed_action(job: SigningJob) -> AuditAction:
        if job.variant.is_hash:
            return AuditAction.HASH_SIGN_COMPLETED
        return AuditAction.SIGN_COMPLETED

    @staticmethod
    def _failed_action(job: SigningJob) -> AuditAction:
        if job.variant.is_hash:
            return AuditAction.HASH_SIGN_FAILED
        return AuditAction.SIGN_FAILED
