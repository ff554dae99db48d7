"""
Signing orchestrator: initiation of the four signing variants.

Every variant follows the same shape:

1. Validate caller and documents (no side effects on failure).
2. Call the external preparation step through its breaker
   (signer-process creation, or co-process digest preparation).
3. Persist the job, bind a correlation token to it and build the
   Provider redirect.
4. Move the job to AWAITING_USER and hand the redirect to the caller.

A failed step 2 raises before anything is persisted, so an initiation
either yields a complete AWAITING_USER job or no job at all.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict

from signflow.app.core.config import Settings
from signflow.app.core.errors import ValidationError
from signflow.app.events import AuditAction, SafeAuditor, SubjectType
from signflow.app.schemas.identity import CallerIdentity
from signflow.app.schemas.jobs import (
    DocumentEntry,
    JobStatus,
    SigningJob,
    SigningVariant,
    utcnow,
)
from signflow.app.schemas.signing import SignDocument
from signflow.app.services.correlation import CorrelationTokenStore, FlowKind
from signflow.app.services.credentials import ServiceCredentialCache
from signflow.app.services.hash_sdk import HashPreparation, HashSigningSdkClient
from signflow.app.services.provider_identity import (
    HASH_SIGN_AUTHORIZE_PATH,
    ProviderIdentityClient,
    build_url,
)
from signflow.app.services.signing_api import SigningApiClient
from signflow.app.storage.blobs import PDF, BlobStore, artifact_key
from signflow.app.storage.jobs import JobStore
from signflow.app.utils.hashing import DIGEST_ALGORITHM, combined_digest_hex
from signflow.app.utils.pdf import validate_pdf

logger = logging.getLogger("signflow.orchestrator")

SIGN_CALLBACK_PATH = "/signature/callback"
HASH_SIGN_CALLBACK_PATH = "/hashsign/callback"
HASH_PREFIX = "hashsign"


class InitiationResult(BaseModel):
    job_id: UUID
    signing_url: str
    document_count: int

    model_config = ConfigDict(frozen=True)


class SigningOrchestrator:
    def __init__(
        self,
        *,
        settings: Settings,
        jobs: JobStore,
        tokens: CorrelationTokenStore,
        blobs: BlobStore,
        signing_api: SigningApiClient,
        credentials: ServiceCredentialCache,
        hash_sdk: HashSigningSdkClient,
        provider: ProviderIdentityClient,
        auditor: SafeAuditor,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.jobs = jobs
        self.tokens = tokens
        self.blobs = blobs
        self.signing_api = signing_api
        self.credentials = credentials
        self.hash_sdk = hash_sdk
        self.provider = provider
        self.auditor = auditor
        self._clock = clock

    # ------------------------------------------------------------------
    # Interactive signing (signer process)
    # ------------------------------------------------------------------

    async def initiate_single(
        self,
        caller: CallerIdentity,
        document: SignDocument,
        *,
        client_ip: Optional[str] = None,
    ) -> InitiationResult:
        return await self._initiate_process(
            caller, [document], SigningVariant.SINGLE, client_ip=client_ip
        )

    async def initiate_multiple(
        self,
        caller: CallerIdentity,
        documents: Sequence[SignDocument],
        *,
        client_ip: Optional[str] = None,
    ) -> InitiationResult:
        return await self._initiate_process(
            caller, documents, SigningVariant.MULTIPLE, client_ip=client_ip
        )

    async def _initiate_process(
        self,
        caller: CallerIdentity,
        documents: Sequence[SignDocument],
        variant: SigningVariant,
        *,
        client_ip: Optional[str],
    ) -> InitiationResult:
        self._validate(caller, documents, variant)

        job_id = uuid4()
        # The finish callback must carry the state token, so it is bound
        # to the job id before the process exists. If creation fails the
        # token simply expires unused.
        token = await self.tokens.issue(FlowKind.SIGN, str(job_id), caller.owner_id)
        callback_url = build_url(
            f"{self.settings.app_base_url.rstrip('/')}{SIGN_CALLBACK_PATH}",
            {"state": token},
        )

        credential = await self.credentials.get()
        process = await self.signing_api.create_process(
            documents,
            finish_callback_url=callback_url,
            credential=credential,
        )

        entries: List[DocumentEntry] = []
        for index, (doc, url) in enumerate(zip(documents, process.document_urls)):
            key = artifact_key(
                "unsigned",
                job_id,
                index=index if variant.is_batch else None,
            )
            await self.blobs.put(doc.content, key, PDF)
            entries.append(
                DocumentEntry(
                    index=index,
                    name=doc.name,
                    external_ref=url,
                    unsigned_key=key,
                )
            )

        job = await self._persist_initiated(
            SigningJob(
                id=job_id,
                owner_id=caller.owner_id,
                variant=variant,
                external_id=process.process_id,
                documents=tuple(entries),
            ),
            callback_url=callback_url,
        )

        await self.auditor.record(
            actor_id=caller.owner_id,
            action=AuditAction.SIGN_INITIATED,
            subject_type=SubjectType.SIGNING_JOB,
            subject_id=str(job.id),
            client_ip=client_ip,
            variant=variant.value,
            signer_process_id=process.process_id,
            document_count=len(entries),
        )
        return InitiationResult(
            job_id=job.id,
            signing_url=process.signing_url,
            document_count=len(entries),
        )

    # ------------------------------------------------------------------
    # Hash signing (local co-process)
    # ------------------------------------------------------------------

    async def initiate_hash(
        self,
        caller: CallerIdentity,
        document: SignDocument,
        *,
        client_ip: Optional[str] = None,
    ) -> InitiationResult:
        return await self._initiate_hash(
            caller, [document], SigningVariant.HASH, client_ip=client_ip
        )

    async def initiate_hash_bulk(
        self,
        caller: CallerIdentity,
        documents: Sequence[SignDocument],
        *,
        client_ip: Optional[str] = None,
    ) -> InitiationResult:
        return await self._initiate_hash(
            caller, documents, SigningVariant.HASH_BULK, client_ip=client_ip
        )

    async def _initiate_hash(
        self,
        caller: CallerIdentity,
        documents: Sequence[SignDocument],
        variant: SigningVariant,
        *,
        client_ip: Optional[str],
    ) -> InitiationResult:
        self._validate(caller, documents, variant)

        prepared: List[HashPreparation] = []
        for doc in documents:
            prepared.append(
                await self.hash_sdk.prepare(doc.content, sign_prop=doc.placement.sign_prop)
            )

        sign_identity_id = prepared[0].sign_identity_id
        if any(p.sign_identity_id != sign_identity_id for p in prepared):
            logger.warning(
                "hash_sign_identity_mismatch",
                extra={"owner_id": caller.owner_id, "documents": len(prepared)},
            )

        if variant is SigningVariant.HASH:
            digests_summary = prepared[0].digest
        else:
            digests_summary = combined_digest_hex([p.digest for p in prepared])
        sign_prop = "|".join(doc.placement.sign_prop for doc in documents)

        job_id = uuid4()
        entries: List[DocumentEntry] = []
        for index, (doc, prep) in enumerate(zip(documents, prepared)):
            key = artifact_key(
                "unsigned",
                job_id,
                index=index if variant.is_batch else None,
                prefix=HASH_PREFIX,
            )
            await self.blobs.put(doc.content, key, PDF)
            entries.append(
                DocumentEntry(
                    index=index,
                    name=doc.name,
                    external_ref=prep.tx_id,
                    sign_identity_id=prep.sign_identity_id,
                    digest=prep.digest,
                    sign_prop=doc.placement.sign_prop,
                    unsigned_key=key,
                )
            )

        job = SigningJob(
            id=job_id,
            owner_id=caller.owner_id,
            variant=variant,
            sign_identity_id=sign_identity_id,
            documents=tuple(entries),
        )
        callback_url = f"{self.settings.app_base_url.rstrip('/')}{HASH_SIGN_CALLBACK_PATH}"

        job = await self._save_initiated(job)
        token = await self.tokens.issue(FlowKind.HASH_SIGN, str(job.id), caller.owner_id)
        signing_url = self.provider.authorize_url(
            HASH_SIGN_AUTHORIZE_PATH,
            {
                "response_type": "code",
                "client_id": self.settings.provider_client_id,
                "redirect_uri": callback_url,
                "state": token,
                "scope": self.settings.hash_sign_scope,
                "digests_summary": digests_summary,
                "digests_summary_algorithm": DIGEST_ALGORITHM,
                "sign_identity_id": sign_identity_id,
                "signProp": sign_prop,
            },
        )
        job = await self._await_user(job, callback_url=callback_url)

        await self.auditor.record(
            actor_id=caller.owner_id,
            action=AuditAction.HASH_SIGN_INITIATED,
            subject_type=SubjectType.SIGNING_JOB,
            subject_id=str(job.id),
            client_ip=client_ip,
            variant=variant.value,
            document_count=len(entries),
        )
        return InitiationResult(
            job_id=job.id,
            signing_url=signing_url,
            document_count=len(entries),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _validate(
        self,
        caller: CallerIdentity,
        documents: Sequence[SignDocument],
        variant: SigningVariant,
    ) -> None:
        if caller.is_visitor:
            raise ValidationError(
                "Visitor accounts cannot sign legally binding documents",
                code="VISITOR_NOT_ALLOWED",
            )

        if not documents:
            raise ValidationError("At least one document is required", code="NO_DOCUMENTS")

        if not variant.is_batch and len(documents) != 1:
            raise ValidationError(
                f"{variant.value} signing takes exactly one document",
                code="TOO_MANY_DOCUMENTS",
            )

        if len(documents) > self.settings.max_batch_documents:
            raise ValidationError(
                f"A batch may contain at most {self.settings.max_batch_documents} documents",
                code="TOO_MANY_DOCUMENTS",
            )

        for doc in documents:
            validate_pdf(
                doc.content,
                max_bytes=self.settings.max_pdf_bytes,
                placement=doc.placement,
            )

    async def _save_initiated(self, job: SigningJob) -> SigningJob:
        now = self._clock()
        return await self.jobs.save(
            job.model_copy(
                update={
                    "status": JobStatus.INITIATED,
                    "created_at": now,
                    "initiated_at": now,
                    "expires_at": now + timedelta(minutes=self.settings.signing_job_ttl_minutes),
                }
            )
        )

    async def _await_user(self, job: SigningJob, *, callback_url: str) -> SigningJob:
        job = await self.jobs.update(
            job.id,
            lambda current: current.transition(
                JobStatus.AWAITING_USER,
                callback_url=callback_url,
            ),
        )
        logger.info(
            "signing_job_awaiting_user",
            extra={
                "job_id": str(job.id),
                "variant": job.variant.value,
                "documents": len(job.documents),
            },
        )
        return job

    async def _persist_initiated(self, job: SigningJob, *, callback_url: str) -> SigningJob:
        job = await self._save_initiated(job)
        return await self._await_user(job, callback_url=callback_url)
