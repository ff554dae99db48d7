"""
Provider callback intake for the signing flows.

A callback is accepted only if its state token is consumable, belongs to
the matching flow, and resolves to a job that is still waiting for the
user. The job is then marked CALLBACK_RECEIVED and handed to the
completion pool; the HTTP answer never waits for completion.
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from signflow.app.core.errors import IllegalTransition, InvalidToken
from signflow.app.schemas.jobs import JobStatus, SigningJob
from signflow.app.services.completion import CompletionPipeline, ProviderOutcome
from signflow.app.services.correlation import CorrelationTokenStore, FlowKind
from signflow.app.services.workers import CompletionWorkerPool
from signflow.app.storage.jobs import JobStore

logger = logging.getLogger("signflow.callbacks")


class CallbackReceipt(BaseModel):
    job_id: UUID
    status: JobStatus
    accepted: bool

    model_config = ConfigDict(frozen=True)


class SigningCallbackHandler:
    def __init__(
        self,
        *,
        jobs: JobStore,
        tokens: CorrelationTokenStore,
        pipeline: CompletionPipeline,
        pool: CompletionWorkerPool,
    ) -> None:
        self.jobs = jobs
        self.tokens = tokens
        self.pipeline = pipeline
        self.pool = pool

    async def handle_sign(
        self,
        *,
        state: str,
        status: str,
        signer_process_id: Optional[str],
    ) -> CallbackReceipt:
        job = await self._resolve(state, FlowKind.SIGN)
        if signer_process_id and job.external_id != signer_process_id:
            logger.warning(
                "callback_process_mismatch",
                extra={"job_id": str(job.id)},
            )
            raise InvalidToken()
        return await self._accept(job, ProviderOutcome.from_sign_callback(status))

    async def handle_hash_sign(
        self,
        *,
        state: str,
        code: Optional[str],
        error: Optional[str],
    ) -> CallbackReceipt:
        job = await self._resolve(state, FlowKind.HASH_SIGN)
        return await self._accept(
            job,
            ProviderOutcome.from_hash_callback(code=code, error=error),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _resolve(self, state: str, flow_kind: FlowKind) -> SigningJob:
        payload = await self.tokens.consume(state)
        if payload.flow_kind is not flow_kind or not payload.continuation:
            logger.warning(
                "callback_flow_mismatch",
                extra={"expected": flow_kind.value, "actual": payload.flow_kind.value},
            )
            raise InvalidToken()

        try:
            job_id = UUID(payload.continuation)
        except ValueError:
            raise InvalidToken()

        job = await self.jobs.get(job_id)
        if job is None or (payload.owner_id and job.owner_id != payload.owner_id):
            raise InvalidToken()
        return job

    async def _accept(self, job: SigningJob, outcome: ProviderOutcome) -> CallbackReceipt:
        if job.status is not JobStatus.AWAITING_USER:
            logger.info(
                "callback_duplicate_ignored",
                extra={"job_id": str(job.id), "status": job.status.value},
            )
            return CallbackReceipt(job_id=job.id, status=job.status, accepted=False)

        try:
            job = await self.jobs.update(
                job.id,
                lambda current: current.transition(
                    JobStatus.CALLBACK_RECEIVED,
                    callback_status=outcome.status,
                ),
            )
        except IllegalTransition:
            current = await self.jobs.get(job.id)
            return CallbackReceipt(
                job_id=job.id,
                status=current.status if current else job.status,
                accepted=False,
            )

        logger.info(
            "callback_received",
            extra={
                "job_id": str(job.id),
                "variant": job.variant.value,
                "provider_status": outcome.status,
            },
        )

        job_id = job.id
        self.pool.submit(
            f"complete:{job_id}",
            lambda: self.pipeline.complete(job_id, outcome),
        )
        return CallbackReceipt(job_id=job.id, status=job.status, accepted=True)
