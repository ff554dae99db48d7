"""
Wiring of the orchestrator and its collaborators.

``build_services`` is called once from the application lifespan. Tests
build the same container with in-memory stores and a mock transport.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from signflow.app.core.config import Settings
from signflow.app.events import AuditRecorder, LoggingAuditRecorder, SafeAuditor
from signflow.app.services.callbacks import SigningCallbackHandler
from signflow.app.services.completion import CompletionPipeline
from signflow.app.services.compliance import UserDataService
from signflow.app.services.correlation import (
    CorrelationTokenStore,
    InMemoryCorrelationTokenStore,
    RedisCorrelationTokenStore,
)
from signflow.app.services.credentials import ServiceCredentialCache
from signflow.app.services.eseal import ESealService
from signflow.app.services.hash_sdk import HashSigningSdkClient
from signflow.app.services.ltv import LtvEnhancer, build_ltv_enhancer
from signflow.app.services.orchestrator import SigningOrchestrator
from signflow.app.services.provider_identity import ProviderIdentityClient
from signflow.app.services.reconfirmation import ReconfirmationService
from signflow.app.services.resilience import BreakerRegistry, Dependency
from signflow.app.services.signing_api import SigningApiClient
from signflow.app.services.soap import SoapTransport
from signflow.app.services.sweeper import ExpirySweeper
from signflow.app.services.workers import CompletionWorkerPool
from signflow.app.storage.blobs import BlobStore, FilesystemBlobStore
from signflow.app.storage.jobs import InMemoryJobStore, JobStore
from signflow.app.storage.reconfirmations import (
    InMemoryReconfirmationStore,
    ReconfirmationStore,
)
from signflow.app.storage.seals import InMemorySealJobStore, SealJobStore

logger = logging.getLogger("signflow.container")


@dataclass
class ServiceContainer:
    settings: Settings
    http_client: httpx.AsyncClient
    breakers: BreakerRegistry

    jobs: JobStore
    reconfirmations: ReconfirmationStore
    seals: SealJobStore
    blobs: BlobStore
    tokens: CorrelationTokenStore
    auditor: SafeAuditor

    orchestrator: SigningOrchestrator
    pipeline: CompletionPipeline
    pool: CompletionWorkerPool
    callbacks: SigningCallbackHandler
    reconfirmation: ReconfirmationService
    eseal: ESealService
    sweeper: ExpirySweeper
    user_data: UserDataService

    async def start(self) -> None:
        await self.pool.start()
        self.sweeper.start()

    async def stop(self) -> None:
        await self.sweeper.stop()
        await self.pool.shutdown(drain=True)
        if isinstance(self.tokens, RedisCorrelationTokenStore):
            await self.tokens.aclose()


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=settings.http_read_timeout_seconds,
            connect=settings.http_connect_timeout_seconds,
        ),
        limits=httpx.Limits(
            max_keepalive_connections=20,
            max_connections=50,
        ),
        headers={"User-Agent": "signflow"},
    )


def build_services(
    settings: Settings,
    *,
    http_client: httpx.AsyncClient,
    breakers: Optional[BreakerRegistry] = None,
    jobs: Optional[JobStore] = None,
    reconfirmations: Optional[ReconfirmationStore] = None,
    seals: Optional[SealJobStore] = None,
    blobs: Optional[BlobStore] = None,
    tokens: Optional[CorrelationTokenStore] = None,
    recorder: Optional[AuditRecorder] = None,
    ltv: Optional[LtvEnhancer] = None,
) -> ServiceContainer:
    breakers = breakers or BreakerRegistry.from_settings(settings)
    jobs = jobs or InMemoryJobStore()
    reconfirmations = reconfirmations or InMemoryReconfirmationStore()
    seals = seals or InMemorySealJobStore()
    blobs = blobs or FilesystemBlobStore(settings.storage_root)
    if tokens is None:
        if settings.token_store_redis_url:
            tokens = RedisCorrelationTokenStore.from_url(settings.token_store_redis_url)
        else:
            tokens = InMemoryCorrelationTokenStore()
    auditor = SafeAuditor(recorder or LoggingAuditRecorder())

    provider = ProviderIdentityClient(
        http_client=http_client,
        settings=settings,
        breaker=breakers.get(Dependency.PROVIDER_TOKEN),
    )
    credentials = ServiceCredentialCache(
        http_client=http_client,
        settings=settings,
        breaker=breakers.get(Dependency.PROVIDER_TOKEN),
    )
    signing_api = SigningApiClient(
        http_client=http_client,
        settings=settings,
        breaker=breakers.get(Dependency.SIGNING_API),
    )
    hash_sdk = HashSigningSdkClient(
        http_client=http_client,
        settings=settings,
        breaker=breakers.get(Dependency.HASH_SDK),
    )
    if ltv is None:
        ltv = build_ltv_enhancer(
            settings,
            http_client=http_client,
            breaker=breakers.get(Dependency.LTV),
        )

    orchestrator = SigningOrchestrator(
        settings=settings,
        jobs=jobs,
        tokens=tokens,
        blobs=blobs,
        signing_api=signing_api,
        credentials=credentials,
        hash_sdk=hash_sdk,
        provider=provider,
        auditor=auditor,
    )
    pipeline = CompletionPipeline(
        settings=settings,
        jobs=jobs,
        blobs=blobs,
        signing_api=signing_api,
        credentials=credentials,
        hash_sdk=hash_sdk,
        provider=provider,
        ltv=ltv,
        auditor=auditor,
    )
    pool = CompletionWorkerPool(
        core_workers=settings.worker_pool_core,
        max_workers=max(settings.worker_pool_max, settings.worker_pool_core),
        queue_capacity=settings.worker_queue_capacity,
    )

    logger.info(
        "services_built",
        extra={
            "ltv_backend": type(ltv).__name__,
            "token_store": type(tokens).__name__,
        },
    )
    return ServiceContainer(
        settings=settings,
        http_client=http_client,
        breakers=breakers,
        jobs=jobs,
        reconfirmations=reconfirmations,
        seals=seals,
        blobs=blobs,
        tokens=tokens,
        auditor=auditor,
        orchestrator=orchestrator,
        pipeline=pipeline,
        pool=pool,
        callbacks=SigningCallbackHandler(
            jobs=jobs,
            tokens=tokens,
            pipeline=pipeline,
            pool=pool,
        ),
        reconfirmation=ReconfirmationService(
            settings=settings,
            store=reconfirmations,
            tokens=tokens,
            provider=provider,
            auditor=auditor,
        ),
        eseal=ESealService(
            settings=settings,
            transport=SoapTransport(http_client=http_client, settings=settings),
            breaker=breakers.get(Dependency.ESEAL),
            seals=seals,
            blobs=blobs,
            auditor=auditor,
        ),
        sweeper=ExpirySweeper(
            jobs=jobs,
            auditor=auditor,
            interval_seconds=settings.expiry_sweep_interval_seconds,
        ),
        user_data=UserDataService(
            jobs=jobs,
            reconfirmations=reconfirmations,
            seals=seals,
            auditor=auditor,
        ),
    )
