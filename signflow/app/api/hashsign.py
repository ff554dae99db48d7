import logging
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse, Response

from signflow.app.api.dependencies import (
    Caller,
    ClientIp,
    CorrelationId,
    Services,
    to_http_error,
)
from signflow.app.api.guards import Capability, require_capability
from signflow.app.api.views import (
    download_response,
    error_param,
    job_status_view,
    load_owned_job,
    result_redirect,
)
from signflow.app.core.errors import InvalidToken, SignflowError
from signflow.app.schemas.api import (
    BatchPayload,
    DocumentPayload,
    InitiateResponse,
    JobStatusResponse,
)

logger = logging.getLogger("signflow.api.hashsign")

router = APIRouter(prefix="/hashsign", tags=["Hash Signing"])

RecentlyReconfirmed = Depends(require_capability(Capability.RECENT_RECONFIRMATION))


# =============================================================================
# POST /hashsign/initiate
# =============================================================================

@router.post(
    "/initiate",
    summary="Start hash signing of one PDF",
    response_model=InitiateResponse,
    dependencies=[RecentlyReconfirmed],
)
async def initiate(
    payload: DocumentPayload,
    caller: Caller,
    services: Services,
    correlation_id: CorrelationId,
    client_ip: ClientIp,
) -> InitiateResponse:
    try:
        result = await services.orchestrator.initiate_hash(
            caller,
            payload.to_document(),
            client_ip=client_ip,
        )
    except SignflowError as exc:
        raise to_http_error(exc, correlation_id) from exc

    logger.info(
        "hash_sign_initiated",
        extra={"trace_id": correlation_id, "job_id": str(result.job_id)},
    )
    return InitiateResponse(**result.model_dump())


# =============================================================================
# POST /hashsign/bulk/initiate
# =============================================================================

@router.post(
    "/bulk/initiate",
    summary="Start hash signing of a batch of PDFs with one approval",
    response_model=InitiateResponse,
    dependencies=[RecentlyReconfirmed],
)
async def initiate_bulk(
    payload: BatchPayload,
    caller: Caller,
    services: Services,
    correlation_id: CorrelationId,
    client_ip: ClientIp,
) -> InitiateResponse:
    try:
        result = await services.orchestrator.initiate_hash_bulk(
            caller,
            payload.to_documents(),
            client_ip=client_ip,
        )
    except SignflowError as exc:
        raise to_http_error(exc, correlation_id) from exc

    logger.info(
        "hash_sign_bulk_initiated",
        extra={
            "trace_id": correlation_id,
            "job_id": str(result.job_id),
            "documents": result.document_count,
        },
    )
    return InitiateResponse(**result.model_dump())


# =============================================================================
# GET /hashsign/callback (Provider authorization redirect)
# =============================================================================

@router.get("/callback", summary="Provider hash signing callback", include_in_schema=False)
async def callback(
    services: Services,
    correlation_id: CorrelationId,
    state: Annotated[str, Query()] = "",
    code: Annotated[Optional[str], Query()] = None,
    error: Annotated[Optional[str], Query()] = None,
) -> RedirectResponse:
    try:
        receipt = await services.callbacks.handle_hash_sign(
            state=state,
            code=code,
            error=error,
        )
    except InvalidToken:
        return result_redirect(services, "hashsign", {"error": "invalid_state"})
    except SignflowError as exc:
        logger.error(
            "hash_sign_callback_rejected",
            extra={"trace_id": correlation_id, "code": exc.code},
        )
        return result_redirect(services, "hashsign", {"error": error_param(exc.code)})

    if error:
        return result_redirect(
            services,
            "hashsign",
            {"error": error, "job_id": receipt.job_id},
        )
    return result_redirect(
        services,
        "hashsign",
        {"status": "processing", "job_id": receipt.job_id},
    )


# =============================================================================
# GET /hashsign/status/{job_id}
# =============================================================================

@router.get("/status/{job_id}", response_model=JobStatusResponse)
async def job_status(
    job_id: UUID,
    caller: Caller,
    services: Services,
    correlation_id: CorrelationId,
) -> JobStatusResponse:
    job = await load_owned_job(
        services, job_id, caller, hash_variant=True, correlation_id=correlation_id
    )
    return job_status_view(job, area="hashsign")


# =============================================================================
# GET /hashsign/download/{job_id}
# =============================================================================

@router.get(
    "/download/{job_id}",
    response_class=Response,
    responses={200: {"content": {"application/pdf": {}}}},
)
async def download(
    job_id: UUID,
    caller: Caller,
    services: Services,
    correlation_id: CorrelationId,
    index: Annotated[int, Query(ge=0)] = 0,
) -> Response:
    job = await load_owned_job(
        services, job_id, caller, hash_variant=True, correlation_id=correlation_id
    )
    return await download_response(services, job, index=index, correlation_id=correlation_id)
