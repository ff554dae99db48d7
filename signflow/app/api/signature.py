import logging
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Query, UploadFile
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
from signflow.app.schemas.eseal import VerifyResult
from signflow.app.services.completion import ProviderOutcome

logger = logging.getLogger("signflow.api.signature")

router = APIRouter(prefix="/signature", tags=["Document Signing"])

RecentlyReconfirmed = Depends(require_capability(Capability.RECENT_RECONFIRMATION))


# =============================================================================
# POST /signature/initiate
# =============================================================================

@router.post(
    "/initiate",
    summary="Start interactive signing of one PDF",
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
        result = await services.orchestrator.initiate_single(
            caller,
            payload.to_document(),
            client_ip=client_ip,
        )
    except SignflowError as exc:
        raise to_http_error(exc, correlation_id) from exc

    logger.info(
        "signature_initiated",
        extra={"trace_id": correlation_id, "job_id": str(result.job_id)},
    )
    return InitiateResponse(**result.model_dump())


# =============================================================================
# POST /signature/multi/initiate
# =============================================================================

@router.post(
    "/multi/initiate",
    summary="Start interactive signing of a batch of PDFs",
    response_model=InitiateResponse,
    dependencies=[RecentlyReconfirmed],
)
async def initiate_multiple(
    payload: BatchPayload,
    caller: Caller,
    services: Services,
    correlation_id: CorrelationId,
    client_ip: ClientIp,
) -> InitiateResponse:
    try:
        result = await services.orchestrator.initiate_multiple(
            caller,
            payload.to_documents(),
            client_ip=client_ip,
        )
    except SignflowError as exc:
        raise to_http_error(exc, correlation_id) from exc

    logger.info(
        "signature_batch_initiated",
        extra={
            "trace_id": correlation_id,
            "job_id": str(result.job_id),
            "documents": result.document_count,
        },
    )
    return InitiateResponse(**result.model_dump())


# =============================================================================
# GET /signature/callback (Provider finish callback)
# =============================================================================

@router.get("/callback", summary="Provider finish callback", include_in_schema=False)
async def callback(
    services: Services,
    correlation_id: CorrelationId,
    state: Annotated[str, Query()] = "",
    status: Annotated[str, Query()] = "",
    signer_process_id: Annotated[Optional[str], Query()] = None,
) -> RedirectResponse:
    try:
        receipt = await services.callbacks.handle_sign(
            state=state,
            status=status,
            signer_process_id=signer_process_id,
        )
    except InvalidToken:
        return result_redirect(services, "signature", {"error": "invalid_state"})
    except SignflowError as exc:
        logger.error(
            "signature_callback_rejected",
            extra={"trace_id": correlation_id, "code": exc.code},
        )
        return result_redirect(services, "signature", {"error": error_param(exc.code)})

    outcome = ProviderOutcome.from_sign_callback(status)
    return result_redirect(
        services,
        "signature",
        {
            "status": "success" if outcome.is_success else outcome.status,
            "job_id": receipt.job_id,
        },
    )


# =============================================================================
# GET /signature/status/{job_id}
# =============================================================================

@router.get("/status/{job_id}", response_model=JobStatusResponse)
async def job_status(
    job_id: UUID,
    caller: Caller,
    services: Services,
    correlation_id: CorrelationId,
) -> JobStatusResponse:
    job = await load_owned_job(
        services, job_id, caller, hash_variant=False, correlation_id=correlation_id
    )
    return job_status_view(job, area="signature")


# =============================================================================
# GET /signature/download/{job_id}
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
        services, job_id, caller, hash_variant=False, correlation_id=correlation_id
    )
    return await download_response(services, job, index=index, correlation_id=correlation_id)


# =============================================================================
# POST /signature/verify
# =============================================================================

@router.post("/verify", response_model=VerifyResult)
async def verify(
    file: Annotated[UploadFile, File(description="Signed PDF to verify")],
    services: Services,
) -> VerifyResult:
    try:
        content = await file.read(services.settings.max_pdf_bytes + 1)
    finally:
        await file.close()

    if not content or len(content) > services.settings.max_pdf_bytes:
        return VerifyResult(
            valid=False,
            result_major="Error",
            result_message="File is empty or exceeds the size limit",
        )
    return await services.eseal.verify_pdf(content)
