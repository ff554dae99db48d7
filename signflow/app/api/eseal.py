import logging
from enum import Enum
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, File, HTTPException, Query, UploadFile, status
from fastapi.responses import Response

from signflow.app.api.dependencies import (
    Caller,
    ClientIp,
    CorrelationId,
    Services,
    to_http_error,
)
from signflow.app.core.errors import SignflowError
from signflow.app.schemas.api import SealResponse
from signflow.app.schemas.eseal import SealStatus, SealType, VerifyResult
from signflow.app.services.eseal import OCTET_STREAM, PKCS7_SIGNATURE
from signflow.app.storage.blobs import PDF, BlobNotFound

logger = logging.getLogger("signflow.api.eseal")

router = APIRouter(prefix="/eseal", tags=["Organizational eSeal"])


class ArtifactType(str, Enum):
    SEALED = "sealed"
    DOCUMENT = "document"
    SIGNATURE = "signature"


async def _read_upload(
    upload: UploadFile,
    *,
    limit: int,
    correlation_id: str,
) -> bytes:
    try:
        content = await upload.read(limit + 1)
    finally:
        await upload.close()

    if not content:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "EMPTY_FILE", "message": "Uploaded file is empty"},
            headers={"X-Correlation-ID": correlation_id},
        )
    if len(content) > limit:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail={"error": "FILE_TOO_LARGE", "message": f"File exceeds {limit} bytes"},
            headers={"X-Correlation-ID": correlation_id},
        )
    return content


# =============================================================================
# POST /eseal/pdf
# =============================================================================

@router.post(
    "/pdf",
    summary="Apply the organizational PAdES seal to a PDF",
    response_model=SealResponse,
)
async def seal_pdf(
    file: Annotated[UploadFile, File(description="PDF to seal")],
    caller: Caller,
    services: Services,
    correlation_id: CorrelationId,
    client_ip: ClientIp,
) -> SealResponse:
    content = await _read_upload(
        file,
        limit=services.settings.max_pdf_bytes,
        correlation_id=correlation_id,
    )
    try:
        result = await services.eseal.seal_pdf(
            content,
            requested_by=caller.owner_id,
            client_ip=client_ip,
        )
    except SignflowError as exc:
        raise to_http_error(exc, correlation_id) from exc

    return SealResponse(
        job_id=result.job_id,
        request_id=result.request_id,
        download_url=f"/eseal/download/{result.job_id}",
    )


# =============================================================================
# POST /eseal/document
# =============================================================================

@router.post(
    "/document",
    summary="Produce a detached CAdES seal for an arbitrary document",
    response_model=SealResponse,
)
async def seal_document(
    file: Annotated[UploadFile, File(description="Document to seal")],
    caller: Caller,
    services: Services,
    correlation_id: CorrelationId,
    client_ip: ClientIp,
) -> SealResponse:
    content = await _read_upload(
        file,
        limit=services.settings.max_pdf_bytes,
        correlation_id=correlation_id,
    )
    try:
        result = await services.eseal.seal_document(
            content,
            requested_by=caller.owner_id,
            client_ip=client_ip,
        )
    except SignflowError as exc:
        raise to_http_error(exc, correlation_id) from exc

    return SealResponse(
        job_id=result.job_id,
        request_id=result.request_id,
        download_url=f"/eseal/download/{result.job_id}?type=document",
        signature_url=f"/eseal/download/{result.job_id}?type=signature",
    )


# =============================================================================
# POST /eseal/verify
# =============================================================================

@router.post(
    "/verify",
    summary="Verify a sealed PDF, or a document against its detached seal",
    response_model=VerifyResult,
)
async def verify(
    file: Annotated[UploadFile, File(description="Sealed PDF or original document")],
    services: Services,
    correlation_id: CorrelationId,
    signature: Annotated[
        Optional[UploadFile],
        File(description="Detached PKCS#7 signature"),
    ] = None,
) -> VerifyResult:
    limit = services.settings.max_pdf_bytes
    content = await _read_upload(file, limit=limit, correlation_id=correlation_id)

    if signature is None:
        return await services.eseal.verify_pdf(content)

    detached = await _read_upload(signature, limit=limit, correlation_id=correlation_id)
    return await services.eseal.verify_cades(content, detached)


# =============================================================================
# GET /eseal/download/{job_id}
# =============================================================================

@router.get(
    "/download/{job_id}",
    response_class=Response,
    responses={200: {"content": {"application/pdf": {}, "application/pkcs7-signature": {}}}},
)
async def download(
    job_id: UUID,
    caller: Caller,
    services: Services,
    correlation_id: CorrelationId,
    artifact: Annotated[ArtifactType, Query(alias="type")] = ArtifactType.SEALED,
) -> Response:
    job = await services.seals.get(job_id)
    if job is None or job.requested_by != caller.owner_id or job.status is not SealStatus.SEALED:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "NOT_FOUND", "message": "Seal job not found"},
            headers={"X-Correlation-ID": correlation_id},
        )

    if job.seal_type is SealType.PADES:
        key, media_type, filename = job.output_key, PDF, f"sealed_{job.id}.pdf"
    elif artifact is ArtifactType.SIGNATURE:
        key, media_type, filename = job.output_key, PKCS7_SIGNATURE, f"seal_{job.id}.p7s"
    else:
        key, media_type, filename = job.input_key, OCTET_STREAM, f"document_{job.id}.bin"

    try:
        if key is None:
            raise BlobNotFound(str(job.id))
        content = await services.blobs.get(key)
    except BlobNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "NOT_FOUND", "message": "Sealed artifact is missing"},
            headers={"X-Correlation-ID": correlation_id},
        )

    return Response(
        content=content,
        media_type=media_type,
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Correlation-ID": correlation_id,
        },
    )
