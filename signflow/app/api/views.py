from typing import Optional
from uuid import UUID

from fastapi import HTTPException, status
from fastapi.responses import RedirectResponse, Response

from signflow.app.schemas.api import DocumentView, JobStatusResponse
from signflow.app.schemas.identity import CallerIdentity
from signflow.app.schemas.jobs import DocumentStatus, JobStatus, SigningJob
from signflow.app.services.container import ServiceContainer
from signflow.app.services.provider_identity import build_url
from signflow.app.storage.blobs import BlobNotFound

DOWNLOADABLE = (JobStatus.SIGNED, JobStatus.FAILED_DOCUMENTS)


async def load_owned_job(
    services: ServiceContainer,
    job_id: UUID,
    caller: CallerIdentity,
    *,
    hash_variant: bool,
    correlation_id: str,
) -> SigningJob:
    """Jobs of other owners or of the other signing family read as missing."""
    job = await services.jobs.get(job_id)
    if job is None or job.owner_id != caller.owner_id or job.variant.is_hash != hash_variant:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "NOT_FOUND", "message": "Signing job not found"},
            headers={"X-Correlation-ID": correlation_id},
        )
    return job


def job_status_view(job: SigningJob, *, area: str) -> JobStatusResponse:
    documents = []
    for doc in job.documents:
        download_url = None
        if job.status in DOWNLOADABLE and doc.status is DocumentStatus.SIGNED:
            download_url = f"/{area}/download/{job.id}?index={doc.index}"
        documents.append(
            DocumentView(
                index=doc.index,
                name=doc.name,
                status=doc.status,
                error=doc.error,
                download_url=download_url,
            )
        )

    return JobStatusResponse(
        job_id=job.id,
        variant=job.variant,
        status=job.status,
        ltv_applied=job.ltv_applied,
        error_message=job.error_message,
        download_url=f"/{area}/download/{job.id}" if job.status is JobStatus.SIGNED else None,
        documents=documents,
        created_at=job.created_at,
        completed_at=job.completed_at,
    )


async def download_response(
    services: ServiceContainer,
    job: SigningJob,
    *,
    index: int,
    correlation_id: str,
) -> Response:
    doc = next((d for d in job.documents if d.index == index), None)
    if doc is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "NOT_FOUND", "message": f"Document {index} not found"},
            headers={"X-Correlation-ID": correlation_id},
        )

    if job.status not in DOWNLOADABLE or doc.status is not DocumentStatus.SIGNED or not doc.final_key:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "NOT_SIGNED", "message": "Document is not signed"},
            headers={"X-Correlation-ID": correlation_id},
        )

    try:
        content = await services.blobs.get(doc.final_key)
    except BlobNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "NOT_FOUND", "message": "Signed artifact is missing"},
            headers={"X-Correlation-ID": correlation_id},
        )

    suffix = f"_{doc.index}" if job.variant.is_batch else ""
    return Response(
        content=content,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="signed_{job.id}{suffix}.pdf"',
            "X-Correlation-ID": correlation_id,
            "X-LTV-Applied": "true" if doc.ltv_key else "false",
        },
    )


def result_redirect(services: ServiceContainer, area: str, params: dict) -> RedirectResponse:
    clean = {k: str(v) for k, v in params.items() if v is not None}
    url = build_url(f"{services.settings.frontend_url.rstrip('/')}/{area}/result", clean)
    return RedirectResponse(url, status_code=302)


def error_param(code: Optional[str]) -> str:
    return (code or "error").lower()
