import logging
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Query
from fastapi.responses import RedirectResponse

from signflow.app.api.dependencies import (
    Caller,
    ClientIp,
    CorrelationId,
    Services,
    to_http_error,
)
from signflow.app.api.views import error_param, result_redirect
from signflow.app.core.errors import InvalidToken, SecurityMismatch, SignflowError
from signflow.app.schemas.api import (
    ReconfirmInitiateRequest,
    ReconfirmInitiateResponse,
    ReconfirmStatusResponse,
)
from signflow.app.schemas.reconfirmation import ReconfirmationStatus

logger = logging.getLogger("signflow.api.face")

router = APIRouter(prefix="/face", tags=["Biometric Re-confirmation"])


# =============================================================================
# POST /face/verify/initiate
# =============================================================================

@router.post(
    "/verify/initiate",
    summary="Start a biometric re-confirmation challenge",
    response_model=ReconfirmInitiateResponse,
)
async def initiate(
    payload: ReconfirmInitiateRequest,
    caller: Caller,
    services: Services,
    correlation_id: CorrelationId,
    client_ip: ClientIp,
) -> ReconfirmInitiateResponse:
    try:
        challenge = await services.reconfirmation.initiate(
            caller,
            purpose=payload.purpose,
            username_type=payload.username_type,
            transaction_ref=payload.transaction_ref,
            client_ip=client_ip,
        )
    except SignflowError as exc:
        raise to_http_error(exc, correlation_id) from exc

    return ReconfirmInitiateResponse(**challenge.model_dump())


# =============================================================================
# GET /face/callback (Provider authorization redirect)
# =============================================================================

@router.get("/callback", summary="Provider re-confirmation callback", include_in_schema=False)
async def callback(
    services: Services,
    correlation_id: CorrelationId,
    client_ip: ClientIp,
    state: Annotated[str, Query()] = "",
    code: Annotated[Optional[str], Query()] = None,
    error: Annotated[Optional[str], Query()] = None,
) -> RedirectResponse:
    try:
        record = await services.reconfirmation.handle_callback(
            state=state,
            code=code,
            error=error,
            client_ip=client_ip,
        )
    except InvalidToken:
        return result_redirect(services, "face", {"error": "invalid_state"})
    except SecurityMismatch:
        return result_redirect(services, "face", {"error": "verification_failed"})
    except SignflowError as exc:
        logger.error(
            "reconfirmation_callback_failed",
            extra={"trace_id": correlation_id, "code": exc.code},
        )
        return result_redirect(services, "face", {"error": error_param(exc.code)})

    verified = record.status is ReconfirmationStatus.VERIFIED
    return result_redirect(
        services,
        "face",
        {
            "status": "verified" if verified else "failed",
            "verification_id": record.id,
        },
    )


# =============================================================================
# GET /face/status/{verification_id}
# =============================================================================

@router.get("/status/{verification_id}", response_model=ReconfirmStatusResponse)
async def verification_status(
    verification_id: UUID,
    caller: Caller,
    services: Services,
    correlation_id: CorrelationId,
) -> ReconfirmStatusResponse:
    try:
        record = await services.reconfirmation.get_for_owner(verification_id, caller.owner_id)
    except SignflowError as exc:
        raise to_http_error(exc, correlation_id) from exc

    return ReconfirmStatusResponse(
        verification_id=record.id,
        status=record.status,
        purpose=record.purpose,
        transaction_ref=record.transaction_ref,
        error_message=record.error_message,
        verified_at=record.verified_at,
    )
