import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from signflow.app.api.dependencies import Caller, ClientIp, CorrelationId, Services
from signflow.app.api.guards import Capability, require_capability
from signflow.app.services.compliance import ERASE_CONFIRMATION, DataExport, ErasureReport

logger = logging.getLogger("signflow.api.compliance")

router = APIRouter(prefix="/users/me", tags=["Data Subject Requests"])


class EraseRequest(BaseModel):
    confirm: str = ""


# =============================================================================
# DELETE /users/me/data
# =============================================================================

@router.delete(
    "/data",
    summary="Erase the caller's signing, re-confirmation and seal records",
    response_model=ErasureReport,
    dependencies=[Depends(require_capability(Capability.RECENT_RECONFIRMATION))],
)
async def erase_my_data(
    payload: EraseRequest,
    caller: Caller,
    services: Services,
    correlation_id: CorrelationId,
    client_ip: ClientIp,
) -> ErasureReport:
    if payload.confirm != ERASE_CONFIRMATION:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "CONFIRMATION_REQUIRED",
                "message": f'Include {{"confirm": "{ERASE_CONFIRMATION}"}} in the request body',
            },
            headers={"X-Correlation-ID": correlation_id},
        )

    return await services.user_data.erase(caller.owner_id, client_ip=client_ip)


# =============================================================================
# GET /users/me/data-export
# =============================================================================

@router.get("/data-export", response_model=DataExport)
async def export_my_data(caller: Caller, services: Services) -> DataExport:
    return await services.user_data.export(caller.owner_id)
