"""
Route-level capability requirements.

A route declares what the caller must have done recently by adding
``Depends(require_capability(...))``; the check is a plain call into the
owning service.
"""

from datetime import timedelta
from enum import Enum
from typing import Callable

from fastapi import HTTPException, status

from signflow.app.api.dependencies import Caller, CorrelationId, Services

VERIFY_URL = "/face/verify/initiate"


class Capability(str, Enum):
    RECENT_RECONFIRMATION = "RECENT_RECONFIRMATION"


def require_capability(capability: Capability) -> Callable:
    if capability is not Capability.RECENT_RECONFIRMATION:
        raise ValueError(f"Unsupported capability: {capability}")

    async def _check(
        caller: Caller,
        services: Services,
        correlation_id: CorrelationId,
    ) -> None:
        window = timedelta(minutes=services.settings.reconfirmation_window_minutes)
        if await services.reconfirmation.has_recent_verification(caller.owner_id, window):
            return
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "RECONFIRMATION_REQUIRED",
                "message": "A recent biometric re-confirmation is required for this operation",
                "verify_url": VERIFY_URL,
            },
            headers={"X-Correlation-ID": correlation_id},
        )

    return _check
