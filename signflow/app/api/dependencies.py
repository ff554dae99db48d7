import logging
import uuid
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request, status

from signflow.app.core.errors import (
    DependencyUnavailable,
    IllegalTransition,
    InvalidToken,
    JobNotFound,
    PoolSaturated,
    SealRejected,
    SecurityMismatch,
    SignflowError,
    TransactionConflict,
    ValidationError,
)
from signflow.app.schemas.identity import CallerIdentity
from signflow.app.services.container import ServiceContainer

logger = logging.getLogger("signflow.api")

# =============================================================================
# Dependency providers
# =============================================================================

def get_correlation_id(
    x_correlation_id: Annotated[
        Optional[str],
        Header(description="Request trace ID"),
    ] = None,
) -> str:
    """Extract or generate a correlation ID for end-to-end traceability."""
    if x_correlation_id and len(x_correlation_id) > 128:
        return str(uuid.uuid4())
    return x_correlation_id or str(uuid.uuid4())


def get_services(request: Request) -> ServiceContainer:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("services not initialized")
    return services


def get_client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


class HeaderIdentityResolver:
    """
    Resolves the caller from identity headers set by the upstream
    session gateway. Requests without an identity header are rejected.
    """

    OWNER = "X-Identity-Id"
    IDENTITY_CLASS = "X-Identity-Class"
    PROVIDER_IDENTITY = "X-Identity-Uuid"
    EID = "X-Identity-Eid"
    MOBILE = "X-Identity-Mobile"
    EMAIL = "X-Identity-Email"

    def __call__(self, request: Request) -> CallerIdentity:
        headers = request.headers
        owner_id = (headers.get(self.OWNER) or "").strip()
        if not owner_id:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"error": "UNAUTHENTICATED", "message": "Authentication required"},
            )
        return CallerIdentity(
            owner_id=owner_id,
            identity_class=_header(headers, self.IDENTITY_CLASS),
            provider_identity=_header(headers, self.PROVIDER_IDENTITY),
            eid=_header(headers, self.EID),
            mobile=_header(headers, self.MOBILE),
            email=_header(headers, self.EMAIL),
        )


def _header(headers, name: str) -> Optional[str]:
    # Blank headers are treated as absent
    value = (headers.get(name) or "").strip()
    return value or None


get_caller = HeaderIdentityResolver()

Services = Annotated[ServiceContainer, Depends(get_services)]
Caller = Annotated[CallerIdentity, Depends(get_caller)]
CorrelationId = Annotated[str, Depends(get_correlation_id)]
ClientIp = Annotated[Optional[str], Depends(get_client_ip)]


# =============================================================================
# Error mapping
# =============================================================================

_STATUS_BY_ERROR = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (InvalidToken, status.HTTP_400_BAD_REQUEST),
    (SecurityMismatch, status.HTTP_403_FORBIDDEN),
    (JobNotFound, status.HTTP_404_NOT_FOUND),
    (TransactionConflict, status.HTTP_409_CONFLICT),
    (IllegalTransition, status.HTTP_409_CONFLICT),
    (SealRejected, status.HTTP_502_BAD_GATEWAY),
    (DependencyUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PoolSaturated, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def to_http_error(exc: SignflowError, correlation_id: str) -> HTTPException:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, mapped in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = mapped
            break

    logger.warning(
        "request_rejected",
        extra={
            "trace_id": correlation_id,
            "code": exc.code,
            "status_code": status_code,
        },
    )
    return HTTPException(
        status_code=status_code,
        detail={"error": exc.code, "message": exc.message},
        headers={"X-Correlation-ID": correlation_id},
    )
