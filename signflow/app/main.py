import sys
import logging

from contextlib import asynccontextmanager
from importlib.metadata import version, PackageNotFoundError
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from signflow.app.api.compliance import router as compliance_router
from signflow.app.api.eseal import router as eseal_router
from signflow.app.api.face import router as face_router
from signflow.app.api.hashsign import router as hashsign_router
from signflow.app.api.signature import router as signature_router
from signflow.app.core.config import Settings
from signflow.app.services.container import (
    ServiceContainer,
    build_http_client,
    build_services,
)

logger = logging.getLogger("signflow.main")


def get_app_version() -> str:
    """
    Resolve application version deterministically.

    Falls back to the source version when the package is not installed.
    """
    try:
        return version("signflow")
    except PackageNotFoundError:
        return "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Guarantees:
    - Fail-fast startup if configuration is invalid
    - One shared HTTP transport for every outbound dependency
    - Worker pool and expiry sweeper stopped before the transport closes

    A container handed to ``create_app`` is owned by the caller and is
    neither started nor stopped here.
    """
    if getattr(app.state, "services", None) is not None:
        yield
        return

    logger.info(
        "signflow_startup_begin",
        extra={
            "service": "signflow",
            "version": get_app_version(),
        },
    )

    # ------------------------------------------------------------------
    # Load and validate configuration (FAIL FAST)
    # ------------------------------------------------------------------
    settings = getattr(app.state, "settings", None)
    if settings is None:
        try:
            settings = Settings()
        except Exception:
            logger.exception("invalid_signflow_configuration")
            raise
        app.state.settings = settings

    # ------------------------------------------------------------------
    # Shared transport and service graph
    # ------------------------------------------------------------------
    http_client = build_http_client(settings)
    services = build_services(settings, http_client=http_client)
    await services.start()
    app.state.services = services

    logger.info(
        "signflow_startup_complete",
        extra={
            "ltv_backend": settings.ltv_backend,
            "eseal_configured": settings.eseal_soap_endpoint is not None,
        },
    )

    try:
        yield
    finally:
        logger.info("signflow_shutdown_begin")

        # Idempotent shutdown
        try:
            await services.stop()
        except Exception:
            logger.warning("services_shutdown_failed")

        try:
            await http_client.aclose()
        except Exception:
            logger.warning("http_client_shutdown_failed")

        app.state.services = None


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> ORJSONResponse:
    """Structured error details are returned as the response body itself."""
    content = exc.detail if isinstance(exc.detail, dict) else {"detail": exc.detail}
    return ORJSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=getattr(exc, "headers", None),
    )


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    Application factory for the signing orchestrator.
    """
    app = FastAPI(
        title="signflow",
        description=(
            "Signing workflow orchestrator for national digital identity "
            "signing, hash signing, biometric re-confirmation and eSeal."
        ),
        version=get_app_version(),
        docs_url="/docs",
        redoc_url=None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    if services is not None:
        settings = settings or services.settings
        app.state.services = services
    if settings is not None:
        app.state.settings = settings

    # Browser traffic arrives through the frontend origin only
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url] if settings is not None else [],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StarletteHTTPException, http_error_handler)

    app.include_router(signature_router)
    app.include_router(hashsign_router)
    app.include_router(face_router)
    app.include_router(eseal_router)
    app.include_router(compliance_router)

    @app.get(
        "/healthz",
        tags=["Monitoring"],
        summary="Liveness and readiness check",
    )
    async def health_check(request: Request):
        """
        Reports runtime identity and circuit breaker states.

        NOTE:
        - Does NOT call any outbound dependency
        """
        current: Optional[ServiceContainer] = getattr(request.app.state, "services", None)
        return ORJSONResponse(
            content={
                "status": "ok" if current is not None else "starting",
                "service": "signflow",
                "version": request.app.version,
                "runtime": f"python {sys.version.split()[0]}",
                "breakers": current.breakers.snapshot() if current is not None else {},
            }
        )

    return app


app = create_app()
