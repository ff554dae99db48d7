"""
Centralized configuration management for the signflow service.

Pydantic v2 settings management to enforce strict validation,
zero secret leakage, and fast-failure on invalid configuration.
"""

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal, Optional

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


# -------------------------------------------------------------------------
# Reusable Type Aliases
# -------------------------------------------------------------------------

EnvRequired = Annotated[
    str,
    Field(min_length=1),
]

SensitiveEnv = Annotated[
    SecretStr,
    Field(description="Sensitive credential, redacted from logs"),
]


class BreakerSettings(BaseModel):
    """Circuit breaker tuning for one outbound dependency."""

    failure_threshold: int = Field(5, ge=1)
    cooldown_seconds: float = Field(30.0, gt=0)
    half_open_max_calls: int = Field(1, ge=1)

    model_config = ConfigDict(frozen=True, extra="forbid")


# -------------------------------------------------------------------------
# Settings Model
# -------------------------------------------------------------------------

class Settings(BaseSettings):
    """
    Application settings parsed from the environment.

    Fails fast at startup if the Provider client credentials are missing
    or any endpoint is malformed.
    """

    # ---------------------------------------------------------------------
    # Provider (national digital identity) client registration
    # ---------------------------------------------------------------------

    provider_base_url: Annotated[
        AnyHttpUrl,
        Field(
            default="https://stg-id.uaepass.ae",
            description="Provider authorization / token / userinfo host",
        ),
    ]
    provider_client_id: EnvRequired
    provider_client_secret: SensitiveEnv

    hash_sign_scope: str = Field(
        default=(
            "urn:uae:digitalid:backend_api:hash_signing "
            "urn:safelayer:eidas:sign:identity:use:server"
        ),
    )
    reconfirmation_acr_values: str = Field(
        default="urn:digitalid:authentication:flow:mobileid",
        description="Authentication strength requested for biometric re-confirmation",
    )

    # ---------------------------------------------------------------------
    # Multi-document signing API
    # ---------------------------------------------------------------------

    signing_api_base_url: Annotated[
        AnyHttpUrl,
        Field(default="https://stg-id.uaepass.ae/trustedx-resources/esignsp/v2"),
    ]
    service_token_url: Annotated[
        AnyHttpUrl,
        Field(default="https://stg-id.uaepass.ae/trustedx-authserver/oauth/main-as/token"),
    ]
    service_token_scope: str = Field(
        default="urn:safelayer:eidas:sign:process:document",
    )

    # ---------------------------------------------------------------------
    # Local hash-signing co-process
    # ---------------------------------------------------------------------

    hash_sdk_base_url: Annotated[
        AnyHttpUrl,
        Field(default="http://localhost:8081"),
    ]

    # ---------------------------------------------------------------------
    # eSeal and LTV (XML remote procedure endpoints)
    # ---------------------------------------------------------------------

    eseal_soap_endpoint: Optional[AnyHttpUrl] = None
    eseal_cert_subject_name: str = ""

    ltv_backend: Literal["soap", "dss", "disabled"] = "soap"
    ltv_soap_endpoint: Optional[AnyHttpUrl] = None
    ltv_trust_root_path: Optional[Path] = Field(
        default=None,
        description="PEM/DER trust root used by the local DSS backend",
    )

    # ---------------------------------------------------------------------
    # Application surfaces
    # ---------------------------------------------------------------------

    app_base_url: str = "http://localhost:8080"
    frontend_url: str = "http://localhost:4200"

    # ---------------------------------------------------------------------
    # Timeouts and lifecycle windows
    # ---------------------------------------------------------------------

    http_connect_timeout_seconds: float = Field(10.0, gt=0)
    http_read_timeout_seconds: float = Field(60.0, gt=0)

    signing_job_ttl_minutes: int = Field(60, ge=1)
    expiry_sweep_interval_seconds: float = Field(300.0, gt=0)
    reconfirmation_window_minutes: int = Field(15, ge=1)

    # ---------------------------------------------------------------------
    # Operational Boundaries
    # ---------------------------------------------------------------------

    max_pdf_size_mb: Annotated[
        int,
        Field(
            default=25,
            ge=1,
            le=25,
            description="OOM protection limit (max 25MB)",
        ),
    ]
    max_batch_documents: int = Field(10, ge=1, le=50)

    worker_pool_core: int = Field(4, ge=1)
    worker_pool_max: int = Field(8, ge=1)
    worker_queue_capacity: int = Field(50, ge=1)

    # ---------------------------------------------------------------------
    # Circuit breakers (one per outbound dependency)
    # ---------------------------------------------------------------------

    breaker_signing_api: BreakerSettings = BreakerSettings(
        failure_threshold=5, cooldown_seconds=60.0,
    )
    breaker_hash_sdk: BreakerSettings = BreakerSettings(
        failure_threshold=5, cooldown_seconds=30.0,
    )
    breaker_eseal: BreakerSettings = BreakerSettings(
        failure_threshold=5, cooldown_seconds=60.0,
    )
    breaker_ltv: BreakerSettings = BreakerSettings(
        failure_threshold=3, cooldown_seconds=30.0,
    )
    breaker_provider_token: BreakerSettings = BreakerSettings(
        failure_threshold=3, cooldown_seconds=30.0,
    )

    # ---------------------------------------------------------------------
    # Storage
    # ---------------------------------------------------------------------

    storage_root: Path = Path("./storage")
    token_store_redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL for correlation tokens; in-memory when unset",
    )

    model_config = SettingsConfigDict(
        env_prefix="SIGNFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )

    @property
    def provider_base(self) -> str:
        return str(self.provider_base_url).rstrip("/")

    @property
    def signing_api_base(self) -> str:
        return str(self.signing_api_base_url).rstrip("/")

    @property
    def max_pdf_bytes(self) -> int:
        return self.max_pdf_size_mb * 1024 * 1024


# -------------------------------------------------------------------------
# Settings Dependency Provider
# -------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Dependency injection provider for application settings.

    Uses an explicit singleton pattern within the FastAPI lifecycle.
    """
    return Settings()
