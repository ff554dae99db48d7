from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from signflow.app.schemas.jobs import utcnow


class SealType(str, Enum):
    PADES = "PADES"
    CADES = "CADES"


class SealStatus(str, Enum):
    SEALED = "SEALED"
    FAILED = "FAILED"


class SealJob(BaseModel):
    """Record of one organizational seal request."""

    id: UUID = Field(default_factory=uuid4)
    requested_by: str
    seal_type: SealType
    status: SealStatus
    request_id: str

    input_key: Optional[str] = None
    output_key: Optional[str] = None
    error_message: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True, extra="forbid")


class SealResult(BaseModel):
    job_id: UUID
    request_id: str
    sealed: bytes = Field(..., repr=False)

    model_config = ConfigDict(frozen=True)


class VerifyResult(BaseModel):
    """
    Outcome of a seal/signature verification.

    Verification reports problems in the result instead of raising:
    ``result_major`` is ``NotConfigured`` or ``ServiceUnavailable`` when
    the verification service could not be asked at all.
    """

    valid: bool
    result_major: Optional[str] = None
    result_minor: Optional[str] = None
    result_message: Optional[str] = None
    signer_name: Optional[str] = None
    signing_time: Optional[str] = None

    model_config = ConfigDict(frozen=True)
