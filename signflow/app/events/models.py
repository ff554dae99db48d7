from __future__ import annotations

from typing import Any, Dict, Optional
from enum import Enum
from datetime import datetime, timezone
from uuid import uuid4, UUID

from pydantic import BaseModel, Field, ConfigDict


# ----------------------------------------------------------------------
# Audit Actions (Finite and Versioned)
# ----------------------------------------------------------------------
class AuditAction(str, Enum):
    """
    Actions recorded by the orchestrator for compliance review.

    NOTE:
    This enum is finite and versioned.
    New entries must preserve existing meanings.
    """

    # ------------------------------------------------------------------
    # Interactive / batch document signing
    # ------------------------------------------------------------------
    SIGN_INITIATED = "SIGN_INITIATED"
    SIGN_COMPLETED = "SIGN_COMPLETED"
    SIGN_FAILED = "SIGN_FAILED"
    SIGN_CANCELED = "SIGN_CANCELED"
    SIGN_EXPIRED = "SIGN_EXPIRED"

    # ------------------------------------------------------------------
    # Hash signing (co-process)
    # ------------------------------------------------------------------
    HASH_SIGN_INITIATED = "HASH_SIGN_INITIATED"
    HASH_SIGN_COMPLETED = "HASH_SIGN_COMPLETED"
    HASH_SIGN_FAILED = "HASH_SIGN_FAILED"

    # ------------------------------------------------------------------
    # Biometric re-confirmation
    # ------------------------------------------------------------------
    RECONFIRM_INITIATED = "RECONFIRM_INITIATED"
    RECONFIRM_VERIFIED = "RECONFIRM_VERIFIED"
    RECONFIRM_FAILED = "RECONFIRM_FAILED"
    SECURITY_INCIDENT = "SECURITY_INCIDENT"

    # ------------------------------------------------------------------
    # Organizational seals
    # ------------------------------------------------------------------
    ESEAL_PDF = "ESEAL_PDF"
    ESEAL_DOCUMENT = "ESEAL_DOCUMENT"

    # ------------------------------------------------------------------
    # Data subject requests
    # ------------------------------------------------------------------
    USER_DATA_ERASED = "USER_DATA_ERASED"


class SubjectType(str, Enum):
    SIGNING_JOB = "SIGNING_JOB"
    RECONFIRMATION = "RECONFIRMATION"
    ESEAL_JOB = "ESEAL_JOB"
    USER = "USER"


# ----------------------------------------------------------------------
# Record Model
# ----------------------------------------------------------------------
class AuditRecord(BaseModel):
    """
    An immutable statement of who did what to which subject.

    Records are:
    - append-only
    - transport-agnostic
    - free of document content and credentials
    """

    record_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    actor_id: Optional[str] = None
    action: AuditAction
    subject_type: SubjectType
    subject_id: str
    client_ip: Optional[str] = None

    # Outcome and other contextual metadata (status, counts, reasons, ...)
    context: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )
