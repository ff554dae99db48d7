from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from signflow.app.schemas.jobs import utcnow


class ReconfirmationStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"


class UsernameType(str, Enum):
    """Which profile attribute is sent to the Provider as the username hint."""

    EID = "EID"
    MOBILE = "MOBILE"
    EMAIL = "EMAIL"


class IdentityReconfirmation(BaseModel):
    """
    One biometric re-confirmation challenge.

    ``expected_identity`` is bound from the requesting session at
    initiation and is the only value the Provider's answer is compared to.
    """

    id: UUID = Field(default_factory=uuid4)
    owner_id: str = Field(..., min_length=1)
    purpose: str
    transaction_ref: Optional[str] = None

    expected_identity: Optional[str] = None
    returned_identity: Optional[str] = None
    match: Optional[bool] = None

    status: ReconfirmationStatus = ReconfirmationStatus.PENDING
    error_message: Optional[str] = None
    client_ip: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    verified_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @model_validator(mode="after")
    def _verified_requires_match(self) -> "IdentityReconfirmation":
        if self.status is ReconfirmationStatus.VERIFIED and self.match is not True:
            raise ValueError("VERIFIED re-confirmation requires match=True")
        return self
