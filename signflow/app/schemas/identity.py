from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


VISITOR_IDENTITY_CLASS = "SOP1"


class CallerIdentity(BaseModel):
    """
    The authenticated caller, as resolved by the upstream session layer.

    ``provider_identity`` is the Provider-issued identity value bound to the
    session; it is what biometric re-confirmation compares against.
    """

    owner_id: str = Field(..., min_length=1)
    identity_class: Optional[str] = Field(
        None,
        description="Provider account class (SOP1 visitor, SOP2 resident, SOP3 citizen)",
    )
    provider_identity: Optional[str] = None

    eid: Optional[str] = None
    mobile: Optional[str] = None
    email: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def is_visitor(self) -> bool:
        return (self.identity_class or "").upper() == VISITOR_IDENTITY_CLASS
