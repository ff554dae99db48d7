"""
Request and response bodies of the HTTP surface.

Documents travel as Base64 inside JSON; decoding and PDF validation
happen in the orchestrator path, never here.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from signflow.app.schemas.jobs import DocumentStatus, JobStatus, SigningVariant
from signflow.app.schemas.reconfirmation import ReconfirmationStatus, UsernameType
from signflow.app.schemas.signing import MIN_FIELD_SIZE, Placement, SignDocument
from signflow.app.utils.pdf import decode_base64_document


class DocumentPayload(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=255)
    file_base64: str = Field(..., min_length=1)

    page_number: int = Field(1, ge=1)
    x: float = Field(100, ge=0)
    y: float = Field(100, ge=0)
    width: float = Field(200, ge=MIN_FIELD_SIZE)
    height: float = Field(100, ge=MIN_FIELD_SIZE)
    show_signature_image: bool = False

    model_config = ConfigDict(extra="forbid")

    def to_document(self) -> SignDocument:
        return SignDocument(
            name=self.file_name,
            content=decode_base64_document(self.file_base64),
            placement=Placement(
                page=self.page_number,
                x=self.x,
                y=self.y,
                width=self.width,
                height=self.height,
            ),
            show_signature_image=self.show_signature_image,
        )


class BatchPayload(BaseModel):
    documents: List[DocumentPayload] = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")

    def to_documents(self) -> List[SignDocument]:
        return [doc.to_document() for doc in self.documents]


class InitiateResponse(BaseModel):
    job_id: UUID
    signing_url: str
    document_count: int


class DocumentView(BaseModel):
    index: int
    name: str
    status: DocumentStatus
    error: Optional[str] = None
    download_url: Optional[str] = None


class JobStatusResponse(BaseModel):
    job_id: UUID
    variant: SigningVariant
    status: JobStatus
    ltv_applied: bool
    error_message: Optional[str] = None
    download_url: Optional[str] = None
    documents: List[DocumentView] = Field(default_factory=list)
    created_at: datetime
    completed_at: Optional[datetime] = None


class ReconfirmInitiateRequest(BaseModel):
    purpose: str = Field(..., min_length=1, max_length=255)
    transaction_ref: str = Field(..., min_length=1, max_length=255)
    username_type: UsernameType

    model_config = ConfigDict(extra="forbid")


class ReconfirmInitiateResponse(BaseModel):
    verification_id: UUID
    authorization_url: str
    expires_in: int


class ReconfirmStatusResponse(BaseModel):
    verification_id: UUID
    status: ReconfirmationStatus
    purpose: str
    transaction_ref: Optional[str] = None
    error_message: Optional[str] = None
    verified_at: Optional[datetime] = None


class SealResponse(BaseModel):
    job_id: UUID
    request_id: str
    download_url: str
    signature_url: Optional[str] = None
