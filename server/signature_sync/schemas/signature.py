from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from signature_sync.models.agreement import CanonicalStatus, SignatoryStatus
from signature_sync.schemas.common import ORMModel


class SignatoryIn(BaseModel):
    name: str
    email: str
    identifier: str = Field(description="Text anchor in the document the signature stamp is placed against")
    private_message: str | None = Field(default=None, max_length=1000)


class DispatchRequest(BaseModel):
    title: str = Field(max_length=255)
    message: str = Field(default="", max_length=2000)
    signatories: list[SignatoryIn]
    document_url: str | None = None
    document_base64: str | None = None
    document_filename: str | None = Field(default=None, max_length=255)
    content_type: str | None = None
    callback_url: str | None = None
    attach_documents_on_complete: bool = True

    @model_validator(mode="after")
    def check_single_document(self) -> "DispatchRequest":
        if bool(self.document_url) == bool(self.document_base64):
            raise ValueError("Provide exactly one of document_url or document_base64")
        return self


class DispatchResponse(BaseModel):
    agreement_id: str
    provider_request_id: str
    status: CanonicalStatus


class SignatoryRead(ORMModel):
    name: str
    email: str
    identifier: str
    status: SignatoryStatus
    signed_at: datetime | None


class SignatureStatusRead(BaseModel):
    agreement_id: str
    provider_request_id: str | None = None
    status: CanonicalStatus
    label: str
    source: str
    confidence: str
    signatories: list[SignatoryRead] = Field(default_factory=list)
    archived_document_ref: str | None = None


class ArchiveResultRead(ORMModel):
    provider_request_id: str
    business_record_id: str
    archived: bool
    archived_document_ref: str | None
    source: str | None
    error: str | None


class AuthorizationUrlRead(BaseModel):
    url: str
    state: str


class ProviderAuthRead(BaseModel):
    authenticated: bool
    expires_at: datetime | None = None
