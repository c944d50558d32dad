from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Enum as SAEnum, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from signature_sync.db.base import Base
from signature_sync.models.mixins import PROVIDER_REQUEST_ID_LENGTH, Identifier, TimestampMixin


class CanonicalStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    PARTIALLY_SIGNED = "partially_signed"
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"


class SignatoryStatus(str, Enum):
    PENDING = "pending"
    SIGNED = "signed"
    REJECTED = "rejected"


class AgreementStatus(str, Enum):
    DRAFT = "draft"
    PENDING_SIGNATURE = "pending_signature"
    SIGNED = "signed"


class Agreement(TimestampMixin, Base):
    __tablename__ = "agreements"

    id: Mapped[Identifier]
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[AgreementStatus] = mapped_column(
        SAEnum(AgreementStatus), default=AgreementStatus.DRAFT, nullable=False
    )
    provider_request_id: Mapped[str | None] = mapped_column(
        String(PROVIDER_REQUEST_ID_LENGTH), nullable=True, unique=True, index=True
    )
    signature_status: Mapped[CanonicalStatus] = mapped_column(
        SAEnum(CanonicalStatus), default=CanonicalStatus.NONE, nullable=False
    )
    signatories: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    archived_document_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    signature_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
