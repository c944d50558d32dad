from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from signature_sync.core.logging import get_logger
from signature_sync.integrations.esignature.base import RecordNotFound
from signature_sync.models.agreement import Agreement, AgreementStatus, CanonicalStatus, SignatoryStatus

logger = get_logger(__name__)


@dataclass
class SignatoryProgress:
    name: str
    email: str
    identifier: str = ""
    status: SignatoryStatus = SignatoryStatus.PENDING
    signed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "identifier": self.identifier,
            "status": self.status.value,
            "signed_at": self.signed_at.isoformat() if self.signed_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SignatoryProgress":
        signed_at = data.get("signed_at")
        if isinstance(signed_at, str):
            signed_at = datetime.fromisoformat(signed_at)
        return cls(
            name=data.get("name") or "",
            email=data.get("email") or "",
            identifier=data.get("identifier") or "",
            status=SignatoryStatus(data.get("status") or SignatoryStatus.PENDING.value),
            signed_at=signed_at,
        )


@dataclass
class BusinessRecord:
    """The signature facet of an agreement as seen by the signing workflow."""

    id: str
    provider_request_id: str | None = None
    canonical_status: CanonicalStatus = CanonicalStatus.NONE
    signatories: list[SignatoryProgress] = field(default_factory=list)
    archived_document_ref: str | None = None
    business_status: AgreementStatus = AgreementStatus.DRAFT
    title: str = ""
    signature_error: str | None = None
    signed_at: datetime | None = None


UPDATABLE_FIELDS = frozenset(
    {
        "provider_request_id",
        "canonical_status",
        "signatories",
        "archived_document_ref",
        "business_status",
        "signature_error",
        "signed_at",
    }
)


# Terminality order of canonical statuses; recorded progress never moves down it.
STATUS_RANK: dict[CanonicalStatus, int] = {
    CanonicalStatus.NONE: 0,
    CanonicalStatus.UNKNOWN: 0,
    CanonicalStatus.PENDING: 1,
    CanonicalStatus.PARTIALLY_SIGNED: 2,
    CanonicalStatus.FAILED: 3,
    CanonicalStatus.COMPLETED: 4,
}


def advance_status(current: CanonicalStatus, reported: CanonicalStatus) -> CanonicalStatus:
    return reported if STATUS_RANK[reported] > STATUS_RANK[current] else current


def merge_progress(
    stored: list[SignatoryProgress], reported: list[SignatoryProgress]
) -> list[SignatoryProgress]:
    """
    Merge reported signatory progress into the stored list by email.

    Stored entries missing from the report are kept, and a signed or rejected
    entry is never reset to pending.
    """
    merged = list(stored)
    index = {item.email.strip().lower(): position for position, item in enumerate(merged)}
    for item in reported:
        key = item.email.strip().lower()
        position = index.get(key)
        if position is None:
            index[key] = len(merged)
            merged.append(item)
            continue
        current = merged[position]
        if current.status == SignatoryStatus.PENDING and item.status != SignatoryStatus.PENDING:
            merged[position] = replace(
                item,
                name=current.name or item.name,
                email=current.email,
                identifier=current.identifier or item.identifier,
            )
        elif current.status == item.status == SignatoryStatus.SIGNED and current.signed_at is None:
            merged[position] = replace(current, signed_at=item.signed_at)
    return merged


class BusinessRecordStore(ABC):
    @abstractmethod
    async def get_business_record(self, record_id: str) -> BusinessRecord | None:
        ...

    @abstractmethod
    async def find_by_provider_request_id(self, provider_request_id: str) -> BusinessRecord | None:
        ...

    @abstractmethod
    async def update_business_record(self, record_id: str, **fields: Any) -> BusinessRecord:
        """Apply a partial update. Raises RecordNotFound for an unknown id."""

    @abstractmethod
    async def record_progress(
        self,
        record_id: str,
        status: CanonicalStatus,
        signatories: list[SignatoryProgress],
    ) -> BusinessRecord:
        """
        Merge reconciled progress into the stored record without lowering it.

        The status only moves forward in STATUS_RANK order and signatories are
        merged with the stored list, so a stale answer written late loses
        nothing. Raises RecordNotFound for an unknown id.
        """


def _to_record(agreement: Agreement) -> BusinessRecord:
    return BusinessRecord(
        id=agreement.id,
        provider_request_id=agreement.provider_request_id,
        canonical_status=agreement.signature_status,
        signatories=[SignatoryProgress.from_dict(item) for item in agreement.signatories or []],
        archived_document_ref=agreement.archived_document_ref,
        business_status=agreement.status,
        title=agreement.title,
        signature_error=agreement.signature_error,
        signed_at=agreement.signed_at,
    )


class AgreementRecordStore(BusinessRecordStore):
    """Business records backed by the agreements table. One session per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_business_record(self, record_id: str) -> BusinessRecord | None:
        async with self.session_factory() as session:
            agreement = await session.get(Agreement, record_id)
            return _to_record(agreement) if agreement else None

    async def find_by_provider_request_id(self, provider_request_id: str) -> BusinessRecord | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Agreement).where(Agreement.provider_request_id == provider_request_id)
            )
            agreement = result.scalar_one_or_none()
            return _to_record(agreement) if agreement else None

    async def update_business_record(self, record_id: str, **fields: Any) -> BusinessRecord:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        async with self.session_factory() as session:
            agreement = await session.get(Agreement, record_id)
            if agreement is None:
                raise RecordNotFound(f"Agreement {record_id} not found")

            for name, value in fields.items():
                if name == "canonical_status":
                    agreement.signature_status = value
                elif name == "business_status":
                    agreement.status = value
                elif name == "signatories":
                    agreement.signatories = [item.to_dict() for item in value]
                else:
                    setattr(agreement, name, value)

            await session.commit()
            await session.refresh(agreement)
            logger.info("record.updated", agreement_id=record_id, fields=sorted(fields))
            return _to_record(agreement)

    async def record_progress(
        self,
        record_id: str,
        status: CanonicalStatus,
        signatories: list[SignatoryProgress],
    ) -> BusinessRecord:
        async with self.session_factory() as session:
            # Row lock so concurrent reconciliations merge one after another.
            agreement = await session.get(Agreement, record_id, with_for_update=True)
            if agreement is None:
                raise RecordNotFound(f"Agreement {record_id} not found")

            stored = _to_record(agreement)
            new_status = advance_status(stored.canonical_status, status)
            merged = merge_progress(stored.signatories, signatories)
            if new_status != status:
                logger.info(
                    "record.progress.kept",
                    agreement_id=record_id,
                    stored=stored.canonical_status.value,
                    reported=status.value,
                )
            agreement.signature_status = new_status
            agreement.signatories = [item.to_dict() for item in merged]

            await session.commit()
            await session.refresh(agreement)
            return _to_record(agreement)
