"""
Status reconciliation.

Resolves the canonical signature status of a request from three sources in
strict order: the stored webhook events, a live provider poll, and the last
status persisted on the business record.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from signature_sync.core.logging import get_logger
from signature_sync.integrations.esignature.base import NotFound, RecordNotFound
from signature_sync.integrations.esignature.evia_adapter import EviaSignGateway
from signature_sync.models.agreement import CanonicalStatus, SignatoryStatus
from signature_sync.models.webhook_event import EventKind
from signature_sync.services.completion_handler import ArchiveResult, CompletionHandler
from signature_sync.services.event_log import EventLog, LoggedEvent
from signature_sync.services.record_store import BusinessRecord, BusinessRecordStore, SignatoryProgress

logger = get_logger(__name__)


class StatusSource(str, Enum):
    EVENT_LOG = "event_log"
    PROVIDER = "provider"
    BUSINESS_RECORD = "business_record"
    NONE = "none"


class Confidence(str, Enum):
    HIGH = "high"
    LOW = "low"


EVENT_KIND_STATUS: dict[EventKind, CanonicalStatus] = {
    EventKind.REQUEST_RECEIVED: CanonicalStatus.PENDING,
    EventKind.SIGNATORY_COMPLETED: CanonicalStatus.PARTIALLY_SIGNED,
    EventKind.REQUEST_COMPLETED: CanonicalStatus.COMPLETED,
}

PROVIDER_STATUS_ALIASES: dict[str, CanonicalStatus] = {
    "completed": CanonicalStatus.COMPLETED,
    "complete": CanonicalStatus.COMPLETED,
    "signed": CanonicalStatus.COMPLETED,
    "finished": CanonicalStatus.COMPLETED,
    "in_progress": CanonicalStatus.PARTIALLY_SIGNED,
    "inprogress": CanonicalStatus.PARTIALLY_SIGNED,
    "partially_signed": CanonicalStatus.PARTIALLY_SIGNED,
    "partiallysigned": CanonicalStatus.PARTIALLY_SIGNED,
    "partial": CanonicalStatus.PARTIALLY_SIGNED,
    "pending": CanonicalStatus.PENDING,
    "pending_signature": CanonicalStatus.PENDING,
    "sent": CanonicalStatus.PENDING,
    "received": CanonicalStatus.PENDING,
    "waiting": CanonicalStatus.PENDING,
    "draft": CanonicalStatus.PENDING,
    "declined": CanonicalStatus.FAILED,
    "rejected": CanonicalStatus.FAILED,
    "expired": CanonicalStatus.FAILED,
    "cancelled": CanonicalStatus.FAILED,
    "canceled": CanonicalStatus.FAILED,
    "voided": CanonicalStatus.FAILED,
    "failed": CanonicalStatus.FAILED,
}

SIGNATORY_STATUS_ALIASES: dict[str, SignatoryStatus] = {
    "signed": SignatoryStatus.SIGNED,
    "completed": SignatoryStatus.SIGNED,
    "complete": SignatoryStatus.SIGNED,
    "rejected": SignatoryStatus.REJECTED,
    "declined": SignatoryStatus.REJECTED,
}

STATUS_LABELS: dict[CanonicalStatus, str] = {
    CanonicalStatus.NONE: "Not Sent",
    CanonicalStatus.PENDING: "Pending Signature",
    CanonicalStatus.PARTIALLY_SIGNED: "Partially Signed",
    CanonicalStatus.COMPLETED: "Signed",
    CanonicalStatus.FAILED: "Failed",
    CanonicalStatus.UNKNOWN: "Unknown",
}


def _status_key(value: str) -> str:
    return value.strip().lower().replace("-", "_").replace(" ", "_")


def normalize_provider_status(value: Any) -> CanonicalStatus | None:
    """Map any provider status string onto the canonical set, or None if unrecognised."""
    if isinstance(value, CanonicalStatus):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    return PROVIDER_STATUS_ALIASES.get(_status_key(value))


def display_label(status: CanonicalStatus) -> str:
    return STATUS_LABELS[status]


def merge_signatory(
    signatories: list[SignatoryProgress],
    *,
    email: str,
    name: str | None = None,
    status: SignatoryStatus = SignatoryStatus.SIGNED,
    signed_at: datetime | None = None,
) -> list[SignatoryProgress]:
    """Upsert one signatory by case-insensitive email and return the new list."""
    key = email.strip().lower()
    merged: list[SignatoryProgress] = []
    found = False
    for signatory in signatories:
        if signatory.email.strip().lower() != key:
            merged.append(signatory)
            continue
        found = True
        if signatory.status == SignatoryStatus.SIGNED and status == SignatoryStatus.SIGNED:
            merged.append(replace(signatory, signed_at=signatory.signed_at or signed_at))
        else:
            merged.append(
                replace(
                    signatory,
                    name=signatory.name or name or "",
                    status=status,
                    signed_at=signed_at if status == SignatoryStatus.SIGNED else signatory.signed_at,
                )
            )
    if not found:
        merged.append(
            SignatoryProgress(
                name=name or email,
                email=email,
                status=status,
                signed_at=signed_at if status == SignatoryStatus.SIGNED else None,
            )
        )
    return merged


def derive_from_events(
    events: Iterable[LoggedEvent],
    signatories: list[SignatoryProgress],
) -> tuple[CanonicalStatus, list[SignatoryProgress]] | None:
    """
    Status and signatory progress implied by stored events.

    The winning event is the one with the highest kind, ties broken by the
    latest occurrence, so arrival order never lowers the status.
    """
    events = list(events)
    if not events:
        return None

    top = max(events, key=lambda event: (int(event.event_kind), event.occurred_at))
    status = EVENT_KIND_STATUS[EventKind(top.event_kind)]

    merged = list(signatories)
    for event in sorted(events, key=lambda item: item.occurred_at):
        if event.event_kind == EventKind.SIGNATORY_COMPLETED and event.actor_email:
            merged = merge_signatory(
                merged,
                email=event.actor_email,
                name=event.actor_name,
                signed_at=event.occurred_at,
            )

    if status == CanonicalStatus.COMPLETED:
        merged = [
            replace(item, status=SignatoryStatus.SIGNED, signed_at=item.signed_at or top.occurred_at)
            if item.status == SignatoryStatus.PENDING
            else item
            for item in merged
        ]
    return status, merged


def merge_provider_signatories(
    signatories: list[SignatoryProgress],
    reported: Iterable[dict[str, Any]],
) -> list[SignatoryProgress]:
    merged = list(signatories)
    for entry in reported:
        email = entry.get("email") or entry.get("Email")
        if not email:
            continue
        raw_status = entry.get("status") or entry.get("Status") or ""
        status = SIGNATORY_STATUS_ALIASES.get(_status_key(str(raw_status)), SignatoryStatus.PENDING)
        signed_at = _parse_time(entry.get("signedAt") or entry.get("SignedDate"))
        existing = next((item for item in merged if item.email.strip().lower() == email.strip().lower()), None)
        if status == SignatoryStatus.PENDING and existing is not None:
            # A pending report never undoes a recorded signature.
            continue
        merged = merge_signatory(
            merged,
            email=email,
            name=entry.get("name") or entry.get("Name"),
            status=status,
            signed_at=signed_at,
        )
    return merged


def _parse_time(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass
class ResolvedStatus:
    status: CanonicalStatus
    signatories: list[SignatoryProgress] = field(default_factory=list)
    source: StatusSource = StatusSource.NONE
    confidence: Confidence = Confidence.LOW
    archived_document_ref: str | None = None
    completion: ArchiveResult | None = None
    provider_request_id: str | None = None

    @property
    def label(self) -> str:
        return display_label(self.status)


class StatusReconciler:
    def __init__(
        self,
        event_log: EventLog,
        gateway: EviaSignGateway,
        record_store: BusinessRecordStore,
        completion_handler: CompletionHandler,
    ):
        self.event_log = event_log
        self.gateway = gateway
        self.record_store = record_store
        self.completion_handler = completion_handler

    async def resolve(
        self,
        provider_request_id: str,
        last_known_status: CanonicalStatus | None = None,
        record: BusinessRecord | None = None,
    ) -> ResolvedStatus:
        """
        Resolve the canonical status of a request. Never raises.

        Args:
            provider_request_id: Correlation key assigned by the provider
            last_known_status: Status persisted on the business record, if any
            record: The business record, looked up by request id when omitted

        Returns:
            ResolvedStatus from the first source that gave a usable answer
        """
        if record is None:
            record = await self._find_record(provider_request_id)
        if last_known_status is None and record is not None:
            last_known_status = record.canonical_status
        signatories = list(record.signatories) if record else []

        resolved = await self._from_event_log(provider_request_id, signatories)
        if resolved is None:
            resolved = await self._from_provider(provider_request_id, signatories)

        if resolved is None:
            resolved = ResolvedStatus(
                status=last_known_status if last_known_status is not None else CanonicalStatus.UNKNOWN,
                signatories=signatories,
                source=StatusSource.BUSINESS_RECORD if last_known_status is not None else StatusSource.NONE,
                confidence=Confidence.LOW,
            )
        elif last_known_status == CanonicalStatus.COMPLETED and resolved.status != CanonicalStatus.COMPLETED:
            logger.info(
                "reconcile.completed_kept",
                provider_request_id=provider_request_id,
                reported=resolved.status.value,
                source=resolved.source.value,
            )
            resolved.status = CanonicalStatus.COMPLETED

        resolved.provider_request_id = provider_request_id
        resolved.archived_document_ref = record.archived_document_ref if record else None

        if (
            resolved.status == CanonicalStatus.COMPLETED
            and resolved.source in (StatusSource.EVENT_LOG, StatusSource.PROVIDER)
            and record is not None
            and record.canonical_status != CanonicalStatus.COMPLETED
        ):
            resolved.completion = await self._finalize(provider_request_id, record)
            if resolved.completion is not None and resolved.completion.archived_document_ref:
                resolved.archived_document_ref = resolved.completion.archived_document_ref

        logger.info(
            "reconcile.resolved",
            provider_request_id=provider_request_id,
            status=resolved.status.value,
            source=resolved.source.value,
            confidence=resolved.confidence.value,
        )
        return resolved

    async def refresh(self, business_record_id: str) -> ResolvedStatus:
        """Resolve and persist the status of one agreement. Raises RecordNotFound for an unknown id."""
        record = await self.record_store.get_business_record(business_record_id)
        if record is None:
            raise RecordNotFound(f"Agreement {business_record_id} not found")
        if not record.provider_request_id:
            return ResolvedStatus(
                status=record.canonical_status,
                signatories=list(record.signatories),
                source=StatusSource.BUSINESS_RECORD,
                confidence=Confidence.LOW,
                archived_document_ref=record.archived_document_ref,
            )
        resolved = await self.resolve(record.provider_request_id, record=record)
        await self._persist(record, resolved)
        return resolved

    async def refresh_by_request_id(self, provider_request_id: str) -> ResolvedStatus:
        record = await self._find_record(provider_request_id)
        resolved = await self.resolve(provider_request_id, record=record)
        if record is not None:
            await self._persist(record, resolved)
        return resolved

    async def _from_event_log(
        self, provider_request_id: str, signatories: list[SignatoryProgress]
    ) -> ResolvedStatus | None:
        try:
            events = await self.event_log.list_events(provider_request_id)
        except Exception as exc:  # read path degrades to the next source
            logger.warning(
                "reconcile.event_log_unavailable",
                provider_request_id=provider_request_id,
                error=str(exc),
                exc_info=True,
            )
            return None

        derived = derive_from_events(events, signatories)
        if derived is None:
            return None
        status, merged = derived
        return ResolvedStatus(status=status, signatories=merged, source=StatusSource.EVENT_LOG, confidence=Confidence.HIGH)

    async def _from_provider(
        self, provider_request_id: str, signatories: list[SignatoryProgress]
    ) -> ResolvedStatus | None:
        try:
            result = await self.gateway.poll_status(provider_request_id)
        except Exception as exc:  # read path degrades to the business record
            logger.warning(
                "reconcile.provider_unavailable",
                provider_request_id=provider_request_id,
                error=str(exc),
                exc_info=True,
            )
            return None

        if isinstance(result, NotFound):
            logger.info("reconcile.provider_not_found", provider_request_id=provider_request_id)
            return None

        status = normalize_provider_status(result.status)
        if status is None:
            logger.warning(
                "reconcile.provider_status_unmapped",
                provider_request_id=provider_request_id,
                reported=result.status,
                endpoint=result.endpoint,
            )
            return None

        merged = merge_provider_signatories(signatories, result.signatories)
        return ResolvedStatus(status=status, signatories=merged, source=StatusSource.PROVIDER, confidence=Confidence.HIGH)

    async def _find_record(self, provider_request_id: str) -> BusinessRecord | None:
        try:
            return await self.record_store.find_by_provider_request_id(provider_request_id)
        except Exception as exc:  # read path, resolve without a record
            logger.warning("reconcile.record_unavailable", provider_request_id=provider_request_id, error=str(exc))
            return None

    async def _finalize(self, provider_request_id: str, record: BusinessRecord) -> ArchiveResult | None:
        try:
            return await self.completion_handler.finalize(provider_request_id, record.id)
        except Exception as exc:  # finalize is retried by the next refresh
            logger.error(
                "reconcile.finalize_failed",
                provider_request_id=provider_request_id,
                agreement_id=record.id,
                error=str(exc),
                exc_info=True,
            )
            return None

    async def _persist(self, record: BusinessRecord, resolved: ResolvedStatus) -> None:
        if resolved.source not in (StatusSource.EVENT_LOG, StatusSource.PROVIDER):
            return
        try:
            stored = await self.record_store.record_progress(record.id, resolved.status, resolved.signatories)
        except Exception as exc:  # status display must not fail on a write
            logger.error("reconcile.persist_failed", agreement_id=record.id, error=str(exc), exc_info=True)
            return

        # A concurrent reconciliation may have recorded further progress.
        resolved.status = stored.canonical_status
        resolved.signatories = list(stored.signatories)
        if stored.archived_document_ref:
            resolved.archived_document_ref = stored.archived_document_ref
