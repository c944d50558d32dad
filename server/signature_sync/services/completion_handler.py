from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from signature_sync.core.logging import get_logger
from signature_sync.integrations.esignature.base import (
    DOCX_MIME,
    PDF_MIME,
    SUPPORTED_DOCUMENT_TYPES,
    ArchiveError,
    Artifact,
    AuthRequired,
    DownloadError,
    RecordNotFound,
)
from signature_sync.integrations.esignature.evia_adapter import EviaSignGateway
from signature_sync.models.agreement import AgreementStatus, CanonicalStatus
from signature_sync.models.webhook_event import EventKind
from signature_sync.services.archive_store import ArchiveStore
from signature_sync.services.event_log import EventLog
from signature_sync.services.record_store import BusinessRecord, BusinessRecordStore

logger = get_logger(__name__)

CLAIM_PREFIX = "signature-sync:finalize:"


@dataclass
class ArchiveResult:
    provider_request_id: str
    business_record_id: str
    archived: bool
    archived_document_ref: str | None = None
    source: str | None = None
    error: str | None = None


class CompletionHandler:
    """
    Archives the signed document of a completed request exactly once.

    Concurrent callers for the same provider request id share one in-flight
    task. When a redis client is given, a claim key also keeps other worker
    processes from archiving the same request.
    """

    def __init__(
        self,
        gateway: EviaSignGateway,
        event_log: EventLog,
        record_store: BusinessRecordStore,
        archive_store: ArchiveStore,
        redis_client: Optional[Redis] = None,
        claim_ttl_seconds: int = 300,
        claim_wait_seconds: float = 10,
        claim_poll_interval: float = 0.5,
    ):
        self.gateway = gateway
        self.event_log = event_log
        self.record_store = record_store
        self.archive_store = archive_store
        self.redis_client = redis_client
        self.claim_ttl_seconds = claim_ttl_seconds
        self.claim_wait_seconds = claim_wait_seconds
        self.claim_poll_interval = claim_poll_interval
        self._inflight: dict[str, asyncio.Future[ArchiveResult]] = {}

    async def finalize(self, provider_request_id: str, business_record_id: str) -> ArchiveResult:
        task = self._inflight.get(provider_request_id)
        if task is None:
            task = asyncio.ensure_future(self._finalize_once(provider_request_id, business_record_id))
            self._inflight[provider_request_id] = task
            task.add_done_callback(lambda done: self._forget(provider_request_id, done))
        else:
            logger.info("finalize.joined", provider_request_id=provider_request_id)
        return await asyncio.shield(task)

    def _forget(self, provider_request_id: str, task: asyncio.Future[ArchiveResult]) -> None:
        if self._inflight.get(provider_request_id) is task:
            del self._inflight[provider_request_id]

    async def _finalize_once(self, provider_request_id: str, business_record_id: str) -> ArchiveResult:
        record = await self.record_store.get_business_record(business_record_id)
        if record is None:
            raise RecordNotFound(f"Agreement {business_record_id} not found", request_id=provider_request_id)

        if record.archived_document_ref:
            return ArchiveResult(
                provider_request_id=provider_request_id,
                business_record_id=business_record_id,
                archived=True,
                archived_document_ref=record.archived_document_ref,
                source="existing",
            )

        claim_key = f"{CLAIM_PREFIX}{provider_request_id}"
        if not await self._acquire_claim(claim_key):
            logger.info("finalize.claim.lost", provider_request_id=provider_request_id)
            return await self._wait_for_winner(provider_request_id, business_record_id, record.signature_error)

        try:
            return await self._archive(record, provider_request_id)
        finally:
            await self._release_claim(claim_key)

    async def _archive(self, record: BusinessRecord, provider_request_id: str) -> ArchiveResult:
        try:
            artifact = await self._attached_artifact(provider_request_id)
            if artifact is None:
                artifact = await self.gateway.download_artifact(provider_request_id)
        except AuthRequired as exc:
            await self._record_failure(record, provider_request_id, exc)
            raise
        except DownloadError as exc:
            logger.warning(
                "finalize.download_failed",
                provider_request_id=provider_request_id,
                error_code=exc.error_code,
                error=exc.error_message,
            )
            return await self._record_failure(record, provider_request_id, exc)

        try:
            ref = await self.archive_store.put(artifact.content, artifact.content_type, artifact.filename)
        except ArchiveError as exc:
            logger.error("finalize.archive_failed", provider_request_id=provider_request_id, error=exc.error_message)
            return await self._record_failure(record, provider_request_id, exc)

        await self.record_store.update_business_record(
            record.id,
            canonical_status=CanonicalStatus.COMPLETED,
            business_status=AgreementStatus.SIGNED,
            archived_document_ref=ref,
            signature_error=None,
            signed_at=record.signed_at or datetime.now(timezone.utc),
        )
        logger.info(
            "finalize.archived",
            provider_request_id=provider_request_id,
            agreement_id=record.id,
            source=artifact.source,
            size_bytes=len(artifact.content),
        )
        return ArchiveResult(
            provider_request_id=provider_request_id,
            business_record_id=record.id,
            archived=True,
            archived_document_ref=ref,
            source=artifact.source,
        )

    async def _record_failure(self, record: BusinessRecord, provider_request_id: str, exc: Exception) -> ArchiveResult:
        # Signing finished even though the archive did not.
        message = str(exc)
        await self.record_store.update_business_record(
            record.id,
            canonical_status=CanonicalStatus.COMPLETED,
            business_status=AgreementStatus.SIGNED,
            signature_error=message,
            signed_at=record.signed_at or datetime.now(timezone.utc),
        )
        return ArchiveResult(
            provider_request_id=provider_request_id,
            business_record_id=record.id,
            archived=False,
            error=message,
        )

    async def _attached_artifact(self, provider_request_id: str) -> Artifact | None:
        try:
            events = await self.event_log.list_events(provider_request_id)
        except Exception as exc:  # attached copy is optional, download instead
            logger.warning("finalize.events_unavailable", provider_request_id=provider_request_id, error=str(exc))
            return None

        completed = [event for event in events if event.event_kind == EventKind.REQUEST_COMPLETED]
        for event in sorted(completed, key=lambda item: item.occurred_at, reverse=True):
            for document in event.raw_payload.get("Documents") or []:
                if not isinstance(document, dict) or not document.get("DocumentContent"):
                    continue
                try:
                    content = base64.b64decode(document["DocumentContent"], validate=True)
                except (binascii.Error, ValueError, TypeError):
                    logger.warning("finalize.attached_document_invalid", provider_request_id=provider_request_id)
                    continue
                if not content:
                    continue
                name = document.get("DocumentName")
                return Artifact(
                    content=content,
                    content_type=_attached_content_type(document, name),
                    filename=name,
                    source="event",
                )
        return None

    async def _acquire_claim(self, key: str) -> bool:
        if self.redis_client is None:
            return True
        try:
            # The expiry is only set by the worker that takes the claim.
            created = await self.redis_client.set(key, 1, nx=True, ex=self.claim_ttl_seconds)
            return bool(created)
        except RedisError as exc:
            logger.warning("finalize.claim.unavailable", error=str(exc))
            return True

    async def _release_claim(self, key: str) -> None:
        if self.redis_client is None:
            return
        try:
            await self.redis_client.delete(key)
        except RedisError as exc:
            logger.warning("finalize.claim.release_failed", error=str(exc))

    async def _wait_for_winner(
        self, provider_request_id: str, business_record_id: str, previous_error: str | None
    ) -> ArchiveResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.claim_wait_seconds
        while True:
            record = await self.record_store.get_business_record(business_record_id)
            if record is not None and record.archived_document_ref:
                return ArchiveResult(
                    provider_request_id=provider_request_id,
                    business_record_id=business_record_id,
                    archived=True,
                    archived_document_ref=record.archived_document_ref,
                    source="existing",
                )
            if (
                record is not None
                and record.canonical_status == CanonicalStatus.COMPLETED
                and record.signature_error
                and record.signature_error != previous_error
            ):
                # The winner gave up; its error is the answer for this attempt too.
                return ArchiveResult(
                    provider_request_id=provider_request_id,
                    business_record_id=business_record_id,
                    archived=False,
                    error=record.signature_error,
                )
            if loop.time() >= deadline:
                break
            await asyncio.sleep(self.claim_poll_interval)

        return ArchiveResult(
            provider_request_id=provider_request_id,
            business_record_id=business_record_id,
            archived=False,
            error="Finalize is in progress in another worker",
        )


def _attached_content_type(document: dict, name: str | None) -> str:
    declared = document.get("ContentType") or document.get("contentType")
    if declared in SUPPORTED_DOCUMENT_TYPES:
        return declared
    if name and name.lower().endswith(".docx"):
        return DOCX_MIME
    return PDF_MIME
