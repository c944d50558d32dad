import asyncio
import base64

import pytest

from conftest import PDF_BYTES, make_record, utc
from signature_sync.integrations.esignature.base import DOCX_MIME, AuthRequired, DownloadError, RecordNotFound
from signature_sync.models.agreement import AgreementStatus, CanonicalStatus
from signature_sync.models.webhook_event import EventKind
from signature_sync.services.completion_handler import CompletionHandler
from signature_sync.services.event_log import LoggedEvent


class FakeRedis:
    def __init__(self, *held_keys, ttl=30):
        self.keys = set(held_keys)
        self.ttls = {key: ttl for key in held_keys}
        self.sets = []
        self.deleted = []

    async def set(self, key, value, nx=False, ex=None):
        self.sets.append((key, nx, ex))
        if nx and key in self.keys:
            return None
        self.keys.add(key)
        self.ttls[key] = ex
        return True

    async def delete(self, key):
        self.deleted.append(key)
        self.keys.discard(key)


class TestCompletionHandler:
    @pytest.fixture
    def record(self, record_store):
        return record_store.add(make_record(provider_request_id="R1", canonical_status=CanonicalStatus.PARTIALLY_SIGNED))

    @pytest.mark.asyncio
    async def test_concurrent_finalize_archives_once(self, completion_handler, record, archive_store, gateway):
        results = await asyncio.gather(*(completion_handler.finalize("R1", record.id) for _ in range(10)))

        assert len(archive_store.puts) == 1
        assert gateway.calls.count("download_artifact") == 1
        refs = {result.archived_document_ref for result in results}
        assert refs == {"archive://documents/1.pdf"}
        assert all(result.archived for result in results)

    @pytest.mark.asyncio
    async def test_later_finalize_reuses_archived_reference(self, completion_handler, record, archive_store, record_store):
        first = await completion_handler.finalize("R1", record.id)
        second = await completion_handler.finalize("R1", record.id)

        assert second.archived_document_ref == first.archived_document_ref
        assert second.source == "existing"
        assert len(archive_store.puts) == 1
        stored = record_store.records[record.id]
        assert stored.canonical_status == CanonicalStatus.COMPLETED
        assert stored.business_status == AgreementStatus.SIGNED
        assert stored.signed_at is not None

    @pytest.mark.asyncio
    async def test_attached_document_is_preferred(self, completion_handler, record, event_log, archive_store, gateway):
        await event_log.append(
            LoggedEvent(
                provider_request_id="R1",
                event_kind=EventKind.REQUEST_COMPLETED,
                occurred_at=utc(9),
                raw_payload={
                    "RequestId": "R1",
                    "EventId": 3,
                    "Documents": [
                        {"DocumentName": "lease.docx", "DocumentContent": base64.b64encode(b"PK\x03\x04signed").decode()}
                    ],
                },
            )
        )

        result = await completion_handler.finalize("R1", record.id)

        assert result.source == "event"
        assert "download_artifact" not in gateway.calls
        content, content_type, filename = archive_store.puts[0]
        assert content == b"PK\x03\x04signed"
        assert content_type == DOCX_MIME
        assert filename == "lease.docx"

    @pytest.mark.asyncio
    async def test_undecodable_attachment_falls_back_to_download(self, completion_handler, record, event_log, archive_store, gateway):
        await event_log.append(
            LoggedEvent(
                provider_request_id="R1",
                event_kind=EventKind.REQUEST_COMPLETED,
                occurred_at=utc(9),
                raw_payload={"Documents": [{"DocumentName": "x.pdf", "DocumentContent": "not base64!!"}]},
            )
        )

        result = await completion_handler.finalize("R1", record.id)

        assert result.archived
        assert "download_artifact" in gateway.calls
        assert archive_store.puts[0][0] == PDF_BYTES

    @pytest.mark.asyncio
    async def test_download_failure_still_marks_completed(self, completion_handler, record, gateway, record_store, archive_store):
        gateway.download_error = DownloadError("Empty document data received", error_code="artifact_empty")

        result = await completion_handler.finalize("R1", record.id)

        assert result.archived is False
        assert result.archived_document_ref is None
        assert "Empty document data" in result.error
        stored = record_store.records[record.id]
        assert stored.canonical_status == CanonicalStatus.COMPLETED
        assert stored.business_status == AgreementStatus.SIGNED
        assert stored.archived_document_ref is None
        assert stored.signature_error
        assert archive_store.puts == []

    @pytest.mark.asyncio
    async def test_archive_failure_still_marks_completed(self, completion_handler, record, archive_store, record_store):
        archive_store.fail = True

        result = await completion_handler.finalize("R1", record.id)

        assert result.archived is False
        assert record_store.records[record.id].canonical_status == CanonicalStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_retry_after_failure_archives(self, completion_handler, record, gateway, record_store):
        gateway.download_error = DownloadError("timeout")
        await completion_handler.finalize("R1", record.id)

        gateway.download_error = None
        result = await completion_handler.finalize("R1", record.id)

        assert result.archived
        assert record_store.records[record.id].signature_error is None

    @pytest.mark.asyncio
    async def test_auth_failure_is_raised_after_recording_completion(self, completion_handler, record, gateway, record_store):
        gateway.download_error = AuthRequired("re-authenticate")

        with pytest.raises(AuthRequired):
            await completion_handler.finalize("R1", record.id)
        assert record_store.records[record.id].canonical_status == CanonicalStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_record(self, completion_handler):
        with pytest.raises(RecordNotFound):
            await completion_handler.finalize("R1", "missing")

    @pytest.mark.asyncio
    async def test_redis_claim_is_taken_and_released(self, gateway, event_log, record_store, archive_store, record):
        redis = FakeRedis()
        handler = CompletionHandler(gateway, event_log, record_store, archive_store, redis_client=redis)

        result = await handler.finalize("R1", record.id)

        assert result.archived
        assert redis.deleted == ["signature-sync:finalize:R1"]

    @pytest.mark.asyncio
    async def test_lost_claim_observes_winner(self, gateway, event_log, record_store, archive_store, record):
        redis = FakeRedis("signature-sync:finalize:R1")
        handler = CompletionHandler(
            gateway,
            event_log,
            record_store,
            archive_store,
            redis_client=redis,
            claim_wait_seconds=1,
            claim_poll_interval=0.01,
        )

        async def other_worker_finishes():
            await asyncio.sleep(0.05)
            await record_store.update_business_record(record.id, archived_document_ref="archive://other-worker.pdf")

        result, _ = await asyncio.gather(handler.finalize("R1", record.id), other_worker_finishes())

        assert result.archived_document_ref == "archive://other-worker.pdf"
        assert archive_store.puts == []
        assert "download_artifact" not in gateway.calls

    @pytest.mark.asyncio
    async def test_lost_claim_gives_up_after_wait(self, gateway, event_log, record_store, archive_store, record):
        redis = FakeRedis("signature-sync:finalize:R1")
        handler = CompletionHandler(
            gateway,
            event_log,
            record_store,
            archive_store,
            redis_client=redis,
            claim_wait_seconds=0.05,
            claim_poll_interval=0.01,
        )

        result = await handler.finalize("R1", record.id)

        assert result.archived is False
        assert "another worker" in result.error

    @pytest.mark.asyncio
    async def test_lost_claim_leaves_winner_expiry_alone(self, gateway, event_log, record_store, archive_store, record):
        redis = FakeRedis("signature-sync:finalize:R1", ttl=7)
        handler = CompletionHandler(
            gateway,
            event_log,
            record_store,
            archive_store,
            redis_client=redis,
            claim_ttl_seconds=300,
            claim_wait_seconds=0.02,
            claim_poll_interval=0.01,
        )

        await handler.finalize("R1", record.id)

        assert redis.sets == [("signature-sync:finalize:R1", True, 300)]
        assert redis.ttls["signature-sync:finalize:R1"] == 7
        assert redis.deleted == []

    @pytest.mark.asyncio
    async def test_winner_claim_carries_expiry(self, gateway, event_log, record_store, archive_store, record):
        redis = FakeRedis()
        handler = CompletionHandler(
            gateway, event_log, record_store, archive_store, redis_client=redis, claim_ttl_seconds=45
        )

        await handler.finalize("R1", record.id)

        assert redis.sets == [("signature-sync:finalize:R1", True, 45)]
        assert redis.ttls["signature-sync:finalize:R1"] == 45

    @pytest.mark.asyncio
    async def test_lost_claim_stops_when_winner_fails(self, gateway, event_log, record_store, archive_store, record):
        redis = FakeRedis("signature-sync:finalize:R1")
        handler = CompletionHandler(
            gateway,
            event_log,
            record_store,
            archive_store,
            redis_client=redis,
            claim_wait_seconds=30,
            claim_poll_interval=0.01,
        )

        async def other_worker_fails():
            await asyncio.sleep(0.03)
            await record_store.update_business_record(
                record.id,
                canonical_status=CanonicalStatus.COMPLETED,
                signature_error="Signed document not found at provider",
            )

        result, _ = await asyncio.wait_for(
            asyncio.gather(handler.finalize("R1", record.id), other_worker_fails()),
            timeout=5,
        )

        assert result.archived is False
        assert result.error == "Signed document not found at provider"
        assert "download_artifact" not in gateway.calls

    @pytest.mark.asyncio
    async def test_lost_claim_ignores_error_from_earlier_attempt(self, gateway, event_log, record_store, archive_store):
        stale = record_store.add(
            make_record(
                provider_request_id="R1",
                canonical_status=CanonicalStatus.COMPLETED,
                signature_error="earlier download failed",
            )
        )
        redis = FakeRedis("signature-sync:finalize:R1")
        handler = CompletionHandler(
            gateway,
            event_log,
            record_store,
            archive_store,
            redis_client=redis,
            claim_wait_seconds=1,
            claim_poll_interval=0.01,
        )

        async def other_worker_finishes():
            await asyncio.sleep(0.05)
            await record_store.update_business_record(
                stale.id, archived_document_ref="archive://other-worker.pdf", signature_error=None
            )

        result, _ = await asyncio.gather(handler.finalize("R1", stale.id), other_worker_finishes())

        assert result.archived is True
        assert result.archived_document_ref == "archive://other-worker.pdf"
