"""
Shared test configuration and fixtures for the Signature Sync test suite.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.pop("WEBHOOK_SECRET", None)
os.environ.pop("USE_REDIS_CLAIMS", None)

import asyncio
import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from signature_sync.core.config import Settings, clear_settings_cache
from signature_sync.integrations.esignature.base import (
    NOT_FOUND,
    ArchiveError,
    Artifact,
    AuthRequired,
    CredentialStore,
    Credentials,
    DownloadError,
    EventLogError,
    RawStatusResult,
    RecordNotFound,
)
from signature_sync.models.agreement import AgreementStatus, CanonicalStatus
from signature_sync.services.archive_store import ArchiveStore
from signature_sync.services.container import build_services
from signature_sync.services.event_log import EventLog, LoggedEvent
from signature_sync.services.record_store import (
    UPDATABLE_FIELDS,
    BusinessRecord,
    BusinessRecordStore,
    advance_status,
    merge_progress,
)

clear_settings_cache()

PDF_BYTES = b"%PDF-1.4 signed agreement"


def utc(minute: int = 0) -> datetime:
    return datetime(2026, 10, 19, 9, minute, tzinfo=timezone.utc)


def valid_credentials(**overrides) -> Credentials:
    values = {
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "expires_at": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    values.update(overrides)
    return Credentials(**values)


# ---------------------------------------------------------------------------
# aiohttp doubles
# ---------------------------------------------------------------------------


class FakeResponse:
    def __init__(self, status: int = 200, json_data: Any = None, body: bytes | str | None = None, headers=None):
        self.status = status
        self._json = json_data
        if body is None and json_data is not None:
            body = json.dumps(json_data)
        if isinstance(body, str):
            body = body.encode("utf-8")
        self._body = body or b""
        self.headers = headers or {}

    async def json(self, content_type: Optional[str] = "application/json"):
        if self._json is not None:
            return self._json
        return json.loads(self._body.decode("utf-8"))

    async def read(self) -> bytes:
        return self._body

    async def text(self) -> str:
        return self._body.decode("utf-8")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


class FakeSession:
    """Routes (method, url) to queued responses and records every call."""

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[FakeResponse]] = {}
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []
        self.closed = False

    def add(self, method: str, url: str, *responses: FakeResponse) -> None:
        self.routes.setdefault((method, url), []).extend(responses)

    def _respond(self, method: str, url: str, kwargs: Dict[str, Any]) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        queue = self.routes.get((method, url))
        if not queue:
            return FakeResponse(404, body="")
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def get(self, url: str, **kwargs) -> FakeResponse:
        return self._respond("GET", url, kwargs)

    def post(self, url: str, **kwargs) -> FakeResponse:
        return self._respond("POST", url, kwargs)

    def urls(self, method: Optional[str] = None) -> List[str]:
        return [url for call_method, url, _ in self.calls if method is None or call_method == method]

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class InMemoryRecordStore(BusinessRecordStore):
    def __init__(self, *records: BusinessRecord):
        self.records: Dict[str, BusinessRecord] = {record.id: record for record in records}
        self.updates: List[Tuple[str, Dict[str, Any]]] = []

    def add(self, record: BusinessRecord) -> BusinessRecord:
        self.records[record.id] = record
        return record

    async def get_business_record(self, record_id: str) -> Optional[BusinessRecord]:
        return self.records.get(record_id)

    async def find_by_provider_request_id(self, provider_request_id: str) -> Optional[BusinessRecord]:
        return next(
            (record for record in self.records.values() if record.provider_request_id == provider_request_id),
            None,
        )

    async def update_business_record(self, record_id: str, **fields: Any) -> BusinessRecord:
        assert set(fields) <= UPDATABLE_FIELDS
        record = self.records.get(record_id)
        if record is None:
            raise RecordNotFound(f"Agreement {record_id} not found")
        self.updates.append((record_id, fields))
        self.records[record_id] = replace(record, **fields)
        return self.records[record_id]

    async def record_progress(self, record_id: str, status: CanonicalStatus, signatories) -> BusinessRecord:
        record = self.records.get(record_id)
        if record is None:
            raise RecordNotFound(f"Agreement {record_id} not found")
        fields = {
            "canonical_status": advance_status(record.canonical_status, status),
            "signatories": merge_progress(record.signatories, list(signatories)),
        }
        self.updates.append((record_id, fields))
        self.records[record_id] = replace(record, **fields)
        return self.records[record_id]


class InMemoryEventLog(EventLog):
    def __init__(self):
        self.events: List[LoggedEvent] = []
        self.fail_writes = False
        self.fail_reads = False

    async def append(self, event: LoggedEvent) -> LoggedEvent:
        if self.fail_writes:
            raise EventLogError("database unavailable", request_id=event.provider_request_id)
        stored = replace(event, id=f"evt-{len(self.events) + 1}", received_at=datetime.now(timezone.utc))
        self.events.append(stored)
        return stored

    async def list_events(self, provider_request_id: str) -> List[LoggedEvent]:
        if self.fail_reads:
            raise RuntimeError("event log unavailable")
        return [event for event in self.events if event.provider_request_id == provider_request_id]


class InMemoryArchiveStore(ArchiveStore):
    def __init__(self):
        self.puts: List[Tuple[bytes, str, Optional[str]]] = []
        self.fail = False

    async def put(self, data: bytes, content_type: str, filename: Optional[str] = None) -> str:
        # Yield so concurrent finalize calls overlap.
        await asyncio.sleep(0.01)
        if self.fail:
            raise ArchiveError("disk full")
        self.puts.append((data, content_type, filename))
        return f"archive://documents/{len(self.puts)}.pdf"


class FakeGateway:
    """Stands in for EviaSignGateway above the HTTP layer."""

    def __init__(self):
        self.credentials = CredentialStore(valid_credentials())
        self.poll_result: Any = NOT_FOUND
        self.poll_error: Optional[Exception] = None
        self.artifact = Artifact(content=PDF_BYTES, source="request-document")
        self.download_error: Optional[Exception] = None
        self.request_id = "R1"
        self.calls: List[str] = []
        self.submissions: List[Dict[str, Any]] = []

    async def get_access_token(self) -> str:
        self.calls.append("get_access_token")
        if not self.credentials.is_valid():
            raise AuthRequired("Provider authentication required")
        return self.credentials.get().access_token

    async def upload(self, source) -> str:
        self.calls.append("upload")
        return "doc-token-1"

    async def submit(self, document_token, title, message, signatories, callback_url, attach_documents_on_complete=True):
        self.calls.append("submit")
        self.submissions.append(
            {
                "document_token": document_token,
                "title": title,
                "message": message,
                "signatories": list(signatories),
                "callback_url": callback_url,
                "attach": attach_documents_on_complete,
            }
        )
        return self.request_id

    async def poll_status(self, request_id: str):
        self.calls.append("poll_status")
        if self.poll_error is not None:
            raise self.poll_error
        return self.poll_result

    async def download_artifact(self, request_id: str) -> Artifact:
        self.calls.append("download_artifact")
        await asyncio.sleep(0)
        if self.download_error is not None:
            raise self.download_error
        return self.artifact

    def authorization_url(self, state: str) -> str:
        return f"https://evia.example.com/authorize?state={state}"

    async def exchange_authorization_code(self, code: str) -> Credentials:
        if code == "bad":
            raise AuthRequired("Token request rejected with status 400")
        credentials = valid_credentials(access_token=f"token-for-{code}")
        self.credentials.store(credentials)
        return credentials

    async def close(self) -> None:
        pass


def make_record(record_id: str = "agr-1", **overrides) -> BusinessRecord:
    values: Dict[str, Any] = {
        "id": record_id,
        "title": "Lease",
        "provider_request_id": None,
        "canonical_status": CanonicalStatus.NONE,
        "business_status": AgreementStatus.DRAFT,
    }
    values.update(overrides)
    return BusinessRecord(**values)


def status_result(status: Optional[str], request_id: str = "R1", **kwargs) -> RawStatusResult:
    return RawStatusResult(request_id=request_id, status=status, endpoint="request-status", **kwargs)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        webhook_callback_url="https://app.example.com/webhooks/evia-sign",
        webhook_secret=None,
        archive_base_dir=str(tmp_path / "archive"),
        finalize_claim_wait_seconds=0.2,
    )


@pytest.fixture
def record_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def event_log() -> InMemoryEventLog:
    return InMemoryEventLog()


@pytest.fixture
def archive_store() -> InMemoryArchiveStore:
    return InMemoryArchiveStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def services(settings, gateway, event_log, record_store, archive_store):
    return build_services(
        settings,
        gateway=gateway,
        event_log=event_log,
        record_store=record_store,
        archive_store=archive_store,
    )


@pytest.fixture
def completion_handler(services):
    return services.completion_handler


@pytest.fixture
def reconciler(services):
    return services.reconciler


@pytest.fixture
def dispatcher(services):
    return services.dispatcher
