from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from signature_sync.core.config import Settings
from signature_sync.integrations.esignature.base import CredentialStore
from signature_sync.integrations.esignature.evia_adapter import EviaSignGateway
from signature_sync.services.archive_store import ArchiveStore, LocalArchiveStore
from signature_sync.services.completion_handler import CompletionHandler
from signature_sync.services.dispatcher import Dispatcher
from signature_sync.services.event_log import EventLog, SqlEventLog
from signature_sync.services.record_store import AgreementRecordStore, BusinessRecordStore
from signature_sync.services.status_reconciler import StatusReconciler


@dataclass
class SignatureServices:
    """The signing workflow components, wired once per process."""

    settings: Settings
    gateway: EviaSignGateway
    event_log: EventLog
    record_store: BusinessRecordStore
    archive_store: ArchiveStore
    completion_handler: CompletionHandler
    reconciler: StatusReconciler
    dispatcher: Dispatcher
    redis_client: Optional[Redis] = None

    async def close(self) -> None:
        await self.gateway.close()
        if self.redis_client is not None:
            await self.redis_client.aclose()


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    gateway: EviaSignGateway | None = None,
    event_log: EventLog | None = None,
    record_store: BusinessRecordStore | None = None,
    archive_store: ArchiveStore | None = None,
    redis_client: Optional[Redis] = None,
) -> SignatureServices:
    if session_factory is None and (event_log is None or record_store is None):
        raise ValueError("session_factory is required unless event_log and record_store are given")

    if redis_client is None and settings.use_redis_claims:
        redis_client = Redis.from_url(settings.redis_url)

    gateway = gateway or EviaSignGateway.from_settings(settings, CredentialStore())
    event_log = event_log or SqlEventLog(session_factory)
    record_store = record_store or AgreementRecordStore(session_factory)
    archive_store = archive_store or LocalArchiveStore.from_settings(settings)

    completion_handler = CompletionHandler(
        gateway,
        event_log,
        record_store,
        archive_store,
        redis_client=redis_client,
        claim_ttl_seconds=settings.finalize_claim_ttl_seconds,
        claim_wait_seconds=settings.finalize_claim_wait_seconds,
    )
    return SignatureServices(
        settings=settings,
        gateway=gateway,
        event_log=event_log,
        record_store=record_store,
        archive_store=archive_store,
        completion_handler=completion_handler,
        reconciler=StatusReconciler(event_log, gateway, record_store, completion_handler),
        dispatcher=Dispatcher(
            gateway,
            record_store,
            default_callback_url=settings.webhook_callback_url,
            webhook_secret=settings.webhook_secret,
        ),
        redis_client=redis_client,
    )
