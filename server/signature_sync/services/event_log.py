from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from signature_sync.core.logging import get_logger
from signature_sync.integrations.esignature.base import EventLogError
from signature_sync.models.webhook_event import EventKind, WebhookEvent

logger = get_logger(__name__)


@dataclass
class LoggedEvent:
    provider_request_id: str
    event_kind: EventKind
    occurred_at: datetime
    event_description: str | None = None
    actor_name: str | None = None
    actor_email: str | None = None
    subject: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    received_at: datetime | None = None


class EventLog(ABC):
    """Append-only record of provider notifications."""

    @abstractmethod
    async def append(self, event: LoggedEvent) -> LoggedEvent:
        """Persist one occurrence. Raises EventLogError when the write fails."""

    @abstractmethod
    async def list_events(self, provider_request_id: str) -> list[LoggedEvent]:
        """Return every stored event for the request in arrival order."""


def _to_logged(row: WebhookEvent) -> LoggedEvent:
    return LoggedEvent(
        id=row.id,
        provider_request_id=row.provider_request_id,
        event_kind=EventKind(row.event_kind),
        occurred_at=row.occurred_at,
        event_description=row.event_description,
        actor_name=row.actor_name,
        actor_email=row.actor_email,
        subject=row.subject,
        raw_payload=row.raw_payload or {},
        received_at=row.received_at,
    )


class SqlEventLog(EventLog):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def append(self, event: LoggedEvent) -> LoggedEvent:
        row = WebhookEvent(
            provider_request_id=event.provider_request_id,
            event_kind=int(event.event_kind),
            occurred_at=event.occurred_at,
            event_description=event.event_description,
            actor_name=event.actor_name,
            actor_email=event.actor_email,
            subject=event.subject,
            raw_payload=event.raw_payload,
        )
        try:
            async with self.session_factory() as session:
                session.add(row)
                await session.commit()
                await session.refresh(row)
        except SQLAlchemyError as exc:
            logger.error(
                "event_log.write_failed",
                provider_request_id=event.provider_request_id,
                event_kind=int(event.event_kind),
                error=str(exc),
            )
            raise EventLogError(
                f"Failed to store webhook event: {exc}",
                request_id=event.provider_request_id,
            ) from exc

        logger.info(
            "webhook.stored",
            event_id=row.id,
            provider_request_id=row.provider_request_id,
            event_kind=row.event_kind,
        )
        return _to_logged(row)

    async def list_events(self, provider_request_id: str) -> list[LoggedEvent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookEvent)
                .where(WebhookEvent.provider_request_id == provider_request_id)
                .order_by(WebhookEvent.received_at, WebhookEvent.occurred_at)
            )
            return [_to_logged(row) for row in result.scalars().all()]
