from __future__ import annotations

from enum import IntEnum

from sqlalchemy import Integer, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from signature_sync.db.base import Base
from signature_sync.models.mixins import Identifier, ProviderRequestId, ReceivedAt, UtcDateTime


class EventKind(IntEnum):
    """Provider event ids. Numeric order is terminality order."""

    REQUEST_RECEIVED = 1
    SIGNATORY_COMPLETED = 2
    REQUEST_COMPLETED = 3


class WebhookEvent(Base):
    """One inbound provider notification. Rows are only ever inserted."""

    __tablename__ = "webhook_events"

    id: Mapped[Identifier]
    provider_request_id: Mapped[ProviderRequestId]
    event_kind: Mapped[int] = mapped_column(Integer, nullable=False)
    event_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[UtcDateTime]
    actor_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    received_at: Mapped[ReceivedAt]
