from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from signature_sync.core.logging import get_logger
from signature_sync.models.webhook_event import EventKind
from signature_sync.schemas.webhook import WebhookAck, WebhookPayload
from signature_sync.services.event_log import EventLog, LoggedEvent
from signature_sync.services.status_reconciler import StatusReconciler

logger = get_logger(__name__)


async def receive_webhook(
    event_log: EventLog,
    reconciler: StatusReconciler,
    payload: WebhookPayload,
    raw_payload: dict[str, Any],
) -> WebhookAck:
    """
    Store one provider notification and reconcile its request.

    The event is always appended, duplicates included. An EventLogError from
    the append propagates; reconciliation failures are logged and still
    acknowledged.
    """
    logger.info(
        "webhook.received",
        provider_request_id=payload.request_id,
        event_kind=payload.event_id,
        event_description=payload.event_description,
        documents=len(payload.documents),
    )
    stored = await event_log.append(
        LoggedEvent(
            provider_request_id=payload.request_id,
            event_kind=EventKind(payload.event_id),
            occurred_at=payload.event_time or datetime.now(timezone.utc),
            event_description=payload.event_description,
            actor_name=payload.user_name,
            actor_email=payload.email,
            subject=payload.subject,
            raw_payload=raw_payload,
        )
    )

    try:
        resolved = await reconciler.refresh_by_request_id(payload.request_id)
    except Exception as exc:  # acknowledged anyway, the event is stored
        logger.error(
            "webhook.reconcile_failed",
            provider_request_id=payload.request_id,
            error=str(exc),
            exc_info=True,
        )
        return WebhookAck(accepted=True, event_id=stored.id, reconciled=False)

    return WebhookAck(accepted=True, event_id=stored.id, reconciled=True, status=resolved.status)
