from signature_sync.services import (
    archive_store,
    completion_handler,
    container,
    dispatcher,
    event_log,
    record_store,
    status_reconciler,
    webhook_intake,
)

__all__ = [
    "archive_store",
    "completion_handler",
    "container",
    "dispatcher",
    "event_log",
    "record_store",
    "status_reconciler",
    "webhook_intake",
]
