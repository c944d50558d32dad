from signature_sync.models.agreement import Agreement, AgreementStatus, CanonicalStatus, SignatoryStatus
from signature_sync.models.webhook_event import EventKind, WebhookEvent

__all__ = [
    "Agreement",
    "AgreementStatus",
    "CanonicalStatus",
    "EventKind",
    "SignatoryStatus",
    "WebhookEvent",
]
