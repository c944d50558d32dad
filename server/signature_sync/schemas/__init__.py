from signature_sync.schemas.common import ErrorDetail, ORMModel
from signature_sync.schemas.signature import (
    ArchiveResultRead,
    AuthorizationUrlRead,
    DispatchRequest,
    DispatchResponse,
    ProviderAuthRead,
    SignatoryIn,
    SignatoryRead,
    SignatureStatusRead,
)
from signature_sync.schemas.webhook import WebhookAck, WebhookEventRead, WebhookPayload

__all__ = [
    "ArchiveResultRead",
    "AuthorizationUrlRead",
    "DispatchRequest",
    "DispatchResponse",
    "ErrorDetail",
    "ORMModel",
    "ProviderAuthRead",
    "SignatoryIn",
    "SignatoryRead",
    "SignatureStatusRead",
    "WebhookAck",
    "WebhookEventRead",
    "WebhookPayload",
]
