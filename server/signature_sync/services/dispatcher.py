from __future__ import annotations

import re
from typing import Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from signature_sync.core.logging import get_logger
from signature_sync.integrations.esignature.base import DocumentSource, RecordNotFound, Signatory, ValidationError
from signature_sync.integrations.esignature.evia_adapter import EviaSignGateway
from signature_sync.models.agreement import AgreementStatus, CanonicalStatus
from signature_sync.services.record_store import BusinessRecordStore, SignatoryProgress

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def validate_signatories(signatories: Sequence[Signatory]) -> None:
    """Reject an empty or partially specified signatory list before anything is sent."""
    if not signatories:
        raise ValidationError("At least one signatory is required")

    seen: set[str] = set()
    for position, signatory in enumerate(signatories, start=1):
        missing = [
            name
            for name, value in (
                ("name", signatory.name),
                ("email", signatory.email),
                ("identifier", signatory.identifier),
            )
            if not value or not value.strip()
        ]
        if missing:
            raise ValidationError(f"Signatory {position} is missing {', '.join(missing)}")
        if not EMAIL_PATTERN.match(signatory.email.strip()):
            raise ValidationError(f"Signatory {position} has an invalid email address")
        key = signatory.email.strip().lower()
        if key in seen:
            raise ValidationError(f"Signatory {position} repeats email {signatory.email}")
        seen.add(key)


def with_callback_token(callback_url: str, token: str | None) -> str:
    if not token:
        return callback_url
    parts = urlsplit(callback_url)
    query = [(key, value) for key, value in parse_qsl(parts.query, keep_blank_values=True) if key != "token"]
    query.append(("token", token))
    return urlunsplit(parts._replace(query=urlencode(query)))


class Dispatcher:
    def __init__(
        self,
        gateway: EviaSignGateway,
        record_store: BusinessRecordStore,
        default_callback_url: str | None = None,
        webhook_secret: str | None = None,
    ):
        self.gateway = gateway
        self.record_store = record_store
        self.default_callback_url = default_callback_url
        self.webhook_secret = webhook_secret

    async def dispatch(
        self,
        business_record_id: str,
        document_source: DocumentSource,
        title: str,
        message: str,
        signatories: Sequence[Signatory],
        callback_url: str | None = None,
        attach_documents_on_complete: bool = True,
    ) -> str:
        """
        Upload the document, submit the request, and store the correlation id.

        Raises:
            ValidationError: Malformed input, raised before any network call
            RecordNotFound: Unknown business record
            AuthRequired: No usable provider credentials
            UploadError, SubmissionError: Provider rejected the document or request
        """
        if not title or not title.strip():
            raise ValidationError("Title is required")
        validate_signatories(signatories)
        if document_source.content is None and not document_source.url:
            raise ValidationError("A document is required")

        record = await self.record_store.get_business_record(business_record_id)
        if record is None:
            raise RecordNotFound(f"Agreement {business_record_id} not found")

        await self.gateway.get_access_token()

        callback = callback_url or self.default_callback_url
        if callback:
            callback = with_callback_token(callback, self.webhook_secret)

        document_token = await self.gateway.upload(document_source)
        provider_request_id = await self.gateway.submit(
            document_token,
            title.strip(),
            message,
            signatories,
            callback,
            attach_documents_on_complete,
        )

        await self.record_store.update_business_record(
            record.id,
            provider_request_id=provider_request_id,
            canonical_status=CanonicalStatus.PENDING,
            business_status=AgreementStatus.PENDING_SIGNATURE,
            signatories=[
                SignatoryProgress(name=item.name.strip(), email=item.email.strip(), identifier=item.identifier)
                for item in signatories
            ],
            archived_document_ref=None,
            signature_error=None,
            signed_at=None,
        )
        logger.info(
            "dispatch.submitted",
            agreement_id=record.id,
            provider_request_id=provider_request_id,
            signatories=len(signatories),
        )
        return provider_request_id
