import base64
import binascii

from fastapi import APIRouter, Depends, HTTPException, status

from signature_sync.api.dependencies.services import get_signature_services
from signature_sync.api.errors import http_error
from signature_sync.core.logging import get_logger
from signature_sync.integrations.esignature.base import DocumentSource, RecordNotFound, Signatory, SignatureError
from signature_sync.models.agreement import CanonicalStatus
from signature_sync.schemas.signature import (
    ArchiveResultRead,
    DispatchRequest,
    DispatchResponse,
    SignatoryRead,
    SignatureStatusRead,
)
from signature_sync.services.container import SignatureServices
from signature_sync.services.status_reconciler import display_label

logger = get_logger(__name__)

router = APIRouter(prefix="/agreements", tags=["signatures"])


@router.post("/{agreement_id}/signature", response_model=DispatchResponse, status_code=status.HTTP_201_CREATED)
async def dispatch_signature_endpoint(
    agreement_id: str,
    payload: DispatchRequest,
    services: SignatureServices = Depends(get_signature_services),
) -> DispatchResponse:
    if payload.document_base64:
        encoded = payload.document_base64
        if encoded.startswith("data:"):
            source = DocumentSource(url=encoded, filename=payload.document_filename, content_type=payload.content_type)
        else:
            try:
                content = base64.b64decode(encoded, validate=True)
            except (binascii.Error, ValueError):
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid base64 document")
            source = DocumentSource(content=content, filename=payload.document_filename, content_type=payload.content_type)
    else:
        source = DocumentSource(url=payload.document_url, filename=payload.document_filename, content_type=payload.content_type)

    signatories = [
        Signatory(
            name=item.name,
            email=item.email,
            identifier=item.identifier,
            private_message=item.private_message,
        )
        for item in payload.signatories
    ]
    try:
        provider_request_id = await services.dispatcher.dispatch(
            agreement_id,
            source,
            payload.title,
            payload.message,
            signatories,
            callback_url=payload.callback_url,
            attach_documents_on_complete=payload.attach_documents_on_complete,
        )
    except SignatureError as exc:
        raise http_error(exc)

    return DispatchResponse(
        agreement_id=agreement_id,
        provider_request_id=provider_request_id,
        status=CanonicalStatus.PENDING,
    )


@router.get("/{agreement_id}/signature/status", response_model=SignatureStatusRead)
async def signature_status_endpoint(
    agreement_id: str,
    services: SignatureServices = Depends(get_signature_services),
) -> SignatureStatusRead:
    try:
        resolved = await services.reconciler.refresh(agreement_id)
    except RecordNotFound as exc:
        raise http_error(exc)
    except Exception as exc:  # status reads degrade to unknown
        logger.error("signature.status_failed", agreement_id=agreement_id, error=str(exc), exc_info=True)
        return SignatureStatusRead(
            agreement_id=agreement_id,
            status=CanonicalStatus.UNKNOWN,
            label=display_label(CanonicalStatus.UNKNOWN),
            source="none",
            confidence="low",
        )

    return SignatureStatusRead(
        agreement_id=agreement_id,
        provider_request_id=resolved.provider_request_id,
        status=resolved.status,
        label=resolved.label,
        source=resolved.source.value,
        confidence=resolved.confidence.value,
        signatories=[SignatoryRead.model_validate(item) for item in resolved.signatories],
        archived_document_ref=resolved.archived_document_ref,
    )


@router.post("/{agreement_id}/signature/finalize", response_model=ArchiveResultRead)
async def finalize_signature_endpoint(
    agreement_id: str,
    services: SignatureServices = Depends(get_signature_services),
) -> ArchiveResultRead:
    record = await services.record_store.get_business_record(agreement_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agreement not found")
    if not record.provider_request_id:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Agreement has not been sent for signature")

    try:
        result = await services.completion_handler.finalize(record.provider_request_id, record.id)
    except SignatureError as exc:
        raise http_error(exc)
    return ArchiveResultRead.model_validate(result)
