import json

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import ValidationError as PydanticValidationError

from signature_sync.api.dependencies.services import get_signature_services
from signature_sync.api.dependencies.webhook_auth import verify_webhook_secret
from signature_sync.core.logging import get_logger
from signature_sync.integrations.esignature.base import EventLogError
from signature_sync.schemas.webhook import WebhookAck, WebhookEventRead, WebhookPayload
from signature_sync.services.container import SignatureServices
from signature_sync.services.webhook_intake import receive_webhook

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/evia-sign", response_model=WebhookAck, dependencies=[Depends(verify_webhook_secret)])
async def evia_sign_webhook_endpoint(
    request: Request,
    services: SignatureServices = Depends(get_signature_services),
) -> WebhookAck:
    body = await request.body()
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed JSON payload")
    if not isinstance(data, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payload must be a JSON object")

    try:
        payload = WebhookPayload.model_validate(data)
    except PydanticValidationError as exc:
        logger.warning("webhook.rejected", errors=[error["loc"] for error in exc.errors()])
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="RequestId and EventId (1, 2 or 3) are required",
        )

    try:
        return await receive_webhook(services.event_log, services.reconciler, payload, data)
    except EventLogError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store webhook event",
        )


@router.get("/evia-sign/events", response_model=list[WebhookEventRead])
async def list_webhook_events_endpoint(
    request_id: str = Query(min_length=1),
    services: SignatureServices = Depends(get_signature_services),
) -> list[WebhookEventRead]:
    events = await services.event_log.list_events(request_id)
    return [WebhookEventRead.model_validate(event) for event in events]
