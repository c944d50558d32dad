import secrets

from fastapi import APIRouter, Depends, Query

from signature_sync.api.dependencies.services import get_signature_services
from signature_sync.api.errors import http_error
from signature_sync.integrations.esignature.base import AuthRequired
from signature_sync.schemas.signature import AuthorizationUrlRead, ProviderAuthRead
from signature_sync.services.container import SignatureServices


router = APIRouter(prefix="/provider-auth", tags=["provider-auth"])


@router.get("/url", response_model=AuthorizationUrlRead)
async def authorization_url_endpoint(
    services: SignatureServices = Depends(get_signature_services),
) -> AuthorizationUrlRead:
    state = secrets.token_urlsafe(16)
    return AuthorizationUrlRead(url=services.gateway.authorization_url(state), state=state)


@router.get("/callback", response_model=ProviderAuthRead)
async def authorization_callback_endpoint(
    code: str = Query(min_length=1),
    state: str | None = Query(default=None),  # noqa: ARG001 - echoed by the provider
    services: SignatureServices = Depends(get_signature_services),
) -> ProviderAuthRead:
    try:
        credentials = await services.gateway.exchange_authorization_code(code)
    except AuthRequired as exc:
        raise http_error(exc)
    return ProviderAuthRead(authenticated=True, expires_at=credentials.expires_at)


@router.get("/status", response_model=ProviderAuthRead)
async def authorization_status_endpoint(
    services: SignatureServices = Depends(get_signature_services),
) -> ProviderAuthRead:
    store = services.gateway.credentials
    return ProviderAuthRead(authenticated=store.is_valid(), expires_at=store.expires_at)
