import hashlib
import hmac

from fastapi import Depends, Header, HTTPException, Query, Request, status

from signature_sync.core.config import Settings, get_settings
from signature_sync.core.logging import get_logger

logger = get_logger(__name__)


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


async def verify_webhook_secret(
    request: Request,
    token: str | None = Query(default=None),
    x_evia_signature: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Check the shared secret when one is configured: HMAC header or token query parameter."""
    secret = settings.webhook_secret
    if not secret:
        return

    if x_evia_signature:
        body = await request.body()
        expected = compute_signature(secret, body)
        if hmac.compare_digest(expected, x_evia_signature.strip().lower()):
            return
    elif token is not None and hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        return

    logger.warning("webhook.unauthorized", client=request.client.host if request.client else None)
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")
