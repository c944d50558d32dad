from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from signature_sync.api.dependencies.database import get_db
from signature_sync.api.dependencies.services import get_signature_services
from signature_sync.core.logging import get_logger
from signature_sync.services.container import SignatureServices

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_endpoint(
    session: AsyncSession = Depends(get_db),
    services: SignatureServices = Depends(get_signature_services),
) -> dict[str, object]:
    try:
        await session.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as exc:
        logger.warning("health.database_unavailable", error=str(exc))
        database = "unavailable"
    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "provider_authenticated": services.gateway.credentials.is_valid(),
        "environment": services.settings.environment,
    }
