from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from signature_sync.api.dependencies.services import get_signature_services
from signature_sync.api.routes import health, provider_auth, signatures, webhooks
from signature_sync.core.config import get_settings
from signature_sync.core.logging import configure_logging, get_logger
from signature_sync.db.session import init_models


configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:  # noqa: ARG001
    settings = get_settings()
    await init_models()
    logger.info("application.startup", environment=settings.environment)
    yield
    logger.info("application.shutdown")
    if get_signature_services.cache_info().currsize:
        await get_signature_services().close()


def create_application() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    application.include_router(health.router)
    application.include_router(webhooks.router)
    application.include_router(signatures.router)
    application.include_router(provider_auth.router)

    if settings.allowed_origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.allowed_origins],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    return application


app = create_application()
