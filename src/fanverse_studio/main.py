"""Fanverse Studio service entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from fanverse_studio import __version__
from fanverse_studio.api.router import router
from fanverse_studio.api.schemas import HealthResponse
from fanverse_studio.common.database import close_database, init_database
from fanverse_studio.common.errors import register_exception_handlers
from fanverse_studio.common.observability import configure_logging, get_logger
from fanverse_studio.settings import Settings

logger = get_logger(__name__)
settings = Settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    configure_logging(settings.log_level, json_logs=settings.log_json)
    logger.info(
        "fanverse-studio starting",
        service=settings.service_name,
        provider_configured=bool(settings.kie_api_key),
        payments_configured=bool(settings.stripe_webhook_secret),
    )
    init_database(settings.database_url, echo=settings.database_echo)
    yield
    await close_database()
    logger.info("fanverse-studio shutting down")


def create_app() -> FastAPI:
    """Build the FastAPI application with routes and error handlers."""
    application = FastAPI(title="Fanverse Studio", version=__version__, lifespan=lifespan)
    register_exception_handlers(application)
    application.include_router(router, prefix="/api/v1")

    @application.get("/health", response_model=HealthResponse, tags=["health"])
    async def health() -> HealthResponse:
        return HealthResponse(service=settings.service_name, version=__version__)

    return application


app = create_app()
