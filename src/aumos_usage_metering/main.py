"""AumOS usage metering service entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from aumos_usage_metering import __version__
from aumos_usage_metering.adapters.billing_provider import HttpBillingProvider
from aumos_usage_metering.adapters.publisher import LogUsageEventPublisher
from aumos_usage_metering.adapters.repositories import TenantAccountRepository, UsageEventRepository
from aumos_usage_metering.api.router import router
from aumos_usage_metering.core.pricing import DEFAULT_PRICING
from aumos_usage_metering.core.reconciler import Reconciler, ReconcilerPool
from aumos_usage_metering.database import dispose_database, init_database
from aumos_usage_metering.errors import InvalidEventError, MeteringError, NotFoundError, StorageFailureError
from aumos_usage_metering.observability import configure_logging
from aumos_usage_metering.settings import Settings

logger = structlog.get_logger(__name__)

_ERROR_STATUS: dict[type[MeteringError], int] = {
    InvalidEventError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    StorageFailureError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def _metering_error_handler(request: Request, exc: MeteringError) -> JSONResponse:
    status_code = _ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(
        status_code=status_code,
        content={"error_code": exc.error_code.value, "message": exc.message},
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Service settings (read from the environment when omitted).

    Returns:
        The configured FastAPI app. The database, billing provider client,
        and reconciler pool are created by its lifespan.
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage application startup and shutdown lifecycle."""
        configure_logging(settings.log_level, settings.log_format)
        logger.info(
            "aumos-usage-metering starting",
            service=settings.service_name,
            pricing_version=DEFAULT_PRICING.version,
            reconciler_enabled=settings.reconciler_enabled,
        )
        session_factory = init_database(settings.database_url, echo=settings.database_echo)

        provider = HttpBillingProvider(
            base_url=settings.provider_base_url,
            api_key=settings.provider_api_key,
            timeout_seconds=settings.provider_timeout_seconds,
        )
        await provider.initialize()

        reconciler = Reconciler(
            session_factory=session_factory,
            provider=provider,
            settings=settings,
            event_repo_factory=UsageEventRepository,
            account_repo_factory=TenantAccountRepository,
        )
        pool = ReconcilerPool(
            reconciler,
            workers=settings.reconciler_workers,
            batch_size=settings.reconciler_batch_size,
            poll_interval_seconds=settings.reconciler_poll_interval_seconds,
        )

        app.state.settings = settings
        app.state.pricing = DEFAULT_PRICING
        app.state.publisher = LogUsageEventPublisher()
        app.state.reconciler = reconciler
        if settings.reconciler_enabled:
            await pool.start()

        yield

        logger.info("aumos-usage-metering shutting down")
        await pool.stop()
        await provider.close()
        await dispose_database()

    app = FastAPI(title="AumOS Usage Metering", version=__version__, lifespan=lifespan)
    for error_type in _ERROR_STATUS:
        app.add_exception_handler(error_type, _metering_error_handler)  # type: ignore[arg-type]

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.service_name, "version": __version__}

    app.include_router(router, prefix="/api/v1")
    return app


app = create_app()
