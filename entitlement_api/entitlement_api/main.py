"""FastAPI application entry-point for the entitlement service."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from entitlement_api import __version__
from entitlement_api.config import APISettings, PlatformEnv
from entitlement_api.dependencies import (
    dispose_email_client,
    dispose_engine,
    dispose_sms_client,
    get_engine_settings,
    get_session_factory,
    get_settings,
    init_billing_provider,
    init_email_client,
    init_engine,
    init_sms_client,
)
from entitlement_api.middleware.auth import AuthenticationMiddleware
from entitlement_api.middleware.json_formatter import install_json_logging
from entitlement_api.middleware.logging import CORRELATION_HEADER, RequestLoggingMiddleware
from entitlement_api.routers import billing, emails, health, retention
from entitlement_api.services.retention_scheduler import RetentionScheduler

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Startup and shutdown
# ---------------------------------------------------------------------------


def _require_session_secret(settings: APISettings) -> None:
    if settings.platform_env != PlatformEnv.DEV and not os.environ.get("SESSION_SECRET"):
        raise RuntimeError(f"SESSION_SECRET must be set when running in {settings.platform_env.value}")


async def _bootstrap_schema(engine: AsyncEngine, settings: APISettings) -> None:
    """Create missing tables for dev and SQLite deployments.

    Staging and production schemas are owned by Alembic.
    """
    backend = engine.dialect.name
    if settings.platform_env != PlatformEnv.DEV and backend != "sqlite":
        return
    from entitlement_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Schema bootstrapped on %s", backend)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Wire the store and the Stripe, Twilio and Resend clients, then start the optional retention loop."""
    settings = get_settings()
    if settings.structured_logging:
        install_json_logging()
    _require_session_secret(settings)

    engine = init_engine(settings)
    await _bootstrap_schema(engine, settings)

    if settings.billing_enabled:
        init_billing_provider(settings)
    else:
        logger.info("Billing disabled; Stripe webhooks are acknowledged without processing")

    sms = init_sms_client(settings)
    mailer = init_email_client(settings)
    scheduler: RetentionScheduler | None = None
    if settings.retention_background:
        scheduler = RetentionScheduler(get_session_factory(), settings, get_engine_settings(), sms, mailer=mailer)
        await scheduler.start()

    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()
        await dispose_sms_client()
        await dispose_email_client()
        await dispose_engine()
        logger.info("Entitlement API stopped")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Build the API: middleware stack, routers and error mapping."""
    settings = get_settings()

    app = FastAPI(
        title="Entitlement API",
        description="Subscription lifecycle, feature gating and trial retention.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (last added runs outermost) ------------------------------

    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", CORRELATION_HEADER],
    )

    # -- Routes ---------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(retention.router, prefix="/api/v1")
    app.include_router(emails.router, prefix="/api/v1")

    # -- Error mapping --------------------------------------------------------

    @app.exception_handler(ValueError)
    async def _invalid_input(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def _store_failure(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.exception("Entitlement store error on %s", request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn entitlement_api.main:app``.
app = create_app()
