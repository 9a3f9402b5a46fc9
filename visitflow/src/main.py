"""
VisitFlow - WhatsApp visit scheduling for real-estate agencies.
Main FastAPI application entry point.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from src.config import get_settings
from src.api.router import api_router
from src.api.health import VERSION
from src.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("visitflow")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("VisitFlow starting up (env=%s)", settings.app_env)

    if not settings.webhook_token:
        logger.warning("WEBHOOK_TOKEN not set - Z-API webhook is unauthenticated outside production.")
    if not settings.staff_api_token:
        logger.warning("STAFF_API_TOKEN not set - the staff console API rejects every request.")
    if not settings.anthropic_api_key and not settings.openai_api_key:
        logger.warning("No AI provider key set - turns the parser cannot handle get the fallback reply.")

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    yield

    # Graceful shutdown - let in-flight agent turns finish their single send
    from src.services.agent_dispatch import drain_pending, pending_count
    in_flight = pending_count()
    logger.info("VisitFlow shutting down - waiting for %d agent turns...", in_flight)
    await drain_pending(timeout=10.0)
    logger.info("VisitFlow shutdown complete")


def _cors_origins(settings) -> list[str]:
    origins = ["http://localhost:3000", "http://localhost:5173", settings.app_base_url]
    origins.extend(o.strip() for o in settings.allowed_origins.split(",") if o.strip())
    return origins


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="VisitFlow",
        description="WhatsApp visit scheduling for real-estate agencies",
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS - allow the staff console origin
    application.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=[
            "Content-Type", "X-Correlation-ID", "X-Staff-Token",
            "Accept", "Origin", "X-Requested-With",
        ],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    application.include_router(api_router)

    return application


app = create_app()
