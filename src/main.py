"""
Lead engagement orchestrator.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from src.config import get_settings
from src.api.router import api_router
from src.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("nurture")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


def _init_sentry(settings) -> None:
    if not settings.sentry_dsn:
        return
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


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("Orchestrator starting up (env=%s)", settings.app_env)

    if not settings.twilio_auth_token:
        logger.warning(
            "TWILIO_AUTH_TOKEN not set - webhook signatures will not be validated "
            "and outbound calls/messages will fail."
        )

    _init_sentry(settings)

    worker_tasks: list[asyncio.Task] = []
    if settings.workers_enabled:
        from src.workers.contact_dispatcher import run_contact_dispatcher
        from src.workers.grace_period_sweeper import run_grace_period_sweeper

        worker_tasks.append(asyncio.create_task(run_contact_dispatcher()))
        logger.info("Contact dispatcher started")
        worker_tasks.append(asyncio.create_task(run_grace_period_sweeper()))
        logger.info("Grace period sweeper started")
    else:
        logger.info("Background workers disabled (WORKERS_ENABLED=false)")

    yield

    # Graceful shutdown - give workers time to finish current work
    logger.info("Shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    logger.info("Shutdown complete - all %d workers stopped", len(worker_tasks))


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="Lead Engagement Orchestrator",
        description="Automated follow-up calls and messages for nurtured leads",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)

    return application


app = create_app()
