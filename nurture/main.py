"""
Lead nurture sequence engine - FastAPI application entry point.
The lifespan starts the queue processor loop; the API exposes admin views
and lifecycle events over the same engine.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from nurture.api.router import api_router
from nurture.config import get_settings
from nurture.exceptions import InvalidTransitionError, NotFoundError
from nurture.utils.logging import (
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


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("Nurture engine starting up (env=%s)", settings.app_env)

    if not settings.sendgrid_api_key:
        logger.warning("SENDGRID_API_KEY not set - email steps will fail and retry")
    if not settings.evolution_api_url:
        logger.warning("EVOLUTION_API_URL not set - WhatsApp steps will fail and retry")

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

    worker_tasks: list[asyncio.Task] = []
    if settings.queue_enabled:
        from nurture.workers.queue_processor import run_queue_processor
        worker_tasks.append(asyncio.create_task(run_queue_processor()))
        logger.info("Queue processor started")
    else:
        logger.info("Queue processor disabled (QUEUE_ENABLED=false)")

    yield

    logger.info("Nurture engine shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        await asyncio.gather(*worker_tasks, return_exceptions=True)
    logger.info("Nurture engine shutdown complete")


async def _not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def _invalid_transition_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "current": exc.current, "requested": exc.requested},
    )


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="Nurture",
        description="Lead nurture sequence engine",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(CorrelationIdMiddleware)
    application.add_exception_handler(NotFoundError, _not_found_handler)
    application.add_exception_handler(InvalidTransitionError, _invalid_transition_handler)

    application.include_router(api_router)

    return application


app = create_app()
