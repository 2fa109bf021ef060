from contextlib import asynccontextmanager
import logging

from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from metrocast.api.metrics import router as metrics_router
from metrocast.api.v1.routes import router as v1_router
from metrocast.core.config import get_settings
from metrocast.core.telemetry import (
    configure_opentelemetry,
    instrument_fastapi,
    instrument_httpx,
)
from metrocast.jobs.feed_scheduler import FeedScheduler
from metrocast.services.prediction_store import PredictionStore, create_valkey_client

logger = logging.getLogger(__name__)
REQUEST_ID_HEADER = "X-Request-Id"


def _configure_logging(log_level: str) -> None:
    """
    Configure root logging and quiet the per-tick scheduler chatter.

    APScheduler logs every job execution at INFO. With two jobs firing every
    second that drowns out everything else, so its executor logs are raised
    to WARNING unless DEBUG logging is requested.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    scheduler_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in ("apscheduler.executors.default", "apscheduler.scheduler"):
        logging.getLogger(name).setLevel(scheduler_level)


def _install_request_id_middleware(app: FastAPI) -> None:
    """Ensure each response includes a stable X-Request-Id header."""

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER, str(uuid4()))
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the store, start the feed jobs, and tear both down on exit."""
    settings = get_settings()

    tracing = configure_opentelemetry(settings)
    instrument_httpx(enabled=tracing)

    # One connection pool per process, handed to every consumer explicitly.
    store = PredictionStore(create_valkey_client(settings))
    app.state.prediction_store = store

    scheduler = None
    if settings.feed_jobs_enabled:
        scheduler = FeedScheduler(settings, store)
        await scheduler.start()
        app.state.feed_scheduler = scheduler
    else:
        logger.info("Feed jobs disabled, serving reads only")

    yield

    if scheduler is not None:
        await scheduler.stop()
    await store.aclose()


def create_app() -> FastAPI:
    """Application factory for FastAPI."""
    settings = get_settings()
    app = FastAPI(
        title="Metrocast API",
        description="Real-time transit arrival predictions from GTFS and GTFS-Realtime feeds.",
        version="0.1.0",
        lifespan=lifespan,
    )

    _configure_logging(settings.log_level)

    instrument_fastapi(app, enabled=settings.otel_enabled)
    _install_request_id_middleware(app)

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["GET"],
            allow_headers=["*"],
            # Pollers need the validators to send them back.
            expose_headers=["ETag", "Last-Modified", REQUEST_ID_HEADER],
        )

    app.include_router(metrics_router)
    app.include_router(v1_router, prefix="/api/v1")

    return app


app = create_app()
