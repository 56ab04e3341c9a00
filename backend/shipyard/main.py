from contextlib import asynccontextmanager
import logging

from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from shipyard.api.metrics import router as metrics_router
from shipyard.api.v1.routes import router as api_router
from shipyard.api.v1.shared.dependencies import (
    get_github_client,
    get_refresh_orchestrator,
)
from shipyard.api.v1.shared.rate_limit import limiter
from shipyard.core.config import get_settings
from shipyard.core.database import dispose_engine
from shipyard.core.telemetry import (
    configure_opentelemetry,
    instrument_fastapi,
    instrument_httpx,
)
from shipyard.jobs.cache_warmup import CacheWarmupJob

logger = logging.getLogger(__name__)
REQUEST_ID_HEADER = "X-Request-Id"
SHUTDOWN_DRAIN_SECONDS = 10.0


def _configure_sqlalchemy_logging(database_echo: bool) -> None:
    """
    Silence verbose SQLAlchemy logs unless echo is explicitly enabled.

    Upserts log their JSON payloads at INFO; those only show up when
    DATABASE_ECHO=true.
    """
    level = logging.INFO if database_echo else logging.WARNING
    for name in (
        "sqlalchemy",
        "sqlalchemy.engine",
        "sqlalchemy.engine.Engine",
        "sqlalchemy.pool",
        "sqlalchemy.pool.impl.AsyncAdaptedQueuePool",
    ):
        sa_logger = logging.getLogger(name)
        sa_logger.setLevel(level)
        sa_logger.propagate = database_echo


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
    """Manage application lifespan events."""
    settings = get_settings()

    configure_opentelemetry(
        service_name=settings.otel_service_name,
        service_version=settings.otel_service_version,
        otlp_endpoint=settings.otel_exporter_otlp_endpoint,
        otlp_headers=settings.otel_exporter_otlp_headers,
        enabled=settings.otel_enabled,
    )
    instrument_httpx(enabled=settings.otel_enabled)

    # Resolve through dependency overrides when present.
    orchestrator = app.dependency_overrides.get(
        get_refresh_orchestrator, get_refresh_orchestrator
    )()
    github_client = app.dependency_overrides.get(
        get_github_client, get_github_client
    )()

    if settings.cache_warmup_on_startup:
        summary = await CacheWarmupJob(orchestrator=orchestrator, settings=settings).run()
        logger.info("Startup cache warmup: %s", summary.to_dict())

    yield

    # Let background refreshes finish so no record is left marked refreshing.
    await orchestrator.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
    await github_client.aclose()
    await dispose_engine()


def create_app() -> FastAPI:
    """Application factory for FastAPI."""
    settings = get_settings()
    app = FastAPI(
        title="Shipyard API",
        description="Cached GitHub repository metadata for the project showcase.",
        version="0.1.0",
        lifespan=lifespan,
    )

    _configure_sqlalchemy_logging(settings.database_echo)

    instrument_fastapi(app, enabled=settings.otel_enabled)
    _install_request_id_middleware(app)

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    allow_origins = settings.cors_allow_origins
    allow_origin_regex = settings.cors_allow_origin_regex
    if allow_origins or allow_origin_regex:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_origin_regex=allow_origin_regex,
            allow_credentials=bool(allow_origins),
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(metrics_router)
    app.include_router(api_router, prefix="/api/v1")

    return app


app = create_app()
