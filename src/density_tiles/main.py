"""
Density tile server application.
Cache-aside serving of rendered map tiles in front of an external renderer.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from starlette.middleware.trustedhost import TrustedHostMiddleware

from density_tiles import __version__
from density_tiles.config import Settings, strict_startup, telemetry_enabled
from density_tiles.coordinator import TileCoordinator
from density_tiles.error_handling import (
    HealthMonitor,
    TileServerError,
    tile_server_exception_handler,
    unhandled_exception_handler,
)
from density_tiles.middleware.timeout import RequestTimeoutMiddleware
from density_tiles.renderer import HttpRenderGateway, RenderGateway
from density_tiles.routers import health, tiles
from density_tiles.tile_store import TileStore

logger = logging.getLogger(__name__)


def validate_cache_dir(settings: Settings) -> None:
    """Make sure the cache root exists and is writable.

    An unwritable cache does not stop the server: every tile is still served,
    just re-rendered each time. STRICT_STARTUP turns this into a hard failure.
    """
    cache_dir = settings.cache_dir
    problem = None

    try:
        cache_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        problem = f"cannot create cache directory {cache_dir}: {e}"
    else:
        if not os.access(cache_dir, os.W_OK):
            problem = f"cache directory {cache_dir} is not writable"

    if problem is None:
        logger.info(f"✅ Tile cache at {cache_dir.resolve()}")
        return

    if strict_startup():
        raise RuntimeError(f"Refusing to start: {problem}")
    logger.warning(f"⚠️  {problem}; tiles will be served uncached")


def configure_telemetry(app: FastAPI, settings: Settings) -> None:
    """Configure OpenTelemetry tracing when an OTLP endpoint is provided."""
    if not telemetry_enabled():
        return

    from opentelemetry import trace
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create(
        {
            "service.name": "density-tiles",
            "service.version": __version__,
            "deployment.environment": settings.environment,
        }
    )

    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(
                endpoint=os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"],
                insecure=True,  # Internal network, no TLS needed
            )
        )
    )
    trace.set_tracer_provider(provider)

    FastAPIInstrumentor.instrument_app(app)
    HTTPXClientInstrumentor().instrument()


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[RenderGateway] = None,
) -> FastAPI:
    """Build the application.

    Settings are read once here; a custom gateway may be supplied in place
    of the HTTP renderer.
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        validate_cache_dir(settings)
        logger.info(
            f"🚀 Serving tiles on port {settings.port} "
            f"(keyspace={settings.keyspace}, table={settings.table}, base zoom={settings.base_zoom})"
        )
        yield
        await app.state.coordinator.close()
        logger.info("🔒 Tile coordinator closed")

    app = FastAPI(
        title="Density Tile Server",
        description="Cache-aside tile server in front of an external renderer",
        version=__version__,
        lifespan=lifespan,
    )

    store = TileStore(settings.cache_dir)
    coordinator = TileCoordinator(
        store,
        gateway or HttpRenderGateway(settings),
        io_workers=settings.io_workers,
        monitor=HealthMonitor(),
    )
    app.state.settings = settings
    app.state.coordinator = coordinator

    app.add_exception_handler(TileServerError, tile_server_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.add_middleware(RequestTimeoutMiddleware, timeout=settings.request_timeout)

    # Trusted hosts (mitigates Host header attacks)
    if settings.allowed_hosts and settings.allowed_hosts != ["*"]:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

    # Minimal security headers for all responses
    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        # Tiles are embedded by maps on other origins
        response.headers.setdefault("Cross-Origin-Resource-Policy", "cross-origin")
        return response

    configure_telemetry(app, settings)

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(tiles.router)

    return app
