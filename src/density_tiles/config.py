"""
Centralized configuration management for the density tile server.
All environment variables and defaults are defined here.

Settings are read once at process start and passed explicitly into the
store, renderer gateway and application factory.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path

from dotenv import load_dotenv

# Defaults for the server flags
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 5000
DEFAULT_CACHE_DIR = "cache"
DEFAULT_CQL_HOST = "127.0.0.1"
DEFAULT_KEYSPACE = "density"
DEFAULT_TABLE = "points"
DEFAULT_BASE_ZOOM = 13
DEFAULT_RENDERER_URL = "http://127.0.0.1:8080"

# Timeouts (seconds)
DEFAULT_REQUEST_TIMEOUT = 15.0
DEFAULT_RENDER_TIMEOUT = 10.0

# Tile configuration
TILE_EXTENSION = "png"
TILE_MEDIA_TYPE = "image/png"
MIN_ZOOM = 0
DEFAULT_MAX_ZOOM = 24

# HTTP cache headers. Entries are write-once so successful tiles may be
# cached downstream; absence must never be pinned.
PRODUCTION_CACHE_CONTROL = "public, max-age=86400"
DEVELOPMENT_CACHE_CONTROL = "no-cache, no-store, must-revalidate"
NOT_FOUND_CACHE_CONTROL = "no-store"


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_list(name: str, default: str) -> list[str]:
    return [h.strip() for h in os.getenv(name, default).split(",") if h.strip()]


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, constructed once at start-up."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    cache_dir: Path = Path(DEFAULT_CACHE_DIR)

    # Renderer connection parameters, passed opaquely to the gateway
    renderer_url: str = DEFAULT_RENDERER_URL
    cql_host: str = DEFAULT_CQL_HOST
    keyspace: str = DEFAULT_KEYSPACE
    table: str = DEFAULT_TABLE
    base_zoom: int = DEFAULT_BASE_ZOOM

    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    render_timeout: float = DEFAULT_RENDER_TIMEOUT
    max_zoom: int = DEFAULT_MAX_ZOOM
    io_workers: int = 8

    environment: str = "production"
    allowed_hosts: list[str] = field(default_factory=lambda: ["*"])
    log_level: str = "info"

    def __post_init__(self):
        if not isinstance(self.cache_dir, Path):
            object.__setattr__(self, "cache_dir", Path(self.cache_dir))
        if not (0 < self.port < 65536):
            raise ValueError(f"Port must be between 1 and 65535, got {self.port}")
        if self.base_zoom < 0:
            raise ValueError(f"Base zoom must be non-negative, got {self.base_zoom}")
        if self.max_zoom < MIN_ZOOM:
            raise ValueError(f"Max zoom must be >= {MIN_ZOOM}, got {self.max_zoom}")
        if self.request_timeout <= 0 or self.render_timeout <= 0:
            raise ValueError("Timeouts must be positive")

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in ("development", "dev", "local")

    @property
    def tile_cache_control(self) -> str:
        if self.is_development:
            return DEVELOPMENT_CACHE_CONTROL
        return PRODUCTION_CACHE_CONTROL

    @property
    def renderer_params(self) -> dict[str, str]:
        """Connection parameters forwarded to the renderer untouched."""
        return {
            "host": self.cql_host,
            "keyspace": self.keyspace,
            "table": self.table,
            "base_zoom": str(self.base_zoom),
        }

    @classmethod
    def from_env(cls, env_file: str | None = None) -> "Settings":
        """Build settings from the environment (and an optional .env file)."""
        load_dotenv(env_file)

        return cls(
            host=os.getenv("HOST", DEFAULT_HOST),
            port=int(os.getenv("PORT", str(DEFAULT_PORT))),
            cache_dir=Path(os.getenv("CACHE_DIR", DEFAULT_CACHE_DIR)),
            renderer_url=os.getenv("RENDERER_URL", DEFAULT_RENDERER_URL),
            cql_host=os.getenv("CQL_HOST", DEFAULT_CQL_HOST),
            keyspace=os.getenv("KEYSPACE", DEFAULT_KEYSPACE),
            table=os.getenv("TABLE", DEFAULT_TABLE),
            base_zoom=int(os.getenv("BASE_ZOOM", str(DEFAULT_BASE_ZOOM))),
            request_timeout=float(
                os.getenv("REQUEST_TIMEOUT", str(DEFAULT_REQUEST_TIMEOUT))
            ),
            render_timeout=float(
                os.getenv("RENDER_TIMEOUT", str(DEFAULT_RENDER_TIMEOUT))
            ),
            max_zoom=int(os.getenv("MAX_ZOOM", str(DEFAULT_MAX_ZOOM))),
            io_workers=int(os.getenv("IO_WORKERS", "8")),
            environment=os.getenv("ENVIRONMENT", "production"),
            allowed_hosts=_env_list("ALLOWED_HOSTS", "*"),
            log_level=os.getenv("LOG_LEVEL", "info").lower(),
        )

    def with_overrides(self, **overrides) -> "Settings":
        """Return a copy with non-None overrides applied (used by the CLI)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)


def telemetry_enabled() -> bool:
    return bool(os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"))


def strict_startup() -> bool:
    """Refuse to start when the cache directory is not writable."""
    return _env_flag("STRICT_STARTUP")
