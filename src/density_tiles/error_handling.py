"""
Error handling framework for the density tile server.
Provides structured error responses, logging, and request statistics.
"""

import functools
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Union

from fastapi import Request
from fastapi.responses import JSONResponse

from density_tiles.config import NOT_FOUND_CACHE_CONTROL

logger = logging.getLogger(__name__)


class ErrorCode(Enum):
    """Standardized error codes for the application."""

    # Input validation errors
    INVALID_TILE_COORDINATES = "INVALID_TILE_COORDINATES"

    # Resource errors
    TILE_NOT_FOUND = "TILE_NOT_FOUND"

    # Renderer errors
    RENDER_FAILED = "RENDER_FAILED"
    RENDER_TIMEOUT = "RENDER_TIMEOUT"

    # Cache storage errors
    CACHE_READ_FAILED = "CACHE_READ_FAILED"
    CACHE_WRITE_FAILED = "CACHE_WRITE_FAILED"

    # Internal errors
    REQUEST_TIMEOUT = "REQUEST_TIMEOUT"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


STATUS_CODE_MAP = {
    ErrorCode.INVALID_TILE_COORDINATES: 400,
    ErrorCode.TILE_NOT_FOUND: 404,
    ErrorCode.CACHE_READ_FAILED: 500,
    ErrorCode.CACHE_WRITE_FAILED: 500,
    ErrorCode.INTERNAL_SERVER_ERROR: 500,
    ErrorCode.RENDER_FAILED: 502,
    ErrorCode.RENDER_TIMEOUT: 504,
    ErrorCode.REQUEST_TIMEOUT: 504,
}

DEFAULT_USER_MESSAGES = {
    ErrorCode.INVALID_TILE_COORDINATES: "The requested tile coordinates are not valid.",
    ErrorCode.TILE_NOT_FOUND: "No tile is available for this location.",
    ErrorCode.RENDER_FAILED: "The tile renderer is temporarily unavailable.",
    ErrorCode.RENDER_TIMEOUT: "The tile renderer took too long to respond.",
    ErrorCode.CACHE_READ_FAILED: "The cached tile could not be read.",
    ErrorCode.REQUEST_TIMEOUT: "The request took too long to complete.",
    ErrorCode.INTERNAL_SERVER_ERROR: "An internal error occurred. Please try again.",
}


class TileServerError(Exception):
    """Base exception class for tile server errors."""

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        user_message: str = None,
        details: Dict[str, Any] = None,
        cause: Exception = None,
    ):
        self.error_code = error_code
        self.message = message
        self.user_message = user_message or DEFAULT_USER_MESSAGES.get(
            error_code, "An error occurred while processing your request."
        )
        self.details = details or {}
        self.cause = cause
        self.request_id = str(uuid.uuid4())
        self.timestamp = datetime.now(timezone.utc).isoformat()

        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return STATUS_CODE_MAP.get(self.error_code, 500)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a client-safe dictionary.

        The internal message (which may mention paths or upstream URLs) is
        only logged, never returned. Details are exposed for client errors.
        """
        payload = {
            "error": self.error_code.value,
            "user_message": self.user_message,
            "timestamp": self.timestamp,
            "request_id": self.request_id,
        }
        if self.status_code < 500 and self.details:
            payload["details"] = self.details
        return payload


class InvalidCoordinateError(TileServerError):
    """Malformed or out-of-range tile coordinate."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(ErrorCode.INVALID_TILE_COORDINATES, message, details=details)


class NoDataAvailableError(TileServerError):
    """The renderer authoritatively reported that no tile exists."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(ErrorCode.TILE_NOT_FOUND, message, details=details)


class RenderFailureError(TileServerError):
    """The renderer call itself failed; retryable, never cached as absence."""

    def __init__(self, message: str, timeout: bool = False, cause: Exception = None):
        code = ErrorCode.RENDER_TIMEOUT if timeout else ErrorCode.RENDER_FAILED
        super().__init__(code, message, cause=cause)


class StorageReadError(TileServerError):
    """A cache entry reported present could not be read."""

    def __init__(self, message: str, cause: Exception = None):
        super().__init__(ErrorCode.CACHE_READ_FAILED, message, cause=cause)


class TileVanishedError(StorageReadError):
    """A cache entry disappeared between the existence check and the read."""


class StorageWriteError(TileServerError):
    """Persisting a tile failed. Logged only; the tile is still served."""

    def __init__(self, message: str, cause: Exception = None):
        super().__init__(ErrorCode.CACHE_WRITE_FAILED, message, cause=cause)


class ErrorHandler:
    """Centralized error handling and logging."""

    def __init__(self, logger: logging.Logger = None):
        self.logger = logger or logging.getLogger(__name__)

    def log_error(
        self,
        error: Union[TileServerError, Exception],
        request: Request = None,
        extra_context: Dict[str, Any] = None,
    ) -> None:
        """Log error with structured context."""
        context = {
            "error_type": type(error).__name__,
            "error_message": str(error),
        }

        if isinstance(error, TileServerError):
            context.update(
                {
                    "error_code": error.error_code.value,
                    "request_id": error.request_id,
                    "details": error.details,
                }
            )

        if request:
            context.update(
                {
                    "method": request.method,
                    "url": str(request.url),
                    "client_ip": request.client.host if request.client else "unknown",
                }
            )

        if extra_context:
            context.update(extra_context)

        if isinstance(error, TileServerError):
            if error.status_code >= 500:
                self.logger.error(
                    f"Tile server error: {error.message}",
                    extra=context,
                    exc_info=error.cause,
                )
            else:
                self.logger.warning(f"Tile request rejected: {error.message}", extra=context)
        else:
            self.logger.error("Unhandled error", extra=context, exc_info=error)


# Default handler used by the exception hooks below
error_handler = ErrorHandler()


async def tile_server_exception_handler(request: Request, exc: TileServerError):
    """Global exception handler for tile server errors."""
    error_handler.log_error(exc, request)

    headers = {"Access-Control-Allow-Origin": "*"}
    if exc.status_code == 404:
        headers["Cache-Control"] = NOT_FOUND_CACHE_CONTROL

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def unhandled_exception_handler(request: Request, exc: Exception):
    """Last-resort handler: log with traceback, return an opaque 500."""
    error_handler.log_error(exc, request)
    error = TileServerError(ErrorCode.INTERNAL_SERVER_ERROR, str(exc))
    return JSONResponse(status_code=500, content=error.to_dict())


def log_performance(func: Callable) -> Callable:
    """Decorator to log slow request handlers."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start_time = time.time()

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            duration = time.time() - start_time
            logger.debug(f"{func.__name__} failed after {duration:.2f}s: {e}")
            raise

        duration = time.time() - start_time
        if duration > 1.0:
            logger.warning(f"{func.__name__} took {duration:.2f}s (slow)")
        elif duration > 0.5:
            logger.info(f"{func.__name__} took {duration:.2f}s")

        return result

    return wrapper


class HealthMonitor:
    """Request counters for the metrics endpoint."""

    def __init__(self):
        self._lock = threading.Lock()
        self.start_time = time.time()
        self.tile_requests = 0
        self.cache_hits = 0
        self.cache_misses = 0
        self.renders = 0
        self.coalesced = 0
        self.not_found = 0
        self.write_failures = 0
        self.errors = 0

    def record(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, counter, getattr(self, counter) + amount)

    def get_stats(self) -> dict:
        """Get current statistics."""
        with self._lock:
            uptime = time.time() - self.start_time
            lookups = self.cache_hits + self.cache_misses
            return {
                "uptime_seconds": uptime,
                "tile_requests": self.tile_requests,
                "cache_hits": self.cache_hits,
                "cache_misses": self.cache_misses,
                "cache_hit_rate": self.cache_hits / max(lookups, 1),
                "renders": self.renders,
                "coalesced_requests": self.coalesced,
                "not_found": self.not_found,
                "write_failures": self.write_failures,
                "errors": self.errors,
                "error_rate": self.errors / max(self.tile_requests, 1),
                "requests_per_second": self.tile_requests / uptime if uptime > 0 else 0,
            }

