"""
Per-request deadline middleware.

Covers the whole check-render-persist-serve sequence. A request that runs
past its deadline gets a 504; shared renders it was waiting on keep going
and still persist atomically.
"""

import asyncio
import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from density_tiles.error_handling import ErrorCode, TileServerError, error_handler

logger = logging.getLogger(__name__)


class RequestTimeoutMiddleware(BaseHTTPMiddleware):
    """Bound each request by a wall-clock deadline."""

    def __init__(self, app, timeout: float = 15.0):
        super().__init__(app)
        self.timeout = timeout

    async def dispatch(self, request: Request, call_next):
        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout)
        except asyncio.TimeoutError:
            error = TileServerError(
                ErrorCode.REQUEST_TIMEOUT,
                f"{request.method} {request.url.path} exceeded {self.timeout:.1f}s",
            )
            error_handler.log_error(error, request)
            return JSONResponse(
                status_code=error.status_code,
                content=error.to_dict(),
                headers={"Access-Control-Allow-Origin": "*", "Cache-Control": "no-store"},
            )
