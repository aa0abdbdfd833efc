"""
Shared HTTP client for efficient connection pooling.
Handles burst tile misses without connection exhaustion.
"""

import asyncio
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class SharedHTTPClient:
    """
    Lazily created HTTP client for renderer requests.

    A map pan can miss 50-100 tiles at once; one pooled client keeps those
    requests on a bounded set of keep-alive connections.
    """

    def __init__(
        self,
        timeout: float,
        max_connections: int = 100,
        max_keepalive_connections: int = 20,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.max_connections = max_connections
        self.max_keepalive_connections = max_keepalive_connections
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()

    async def get_client(self) -> httpx.AsyncClient:
        """Get the shared HTTP client, creating it if necessary."""
        if self._client is None:
            async with self._lock:
                if self._client is None:  # Double-check pattern
                    self._client = self._create_client()
                    logger.info("🔗 Created shared HTTP client for renderer requests")
        return self._client

    def _create_client(self) -> httpx.AsyncClient:
        """Create HTTP client tuned for renderer connections."""
        limits = httpx.Limits(
            max_connections=self.max_connections,
            max_keepalive_connections=self.max_keepalive_connections,
        )

        return httpx.AsyncClient(
            limits=limits,
            timeout=httpx.Timeout(self.timeout),
            follow_redirects=False,  # Direct renderer communication
            transport=self._transport,
        )

    async def close(self):
        """Close the shared HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("🔒 Closed shared HTTP client")
