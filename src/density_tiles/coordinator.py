"""
Cache-aside tile coordination.

Per request: CHECK_CACHE -> HIT: SERVE
                         -> MISS: RENDER -> found: PERSIST -> SERVE
                                         -> not found: NOT_FOUND

Concurrent misses for the same coordinate share a single render.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from density_tiles.error_handling import (
    HealthMonitor,
    NoDataAvailableError,
    StorageWriteError,
    TileVanishedError,
    error_handler,
)
from density_tiles.renderer import RenderGateway
from density_tiles.tile_store import TileCoordinate, TileStore

logger = logging.getLogger(__name__)


class CacheStatus(str, Enum):
    HIT = "HIT"
    MISS = "MISS"
    # Rendered and served, but persisting failed
    UNCACHED = "UNCACHED"


@dataclass(frozen=True)
class TileResponse:
    coord: TileCoordinate
    content: bytes
    cache_status: CacheStatus


class TileCoordinator:
    """Serves tiles from the store, rendering and persisting on a miss."""

    def __init__(
        self,
        store: TileStore,
        gateway: RenderGateway,
        io_workers: int = 8,
        monitor: Optional[HealthMonitor] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.monitor = monitor or HealthMonitor()
        # Filesystem calls block; keep them off the event loop
        self.io_executor = ThreadPoolExecutor(
            max_workers=io_workers, thread_name_prefix="tile-io"
        )
        self._in_flight: Dict[TileCoordinate, asyncio.Task] = {}

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def get_tile(self, coord: TileCoordinate) -> TileResponse:
        """Return the tile for coord.

        Raises NoDataAvailableError if the renderer has no tile,
        RenderFailureError if rendering failed, StorageReadError if a
        cached entry exists but cannot be read.
        """
        self.monitor.record("tile_requests")

        cached = await self._read_cached(coord)
        if cached is not None:
            self.monitor.record("cache_hits")
            logger.debug(f"CACHED ({coord.zoom} {coord.x} {coord.y})")
            return TileResponse(coord, cached, CacheStatus.HIT)

        self.monitor.record("cache_misses")
        return await self._render_shared(coord)

    async def _read_cached(self, coord: TileCoordinate) -> Optional[bytes]:
        loop = asyncio.get_running_loop()
        if not await loop.run_in_executor(self.io_executor, self.store.exists, coord):
            return None
        try:
            return await loop.run_in_executor(self.io_executor, self.store.read, coord)
        except TileVanishedError:
            # Pruned externally between check and read; it is a plain miss now
            logger.info(f"Cached tile {coord} vanished before read, re-rendering")
            return None

    async def _render_shared(self, coord: TileCoordinate) -> TileResponse:
        task = self._in_flight.get(coord)
        if task is None:
            task = asyncio.create_task(self._render_and_persist(coord))
            self._in_flight[coord] = task
            task.add_done_callback(lambda t: self._release(coord, t))
        else:
            self.monitor.record("coalesced")
            logger.debug(f"Joining in-flight render for {coord}")

        # Shielded so a caller hitting its deadline does not cancel the
        # render other callers are waiting on
        return await asyncio.shield(task)

    def _release(self, coord: TileCoordinate, task: asyncio.Task) -> None:
        if self._in_flight.get(coord) is task:
            del self._in_flight[coord]
        # Retrieve the outcome so an error nobody awaited is not reported as lost
        if not task.cancelled():
            task.exception()

    async def _render_and_persist(self, coord: TileCoordinate) -> TileResponse:
        self.monitor.record("renders")
        result = await self.gateway.render(coord)

        if not result.found:
            self.monitor.record("not_found")
            raise NoDataAvailableError(
                f"No tile data for {coord}",
                details={"zoom": coord.zoom, "x": coord.x, "y": coord.y},
            )

        loop = asyncio.get_running_loop()
        persisted = await loop.run_in_executor(
            self.io_executor, self.store.write, coord, result.image
        )

        if not persisted:
            self.monitor.record("write_failures")
            error_handler.log_error(
                StorageWriteError(f"Serving {coord} uncached; it will be re-rendered next time")
            )
            return TileResponse(coord, result.image, CacheStatus.UNCACHED)

        logger.info(f"Rendered and cached tile {coord} ({len(result.image)} bytes)")
        return TileResponse(coord, result.image, CacheStatus.MISS)

    async def close(self) -> None:
        for task in list(self._in_flight.values()):
            task.cancel()
        await self.gateway.close()
        self.io_executor.shutdown(wait=False)
