"""
Render gateway: the boundary between the tile server and the renderer.

The coordinator only knows RenderGateway.render(coord) -> RenderResult.
How tiles are actually drawn, and which data store backs them, is the
renderer's business.
"""

import asyncio
import io
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import httpx
from PIL import Image, UnidentifiedImageError

from density_tiles.config import Settings
from density_tiles.error_handling import RenderFailureError
from density_tiles.http_client import SharedHTTPClient
from density_tiles.tile_store import TileCoordinate

logger = logging.getLogger(__name__)

# Upstream statuses that mean "no tile here", as opposed to a failure
NO_DATA_STATUSES = (204, 404)

# Image decoding is CPU-bound; keep it off the event loop
CPU_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="tile-verify")


@dataclass(frozen=True)
class RenderResult:
    """Outcome of one render call. found=False is authoritative absence."""

    image: bytes
    found: bool

    @classmethod
    def not_found(cls) -> "RenderResult":
        return cls(image=b"", found=False)


def verify_png(data: bytes) -> None:
    """Raise ValueError unless data decodes as a PNG image."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ValueError(f"not a decodable image: {e}")
    if fmt != "PNG":
        raise ValueError(f"expected PNG, got {fmt}")


class RenderGateway(ABC):
    """Opaque capability: render(coord) -> RenderResult."""

    @abstractmethod
    async def render(self, coord: TileCoordinate) -> RenderResult:
        """Render a tile.

        Returns RenderResult(found=False) when the renderer has no data for
        coord. Raises RenderFailureError when the call itself fails.
        """

    async def close(self) -> None:
        """Release any resources held by the gateway."""


class HttpRenderGateway(RenderGateway):
    """Renders tiles by calling a renderer service over HTTP.

    Request: GET {renderer_url}/{zoom}/{x}/{y}.png with the data-store
    connection parameters passed through as query parameters.
    """

    def __init__(self, settings: Settings, http_client: Optional[SharedHTTPClient] = None):
        self.base_url = settings.renderer_url.rstrip("/")
        self.params = settings.renderer_params
        self.http_client = http_client or SharedHTTPClient(timeout=settings.render_timeout)

    def _url_for(self, coord: TileCoordinate) -> str:
        return f"{self.base_url}/{coord.zoom}/{coord.x}/{coord.y}.png"

    async def render(self, coord: TileCoordinate) -> RenderResult:
        client = await self.http_client.get_client()
        url = self._url_for(coord)

        try:
            response = await client.get(url, params=self.params)
        except httpx.TimeoutException as e:
            raise RenderFailureError(f"Renderer timed out for {coord}: {e}", timeout=True, cause=e)
        except httpx.RequestError as e:
            raise RenderFailureError(f"Renderer connection error for {coord}: {e}", cause=e)

        if response.status_code in NO_DATA_STATUSES:
            logger.debug(f"Renderer has no data for {coord} ({response.status_code})")
            return RenderResult.not_found()

        if response.status_code != 200:
            raise RenderFailureError(
                f"Renderer returned {response.status_code} for {coord}"
            )

        content = response.content
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(CPU_EXECUTOR, verify_png, content)
        except ValueError as e:
            raise RenderFailureError(f"Renderer returned an invalid tile for {coord}: {e}")

        return RenderResult(image=content, found=True)

    async def close(self) -> None:
        await self.http_client.close()


# A blocking renderer: (zoom, x, y) -> (png bytes or None, found)
BlockingRenderer = Callable[[int, int, int], Tuple[Optional[bytes], bool]]


class ThreadedRenderGateway(RenderGateway):
    """Runs a blocking renderer on a worker pool, off the event loop."""

    def __init__(self, render_func: BlockingRenderer, max_workers: int = 4):
        self.render_func = render_func
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="tile-render"
        )

    async def render(self, coord: TileCoordinate) -> RenderResult:
        loop = asyncio.get_running_loop()
        try:
            image, found = await loop.run_in_executor(
                self.executor, self.render_func, coord.zoom, coord.x, coord.y
            )
        except Exception as e:
            raise RenderFailureError(f"Renderer raised for {coord}: {e}", cause=e)

        if not found:
            return RenderResult.not_found()
        if not image:
            raise RenderFailureError(f"Renderer reported a tile for {coord} but returned no image")

        try:
            await loop.run_in_executor(self.executor, verify_png, image)
        except ValueError as e:
            raise RenderFailureError(f"Renderer returned an invalid tile for {coord}: {e}")

        return RenderResult(image=image, found=True)

    async def close(self) -> None:
        self.executor.shutdown(wait=False)
