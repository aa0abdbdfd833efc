"""Tile serving endpoint: GET /{zoom}/{x}/{y}.png"""

from fastapi import APIRouter, Path, Request
from fastapi.responses import Response

from density_tiles.config import TILE_MEDIA_TYPE
from density_tiles.coordinator import TileCoordinator, TileResponse
from density_tiles.error_handling import TileServerError, log_performance
from density_tiles.tile_store import TileCoordinate

router = APIRouter(tags=["tiles"])


def create_tile_response(tile: TileResponse, cache_control: str) -> Response:
    """Create standardized tile response with proper headers."""
    headers = {
        "Cache-Control": cache_control,
        "X-Cache": tile.cache_status.value,
        "Access-Control-Allow-Origin": "*",
    }
    return Response(content=tile.content, media_type=TILE_MEDIA_TYPE, headers=headers)


@router.get("/{zoom}/{x}/{y}.png", response_class=Response)
@log_performance
async def get_tile(
    request: Request,
    zoom: str = Path(..., description="Zoom level"),
    x: str = Path(..., description="Tile X coordinate"),
    y: str = Path(..., description="Tile Y coordinate"),
):
    """
    Serve a rendered tile, from the cache when present.

    Returns 404 when the renderer has no data for the tile.
    """
    settings = request.app.state.settings
    coordinator: TileCoordinator = request.app.state.coordinator

    # Rejected here, before the cache or renderer are touched
    coord = TileCoordinate.parse(zoom, x, y, max_zoom=settings.max_zoom)

    try:
        tile = await coordinator.get_tile(coord)
    except TileServerError as e:
        if e.status_code >= 500:
            coordinator.monitor.record("errors")
        raise

    return create_tile_response(tile, settings.tile_cache_control)
