"""
Persistent on-disk tile cache.

Layout: <cache_root>/<zoom>/<x>/<y>.png

Entries are write-once and never evicted. Writes go to a temporary file in
the destination directory and are published with os.replace, so a
concurrent reader sees either no file or the complete image.
"""

import logging
import os
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path

from density_tiles.config import DEFAULT_MAX_ZOOM, MIN_ZOOM, TILE_EXTENSION
from density_tiles.error_handling import (
    InvalidCoordinateError,
    StorageReadError,
    TileVanishedError,
)

logger = logging.getLogger(__name__)

# Longest accepted path segment; 2**24 - 1 has 8 digits
MAX_SEGMENT_DIGITS = 10


@dataclass(frozen=True)
class TileCoordinate:
    """A zoom/x/y address in the tile pyramid."""

    zoom: int
    x: int
    y: int

    def __post_init__(self):
        for name in ("zoom", "x", "y"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise InvalidCoordinateError(
                    f"Tile {name} must be a non-negative integer, got {value!r}",
                    details={name: str(value)},
                )

    @classmethod
    def parse(
        cls, zoom: str, x: str, y: str, max_zoom: int = DEFAULT_MAX_ZOOM
    ) -> "TileCoordinate":
        """Build a coordinate from URL path segments.

        Segments must be plain decimal digits. The coordinate must also lie
        inside the pyramid: zoom <= max_zoom and x, y < 2**zoom.
        """
        values = {}
        for name, raw in (("zoom", zoom), ("x", x), ("y", y)):
            if not raw.isascii() or not raw.isdigit():
                raise InvalidCoordinateError(
                    f"Tile {name} is not a non-negative integer: {raw!r}",
                    details={name: raw},
                )
            if len(raw) > MAX_SEGMENT_DIGITS:
                raise InvalidCoordinateError(
                    f"Tile {name} has too many digits ({len(raw)})",
                    details={name: raw[:MAX_SEGMENT_DIGITS] + "..."},
                )
            values[name] = int(raw)

        coord = cls(**values)

        if not (MIN_ZOOM <= coord.zoom <= max_zoom):
            raise InvalidCoordinateError(
                f"Zoom level {coord.zoom} is out of valid range ({MIN_ZOOM} to {max_zoom})",
                details={"zoom": coord.zoom, "max_zoom": max_zoom},
            )

        max_coord = (1 << coord.zoom) - 1
        if coord.x > max_coord or coord.y > max_coord:
            raise InvalidCoordinateError(
                f"Tile {coord} is outside the pyramid (0 to {max_coord}) for zoom {coord.zoom}",
                details={"x": coord.x, "y": coord.y, "max_coord": max_coord},
            )

        return coord

    def __str__(self) -> str:
        return f"{self.zoom}/{self.x}/{self.y}"


class TileStore:
    """Maps tile coordinates to PNG blobs under a cache root directory."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.lock = threading.Lock()
        self.hit_count = 0
        self.miss_count = 0
        self.write_count = 0
        self.write_failures = 0
        self.read_failures = 0

    def path_for(self, coord: TileCoordinate) -> Path:
        """Derive the storage path for a coordinate."""
        return self.root / str(coord.zoom) / str(coord.x) / f"{coord.y}.{TILE_EXTENSION}"

    def exists(self, coord: TileCoordinate) -> bool:
        """Check whether a readable, non-empty entry is stored for coord."""
        path = self.path_for(coord)
        try:
            present = path.is_file() and path.stat().st_size > 0
        except OSError as e:
            logger.warning(f"Cache check failed for {coord}: {e}")
            present = False

        with self.lock:
            if present:
                self.hit_count += 1
            else:
                self.miss_count += 1
        return present

    def read(self, coord: TileCoordinate) -> bytes:
        """Return the stored bytes for coord.

        Raises TileVanishedError if the entry was removed after exists(),
        StorageReadError if it cannot be read or is empty.
        """
        path = self.path_for(coord)
        try:
            data = path.read_bytes()
        except FileNotFoundError as e:
            self._record_read_failure()
            raise TileVanishedError(f"Cached tile {coord} disappeared", cause=e)
        except OSError as e:
            self._record_read_failure()
            raise StorageReadError(f"Cached tile {coord} is unreadable: {e}", cause=e)

        if not data:
            self._record_read_failure()
            raise StorageReadError(f"Cached tile {coord} is empty")

        return data

    def write(self, coord: TileCoordinate, data: bytes) -> bool:
        """Persist data for coord. Returns False (never raises) on failure."""
        path = self.path_for(coord)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            logger.warning(f"Failed to cache tile {coord} at {path}: {e}")
            self._discard(tmp_path)
            with self.lock:
                self.write_failures += 1
            return False

        with self.lock:
            self.write_count += 1
        logger.debug(f"Cached tile {coord} ({len(data)} bytes)")
        return True

    def stats(self) -> dict:
        """Get cache statistics."""
        with self.lock:
            lookups = self.hit_count + self.miss_count
            return {
                "hit_count": self.hit_count,
                "miss_count": self.miss_count,
                "hit_rate": self.hit_count / max(lookups, 1),
                "write_count": self.write_count,
                "write_failures": self.write_failures,
                "read_failures": self.read_failures,
            }

    def _record_read_failure(self):
        with self.lock:
            self.read_failures += 1

    @staticmethod
    def _discard(path: Path):
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove temporary file {path}: {e}")
