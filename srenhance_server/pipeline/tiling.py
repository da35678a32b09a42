"""Tile scheduling: split an image into overlapping tiles.

Design:
    - TileScheduler is stateless: the same (width, height) always produces
      the same tile list, in row-major order.
    - Each TileInfo carries both the source rectangle (nominal cell grown by
      the overlap, clamped to the image) and the effective rectangle (the
      nominal cell itself). Effective rectangles partition the image, which
      is what lets the compositor write every output pixel exactly once.
    - Progress is reported as a plain fraction of completed tiles; mapping it
      into an overall progress range is the caller's business.
"""

import logging
import math
import threading
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_TILE_SIZE = 256
DEFAULT_OVERLAP = 16

TileProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class TileInfo:
    """Describes one tile's position in the full image."""

    index: int                  # sequential id in row-major order
    tx: int                     # grid column
    ty: int                     # grid row
    x0: int                     # source rectangle, overlap included, clamped
    y0: int
    x1: int
    y1: int
    nominal_x: int              # top-left of the non-overlapping cell
    nominal_y: int
    effective_width: int        # size of the non-overlapping cell
    effective_height: int

    @property
    def width(self) -> int:
        return self.x1 - self.x0

    @property
    def height(self) -> int:
        return self.y1 - self.y0

    @property
    def offset_x(self) -> int:
        """Overlap kept to the left of the effective cell."""
        return self.nominal_x - self.x0

    @property
    def offset_y(self) -> int:
        """Overlap kept above the effective cell."""
        return self.nominal_y - self.y0

    @property
    def source_rect(self) -> Tuple[int, int, int, int]:
        return (self.x0, self.y0, self.x1, self.y1)

    def effective_rect(self, scale: int = 1) -> Tuple[int, int, int, int]:
        """Effective cell (x0, y0, x1, y1), optionally in scaled output space."""
        x = self.nominal_x * scale
        y = self.nominal_y * scale
        return (x, y, x + self.effective_width * scale, y + self.effective_height * scale)


class TileScheduler:
    """
    Generate tile coordinates for an image.

    Usage:
        scheduler = TileScheduler(tile_size=256, overlap=16)
        for tile in scheduler.iter_tiles(width, height, progress_callback=cb):
            patch = image.crop(*tile.source_rect)
    """

    def __init__(self, tile_size: int = DEFAULT_TILE_SIZE, overlap: int = DEFAULT_OVERLAP):
        if tile_size <= 0:
            raise ValueError("tile_size must be positive, got %d" % tile_size)
        if overlap < 0:
            raise ValueError("overlap must be non-negative, got %d" % overlap)
        self.tile_size = tile_size
        self.overlap = overlap

    def grid_size(self, width: int, height: int) -> Tuple[int, int]:
        """Number of tiles along x and y."""
        return (math.ceil(width / self.tile_size), math.ceil(height / self.tile_size))

    def generate_tiles(self, width: int, height: int) -> List[TileInfo]:
        """
        Deterministic tile generation.

        Args:
            width: Image width W
            height: Image height H

        Returns:
            Tiles in row-major order (all ty=0 tiles first). Tiles whose
            source rectangle is empty are skipped with a warning.
        """
        t, o = self.tile_size, self.overlap
        num_x, num_y = self.grid_size(width, height)
        tiles: List[TileInfo] = []

        for ty in range(num_y):
            for tx in range(num_x):
                x0 = max(tx * t - o, 0)
                y0 = max(ty * t - o, 0)
                x1 = min((tx + 1) * t + o, width)
                y1 = min((ty + 1) * t + o, height)

                if x1 - x0 <= 0 or y1 - y0 <= 0:
                    logger.warning("Skipping degenerate tile (%d, %d): %dx%d",
                                   tx, ty, x1 - x0, y1 - y0)
                    continue

                effective_w = t if tx < num_x - 1 else width - tx * t
                effective_h = t if ty < num_y - 1 else height - ty * t

                tile = TileInfo(
                    index=len(tiles), tx=tx, ty=ty,
                    x0=x0, y0=y0, x1=x1, y1=y1,
                    nominal_x=tx * t, nominal_y=ty * t,
                    effective_width=effective_w,
                    effective_height=effective_h,
                )
                tiles.append(tile)

        logger.debug("Tile grid for %dx%d: %dx%d (%d tiles, size %d, overlap %d)",
                     width, height, num_x, num_y, len(tiles), t, o)
        return tiles

    def iter_tiles(
        self,
        width: int,
        height: int,
        progress_callback: Optional[TileProgressCallback] = None,
    ) -> Iterator[TileInfo]:
        """Yield tiles in order, reporting completed/total after each one.

        Progress for a tile is reported when the consumer asks for the next
        tile (or finishes), i.e. after the tile's work is done.
        """
        tiles = self.generate_tiles(width, height)
        tracker = ProgressTracker(len(tiles), progress_callback)
        for tile in tiles:
            yield tile
            tracker.advance()


class ProgressTracker:
    """Thread-safe completed-tile counter.

    Concurrent tile workers call ``advance`` in any order; the callback
    always sees a monotonically increasing fraction.
    """

    def __init__(self, total: int, callback: Optional[TileProgressCallback] = None):
        self.total = total
        self._completed = 0
        self._callback = callback
        self._lock = threading.Lock()

    @property
    def completed(self) -> int:
        return self._completed

    @property
    def fraction(self) -> float:
        if self.total <= 0:
            return 1.0
        return self._completed / self.total

    def advance(self, count: int = 1) -> float:
        with self._lock:
            self._completed = min(self._completed + count, self.total)
            fraction = self.fraction
            if self._callback is not None:
                self._callback(fraction)
        return fraction
