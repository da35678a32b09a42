"""TileCompositor: write processed tiles into the full-resolution canvas.

A processed tile covers its whole source rectangle (overlap included) at
``scale`` times the size, anchored at ``(x0 * scale, y0 * scale)``. Only the
effective cell is copied; the overlap border is dropped so seams never show
and no output pixel is written twice. Writes falling outside either buffer
are clipped silently.
"""

import logging
from typing import Optional

import numpy as np

from ..utils.pixel_buffer import PixelBuffer
from .tiling import TileInfo

logger = logging.getLogger(__name__)


class TileCompositor:
    """
    Assemble tile results into one output image.

    Usage:
        compositor = TileCompositor.for_input(width, height, scale)
        for tile in tiles:
            compositor.add_tile(result, tile)
        output = compositor.output
    """

    def __init__(self, output: PixelBuffer, scale: int, track_coverage: bool = False):
        self.output = output
        self.scale = scale
        self.tiles_written = 0
        # per-pixel write counter, only allocated on request
        self.coverage: Optional[np.ndarray] = (
            np.zeros((output.height, output.width), dtype=np.uint16)
            if track_coverage else None
        )

    @classmethod
    def for_input(cls, width: int, height: int, scale: int, channels: int = 3,
                  track_coverage: bool = False) -> "TileCompositor":
        """Allocate a canvas of exactly (width * scale) x (height * scale)."""
        canvas = PixelBuffer.new(width * scale, height * scale, channels)
        return cls(canvas, scale, track_coverage=track_coverage)

    def add_tile(self, tile_result: PixelBuffer, tile_info: TileInfo) -> int:
        """
        Copy the effective region of one processed tile into the canvas.

        Args:
            tile_result: Processed tile, nominally tile.width*s x tile.height*s
            tile_info: TileInfo the result was produced from

        Returns:
            Number of output pixels written
        """
        s = self.scale
        src_x = tile_info.offset_x * s
        src_y = tile_info.offset_y * s
        dst_x = tile_info.nominal_x * s
        dst_y = tile_info.nominal_y * s

        # bounds-checked against both buffers; anything outside is skipped
        w = min(tile_info.effective_width * s,
                tile_result.width - src_x,
                self.output.width - dst_x)
        h = min(tile_info.effective_height * s,
                tile_result.height - src_y,
                self.output.height - dst_y)
        if w <= 0 or h <= 0:
            logger.debug("Tile %d contributes no pixels", tile_info.index)
            return 0

        src = tile_result.data[src_y:src_y + h, src_x:src_x + w]
        channels = min(src.shape[2], self.output.channels)
        self.output.data[dst_y:dst_y + h, dst_x:dst_x + w, :channels] = src[..., :channels]
        if self.output.channels == 4 and src.shape[2] == 3:
            self.output.data[dst_y:dst_y + h, dst_x:dst_x + w, 3] = 255

        if self.coverage is not None:
            self.coverage[dst_y:dst_y + h, dst_x:dst_x + w] += 1
        self.tiles_written += 1
        return w * h

    def is_fully_covered(self) -> bool:
        """True when every output pixel was written exactly once.

        Requires ``track_coverage=True``.
        """
        if self.coverage is None:
            raise RuntimeError("Coverage tracking is disabled for this compositor")
        return bool(np.all(self.coverage == 1))
