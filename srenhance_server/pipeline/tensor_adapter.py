"""TensorAdapter: convert tiles to and from the network's tensor format.

Design:
    - Stateless apart from the shapes and value range it is built with, so
      one adapter serves every tile of an image regardless of model family.
    - Geometry at the image edges rarely matches the network's fixed input
      shape, so tiles are resized to fit on the way in and resized to
      ``tile_size * scale`` on the way out (both bicubic).
    - Models only ever see RGB; alpha is resized alongside and re-attached.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from ..errors import TileShapeError
from ..utils.normalization import ValueRange, denormalize, normalize
from ..utils.pixel_buffer import PixelBuffer

logger = logging.getLogger(__name__)

LAYOUTS = ("NHWC", "NCHW")


@dataclass(frozen=True)
class TensorShape:
    """Fixed spatial shape of a model tensor (batch is always 1)."""

    height: int
    width: int
    channels: int = 3
    layout: str = "NHWC"

    def __post_init__(self):
        if self.layout not in LAYOUTS:
            raise ValueError("Unknown tensor layout: %s" % self.layout)
        if self.height <= 0 or self.width <= 0 or self.channels <= 0:
            raise ValueError("Tensor dimensions must be positive: %r" % (self,))

    @property
    def dims(self) -> Tuple[int, int, int, int]:
        """Full 4D shape including the batch dimension."""
        if self.layout == "NCHW":
            return (1, self.channels, self.height, self.width)
        return (1, self.height, self.width, self.channels)

    @classmethod
    def from_dims(cls, dims, layout: Optional[str] = None) -> "TensorShape":
        """Build from a 4D shape, guessing the layout when not given.

        A dimension of 1, 3 or 4 in position 1 (but not in position 3) is
        read as channels-first.

        Raises:
            ValueError: If the shape is not 4D or has non-integer dims
        """
        dims = tuple(dims)
        if len(dims) != 4 or not all(isinstance(d, (int, np.integer)) and d > 0 for d in dims):
            raise ValueError("Expected a static 4D tensor shape, got %r" % (dims,))
        if layout is None:
            layout = "NCHW" if dims[1] in (1, 3, 4) and dims[3] not in (1, 3, 4) else "NHWC"
        if layout == "NCHW":
            return cls(height=int(dims[2]), width=int(dims[3]), channels=int(dims[1]), layout=layout)
        return cls(height=int(dims[1]), width=int(dims[2]), channels=int(dims[3]), layout=layout)


class TensorAdapter:
    """
    Encode tiles into model input tensors and decode model output tensors.

    Usage:
        adapter = TensorAdapter(engine.input_shape, engine.output_shape, (0.0, 1.0))
        tensor = adapter.encode(tile)
        result = adapter.decode(engine.infer(tensor), tile.width * s, tile.height * s)
    """

    def __init__(self, input_shape: TensorShape, output_shape: TensorShape,
                 value_range: ValueRange, output_range: Optional[ValueRange] = None):
        self.input_shape = input_shape
        self.output_shape = output_shape
        self.value_range = value_range
        self.output_range = output_range or value_range

    def encode(self, tile: PixelBuffer) -> np.ndarray:
        """
        Resize a tile to the model input size and normalize it.

        Args:
            tile: Source tile (RGB or RGBA)

        Returns:
            float32 array shaped ``input_shape.dims``
        """
        shape = self.input_shape
        resized = tile.rgb().resized(shape.width, shape.height)
        pixels = resized.data
        if shape.channels == 1:
            # luminance for single-channel models
            pixels = np.array(resized.to_pil().convert("L"))[..., np.newaxis]
        elif shape.channels != 3:
            raise TileShapeError(
                "Model expects %d input channels; only 1 or 3 are supported" % shape.channels)

        tensor = normalize(pixels, self.value_range)
        if shape.layout == "NCHW":
            tensor = tensor.transpose(2, 0, 1)
        return np.ascontiguousarray(tensor[np.newaxis, ...], dtype=np.float32)

    def decode(self, output: np.ndarray, target_width: int, target_height: int) -> PixelBuffer:
        """
        Convert model output back to pixels and resize to the tile's target size.

        Args:
            output: Raw model output (batch of 1, any supported layout)
            target_width: tile width * scale
            target_height: tile height * scale

        Returns:
            RGB PixelBuffer of exactly target_width x target_height

        Raises:
            TileShapeError: If the output does not match the declared shape
        """
        shape = self.output_shape
        arr = np.asarray(output)
        if arr.ndim == 3:
            arr = arr[np.newaxis, ...]
        if arr.ndim != 4 or arr.shape[0] != 1:
            raise TileShapeError("Unexpected output tensor shape %s" % (arr.shape,))
        if tuple(arr.shape) != shape.dims:
            raise TileShapeError(
                "Output tensor shape %s does not match declared %s"
                % (tuple(arr.shape), shape.dims))

        hwc = arr[0].transpose(1, 2, 0) if shape.layout == "NCHW" else arr[0]
        if hwc.shape[2] == 1:
            hwc = np.repeat(hwc, 3, axis=2)
        elif hwc.shape[2] > 3:
            hwc = hwc[..., :3]

        pixels = denormalize(hwc, self.output_range)
        return PixelBuffer(np.ascontiguousarray(pixels)).resized(target_width, target_height)

    def process(self, tile: PixelBuffer, infer, scale: int) -> PixelBuffer:
        """Run one tile through ``infer`` and return it at ``scale`` times its size.

        Alpha, when present, is resized bicubically and re-attached.
        """
        target_w, target_h = tile.width * scale, tile.height * scale
        result = self.decode(infer(self.encode(tile)), target_w, target_h)
        alpha = tile.alpha()
        if alpha is not None:
            result = result.with_alpha(alpha)
        return result
