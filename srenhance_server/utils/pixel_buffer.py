"""In-memory 8-bit raster image.

PixelBuffer wraps a numpy array of shape (H, W, C) with C = 3 (RGB) or
C = 4 (RGBA). Buffers are owned by one stage at a time: ``crop`` and
``copy`` always return independent storage.
"""

import io
import logging
import os
from pathlib import Path
from typing import BinaryIO, Optional, Tuple, Union

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from ..errors import DecodeFailed, IOFailure

logger = logging.getLogger(__name__)

Pixel = Tuple[int, ...]
ImageSource = Union[str, os.PathLike, bytes, bytearray, BinaryIO]

_FORMAT_ALIASES = {"JPG": "JPEG"}
_EXTENSIONS = {"JPEG": ".jpg", "PNG": ".png", "WEBP": ".webp"}


class PixelBuffer:
    """Mutable RGB(A) image addressed by (x, y)."""

    def __init__(self, data: np.ndarray):
        if data.ndim != 3 or data.shape[2] not in (3, 4):
            raise ValueError(
                "PixelBuffer needs an (H, W, 3|4) array, got shape %s" % (data.shape,))
        if data.dtype != np.uint8:
            data = np.clip(data, 0, 255).astype(np.uint8)
        self._data = data

    # ==================== Construction ====================

    @classmethod
    def new(cls, width: int, height: int, channels: int = 3) -> "PixelBuffer":
        """Create a black canvas."""
        if width <= 0 or height <= 0:
            raise ValueError("Canvas size must be positive, got %dx%d" % (width, height))
        return cls(np.zeros((height, width, channels), dtype=np.uint8))

    @classmethod
    def from_pil(cls, img: Image.Image) -> "PixelBuffer":
        """Convert a PIL image, keeping alpha only when the source has it."""
        has_alpha = img.mode in ("RGBA", "LA", "PA") or (
            img.mode == "P" and "transparency" in img.info)
        img = img.convert("RGBA" if has_alpha else "RGB")
        return cls(np.array(img, dtype=np.uint8))

    @classmethod
    def decode(cls, source: ImageSource) -> "PixelBuffer":
        """Decode an image from a path, raw bytes or a binary stream.

        EXIF orientation is applied so the buffer matches what viewers show.

        Raises:
            DecodeFailed: If the input is not a readable image
        """
        try:
            if isinstance(source, (bytes, bytearray)):
                if not source:
                    raise DecodeFailed("Input is empty")
                stream = io.BytesIO(source)
            else:
                stream = source
            with Image.open(stream) as img:
                img.load()
                img = ImageOps.exif_transpose(img)
                buffer = cls.from_pil(img)
        except DecodeFailed:
            raise
        except FileNotFoundError as e:
            raise DecodeFailed("Input image not found: %s" % source, cause=e)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError,
                SyntaxError, ValueError) as e:
            raise DecodeFailed("Failed to decode input image: %s" % e, cause=e)

        logger.debug("Decoded image %dx%d (%d channels)",
                     buffer.width, buffer.height, buffer.channels)
        return buffer

    # ==================== Accessors ====================

    @property
    def width(self) -> int:
        return self._data.shape[1]

    @property
    def height(self) -> int:
        return self._data.shape[0]

    @property
    def channels(self) -> int:
        return self._data.shape[2]

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height), matching PIL ordering."""
        return (self.width, self.height)

    @property
    def has_alpha(self) -> bool:
        return self.channels == 4

    @property
    def data(self) -> np.ndarray:
        """Underlying (H, W, C) uint8 array (not a copy)."""
        return self._data

    def get_pixel(self, x: int, y: int) -> Pixel:
        return tuple(int(v) for v in self._data[y, x])

    def set_pixel(self, x: int, y: int, value: Pixel) -> None:
        if len(value) != self.channels:
            raise ValueError("Expected %d channel values, got %d" % (self.channels, len(value)))
        self._data[y, x] = value

    def __eq__(self, other):
        if not isinstance(other, PixelBuffer):
            return NotImplemented
        return self._data.shape == other._data.shape and np.array_equal(self._data, other._data)

    def __repr__(self):
        return "PixelBuffer(%dx%d, channels=%d)" % (self.width, self.height, self.channels)

    # ==================== Derived buffers ====================

    def copy(self) -> "PixelBuffer":
        return PixelBuffer(self._data.copy())

    def crop(self, x0: int, y0: int, x1: int, y1: int) -> "PixelBuffer":
        """Copy the rectangle [x0, x1) x [y0, y1)."""
        if not (0 <= x0 < x1 <= self.width and 0 <= y0 < y1 <= self.height):
            raise ValueError(
                "Crop (%d, %d, %d, %d) outside %dx%d image"
                % (x0, y0, x1, y1, self.width, self.height))
        return PixelBuffer(self._data[y0:y1, x0:x1].copy())

    def rgb(self) -> "PixelBuffer":
        """RGB view of this buffer as an independent copy."""
        return PixelBuffer(self._data[..., :3].copy())

    def alpha(self) -> Optional[np.ndarray]:
        """Alpha plane (H, W) copy, or None for RGB buffers."""
        if not self.has_alpha:
            return None
        return self._data[..., 3].copy()

    def with_alpha(self, alpha: np.ndarray) -> "PixelBuffer":
        """Attach an alpha plane, resizing it bicubically if needed."""
        if alpha.shape != (self.height, self.width):
            alpha = np.array(
                Image.fromarray(alpha).resize(
                    (self.width, self.height), Image.Resampling.BICUBIC))
        return PixelBuffer(np.dstack([self._data[..., :3], alpha]).astype(np.uint8))

    def resized(self, width: int, height: int) -> "PixelBuffer":
        """Bicubic resize to the given size."""
        if (width, height) == self.size:
            return self.copy()
        img = self.to_pil().resize((width, height), Image.Resampling.BICUBIC)
        return PixelBuffer(np.array(img, dtype=np.uint8))

    def to_pil(self) -> Image.Image:
        return Image.fromarray(self._data)

    # ==================== Encoding ====================

    def encode(self, fmt: str = "JPEG", quality: int = 95) -> bytes:
        """Encode to image bytes. JPEG output drops the alpha channel."""
        fmt = _FORMAT_ALIASES.get(fmt.upper(), fmt.upper())
        img = self.to_pil()
        params = {}
        if fmt == "JPEG":
            img = img.convert("RGB")
            params["quality"] = quality
        elif fmt == "WEBP":
            params["quality"] = quality

        out = io.BytesIO()
        img.save(out, format=fmt, **params)
        return out.getvalue()

    def save(self, destination: Union[str, os.PathLike, BinaryIO],
             fmt: str = "JPEG", quality: int = 95) -> None:
        """Encode and write to a path or a writable binary stream.

        Raises:
            IOFailure: If the destination cannot be written
        """
        payload = self.encode(fmt, quality)
        try:
            if hasattr(destination, "write"):
                destination.write(payload)
                return
            path = Path(destination)
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                f.write(payload)
        except OSError as e:
            raise IOFailure("Failed to write output to %s: %s" % (destination, e), cause=e)


def extension_for(fmt: str) -> str:
    """File extension for an output format name."""
    fmt = _FORMAT_ALIASES.get(fmt.upper(), fmt.upper())
    return _EXTENSIONS.get(fmt, "." + fmt.lower())
