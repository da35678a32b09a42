"""Classical enlargement used when neural inference is unavailable.

Bicubic resize followed by a fixed enhancement chain. The constants and the
order (contrast, then sharpen, then brightness) are part of the expected
output and are not tunable per call.
"""

import logging
from typing import Callable, Optional

import numpy as np
from PIL import ImageEnhance, ImageFilter

from ..utils.pixel_buffer import PixelBuffer

logger = logging.getLogger(__name__)

CONTRAST_FACTOR = 1.1
BRIGHTNESS_FACTOR = 1.05
SHARPEN_KERNEL = ImageFilter.Kernel(
    (3, 3),
    [-1, -1, -1,
     -1,  9, -1,
     -1, -1, -1],
    scale=1,
)


class FallbackUpscaler:
    """
    Terminal fallback: always produces a W*s x H*s image.

    Usage:
        output = FallbackUpscaler().upscale(image, scale=4)
    """

    def upscale(
        self,
        image: PixelBuffer,
        scale: int,
        progress_callback: Optional[Callable[[float], None]] = None,
    ) -> PixelBuffer:
        """Enlarge an image by ``scale`` and apply the enhancement chain.

        Args:
            image: Full input image
            scale: Integer enlargement factor
            progress_callback: Optional function(fraction) for 0..1 progress

        Returns:
            Enhanced image of exactly (width * scale) x (height * scale)
        """
        def report(fraction):
            if progress_callback is not None:
                progress_callback(fraction)

        report(0.1)
        target_w, target_h = image.width * scale, image.height * scale
        logger.info("Fallback resize %dx%d -> %dx%d",
                    image.width, image.height, target_w, target_h)
        resized = image.resized(target_w, target_h)
        report(0.5)

        enhanced = self.enhance(resized)
        report(1.0)
        return enhanced

    def enhance(self, image: PixelBuffer) -> PixelBuffer:
        """Apply contrast, sharpening and brightness to the RGB channels."""
        img = image.rgb().to_pil()
        img = ImageEnhance.Contrast(img).enhance(CONTRAST_FACTOR)
        img = img.filter(SHARPEN_KERNEL)
        img = ImageEnhance.Brightness(img).enhance(BRIGHTNESS_FACTOR)

        result = PixelBuffer(np.array(img, dtype=np.uint8))
        alpha = image.alpha()
        if alpha is not None:
            result = result.with_alpha(alpha)
        return result


def simple_resize(tile: PixelBuffer, scale: int) -> PixelBuffer:
    """Plain bicubic enlargement, used to degrade a single failed tile."""
    return tile.resized(tile.width * scale, tile.height * scale)
