"""Pre-flight memory feasibility heuristic.

All functions are pure (no side effects, no I/O, no device access) and never
raise: tiling keeps per-tile memory bounded, but the full-resolution output
canvas is still allocated, so its pixel count is what gets checked.
"""

import logging

from ..config import DEFAULT_MAX_OUTPUT_PIXELS

logger = logging.getLogger(__name__)


def output_pixel_count(width: int, height: int, scale: int) -> int:
    """Number of pixels in the enlarged output."""
    return width * height * scale * scale


def estimate_output_bytes(width: int, height: int, scale: int, channels: int = 3) -> int:
    """Rough size of the 8-bit output canvas in bytes."""
    return output_pixel_count(width, height, scale) * channels


def is_feasible(
    width: int,
    height: int,
    scale: int,
    max_output_pixels: int = DEFAULT_MAX_OUTPUT_PIXELS,
) -> bool:
    """Decide whether enlarging a width x height image by scale fits the ceiling.

    This is advisory: a pixel-count heuristic, not a live memory probe.

    Args:
        width: Input width in pixels
        height: Input height in pixels
        scale: Integer enlargement factor
        max_output_pixels: Inclusive ceiling on output pixels

    Returns:
        True if the output pixel count is at or below the ceiling. Invalid
        (non-positive) dimensions or scales return False.
    """
    try:
        if width <= 0 or height <= 0 or scale <= 0:
            return False
        output_pixels = output_pixel_count(width, height, scale)
    except TypeError:
        return False

    if output_pixels > max_output_pixels:
        logger.warning(
            "Image potentially too large: output will be %.1fMP (limit %.1fMP)",
            output_pixels / 1e6, max_output_pixels / 1e6)
        return False
    return True
