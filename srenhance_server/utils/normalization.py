"""Value-range normalization between 8-bit pixels and model tensors.

Each model family expects pixel intensities in its own numeric range:
Real-ESRGAN style networks use [0, 1], HAT style networks use [-1, 1].
The range is a property of the model descriptor, never a global constant.
"""
import logging
from typing import Sequence, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)

ValueRange = Tuple[float, float]

VALUE_RANGES = {
    "zero_one": (0.0, 1.0),
    "minus_one_one": (-1.0, 1.0),
}


def resolve_value_range(spec: Union[str, Sequence[float]]) -> ValueRange:
    """Turn a range name or a (low, high) pair into a validated range.

    Args:
        spec: "zero_one", "minus_one_one" or a two-element sequence

    Returns:
        (low, high) tuple of floats

    Raises:
        ValueError: If the name is unknown or the pair is not increasing
    """
    if isinstance(spec, str):
        key = spec.strip().lower()
        if key not in VALUE_RANGES:
            raise ValueError(
                "Unknown value range '%s' (expected one of %s)"
                % (spec, ", ".join(sorted(VALUE_RANGES))))
        return VALUE_RANGES[key]

    values = [float(v) for v in spec]
    if len(values) != 2:
        raise ValueError("Value range needs exactly two bounds, got %d" % len(values))
    low, high = values
    if not high > low:
        raise ValueError("Value range upper bound must exceed lower bound: %r" % (values,))
    return (low, high)


def range_name(value_range: ValueRange) -> str:
    """Name for a range if it is a known one, otherwise "low,high"."""
    for name, known in VALUE_RANGES.items():
        if known == tuple(value_range):
            return name
    return "%g,%g" % tuple(value_range)


def normalize(pixels: np.ndarray, value_range: ValueRange) -> np.ndarray:
    """Map 8-bit intensities into the model's input range.

    Args:
        pixels: uint8 (or 0-255 float) array of any shape
        value_range: (low, high) target range

    Returns:
        float32 array with the same shape
    """
    low, high = value_range
    img = pixels.astype(np.float32) / 255.0
    if (low, high) != (0.0, 1.0):
        img = img * (high - low) + low
    return img


def denormalize(values: np.ndarray, value_range: ValueRange) -> np.ndarray:
    """Map model output back to 8-bit intensities.

    Malformed values never fail: NaN maps to the low end of the range,
    infinities and out-of-range values are clamped to [0, 255].

    Args:
        values: float array in the model's output range
        value_range: (low, high) range the model produces

    Returns:
        uint8 array with the same shape
    """
    low, high = value_range
    img = np.asarray(values, dtype=np.float32)
    img = np.nan_to_num(img, nan=low, posinf=high, neginf=low)
    img = (img - low) / (high - low) * 255.0
    img = np.clip(img, 0.0, 255.0)
    # round half up, matching integer rounding of the reference output
    return np.floor(img + 0.5).astype(np.uint8)
