"""Runtime configuration for the enhancement server and CLI.

Defaults reproduce the reference behavior (25MP ceiling, JPEG quality 95,
fallback enabled). Every field can be overridden through an
``SRENHANCE_*`` environment variable, e.g. ``SRENHANCE_MODELS_DIR``.
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

SERVER_VERSION = "0.1.0"
ENV_PREFIX = "SRENHANCE_"

DEFAULT_MAX_OUTPUT_PIXELS = 25_000_000
DEFAULT_JPEG_QUALITY = 95
SUPPORTED_SCALES = (2, 3, 4)
SUPPORTED_OUTPUT_FORMATS = ("JPEG", "PNG", "WEBP")


def _default_models_dir() -> str:
    return os.path.expanduser("~/.srenhance/models")


def _default_output_dir() -> str:
    return os.path.expanduser("~/.srenhance/output")


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EnhanceSettings:
    """Settings shared by the orchestrator, the API and the CLI."""

    models_dir: str = field(default_factory=_default_models_dir)
    output_dir: str = field(default_factory=_default_output_dir)
    max_output_pixels: int = DEFAULT_MAX_OUTPUT_PIXELS
    output_format: str = "JPEG"
    jpeg_quality: int = DEFAULT_JPEG_QUALITY

    # Inference
    use_gpu: bool = True
    num_threads: int = 2
    tile_workers: int = 1
    tile_size: Optional[int] = None      # overrides the model descriptor
    overlap: Optional[int] = None        # overrides the model descriptor

    # Failure policy
    allow_fallback: bool = True
    sticky_unavailable: bool = True

    log_level: str = "INFO"

    def __post_init__(self):
        self.output_format = self.output_format.upper()
        if self.output_format == "JPG":
            self.output_format = "JPEG"
        if self.output_format not in SUPPORTED_OUTPUT_FORMATS:
            raise ValueError("Unsupported output format: %s" % self.output_format)
        if not 1 <= self.jpeg_quality <= 100:
            raise ValueError("jpeg_quality must be in 1..100, got %d" % self.jpeg_quality)
        if self.max_output_pixels <= 0:
            raise ValueError("max_output_pixels must be positive")
        if self.tile_workers < 1:
            raise ValueError("tile_workers must be >= 1")

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None,
                 **overrides: Any) -> "EnhanceSettings":
        """Build settings from ``SRENHANCE_*`` variables.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``)
            **overrides: Explicit values that win over the environment

        Returns:
            EnhanceSettings instance
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            if f.name in ("use_gpu", "allow_fallback", "sticky_unavailable"):
                values[f.name] = _parse_bool(raw)
            elif f.name in ("max_output_pixels", "jpeg_quality", "num_threads",
                            "tile_workers", "tile_size", "overlap"):
                values[f.name] = int(raw)
            else:
                values[f.name] = raw

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> "EnhanceSettings":
        """Return a copy with the non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging with the server's standard format."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
