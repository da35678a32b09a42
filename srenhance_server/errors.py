"""Named failure outcomes for image enhancement.

Callers react differently to each kind, so every error carries a stable
``kind`` string that is also used by the HTTP layer and the CLI exit codes.
"""

from typing import Optional


class EnhancementError(Exception):
    """Base class for all enhancement failures."""

    kind = "ENHANCEMENT_ERROR"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self):
        """Serialize for API responses and job status."""
        result = {"kind": self.kind, "message": self.message}
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result


class ImageTooLarge(EnhancementError):
    """Scaled output would exceed the configured pixel ceiling."""

    kind = "IMAGE_TOO_LARGE"

    def __init__(self, width: int, height: int, scale: int, max_output_pixels: int):
        self.width = width
        self.height = height
        self.scale = scale
        self.max_output_pixels = max_output_pixels
        output_pixels = width * height * scale * scale
        super().__init__(
            "Output of %dx%d at x%d is %.1fMP, above the %.1fMP limit"
            % (width, height, scale, output_pixels / 1e6, max_output_pixels / 1e6)
        )


class ModelMissing(EnhancementError, FileNotFoundError):
    """The model artifact for the requested id is not on disk."""

    kind = "MODEL_MISSING"

    def __init__(self, model_id: str, expected_path: Optional[str] = None):
        self.model_id = model_id
        self.expected_path = expected_path
        message = "Model '%s' is not available" % model_id
        if expected_path:
            message += " (expected at %s)" % expected_path
        EnhancementError.__init__(self, message)


class InferenceBackendFailed(EnhancementError):
    """Engine construction or an inference call failed."""

    kind = "INFERENCE_BACKEND_FAILED"


class DecodeFailed(EnhancementError, ValueError):
    """Input bytes could not be interpreted as an image."""

    kind = "DECODE_FAILED"


class IOFailure(EnhancementError, OSError):
    """Writing the output failed."""

    kind = "IO_FAILURE"


class EnhancementCancelled(EnhancementError):
    """Processing was aborted between tiles."""

    kind = "CANCELLED"


class TileShapeError(ValueError):
    """A tile tensor did not match the shape the model declares.

    Raised per tile and handled by degrading that tile only.
    """
