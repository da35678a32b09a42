"""Model registry service.

Model families are described by data, not code: each model id maps to a
ModelDescriptor carrying its artifact file name, scale, normalization range
and tiling parameters. Built-in descriptors cover the bundled model families;
custom models are discovered from ``<models_dir>/<id>/metadata.json``.

The registry never downloads anything. It only reports whether the expected
artifact is present in the models directory.
"""

import json
import logging
import os
import shutil
import uuid
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from ..errors import ModelMissing
from ..utils.normalization import ValueRange, range_name, resolve_value_range

logger = logging.getLogger(__name__)

RELEASES_URL = "https://github.com/surveilpro/surveilpro-models/releases/download/v1.0"


@dataclass(frozen=True)
class ModelDescriptor:
    """Static metadata for one model."""
    id: str
    file_name: str
    scale: int
    family: str
    display_name: str
    description: str = ""
    size_mb: float = 0.0
    value_range: ValueRange = (0.0, 1.0)
    tile_size: int = 256
    overlap: int = 16
    # spatial input size used when the artifact declares dynamic dimensions
    input_size: int = 64
    layout: Optional[str] = None
    download_url: Optional[str] = None
    source: str = "builtin"
    path: Optional[str] = None          # directory holding a custom model

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result = {f.name: getattr(self, f.name) for f in fields(self)}
        result["value_range"] = list(self.value_range)
        result["value_range_name"] = range_name(self.value_range)
        return result


def _builtin(model_id: str, file_name: str, scale: int, family: str,
             description: str, size_mb: float, value_range: str,
             tile_size: int) -> ModelDescriptor:
    return ModelDescriptor(
        id=model_id,
        file_name=file_name,
        scale=scale,
        family=family,
        display_name="%s x%d" % (family, scale),
        description=description,
        size_mb=size_mb,
        value_range=resolve_value_range(value_range),
        tile_size=tile_size,
        overlap=16,
        download_url="%s/%s" % (RELEASES_URL, file_name),
    )


_GENERAL = "Best for general images with natural textures, %d× upscaling"
_SURVEILLANCE = "Optimized for surveillance footage with improved detail, %d× upscaling"

# HAT based models work better with smaller tiles and a symmetric [-1, 1] range
BUILTIN_MODELS: Tuple[ModelDescriptor, ...] = (
    _builtin("realesrgan_x2", "realesrgan_x2.onnx", 2, "Real-ESRGAN",
             _GENERAL % 2, 22.5, "zero_one", 256),
    _builtin("realesrgan_x3", "realesrgan_x3.onnx", 3, "Real-ESRGAN",
             _GENERAL % 3, 28.3, "zero_one", 256),
    _builtin("realesrgan_x4", "realesrgan_x4plus.onnx", 4, "Real-ESRGAN",
             _GENERAL % 4, 32.2, "zero_one", 256),
    _builtin("surveilpro_x2", "surveilpro_hat_x2.onnx", 2, "SurveilPro",
             _SURVEILLANCE % 2, 36.1, "minus_one_one", 128),
    _builtin("surveilpro_x3", "surveilpro_hat_x3.onnx", 3, "SurveilPro",
             _SURVEILLANCE % 3, 42.4, "minus_one_one", 128),
    _builtin("surveilpro_x4", "surveilpro_hat_x4.onnx", 4, "SurveilPro",
             _SURVEILLANCE % 4, 48.7, "minus_one_one", 128),
)


def _check_tiling(tile_size: int, overlap: int):
    if tile_size <= 0:
        raise ValueError("tile_size must be positive, got %d" % tile_size)
    if overlap < 0:
        raise ValueError("overlap must be non-negative, got %d" % overlap)


def descriptor_from_metadata(metadata: Dict[str, Any], model_dir: Path) -> ModelDescriptor:
    """Build a descriptor from a custom model's metadata.json.

    Raises:
        KeyError: If "scale" is missing
        ValueError: If the value range, tile size or overlap are invalid
    """
    model_id = metadata.get("id", model_dir.name)
    file_name = metadata.get("file_name")
    if not file_name:
        candidates = sorted(p.name for p in model_dir.iterdir()
                            if p.suffix in (".onnx", ".pt"))
        file_name = candidates[0] if candidates else "model.onnx"

    scale = int(metadata["scale"])
    tile_size = int(metadata.get("tile_size", 256))
    overlap = int(metadata.get("overlap", 16))
    _check_tiling(tile_size, overlap)
    family = metadata.get("family", "Custom")
    return ModelDescriptor(
        id=model_id,
        file_name=file_name,
        scale=scale,
        family=family,
        display_name=metadata.get("name", "%s x%d" % (family, scale)),
        description=metadata.get("description", ""),
        size_mb=float(metadata.get("size_mb", 0.0)),
        value_range=resolve_value_range(metadata.get("value_range", "zero_one")),
        tile_size=tile_size,
        overlap=overlap,
        input_size=int(metadata.get("input_size", 64)),
        layout=metadata.get("layout"),
        download_url=metadata.get("download_url"),
        source=metadata.get("source", "custom"),
        path=str(model_dir),
    )


class ModelRegistry:
    """Registry mapping model ids to descriptors and on-disk artifacts."""

    def __init__(self, models_dir: Optional[str] = None,
                 builtin: Sequence[ModelDescriptor] = BUILTIN_MODELS):
        if models_dir is None:
            models_dir = os.path.expanduser("~/.srenhance/models")

        self.models_dir = Path(models_dir)
        self.models_dir.mkdir(parents=True, exist_ok=True)
        self._models: Dict[str, ModelDescriptor] = {d.id: d for d in builtin}
        self._scan_models()

    def _scan_models(self):
        """Scan models directory for custom models with a metadata.json."""
        logger.info("Scanning models directory: %s", self.models_dir)

        for model_dir in sorted(self.models_dir.iterdir()):
            if not model_dir.is_dir():
                continue
            metadata_path = model_dir / "metadata.json"
            if not metadata_path.exists():
                continue
            try:
                with open(metadata_path) as f:
                    metadata = json.load(f)
                descriptor = descriptor_from_metadata(metadata, model_dir)
                self._models[descriptor.id] = descriptor
                logger.info("Loaded custom model: %s", descriptor.id)
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning("Failed to load model from %s: %s", model_dir, e)

        logger.info("Registry holds %d models (%d present on disk)",
                     len(self._models), sum(1 for d in self._models.values()
                                            if self.is_available(d.id)))

    def rescan(self) -> None:
        """Re-read custom model metadata from disk."""
        for model_id in [d.id for d in self._models.values() if d.source != "builtin"]:
            del self._models[model_id]
        self._scan_models()

    # ==================== Lookup ====================

    def list_models(self) -> List[ModelDescriptor]:
        """List all known models."""
        return list(self._models.values())

    def get_model(self, model_id: str) -> Optional[ModelDescriptor]:
        """Get a descriptor by id, or None."""
        return self._models.get(model_id)

    def models_with_scale(self, scale: int) -> List[ModelDescriptor]:
        return [d for d in self._models.values() if d.scale == scale]

    def models_by_family(self) -> Dict[str, List[ModelDescriptor]]:
        """Group descriptors by family, preserving registry order."""
        result: Dict[str, List[ModelDescriptor]] = {}
        for descriptor in self._models.values():
            result.setdefault(descriptor.family, []).append(descriptor)
        return result

    def artifact_path(self, model_id: str) -> Path:
        """Expected artifact location for a model (may not exist).

        Raises:
            KeyError: If the model id is unknown
        """
        descriptor = self._models[model_id]
        if descriptor.path:
            return Path(descriptor.path) / descriptor.file_name
        return self.models_dir / descriptor.file_name

    def is_available(self, model_id: str) -> bool:
        """True if the model's artifact is present on disk."""
        try:
            return self.artifact_path(model_id).is_file()
        except KeyError:
            return False

    def resolve(self, model_id: str) -> Tuple[ModelDescriptor, Path]:
        """Return (descriptor, artifact path) for a model that is ready to load.

        Raises:
            ModelMissing: If the id is unknown or its artifact is absent
        """
        descriptor = self._models.get(model_id)
        if descriptor is None:
            raise ModelMissing(model_id)
        path = self.artifact_path(model_id)
        if not path.is_file():
            logger.error("Model file not found at: %s", path)
            raise ModelMissing(model_id, str(path))
        return descriptor, path

    # ==================== Custom models ====================

    def register_model(
        self,
        model_id: str,
        model_path: str,
        metadata: Dict[str, Any]
    ) -> ModelDescriptor:
        """Register a custom model, copying its artifact into the models dir."""
        model_dir = self.models_dir / model_id
        model_dir.mkdir(exist_ok=True)

        src_path = Path(model_path)
        if src_path.is_file() and src_path.parent != model_dir:
            shutil.copy(src_path, model_dir / src_path.name)
        if src_path.is_file():
            metadata.setdefault("file_name", src_path.name)

        metadata["id"] = model_id
        metadata.setdefault("source", "custom")
        descriptor = descriptor_from_metadata(metadata, model_dir)

        metadata_path = model_dir / "metadata.json"
        with open(metadata_path, "w") as f:
            json.dump(metadata, f, indent=2)

        self._models[model_id] = descriptor
        logger.info("Registered model: %s (%s)", descriptor.display_name, model_id)
        return descriptor

    async def upload_model(self, file, scale: int, family: str = "Custom",
                           value_range: Union[str, Sequence[float]] = "zero_one",
                           tile_size: int = 256, overlap: int = 16) -> ModelDescriptor:
        """Upload and register an ONNX model.

        Raises:
            ValueError: If the value range or tiling parameters are invalid;
                nothing is written in that case
        """
        resolve_value_range(value_range)
        _check_tiling(tile_size, overlap)

        model_id = str(uuid.uuid4())[:8]
        model_dir = self.models_dir / model_id
        model_dir.mkdir(exist_ok=True)

        model_path = model_dir / Path(file.filename).name
        content = await file.read()
        with open(model_path, "wb") as f:
            f.write(content)

        metadata = {
            "name": "%s x%d" % (family, scale),
            "family": family,
            "scale": scale,
            "value_range": value_range,
            "tile_size": tile_size,
            "overlap": overlap,
            "size_mb": round(len(content) / (1024 * 1024), 1),
            "source": "uploaded",
        }
        return self.register_model(model_id, str(model_path), metadata)

    def delete_model(self, model_id: str) -> bool:
        """Delete a custom model. Built-in descriptors cannot be deleted."""
        descriptor = self._models.get(model_id)
        if descriptor is None or descriptor.source == "builtin":
            return False

        try:
            if descriptor.path:
                shutil.rmtree(descriptor.path)
            del self._models[model_id]
            logger.info("Deleted model: %s", model_id)
            return True
        except OSError as e:
            logger.error("Failed to delete model %s: %s", model_id, e)
            return False
