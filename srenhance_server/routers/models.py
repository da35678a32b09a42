"""Model management endpoints."""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, File, Form, HTTPException, Request, UploadFile
from pydantic import BaseModel

from ..config import SUPPORTED_SCALES

logger = logging.getLogger(__name__)

router = APIRouter()


class ModelInfo(BaseModel):
    """Model information."""
    id: str
    display_name: str
    family: str
    scale: int
    file_name: str
    description: str
    size_mb: float
    value_range: List[float]
    tile_size: int
    overlap: int
    source: str
    available: bool
    download_url: Optional[str] = None


class ModelsResponse(BaseModel):
    """Response for listing models."""
    models: List[ModelInfo]


def _model_info(registry, descriptor) -> ModelInfo:
    return ModelInfo(
        id=descriptor.id,
        display_name=descriptor.display_name,
        family=descriptor.family,
        scale=descriptor.scale,
        file_name=descriptor.file_name,
        description=descriptor.description,
        size_mb=descriptor.size_mb,
        value_range=list(descriptor.value_range),
        tile_size=descriptor.tile_size,
        overlap=descriptor.overlap,
        source=descriptor.source,
        available=registry.is_available(descriptor.id),
        download_url=descriptor.download_url,
    )


@router.get("/models", response_model=ModelsResponse)
async def list_models(request: Request):
    """List known models and whether their files are present."""
    registry = request.app.state.model_registry
    return ModelsResponse(models=[_model_info(registry, m) for m in registry.list_models()])


@router.get("/models/families", response_model=Dict[str, List[ModelInfo]])
async def list_families(request: Request):
    """Models grouped by family."""
    registry = request.app.state.model_registry
    return {
        family: [_model_info(registry, m) for m in descriptors]
        for family, descriptors in registry.models_by_family().items()
    }


@router.get("/models/scale/{scale}", response_model=ModelsResponse)
async def models_for_scale(scale: int, request: Request):
    """Models that enlarge by the given factor."""
    if scale not in SUPPORTED_SCALES:
        raise HTTPException(status_code=422, detail=f"Unsupported scale {scale}")
    registry = request.app.state.model_registry
    return ModelsResponse(models=[_model_info(registry, m)
                                  for m in registry.models_with_scale(scale)])


@router.get("/models/{model_id}", response_model=ModelInfo)
async def get_model(model_id: str, request: Request):
    """Get details for a specific model."""
    registry = request.app.state.model_registry

    model = registry.get_model(model_id)
    if model is None:
        raise HTTPException(status_code=404, detail=f"Model {model_id} not found")

    return _model_info(registry, model)


@router.post("/models/upload")
async def upload_model(
    request: Request,
    file: UploadFile = File(...),
    scale: int = Form(...),
    family: str = Form("Custom"),
    value_range: str = Form("zero_one"),
    tile_size: int = Form(256),
    overlap: int = Form(16),
):
    """Upload a custom ONNX model."""
    registry = request.app.state.model_registry

    if not file.filename or not file.filename.endswith(".onnx"):
        raise HTTPException(status_code=400, detail="Only ONNX files are supported")
    if scale not in SUPPORTED_SCALES:
        raise HTTPException(status_code=422, detail=f"Unsupported scale {scale}")

    try:
        descriptor = await registry.upload_model(
            file, scale=scale, family=family, value_range=value_range,
            tile_size=tile_size, overlap=overlap)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except OSError as e:
        logger.error("Model upload failed: %s", e)
        raise HTTPException(status_code=500, detail=str(e))

    return {"status": "success", "model_id": descriptor.id}


@router.delete("/models/{model_id}")
async def delete_model(model_id: str, request: Request):
    """Delete a custom model."""
    registry = request.app.state.model_registry

    model = registry.get_model(model_id)
    if model is None:
        raise HTTPException(status_code=404, detail=f"Model {model_id} not found")
    if model.source == "builtin":
        raise HTTPException(status_code=400, detail=f"Model {model_id} is built in")

    if not registry.delete_model(model_id):
        raise HTTPException(status_code=500, detail=f"Failed to delete model {model_id}")

    return {"status": "deleted", "model_id": model_id}
