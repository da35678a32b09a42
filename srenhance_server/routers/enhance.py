"""Enhancement endpoints."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, File, Form, HTTPException, Request, Response, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse
from pydantic import BaseModel

from ..config import SUPPORTED_OUTPUT_FORMATS, SUPPORTED_SCALES
from ..errors import (
    DecodeFailed,
    EnhancementError,
    ImageTooLarge,
    InferenceBackendFailed,
    IOFailure,
    ModelMissing,
)
from ..services.job_manager import JobStatus

logger = logging.getLogger(__name__)

router = APIRouter()

MEDIA_TYPES = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp"}

STATUS_CODES = {
    ImageTooLarge: 413,
    ModelMissing: 404,
    DecodeFailed: 400,
    InferenceBackendFailed: 503,
    IOFailure: 500,
}


def http_error(error: Exception) -> HTTPException:
    """Translate an enhancement failure into an HTTPException."""
    if isinstance(error, EnhancementError):
        for error_type, status_code in STATUS_CODES.items():
            if isinstance(error, error_type):
                return HTTPException(status_code=status_code, detail=error.to_dict())
        return HTTPException(status_code=500, detail=error.to_dict())
    return HTTPException(status_code=422,
                         detail={"kind": "INVALID_ARGUMENT", "message": str(error)})


def _check_format(output_format: Optional[str]) -> Optional[str]:
    if output_format is None:
        return None
    fmt = output_format.upper()
    if fmt == "JPG":
        fmt = "JPEG"
    if fmt not in SUPPORTED_OUTPUT_FORMATS:
        raise HTTPException(status_code=422, detail=f"Unsupported output format {output_format}")
    return fmt


def _check_request(scale: int, quality: Optional[int]):
    if scale not in SUPPORTED_SCALES:
        raise HTTPException(status_code=422, detail=f"Unsupported scale {scale}")
    if quality is not None and not 1 <= quality <= 100:
        raise HTTPException(status_code=422, detail="quality must be in 1..100")


class JobResponse(BaseModel):
    """Response after queueing an enhancement job."""
    job_id: str
    status: str


class JobStatusResponse(BaseModel):
    """Status of an enhancement job."""
    job_id: str
    status: str
    model_id: str
    scale: int
    progress: float
    stage: str
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None


@router.post("/enhance")
async def enhance_image(
    request: Request,
    file: UploadFile = File(...),
    model_id: str = Form(...),
    scale: int = Form(...),
    output_format: Optional[str] = Form(None),
    quality: Optional[int] = Form(None),
):
    """Enhance an uploaded image and return the encoded result."""
    service = request.app.state.enhancement_service
    _check_request(scale, quality)
    fmt = _check_format(output_format) or service.settings.output_format

    content = await file.read()
    try:
        result = await run_in_threadpool(service.enhance, content, model_id, scale)
        body = await run_in_threadpool(
            result.image.encode, fmt, quality or service.settings.jpeg_quality)
    except (EnhancementError, ValueError) as e:
        logger.warning("Enhancement of %s failed: %s", file.filename, e)
        raise http_error(e)

    return Response(
        content=body,
        media_type=MEDIA_TYPES[fmt],
        headers={
            "X-Enhance-Method": result.method,
            "X-Enhance-Model": result.model_id,
            "X-Output-Width": str(result.output_width),
            "X-Output-Height": str(result.output_height),
        },
    )


@router.post("/enhance/jobs", response_model=JobResponse)
async def create_job(
    request: Request,
    file: UploadFile = File(...),
    model_id: str = Form(...),
    scale: int = Form(...),
    output_format: Optional[str] = Form(None),
    quality: Optional[int] = Form(None),
):
    """Queue an enhancement job and return its id."""
    job_manager = request.app.state.job_manager
    registry = request.app.state.model_registry
    _check_request(scale, quality)
    fmt = _check_format(output_format)

    if registry.get_model(model_id) is None:
        raise HTTPException(status_code=404, detail=f"Model {model_id} not found")

    content = await file.read()
    job = job_manager.submit(content, model_id, scale, output_format=fmt, quality=quality)
    return JobResponse(job_id=job.job_id, status=job.status.value)


@router.get("/enhance/jobs", response_model=List[JobStatusResponse])
async def list_jobs(request: Request):
    """List all enhancement jobs."""
    return [job.get_status() for job in request.app.state.job_manager.list_jobs()]


@router.get("/enhance/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, request: Request):
    """Get progress and outcome of a job."""
    job = request.app.state.job_manager.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job.get_status()


@router.post("/enhance/jobs/{job_id}/cancel")
async def cancel_job(job_id: str, request: Request):
    """Cancel a queued or running job."""
    job_manager = request.app.state.job_manager
    if not job_manager.cancel_job(job_id):
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return {"status": "cancelling", "job_id": job_id}


@router.get("/enhance/jobs/{job_id}/result")
async def get_job_result(job_id: str, request: Request):
    """Download the output image of a completed job."""
    job = request.app.state.job_manager.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    if job.status != JobStatus.COMPLETED:
        raise HTTPException(status_code=409,
                            detail=f"Job {job_id} is {job.status.value}, not completed")

    path = Path(job.output_path)
    if not path.is_file():
        raise HTTPException(status_code=410, detail=f"Output for job {job_id} is gone")
    return FileResponse(path, media_type=MEDIA_TYPES[job.output_format], filename=path.name)


@router.post("/enhance/reset")
async def reset_engines(request: Request):
    """Forget engine failures so models are retried."""
    service = request.app.state.enhancement_service
    cleared = service.unavailable_models
    service.reset()
    return {"status": "reset", "cleared": cleared}
