"""Health check and device endpoints."""

import gc
import logging

from fastapi import APIRouter, Request

from ..config import SERVER_VERSION

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Check server health status."""
    registry = request.app.state.model_registry
    service = request.app.state.enhancement_service
    return {
        "status": "healthy",
        "version": SERVER_VERSION,
        "models_available": sum(1 for m in registry.list_models()
                                if registry.is_available(m.id)),
        "unavailable_models": service.unavailable_models,
    }


@router.get("/gpu")
async def gpu_info(request: Request):
    """Get accelerator information and the ONNX providers in use."""
    return request.app.state.gpu_manager.get_info()


@router.post("/gpu/clear")
async def clear_gpu_memory(request: Request):
    """Release held engines and device memory.

    This endpoint:
    1. Cancels any queued or running enhancement jobs
    2. Closes engines held by the enhancement service
    3. Forgets models marked unavailable so they are retried
    4. Clears the GPU memory cache (CUDA/MPS)
    """
    gpu_manager = request.app.state.gpu_manager
    job_manager = request.app.state.job_manager
    service = request.app.state.enhancement_service

    memory_before = gpu_manager.get_memory_info()

    cancelled_jobs = []
    for job in job_manager.list_jobs():
        if not job.finished:
            job.cancel()
            cancelled_jobs.append(job.job_id)
            logger.info("Cancelled enhancement job %s for GPU cleanup", job.job_id)

    service.release()
    service.reset()
    gc.collect()

    result = {
        "status": "cleared",
        "cancelled_jobs": cancelled_jobs,
        "memory_before": memory_before,
        "memory_after": gpu_manager.get_memory_info(),
    }
    logger.info("GPU cleanup complete")
    return result
