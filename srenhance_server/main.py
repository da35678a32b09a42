"""Main entry point for the SR Enhance server."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from .config import SERVER_VERSION, EnhanceSettings, configure_logging
from .routers import enhance, health, models

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = EnhanceSettings.from_env()
    configure_logging(settings.log_level)
    logger.info("Starting SR Enhance Server...")
    app.state.settings = settings

    from .services.gpu_manager import GPUManager
    gpu_manager = GPUManager(force_cpu=not settings.use_gpu)
    app.state.gpu_manager = gpu_manager

    from .services.model_registry import ModelRegistry
    model_registry = ModelRegistry(settings.models_dir)
    app.state.model_registry = model_registry

    # one service per process so engine failures are remembered across requests
    from .services.enhancement_service import EnhancementService
    enhancement_service = EnhancementService(model_registry, settings, gpu_manager)
    app.state.enhancement_service = enhancement_service

    from .services.job_manager import JobManager
    job_manager = JobManager(enhancement_service, output_dir=settings.output_dir)
    app.state.job_manager = job_manager

    yield

    logger.info("Shutting down SR Enhance Server...")
    job_manager.shutdown()
    enhancement_service.release()


app = FastAPI(
    title="SR Enhance Server",
    description="Tiled super-resolution image enhancement service",
    version=SERVER_VERSION,
    lifespan=lifespan
)

app.include_router(health.router, prefix="/api/v1", tags=["health"])
app.include_router(models.router, prefix="/api/v1", tags=["models"])
app.include_router(enhance.router, prefix="/api/v1", tags=["enhance"])


def run():
    """Run the server.

    Passes the app object directly to uvicorn instead of an import string.
    Using a string causes uvicorn to spawn a subprocess on Windows, which
    breaks Ctrl+C signal handling.
    """
    import argparse
    parser = argparse.ArgumentParser(description="SR Enhance Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8765, help="Port to bind to")
    args = parser.parse_args()

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level="info"
    )


if __name__ == "__main__":
    run()
