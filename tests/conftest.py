"""Shared fixtures for srenhance_server tests.

This module provides pytest fixtures for:
- Fake inference engines (nearest-neighbour upscalers) and loaders
- Sample images (gradients, RGBA, encoded files)
- A models directory with placeholder artifacts
- Test client for FastAPI endpoints
"""

import io
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from srenhance_server.config import EnhanceSettings
from srenhance_server.errors import InferenceBackendFailed
from srenhance_server.pipeline.tensor_adapter import TensorShape
from srenhance_server.services.gpu_manager import GPUManager
from srenhance_server.services.inference_engine import InferenceEngine
from srenhance_server.services.model_registry import ModelRegistry

# Import test client only when available
try:
    from fastapi.testclient import TestClient
    from srenhance_server.main import app
    FASTAPI_AVAILABLE = True
except ImportError:
    FASTAPI_AVAILABLE = False


class FakeEngine(InferenceEngine):
    """Nearest-neighbour upscaler with a fixed tensor shape.

    Records every tensor it is given so tests can inspect calls.
    """

    backend = "fake"

    def __init__(self, size=32, scale=4, layout="NHWC", output_size=None):
        out = output_size or size * scale
        super().__init__(TensorShape(size, size, 3, layout),
                         TensorShape(out, out, 3, layout), provider="fake")
        self.scale = scale
        self.calls = 0

    def _run(self, tensor):
        self.calls += 1
        s = self.output_shape.height // self.input_shape.height
        if self.input_shape.layout == "NCHW":
            return tensor.repeat(s, axis=2).repeat(s, axis=3)
        return tensor.repeat(s, axis=1).repeat(s, axis=2)


class FailingEngine(FakeEngine):
    """Engine whose every call fails in the backend."""

    def _run(self, tensor):
        self.calls += 1
        raise RuntimeError("device lost")


def make_loader(engine_factory, record=None):
    """Build an engine loader with the load_engine signature."""
    def loader(artifact_path, descriptor, gpu_manager=None, use_gpu=True, num_threads=2):
        engine = engine_factory(descriptor)
        if record is not None:
            record.append(engine)
        return engine
    return loader


def failing_loader(artifact_path, descriptor, gpu_manager=None, use_gpu=True, num_threads=2):
    raise InferenceBackendFailed("accelerated: no device; cpu: bad graph; cpu-buffer: bad graph")


@pytest.fixture
def gpu_manager():
    """CPU-only device manager."""
    return GPUManager(force_cpu=True)


@pytest.fixture
def models_dir(tmp_path) -> Path:
    """Models directory holding placeholder artifacts for every built-in model."""
    directory = tmp_path / "models"
    directory.mkdir()
    for name in ("realesrgan_x2.onnx", "realesrgan_x3.onnx", "realesrgan_x4plus.onnx",
                 "surveilpro_hat_x2.onnx", "surveilpro_hat_x4.onnx"):
        (directory / name).write_bytes(b"placeholder")
    return directory


@pytest.fixture
def registry(models_dir) -> ModelRegistry:
    return ModelRegistry(str(models_dir))


@pytest.fixture
def settings(tmp_path) -> EnhanceSettings:
    return EnhanceSettings(
        models_dir=str(tmp_path / "models"),
        output_dir=str(tmp_path / "output"),
        use_gpu=False,
    )


def gradient_array(width, height, channels=3) -> np.ndarray:
    """Smooth diagonal gradient, free of clipped extremes."""
    x = np.linspace(40, 200, width)[np.newaxis, :]
    y = np.linspace(0, 30, height)[:, np.newaxis]
    base = (x + y).astype(np.uint8)
    planes = [base, np.flipud(base), np.full_like(base, 120)][:3]
    if channels == 4:
        planes.append(np.full_like(base, 200))
    return np.stack(planes, axis=-1)


@pytest.fixture
def gradient_image():
    """Factory for gradient PixelBuffers."""
    from srenhance_server.utils.pixel_buffer import PixelBuffer

    def factory(width=64, height=48, channels=3):
        return PixelBuffer(gradient_array(width, height, channels))
    return factory


@pytest.fixture
def png_bytes() -> bytes:
    """A 40x30 PNG image."""
    buffer = io.BytesIO()
    Image.fromarray(gradient_array(40, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def sample_image_path(tmp_path) -> str:
    """A 50x40 JPEG on disk."""
    path = tmp_path / "input.jpg"
    Image.fromarray(gradient_array(50, 40)).save(path, quality=95)
    return str(path)


@pytest.fixture
def client(tmp_path, models_dir, monkeypatch):
    """FastAPI test client with lifespan state and a fake engine loader."""
    if not FASTAPI_AVAILABLE:
        pytest.skip("FastAPI test client not available")

    monkeypatch.setenv("SRENHANCE_MODELS_DIR", str(models_dir))
    monkeypatch.setenv("SRENHANCE_OUTPUT_DIR", str(tmp_path / "output"))
    monkeypatch.setenv("SRENHANCE_USE_GPU", "false")

    with TestClient(app) as client:
        app.state.enhancement_service.engine_loader = make_loader(
            lambda d: FakeEngine(size=16, scale=d.scale))
        yield client
