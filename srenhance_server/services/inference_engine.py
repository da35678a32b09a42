"""Inference engine handles.

An engine wraps one loaded model and exposes its fixed input/output tensor
shapes plus a single-tile ``infer`` call. Two backends are supported:

- ONNX Runtime sessions (``.onnx``), with CUDA/CoreML execution providers when
  the device has them
- TorchScript modules (``.pt``), run on the torch device

``load_engine`` tries an accelerated load first, then a CPU load from the
file, then a CPU load from an in-memory copy of the file. Some runtimes
refuse memory-mapped loads from certain storage locations, which the last
attempt works around.
"""

import io
import logging
import threading
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import numpy as np
import onnxruntime as ort
import torch

from ..errors import InferenceBackendFailed, TileShapeError
from ..pipeline.tensor_adapter import TensorShape
from .gpu_manager import GPUManager, get_gpu_manager
from .model_registry import ModelDescriptor

logger = logging.getLogger(__name__)

ONNX_SUFFIXES = (".onnx", ".ort")
TORCHSCRIPT_SUFFIXES = (".pt", ".pth", ".torchscript")


class InferenceEngine:
    """Base class for a loaded model.

    Usage:
        with load_engine(path, descriptor) as engine:
            output = engine.infer(tensor)
    """

    backend = "none"

    def __init__(self, input_shape: TensorShape, output_shape: TensorShape,
                 provider: str = "CPU"):
        self.input_shape = input_shape
        self.output_shape = output_shape
        self.provider = provider
        self.closed = False
        # engine calls are serialized when tiles run on several threads
        self.lock = threading.Lock()

    def infer(self, tensor: np.ndarray) -> np.ndarray:
        """Run one batch-1 tensor through the model.

        Raises:
            TileShapeError: If the tensor does not match ``input_shape``
            InferenceBackendFailed: If the backend call fails
        """
        if self.closed:
            raise InferenceBackendFailed("Engine has been closed")
        if tuple(tensor.shape) != self.input_shape.dims:
            raise TileShapeError(
                "Input tensor shape %s does not match model input %s"
                % (tuple(tensor.shape), self.input_shape.dims))
        with self.lock:
            if self.closed:
                raise InferenceBackendFailed("Engine has been closed")
            try:
                return self._run(tensor)
            except (TileShapeError, InferenceBackendFailed):
                raise
            except Exception as e:
                raise InferenceBackendFailed(
                    "%s inference failed: %s" % (self.backend, e), cause=e) from e

    def _run(self, tensor: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def _release(self) -> None:
        pass

    def close(self) -> None:
        """Release the backend once any in-flight call has returned."""
        with self.lock:
            self._release()
            self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def __repr__(self):
        return "%s(in=%s, out=%s, provider=%s)" % (
            type(self).__name__, self.input_shape.dims, self.output_shape.dims, self.provider)


def _static_dims(dims, layout: Optional[str], size: int) -> Tuple[Tuple[int, ...], str]:
    """Replace dynamic ONNX dims (strings or None) with concrete values."""
    dims = list(dims)
    if len(dims) != 4:
        raise ValueError("Expected a 4D tensor, model declares %r" % (dims,))

    def is_static(d):
        return isinstance(d, int) and d > 0

    if layout is None:
        if is_static(dims[1]) and dims[1] in (1, 3, 4):
            layout = "NCHW"
        elif is_static(dims[3]) and dims[3] in (1, 3, 4):
            layout = "NHWC"
        else:
            layout = "NCHW"

    spatial, channel = ((2, 3), 1) if layout == "NCHW" else ((1, 2), 3)
    dims[0] = 1
    for i in spatial:
        if not is_static(dims[i]):
            dims[i] = size
    if not is_static(dims[channel]):
        dims[channel] = 3
    return tuple(dims), layout


class OnnxEngine(InferenceEngine):
    """ONNX Runtime session with static shapes resolved."""

    backend = "onnx"

    def __init__(self, session: "ort.InferenceSession", descriptor: ModelDescriptor):
        self.session = session
        model_input = session.get_inputs()[0]
        model_output = session.get_outputs()[0]
        self.input_name = model_input.name
        self.output_name = model_output.name

        in_dims, layout = _static_dims(model_input.shape, descriptor.layout,
                                       descriptor.input_size)
        input_shape = TensorShape.from_dims(in_dims, layout)
        out_dims, _ = _static_dims(model_output.shape, layout,
                                   input_shape.height * descriptor.scale)
        output_shape = TensorShape.from_dims(out_dims, layout)

        super().__init__(input_shape, output_shape, provider=session.get_providers()[0])

    def _run(self, tensor: np.ndarray) -> np.ndarray:
        return self.session.run([self.output_name], {self.input_name: tensor})[0]

    def _release(self) -> None:
        self.session = None


class TorchScriptEngine(InferenceEngine):
    """TorchScript module; channels-first with shapes taken from the descriptor."""

    backend = "torchscript"

    def __init__(self, module: "torch.jit.ScriptModule", descriptor: ModelDescriptor,
                 device: torch.device):
        self.module = module
        self.device = device
        size = descriptor.input_size
        layout = descriptor.layout or "NCHW"
        input_shape = TensorShape(size, size, 3, layout)
        output_shape = TensorShape(size * descriptor.scale, size * descriptor.scale, 3, layout)
        super().__init__(input_shape, output_shape, provider=str(device))

    def _run(self, tensor: np.ndarray) -> np.ndarray:
        with torch.no_grad():
            output = self.module(torch.from_numpy(tensor).to(self.device))
        return output.detach().cpu().numpy().astype(np.float32)

    def _release(self) -> None:
        self.module = None


def _session_options(num_threads: int) -> "ort.SessionOptions":
    options = ort.SessionOptions()
    options.intra_op_num_threads = num_threads
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    return options


def _onnx_attempts(path: Path, descriptor: ModelDescriptor, gpu_manager: GPUManager,
                   use_gpu: bool, num_threads: int) -> List[Tuple[str, Callable[[], InferenceEngine]]]:
    def build(source, providers):
        def factory():
            session = ort.InferenceSession(source, sess_options=_session_options(num_threads),
                                           providers=providers)
            try:
                return OnnxEngine(session, descriptor)
            except Exception:
                del session
                raise
        return factory

    attempts = []
    if use_gpu and gpu_manager.has_accelerated_provider():
        attempts.append(("accelerated", build(str(path), gpu_manager.onnx_providers(True))))
    cpu = gpu_manager.onnx_providers(accelerated=False)
    attempts.append(("cpu", build(str(path), cpu)))
    attempts.append(("cpu-buffer", lambda: build(path.read_bytes(), cpu)()))
    return attempts


def _torchscript_attempts(path: Path, descriptor: ModelDescriptor, gpu_manager: GPUManager,
                          use_gpu: bool, num_threads: int) -> List[Tuple[str, Callable[[], InferenceEngine]]]:
    def build(source, device):
        def factory():
            torch.set_num_threads(num_threads)
            module = torch.jit.load(source, map_location=device)
            module.eval()
            return TorchScriptEngine(module, descriptor, device)
        return factory

    attempts = []
    if use_gpu and gpu_manager.is_available():
        attempts.append(("accelerated", build(str(path), gpu_manager.device)))
    cpu = torch.device("cpu")
    attempts.append(("cpu", build(str(path), cpu)))
    attempts.append(("cpu-buffer", lambda: build(io.BytesIO(path.read_bytes()), cpu)()))
    return attempts


def load_engine(
    artifact_path,
    descriptor: ModelDescriptor,
    gpu_manager: Optional[GPUManager] = None,
    use_gpu: bool = True,
    num_threads: int = 2,
) -> InferenceEngine:
    """Load a model artifact, trying progressively safer configurations.

    Args:
        artifact_path: Path to an ``.onnx`` or TorchScript ``.pt`` file
        descriptor: Descriptor for the model (scale, layout, input size)
        gpu_manager: Device information (shared instance if not provided)
        use_gpu: Allow the accelerated attempt
        num_threads: CPU threads for inference

    Returns:
        A ready InferenceEngine

    Raises:
        InferenceBackendFailed: If every attempt failed
    """
    path = Path(artifact_path)
    gpu_manager = gpu_manager or get_gpu_manager()

    if path.suffix.lower() in TORCHSCRIPT_SUFFIXES:
        attempts = _torchscript_attempts(path, descriptor, gpu_manager, use_gpu, num_threads)
    else:
        attempts = _onnx_attempts(path, descriptor, gpu_manager, use_gpu, num_threads)

    failures = []
    for label, factory in attempts:
        try:
            logger.info("Loading %s (%s attempt)", path.name, label)
            engine = factory()
            logger.info("Loaded %s: %r", descriptor.id, engine)
            return engine
        except Exception as e:
            logger.warning("%s load of %s failed: %s", label, path.name, e)
            failures.append("%s: %s" % (label, e))

    raise InferenceBackendFailed(
        "Could not load model '%s' (%s)" % (descriptor.id, "; ".join(failures)))
