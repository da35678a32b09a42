"""Accelerator detection and ONNX Runtime provider selection.

Provides:
- Device detection (CUDA > MPS > CPU priority) through PyTorch
- Execution provider lists for accelerated and CPU-only engine loads
- Cache clearing between enhancement runs
"""

import logging
from typing import Any, Dict, List, Optional

import onnxruntime as ort
import torch

logger = logging.getLogger(__name__)

CPU_PROVIDER = "CPUExecutionProvider"

# accelerated provider matching each torch device type, in preference order
_ACCELERATED_PROVIDERS = {
    "cuda": ["TensorrtExecutionProvider", "CUDAExecutionProvider"],
    "mps": ["CoreMLExecutionProvider"],
}


class GPUManager:
    """Knows which accelerator is present and how engines should use it.

    Priority: CUDA > MPS > CPU
    """

    def __init__(self, force_cpu: bool = False):
        self._device_type: str = "cpu"
        self._device_name: str = "CPU"
        self._memory_mb: int = 0
        self._cuda_version: Optional[str] = None
        self._force_cpu = force_cpu

        if not force_cpu:
            self._detect_device()
        else:
            logger.info("GPU use disabled, running on CPU")

    def _detect_device(self) -> None:
        try:
            if torch.cuda.is_available():
                self._device_type = "cuda"
                self._device_name = torch.cuda.get_device_name(0)
                props = torch.cuda.get_device_properties(0)
                self._memory_mb = props.total_memory // (1024 * 1024)
                self._cuda_version = torch.version.cuda
                logger.info(
                    f"CUDA GPU detected: {self._device_name} "
                    f"({self._memory_mb} MB, CUDA {self._cuda_version})"
                )
                return

            if hasattr(torch.backends, 'mps') and torch.backends.mps.is_available():
                self._device_type = "mps"
                self._device_name = "Apple Silicon (MPS)"
                logger.info("Apple MPS device detected")
                return

            logger.info("No GPU available, using CPU")

        except RuntimeError as e:
            logger.warning(f"GPU detection failed: {e}")
            self._device_type = "cpu"

    @property
    def device_type(self) -> str:
        """Device type string ('cuda', 'mps', or 'cpu')."""
        return self._device_type

    @property
    def device(self) -> torch.device:
        return torch.device(self._device_type)

    def is_available(self) -> bool:
        """Check if a GPU is available (CUDA or MPS)."""
        return self._device_type != "cpu"

    def onnx_providers(self, accelerated: bool = True) -> List[str]:
        """Execution providers for an ONNX Runtime session.

        Args:
            accelerated: Put the device's accelerated providers first when
                onnxruntime was built with them

        Returns:
            Provider names, always ending with the CPU provider
        """
        if not accelerated:
            return [CPU_PROVIDER]

        available = ort.get_available_providers()
        preferred = [p for p in _ACCELERATED_PROVIDERS.get(self._device_type, [])
                     if p in available]
        return preferred + [CPU_PROVIDER]

    def has_accelerated_provider(self) -> bool:
        return len(self.onnx_providers(accelerated=True)) > 1

    def get_memory_info(self) -> Dict[str, Any]:
        """Current accelerator memory usage (CUDA only reports numbers)."""
        if self._device_type == "cuda":
            return {
                "device": "cuda",
                "allocated_mb": torch.cuda.memory_allocated() / (1024**2),
                "reserved_mb": torch.cuda.memory_reserved() / (1024**2),
                "total_mb": self._memory_mb,
            }
        if self._device_type == "mps":
            return {"device": "mps", "info": "Apple MPS - limited memory introspection available"}
        return {"device": "cpu", "info": "Using system RAM"}

    def clear_cache(self) -> None:
        """Release cached accelerator memory. Safe to call on any device."""
        try:
            if self._device_type == "cuda":
                torch.cuda.empty_cache()
                logger.debug("Cleared CUDA memory cache")
            elif self._device_type == "mps" and hasattr(torch.mps, 'empty_cache'):
                torch.mps.empty_cache()
                logger.debug("Cleared MPS memory cache")
        except RuntimeError as e:
            logger.warning(f"Failed to clear GPU cache: {e}")

    def get_info(self) -> Dict[str, Any]:
        """Device information for the /gpu endpoint."""
        info = {
            "available": self.is_available(),
            "device_type": self._device_type,
            "name": self._device_name,
            "forced_cpu": self._force_cpu,
            "onnx_providers": self.onnx_providers(accelerated=True),
        }
        if self._device_type == "cuda":
            info.update({
                "cuda_version": self._cuda_version,
                "total_memory_mb": self._memory_mb,
                **self.get_memory_info(),
            })
        return info


_gpu_manager_instance: Optional[GPUManager] = None


def get_gpu_manager() -> GPUManager:
    """Get or create the shared GPUManager instance."""
    global _gpu_manager_instance
    if _gpu_manager_instance is None:
        _gpu_manager_instance = GPUManager()
    return _gpu_manager_instance
