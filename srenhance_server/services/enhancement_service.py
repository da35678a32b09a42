"""Enhancement service: runs one image through the tiled SR pipeline.

Supports:
- Decoding from paths, bytes, streams or an existing PixelBuffer
- Output size ceiling checked before any model work
- Tiled neural inference with per-tile degradation on shape errors
- Whole-image classical fallback when the engine cannot be loaded or fails
- Per-model "engine unavailable" memory owned by the service instance
- Cancellation between tiles and optional concurrent tile workers
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..config import SUPPORTED_SCALES, EnhanceSettings
from ..errors import (
    EnhancementCancelled,
    ImageTooLarge,
    InferenceBackendFailed,
    TileShapeError,
)
from ..pipeline.compositor import TileCompositor
from ..pipeline.fallback import FallbackUpscaler, simple_resize
from ..pipeline.feasibility import is_feasible
from ..pipeline.tensor_adapter import TensorAdapter
from ..pipeline.tiling import ProgressTracker, TileInfo, TileScheduler
from ..utils.pixel_buffer import PixelBuffer
from .gpu_manager import GPUManager, get_gpu_manager
from .inference_engine import InferenceEngine, load_engine
from .model_registry import ModelDescriptor, ModelRegistry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]

METHOD_NEURAL = "neural"
METHOD_FALLBACK = "fallback"


@dataclass
class EnhancementResult:
    """Outcome of one enhancement call."""
    method: str
    model_id: str
    scale: int
    input_width: int
    input_height: int
    output_width: int
    output_height: int
    image: Optional[PixelBuffer] = field(repr=False)
    tiles_total: int = 0
    degraded_tiles: List[int] = field(default_factory=list)
    fallback_reason: Optional[str] = None
    output_path: Optional[str] = None
    provider: Optional[str] = None
    elapsed_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "model_id": self.model_id,
            "scale": self.scale,
            "input_width": self.input_width,
            "input_height": self.input_height,
            "output_width": self.output_width,
            "output_height": self.output_height,
            "tiles_total": self.tiles_total,
            "degraded_tiles": list(self.degraded_tiles),
            "fallback_reason": self.fallback_reason,
            "output_path": self.output_path,
            "provider": self.provider,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


class EnhancementService:
    """
    Orchestrates decode, feasibility, tiled inference, fallback and output.

    Usage:
        service = EnhancementService(ModelRegistry(models_dir))
        result = service.enhance("photo.jpg", "realesrgan_x4", 4,
                                 destination="photo_x4.jpg")
    """

    def __init__(
        self,
        registry: ModelRegistry,
        settings: Optional[EnhanceSettings] = None,
        gpu_manager: Optional[GPUManager] = None,
        engine_loader: Callable[..., InferenceEngine] = load_engine,
    ):
        self.registry = registry
        self.settings = settings or EnhanceSettings()
        self.gpu_manager = gpu_manager or get_gpu_manager()
        self.engine_loader = engine_loader
        self.fallback = FallbackUpscaler()

        self._unavailable: Set[str] = set()
        self._active_engines: Set[InferenceEngine] = set()
        self._state_lock = threading.Lock()

    # ==================== Unavailable state ====================

    @property
    def unavailable_models(self) -> List[str]:
        with self._state_lock:
            return sorted(self._unavailable)

    def is_unavailable(self, model_id: str) -> bool:
        with self._state_lock:
            return model_id in self._unavailable

    def mark_unavailable(self, model_id: str) -> None:
        with self._state_lock:
            self._unavailable.add(model_id)
        logger.warning("Marked model %s unavailable; using fallback until reset", model_id)

    def reset(self) -> None:
        """Forget every engine failure so the next call retries the models."""
        with self._state_lock:
            cleared = len(self._unavailable)
            self._unavailable.clear()
        logger.info("Reset engine availability (%d models cleared)", cleared)

    def release(self) -> None:
        """Close any engine currently held and clear the device cache."""
        with self._state_lock:
            engines = list(self._active_engines)
            self._active_engines.clear()
        for engine in engines:
            engine.close()
        self.gpu_manager.clear_cache()
        logger.info("Released %d active engines", len(engines))

    # ==================== Public API ====================

    def enhance(
        self,
        source,
        model_id: str,
        scale: int,
        destination=None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        output_format: Optional[str] = None,
        quality: Optional[int] = None,
    ) -> EnhancementResult:
        """Enhance one image with the requested model.

        Args:
            source: Path, bytes, binary stream or PixelBuffer
            model_id: Registry id of the model to use
            scale: Enlargement factor (must match the model)
            destination: Optional path or stream to write the encoded output to
            progress_callback: Optional function(fraction, stage)
            cancel_event: Optional event checked before every tile
            output_format: JPEG, PNG or WEBP (settings default otherwise)
            quality: JPEG/WEBP quality (settings default otherwise)

        Returns:
            EnhancementResult holding the output image

        Raises:
            ValueError: If the scale is unsupported or does not match the model
            DecodeFailed: If the input is not a decodable image
            ImageTooLarge: If the output would exceed the pixel ceiling
            ModelMissing: If the model is unknown or its file is absent
            InferenceBackendFailed: If inference fails and fallback is disabled
            EnhancementCancelled: If cancel_event was set during tiling
            IOFailure: If writing the output failed
        """
        started = time.monotonic()

        # reported fractions never move backwards
        reached = [0.0]

        def report(fraction: float, stage: str):
            reached[0] = max(reached[0], fraction)
            if progress_callback is not None:
                progress_callback(reached[0], stage)

        report(0.0, "Initializing...")
        if scale not in SUPPORTED_SCALES:
            raise ValueError("Unsupported scale %r; expected one of %s" % (scale, SUPPORTED_SCALES))

        report(0.05, "Loading image...")
        if isinstance(source, PixelBuffer):
            image = source
        else:
            report(0.08, "Decoding image...")
            image = PixelBuffer.decode(source)

        if not is_feasible(image.width, image.height, scale, self.settings.max_output_pixels):
            raise ImageTooLarge(image.width, image.height, scale, self.settings.max_output_pixels)

        descriptor, artifact = self.registry.resolve(model_id)
        if descriptor.scale != scale:
            raise ValueError("Model %s enlarges x%d, but x%d was requested"
                             % (model_id, descriptor.scale, scale))

        result = EnhancementResult(
            method=METHOD_NEURAL, model_id=model_id, scale=scale,
            input_width=image.width, input_height=image.height,
            output_width=image.width * scale, output_height=image.height * scale,
            image=image,
        )

        try:
            if self.is_unavailable(model_id):
                logger.info("Model %s previously failed; using fallback", model_id)
                self._run_fallback(image, scale, result, "engine unavailable",
                                   lambda f: report(0.1 + f * 0.8, "Enhancing image..."))
            else:
                self._run_neural(image, descriptor, artifact, result, report, cancel_event)
        finally:
            if not self.settings.sticky_unavailable:
                with self._state_lock:
                    self._unavailable.discard(model_id)

        report(0.9, "Saving enhanced image...")
        if destination is not None:
            fmt = output_format or self.settings.output_format
            result.image.save(destination, fmt, quality or self.settings.jpeg_quality)
            if not hasattr(destination, "write"):
                result.output_path = str(destination)

        result.elapsed_seconds = time.monotonic() - started
        logger.info("Enhanced %dx%d -> %dx%d with %s (%s) in %.2fs",
                    result.input_width, result.input_height,
                    result.output_width, result.output_height,
                    model_id, result.method, result.elapsed_seconds)
        report(1.0, "Enhancement complete!")
        return result

    # ==================== Internals ====================

    def _run_neural(self, image: PixelBuffer, descriptor: ModelDescriptor, artifact,
                    result: EnhancementResult, report: ProgressCallback,
                    cancel_event: Optional[threading.Event]) -> None:
        def after_failure(e: InferenceBackendFailed):
            self.mark_unavailable(descriptor.id)
            if not self.settings.allow_fallback:
                raise e
            report(0.3, "Using fallback enhancement...")
            self._run_fallback(image, result.scale, result, e.message,
                               lambda f: report(0.3 + f * 0.6,
                                                "Enhancing image with fallback method..."))

        report(0.1, "Loading AI model...")
        report(0.15, "Initializing AI model...")
        try:
            engine = self.engine_loader(
                artifact, descriptor,
                gpu_manager=self.gpu_manager,
                use_gpu=self.settings.use_gpu,
                num_threads=self.settings.num_threads,
            )
        except InferenceBackendFailed as e:
            logger.error("Engine load failed for %s: %s", descriptor.id, e)
            after_failure(e)
            return

        with self._state_lock:
            self._active_engines.add(engine)
        try:
            report(0.2, "Starting enhancement...")
            output, total, degraded = self._run_tiles(
                image, descriptor, engine, result.scale,
                lambda f: report(0.2 + f * 0.7, "Enhancing image: %d%%" % int(f * 100)),
                cancel_event,
            )
            result.image = output
            result.tiles_total = total
            result.degraded_tiles = degraded
            result.provider = engine.provider
        except InferenceBackendFailed as e:
            logger.error("Inference failed for %s: %s", descriptor.id, e)
            after_failure(e)
        finally:
            with self._state_lock:
                self._active_engines.discard(engine)
            engine.close()
            self.gpu_manager.clear_cache()

    def _run_fallback(self, image: PixelBuffer, scale: int, result: EnhancementResult,
                      reason: str, progress: Callable[[float], None]) -> None:
        result.method = METHOD_FALLBACK
        result.fallback_reason = reason
        result.image = self.fallback.upscale(image, scale, progress_callback=progress)

    def _run_tiles(
        self,
        image: PixelBuffer,
        descriptor: ModelDescriptor,
        engine: InferenceEngine,
        scale: int,
        tile_progress: Callable[[float], None],
        cancel_event: Optional[threading.Event],
    ) -> Tuple[PixelBuffer, int, List[int]]:
        """Process every tile and composite the results.

        Returns:
            Tuple of (output image, tile count, indices of degraded tiles)
        """
        scheduler = TileScheduler(
            tile_size=self.settings.tile_size or descriptor.tile_size,
            overlap=self.settings.overlap if self.settings.overlap is not None
            else descriptor.overlap,
        )
        adapter = TensorAdapter(engine.input_shape, engine.output_shape,
                                descriptor.value_range)
        compositor = TileCompositor.for_input(image.width, image.height, scale,
                                              channels=image.channels)
        tiles = scheduler.generate_tiles(image.width, image.height)
        tracker = ProgressTracker(len(tiles), tile_progress)
        degraded: List[int] = []
        stop = threading.Event()
        composite_lock = threading.Lock()

        def process(tile: TileInfo) -> PixelBuffer:
            if (cancel_event is not None and cancel_event.is_set()) or stop.is_set():
                raise EnhancementCancelled("Enhancement cancelled at tile %d" % tile.index)
            patch = image.crop(*tile.source_rect)
            try:
                return adapter.process(patch, engine.infer, scale)
            except TileShapeError as e:
                logger.warning("Tile %d degraded to bicubic: %s", tile.index, e)
                with composite_lock:
                    degraded.append(tile.index)
                return simple_resize(patch, scale)

        def finish(tile: TileInfo, tile_result: PixelBuffer):
            with composite_lock:
                compositor.add_tile(tile_result, tile)
            tracker.advance()

        workers = self.settings.tile_workers
        if workers <= 1 or len(tiles) <= 1:
            for tile in tiles:
                finish(tile, process(tile))
        else:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {executor.submit(process, tile): tile for tile in tiles}
                try:
                    for future in as_completed(futures):
                        finish(futures[future], future.result())
                except BaseException:
                    stop.set()
                    for future in futures:
                        future.cancel()
                    raise

        degraded.sort()
        logger.debug("Composited %d tiles (%d degraded)", len(tiles), len(degraded))
        return compositor.output, len(tiles), degraded
