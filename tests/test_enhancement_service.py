"""Tests for the enhancement orchestrator.

Tests cover:
- Neural path output size, progress milestones and output files
- Engine load and inference failures degrading to the fallback
- Session-scoped unavailable state and reset()
- Per-tile degradation on shape errors
- Feasibility, missing models, scale checks and cancellation
- Concurrent tile workers
"""

import threading

import numpy as np
import pytest
from PIL import Image

from srenhance_server.errors import (
    DecodeFailed,
    EnhancementCancelled,
    ImageTooLarge,
    InferenceBackendFailed,
    ModelMissing,
)
from srenhance_server.pipeline.fallback import FallbackUpscaler
from srenhance_server.services.enhancement_service import EnhancementService

from conftest import FailingEngine, FakeEngine, failing_loader, make_loader


class WrongShapeOnce(FakeEngine):
    """Returns a malformed tensor for its second call only."""

    def _run(self, tensor):
        output = super()._run(tensor)
        if self.calls == 2:
            return output[:, :-1]
        return output


class FailsOnLastTile(FakeEngine):
    """Fails in the backend on the fourth of four tiles."""

    def _run(self, tensor):
        if self.calls == 3:
            raise RuntimeError("device lost")
        return super()._run(tensor)


@pytest.fixture
def engines():
    return []


@pytest.fixture
def make_service(registry, settings, gpu_manager, engines):
    def factory(engine_cls=FakeEngine, loader=None, **overrides):
        loader = loader or make_loader(lambda d: engine_cls(size=32, scale=d.scale), engines)
        return EnhancementService(registry, settings.with_overrides(**overrides),
                                  gpu_manager, engine_loader=loader)
    return factory


class TestNeuralPath:

    def test_output_size_and_method(self, make_service, gradient_image, engines):
        result = make_service().enhance(gradient_image(300, 200), "realesrgan_x2", 2)

        assert result.method == "neural"
        assert result.image.size == (600, 400)
        assert (result.output_width, result.output_height) == (600, 400)
        assert result.tiles_total == 2
        assert result.degraded_tiles == []
        assert result.fallback_reason is None
        assert engines[0].calls == 2
        assert engines[0].closed

    def test_progress_milestones(self, make_service, gradient_image):
        events = []
        make_service().enhance(gradient_image(300, 300), "realesrgan_x2", 2,
                               progress_callback=lambda f, s: events.append((f, s)))

        fractions = [f for f, _ in events]
        assert fractions == sorted(fractions)
        assert fractions[0] == 0.0
        assert fractions[-1] == 1.0
        for milestone in (0.1, 0.15, 0.2, 0.9):
            assert milestone in fractions
        tile_fractions = [f for f, s in events if s.startswith("Enhancing image:")]
        assert len(tile_fractions) == 4
        assert tile_fractions[-1] == pytest.approx(0.9)
        assert events[-1][1] == "Enhancement complete!"

    def test_writes_destination(self, make_service, sample_image_path, tmp_path):
        target = tmp_path / "out" / "result.png"
        result = make_service().enhance(sample_image_path, "realesrgan_x4", 4,
                                        destination=target, output_format="PNG")

        assert result.output_path == str(target)
        with Image.open(target) as img:
            assert img.format == "PNG"
            assert img.size == (200, 160)

    def test_decodes_bytes(self, make_service, png_bytes):
        result = make_service().enhance(png_bytes, "surveilpro_x2", 2)
        assert result.image.size == (80, 60)

    def test_alpha_preserved(self, make_service, gradient_image):
        result = make_service().enhance(gradient_image(40, 40, channels=4), "realesrgan_x2", 2)
        assert result.image.channels == 4
        assert np.all(result.image.data[..., 3] == 200)

    def test_concurrent_tiles_match_sequential(self, make_service, gradient_image):
        image = gradient_image(300, 280)
        sequential = make_service(tile_size=64).enhance(image, "realesrgan_x2", 2)
        concurrent = make_service(tile_size=64, tile_workers=4).enhance(image, "realesrgan_x2", 2)

        assert concurrent.tiles_total == sequential.tiles_total == 25
        assert concurrent.image == sequential.image

    def test_tile_shape_error_degrades_one_tile(self, make_service, gradient_image):
        result = make_service(engine_cls=WrongShapeOnce).enhance(
            gradient_image(300, 200), "realesrgan_x2", 2)

        assert result.method == "neural"
        assert result.degraded_tiles == [1]
        assert result.image.size == (600, 400)

    def test_clears_device_cache(self, make_service, gradient_image, gpu_manager, monkeypatch):
        calls = []
        monkeypatch.setattr(gpu_manager, "clear_cache", lambda: calls.append(1))
        make_service().enhance(gradient_image(20, 20), "realesrgan_x2", 2)
        assert calls


class TestFallback:

    def test_load_failure_uses_fallback(self, make_service, gradient_image):
        image = gradient_image(50, 30)
        service = make_service(loader=failing_loader)

        result = service.enhance(image, "realesrgan_x3", 3)

        assert result.method == "fallback"
        assert "cpu-buffer" in result.fallback_reason
        assert result.image == FallbackUpscaler().upscale(image, 3)
        assert service.unavailable_models == ["realesrgan_x3"]

    def test_inference_failure_uses_fallback(self, make_service, gradient_image, engines):
        events = []
        service = make_service(engine_cls=FailingEngine)
        result = service.enhance(gradient_image(50, 30), "realesrgan_x2", 2,
                                 progress_callback=lambda f, s: events.append(f))

        assert result.method == "fallback"
        assert result.image.size == (100, 60)
        assert engines[0].closed
        assert 0.3 in events
        assert events == sorted(events)
        assert events.count(1.0) == 1
        assert events[-1] == 1.0
        assert service.is_unavailable("realesrgan_x2")

    def test_fallback_progress_is_ordered(self, make_service, gradient_image):
        events = []
        make_service(loader=failing_loader).enhance(
            gradient_image(20, 20), "realesrgan_x2", 2,
            progress_callback=lambda f, s: events.append((f, s)))

        fractions = [f for f, _ in events]
        assert fractions == sorted(fractions)
        fallback = [f for f, s in events if s == "Enhancing image with fallback method..."]
        assert fallback[-1] == pytest.approx(0.9)
        assert events[-2][1] == "Saving enhanced image..."
        assert events[-2][0] == pytest.approx(0.9)
        assert events[-1] == (1.0, "Enhancement complete!")

    def test_late_inference_failure_never_rewinds_progress(self, make_service, gradient_image):
        events = []
        result = make_service(engine_cls=FailsOnLastTile, tile_size=64).enhance(
            gradient_image(128, 128), "realesrgan_x2", 2,
            progress_callback=lambda f, s: events.append(f))

        assert result.method == "fallback"
        assert events == sorted(events)

    def test_unavailable_model_skips_loading(self, make_service, gradient_image, engines):
        service = make_service(engine_cls=FailingEngine)
        service.enhance(gradient_image(20, 20), "realesrgan_x2", 2)
        assert len(engines) == 1

        events = []
        result = service.enhance(gradient_image(20, 20), "realesrgan_x2", 2,
                                 progress_callback=lambda f, s: events.append(f))
        assert result.method == "fallback"
        assert result.fallback_reason == "engine unavailable"
        assert len(engines) == 1
        assert 0.15 not in events

        # other models are unaffected
        service.enhance(gradient_image(20, 20), "surveilpro_x2", 2)
        assert len(engines) == 2

    def test_reset_retries_engine(self, make_service, gradient_image, engines):
        service = make_service(engine_cls=FailingEngine)
        service.enhance(gradient_image(20, 20), "realesrgan_x2", 2)
        service.reset()

        assert service.unavailable_models == []
        service.enhance(gradient_image(20, 20), "realesrgan_x2", 2)
        assert len(engines) == 2

    def test_non_sticky_state_lasts_one_image(self, make_service, gradient_image):
        service = make_service(engine_cls=FailingEngine, sticky_unavailable=False)
        result = service.enhance(gradient_image(20, 20), "realesrgan_x2", 2)

        assert result.method == "fallback"
        assert service.unavailable_models == []

    def test_fallback_disabled(self, make_service, gradient_image):
        service = make_service(loader=failing_loader, allow_fallback=False)
        with pytest.raises(InferenceBackendFailed):
            service.enhance(gradient_image(20, 20), "realesrgan_x2", 2)

    def test_fallback_deterministic(self, make_service, gradient_image):
        service = make_service(loader=failing_loader)
        first = service.enhance(gradient_image(33, 17), "realesrgan_x4", 4)
        second = service.enhance(gradient_image(33, 17), "realesrgan_x4", 4)
        assert first.image == second.image


class TestRejections:

    def test_image_too_large(self, make_service, gradient_image, engines):
        service = make_service(max_output_pixels=1000)
        with pytest.raises(ImageTooLarge) as exc_info:
            service.enhance(gradient_image(20, 20), "realesrgan_x2", 2)
        assert exc_info.value.kind == "IMAGE_TOO_LARGE"
        assert engines == []

    def test_ceiling_is_inclusive(self, make_service, gradient_image):
        service = make_service(max_output_pixels=1600)
        assert service.enhance(gradient_image(20, 20), "realesrgan_x2", 2).image.size == (40, 40)

    def test_model_missing(self, make_service, gradient_image):
        with pytest.raises(ModelMissing):
            make_service().enhance(gradient_image(20, 20), "surveilpro_x3", 3)

    def test_scale_mismatch(self, make_service, gradient_image, engines):
        with pytest.raises(ValueError):
            make_service().enhance(gradient_image(20, 20), "realesrgan_x4", 2)
        assert engines == []

    def test_unsupported_scale(self, make_service, gradient_image):
        with pytest.raises(ValueError):
            make_service().enhance(gradient_image(20, 20), "realesrgan_x4", 8)

    def test_undecodable_input(self, make_service):
        with pytest.raises(DecodeFailed):
            make_service().enhance(b"garbage", "realesrgan_x2", 2)


class TestCancellation:

    def test_cancel_before_tiles(self, make_service, gradient_image, engines):
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(EnhancementCancelled):
            make_service().enhance(gradient_image(300, 300), "realesrgan_x2", 2,
                                   cancel_event=cancel)
        assert engines[0].closed
        assert engines[0].calls == 0

    def test_cancel_mid_run(self, make_service, gradient_image, engines):
        cancel = threading.Event()

        def progress(fraction, stage):
            if 0.2 < fraction < 0.9:
                cancel.set()

        service = make_service(tile_size=64)
        with pytest.raises(EnhancementCancelled):
            service.enhance(gradient_image(256, 256), "realesrgan_x2", 2,
                            progress_callback=progress, cancel_event=cancel)
        assert engines[0].calls == 1
        assert service.unavailable_models == []

    def test_release_closes_active_engines(self, make_service, gradient_image, engines):
        service = make_service()
        service.release()
        service.enhance(gradient_image(20, 20), "realesrgan_x2", 2)
        service.release()
        assert all(e.closed for e in engines)
