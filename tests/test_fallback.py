"""Tests for the classical fallback upscaler."""

import numpy as np
import pytest

from srenhance_server.pipeline.fallback import FallbackUpscaler, simple_resize


class TestFallbackUpscaler:

    @pytest.mark.parametrize("scale", [2, 3, 4])
    def test_output_dimensions(self, gradient_image, scale):
        output = FallbackUpscaler().upscale(gradient_image(37, 21), scale)
        assert output.size == (37 * scale, 21 * scale)

    def test_deterministic(self, gradient_image):
        image = gradient_image(40, 30)
        assert FallbackUpscaler().upscale(image, 3) == FallbackUpscaler().upscale(image, 3)

    def test_histogram_shift(self, gradient_image):
        """Brightness and contrast move the histogram relative to a plain resize."""
        image = gradient_image(64, 48)
        plain = simple_resize(image, 2).data.astype(float)
        enhanced = FallbackUpscaler().upscale(image, 2).data.astype(float)

        assert enhanced.mean() > plain.mean()
        assert enhanced.std() > plain.std()

    def test_progress(self, gradient_image):
        fractions = []
        FallbackUpscaler().upscale(gradient_image(8, 8), 2, progress_callback=fractions.append)
        assert fractions == sorted(fractions)
        assert fractions[-1] == 1.0

    def test_alpha_is_not_enhanced(self, gradient_image):
        output = FallbackUpscaler().upscale(gradient_image(16, 16, channels=4), 2)
        assert output.channels == 4
        assert np.all(output.data[..., 3] == 200)


class TestSimpleResize:

    def test_dimensions(self, gradient_image):
        assert simple_resize(gradient_image(10, 7), 4).size == (40, 28)
