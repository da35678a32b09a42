"""Tests for settings and environment overrides."""

import pytest

from srenhance_server.config import DEFAULT_MAX_OUTPUT_PIXELS, EnhanceSettings


class TestEnhanceSettings:

    def test_defaults(self):
        settings = EnhanceSettings()
        assert settings.max_output_pixels == DEFAULT_MAX_OUTPUT_PIXELS
        assert settings.jpeg_quality == 95
        assert settings.output_format == "JPEG"
        assert settings.allow_fallback is True
        assert settings.sticky_unavailable is True

    def test_from_env(self):
        settings = EnhanceSettings.from_env({
            "SRENHANCE_MODELS_DIR": "/models",
            "SRENHANCE_MAX_OUTPUT_PIXELS": "1000",
            "SRENHANCE_USE_GPU": "false",
            "SRENHANCE_ALLOW_FALLBACK": "0",
            "SRENHANCE_OUTPUT_FORMAT": "png",
            "SRENHANCE_TILE_SIZE": "",
        })
        assert settings.models_dir == "/models"
        assert settings.max_output_pixels == 1000
        assert settings.use_gpu is False
        assert settings.allow_fallback is False
        assert settings.output_format == "PNG"
        assert settings.tile_size is None

    def test_overrides_win(self):
        settings = EnhanceSettings.from_env({"SRENHANCE_JPEG_QUALITY": "80"},
                                            jpeg_quality=70, tile_workers=None)
        assert settings.jpeg_quality == 70
        assert settings.tile_workers == 1

    def test_jpg_alias(self):
        assert EnhanceSettings(output_format="jpg").output_format == "JPEG"

    @pytest.mark.parametrize("kwargs", [
        {"output_format": "BMP"},
        {"jpeg_quality": 0},
        {"max_output_pixels": 0},
        {"tile_workers": 0},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            EnhanceSettings(**kwargs)

    def test_with_overrides(self):
        settings = EnhanceSettings().with_overrides(tile_size=64, overlap=None)
        assert settings.tile_size == 64
        assert settings.overlap is None
