"""Tests for the srenhance command line."""

from PIL import Image

from srenhance_server import cli


class TestCli:

    def test_fallback_run(self, sample_image_path, models_dir, tmp_path, monkeypatch, capsys):
        """Placeholder model files cannot load, so the CLI falls back and still succeeds."""
        monkeypatch.delenv("SRENHANCE_OUTPUT_FORMAT", raising=False)
        output = tmp_path / "out.png"

        code = cli.main([sample_image_path, "-m", "realesrgan_x2", "-s", "2",
                         "-o", str(output), "--format", "png",
                         "--models-dir", str(models_dir), "--no-gpu"])

        assert code == 0
        with Image.open(output) as img:
            assert img.size == (100, 80)
        assert "fallback" in capsys.readouterr().out

    def test_no_fallback_exit_code(self, sample_image_path, models_dir):
        code = cli.main([sample_image_path, "-m", "realesrgan_x2", "-s", "2",
                         "--models-dir", str(models_dir), "--no-gpu", "--no-fallback"])
        assert code == cli.EXIT_CODES["INFERENCE_BACKEND_FAILED"]

    def test_missing_model_exit_code(self, sample_image_path, models_dir):
        code = cli.main([sample_image_path, "-m", "surveilpro_x3", "-s", "3",
                         "--models-dir", str(models_dir), "--no-gpu"])
        assert code == cli.EXIT_CODES["MODEL_MISSING"]

    def test_undecodable_input(self, tmp_path, models_dir):
        bad = tmp_path / "bad.jpg"
        bad.write_bytes(b"nope")
        code = cli.main([str(bad), "-m", "realesrgan_x2", "-s", "2",
                         "--models-dir", str(models_dir), "--no-gpu"])
        assert code == cli.EXIT_CODES["DECODE_FAILED"]

    def test_default_output_path(self):
        path = cli.default_output_path("/data/photo.jpeg", 4, "JPEG")
        assert str(path) == "/data/photo_x4.jpg"
