"""
Command-line enhancement of a single image file.

Usage:
    srenhance photo.jpg -m realesrgan_x4 -s 4
    srenhance photo.png -m surveilpro_x2 -s 2 -o out.png --format PNG --no-gpu
"""

import argparse
import logging
import sys
from pathlib import Path

from tqdm import tqdm

from .config import SUPPORTED_OUTPUT_FORMATS, SUPPORTED_SCALES, EnhanceSettings, configure_logging
from .errors import EnhancementError
from .utils.pixel_buffer import extension_for

logger = logging.getLogger(__name__)

EXIT_CODES = {
    "DECODE_FAILED": 3,
    "IMAGE_TOO_LARGE": 4,
    "MODEL_MISSING": 5,
    "INFERENCE_BACKEND_FAILED": 6,
    "IO_FAILURE": 7,
    "CANCELLED": 130,
}


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Enhance an image with a super-resolution model')

    parser.add_argument('input', type=str, help='Input image path')
    parser.add_argument('-m', '--model', type=str, required=True,
                        help='Model id, e.g. realesrgan_x4')
    parser.add_argument('-s', '--scale', type=int, required=True, choices=SUPPORTED_SCALES,
                        help='Enlargement factor')

    # Output
    parser.add_argument('-o', '--output', type=str, default=None,
                        help='Output path (default: <input>_x<scale>.<ext>)')
    parser.add_argument('--format', type=str.upper, default=None,
                        choices=SUPPORTED_OUTPUT_FORMATS, help='Output format')
    parser.add_argument('--quality', type=int, default=None,
                        help='JPEG/WEBP quality (1-100)')

    # Runtime
    parser.add_argument('--models-dir', type=str, default=None,
                        help='Directory holding model files')
    parser.add_argument('--no-gpu', action='store_true', help='Run on CPU only')
    parser.add_argument('--no-fallback', action='store_true',
                        help='Fail instead of using classical upscaling when the model fails')
    parser.add_argument('--tile-workers', type=int, default=None,
                        help='Number of tiles processed concurrently')
    parser.add_argument('--log-level', type=str, default=None, help='Logging level')

    return parser.parse_args(argv)


def default_output_path(input_path: str, scale: int, fmt: str) -> Path:
    path = Path(input_path)
    return path.with_name(f"{path.stem}_x{scale}{extension_for(fmt)}")


def main(argv=None) -> int:
    args = parse_args(argv)

    try:
        settings = EnhanceSettings.from_env(
            models_dir=args.models_dir,
            output_format=args.format,
            jpeg_quality=args.quality,
            use_gpu=False if args.no_gpu else None,
            allow_fallback=False if args.no_fallback else None,
            tile_workers=args.tile_workers,
            log_level=args.log_level,
        )
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    configure_logging(settings.log_level)

    from .services.enhancement_service import EnhancementService
    from .services.gpu_manager import GPUManager
    from .services.model_registry import ModelRegistry

    registry = ModelRegistry(settings.models_dir)
    service = EnhancementService(registry, settings, GPUManager(force_cpu=not settings.use_gpu))
    output = Path(args.output) if args.output else default_output_path(
        args.input, args.scale, settings.output_format)

    with tqdm(total=100, desc="Initializing...", unit="%") as pbar:
        def progress_callback(fraction, stage):
            pbar.set_description(stage)
            pbar.update(max(int(fraction * 100) - pbar.n, 0))

        try:
            result = service.enhance(args.input, args.model, args.scale,
                                     destination=output,
                                     progress_callback=progress_callback)
        except EnhancementError as e:
            pbar.close()
            print(f"error [{e.kind}]: {e.message}", file=sys.stderr)
            return EXIT_CODES.get(e.kind, 1)
        except ValueError as e:
            pbar.close()
            print(f"error: {e}", file=sys.stderr)
            return 2

    print(f"Saved {result.output_width}x{result.output_height} image to {output} "
          f"({result.method}, {result.elapsed_seconds:.1f}s)")
    if result.fallback_reason:
        print(f"Note: used classical fallback ({result.fallback_reason})")
    return 0


if __name__ == '__main__':
    sys.exit(main())
