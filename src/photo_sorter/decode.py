"""Image decoding and JPEG transport encoding.

HEIC files decode through the ``pillow-heif`` Pillow plugin and DNG files
through ``rawpy``. On macOS both formats fall back to a ``sips`` conversion
when direct decoding fails.
"""

from __future__ import annotations

import base64
import io
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path

import pillow_heif
import rawpy
from PIL import Image, UnidentifiedImageError

from utils.logging import get_logger

LOGGER = get_logger(__name__)

pillow_heif.register_heif_opener()

HEIC_EXTENSIONS: frozenset[str] = frozenset({".heic", ".heif"})
RAW_EXTENSIONS: frozenset[str] = frozenset({".dng"})


class ImageDecodeError(OSError):
    """Raised when no decoder could read an image file."""


@dataclass(frozen=True)
class EncodeOptions:
    """Controls the JPEG payload sent to the remote model."""

    resize_enabled: bool = True
    max_edge: int = 1280
    jpeg_quality: int = 75


def _open_with_pillow(path: Path) -> Image.Image:
    image = Image.open(path)
    image.load()
    return image


def _open_with_rawpy(path: Path) -> Image.Image:
    with rawpy.imread(str(path)) as raw:
        rgb = raw.postprocess(use_camera_wb=True)
    return Image.fromarray(rgb)


def _convert_with_sips(path: Path) -> Image.Image:
    """Convert ``path`` to JPEG with macOS ``sips`` and load the result."""

    with tempfile.TemporaryDirectory(prefix="photo_sorter_") as tmp_dir:
        out_path = Path(tmp_dir) / f"{path.stem}.jpg"
        completed = subprocess.run(
            ["sips", "-s", "format", "jpeg", str(path), "--out", str(out_path)],
            capture_output=True,
            text=True,
            check=False,
        )
        if completed.returncode != 0 or not out_path.exists():
            raise ImageDecodeError(f"sips failed to convert {path.name}: {completed.stderr.strip()}")
        return _open_with_pillow(out_path)


def _platform_fallback(path: Path, error: Exception) -> Image.Image:
    if sys.platform != "darwin":
        raise ImageDecodeError(f"cannot decode {path.name} on this platform: {error}") from error
    LOGGER.info("decode_sips_fallback", extra={"path": str(path), "error": str(error)})
    return _convert_with_sips(path)


def decode_image(path: Path) -> Image.Image:
    """Decode ``path`` into a loaded Pillow image."""

    suffix = path.suffix.lower()

    if suffix in RAW_EXTENSIONS:
        try:
            return _open_with_rawpy(path)
        except (rawpy.LibRawError, OSError, ValueError) as exc:
            LOGGER.info("decode_rawpy_failed", extra={"path": str(path), "error": str(exc)})
        try:
            return _open_with_pillow(path)
        except (UnidentifiedImageError, OSError) as exc:
            return _platform_fallback(path, exc)

    try:
        return _open_with_pillow(path)
    except (UnidentifiedImageError, OSError) as exc:
        if suffix in HEIC_EXTENSIONS:
            return _platform_fallback(path, exc)
        raise ImageDecodeError(f"cannot decode {path.name}: {exc}") from exc


def resize_long_edge(image: Image.Image, max_edge: int) -> Image.Image:
    """Downscale so the longer side equals ``max_edge``; smaller images are untouched."""

    width, height = image.size
    long_edge = max(width, height)
    if max_edge <= 0 or long_edge <= max_edge:
        return image
    scale = max_edge / long_edge
    new_size = (max(round(width * scale), 1), max(round(height * scale), 1))
    return image.resize(new_size, Image.Resampling.BILINEAR)


def encode_jpeg_base64(image: Image.Image, options: EncodeOptions) -> str:
    """Encode ``image`` as base64 JPEG text according to ``options``."""

    rgb = image.convert("RGB")
    if options.resize_enabled:
        rgb = resize_long_edge(rgb, options.max_edge)
    quality = min(max(options.jpeg_quality, 1), 100)

    buffer = io.BytesIO()
    rgb.save(buffer, format="JPEG", quality=quality)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def encode_image_base64(path: Path, options: EncodeOptions | None = None) -> str:
    """Decode ``path`` and return the base64 JPEG payload for remote analysis."""

    with decode_image(path) as image:
        return encode_jpeg_base64(image, options or EncodeOptions())


__all__ = [
    "EncodeOptions",
    "HEIC_EXTENSIONS",
    "ImageDecodeError",
    "RAW_EXTENSIONS",
    "decode_image",
    "encode_image_base64",
    "encode_jpeg_base64",
    "resize_long_edge",
]
