"""Tests for directory scanning and image transport encoding."""

from __future__ import annotations

import base64
import io
from pathlib import Path

import pytest
from PIL import Image

from photo_sorter.decode import EncodeOptions, ImageDecodeError, decode_image, encode_image_base64, resize_long_edge
from photo_sorter.scanner import scan_sources


def test_scan_sources_filters_and_sorts(tmp_path: Path) -> None:
    (tmp_path / "b").mkdir()
    (tmp_path / "a.JPG").write_bytes(b"x")
    (tmp_path / "b" / "c.heic").write_bytes(b"x")
    (tmp_path / "b" / "d.dng").write_bytes(b"x")
    (tmp_path / "notes.txt").write_text("skip")
    (tmp_path / "e.gif").write_bytes(b"x")

    files = scan_sources(tmp_path)

    assert [path.relative_to(tmp_path).as_posix() for path in files] == ["a.JPG", "b/c.heic", "b/d.dng"]


def test_scan_sources_missing_root(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError, match="source path not found"):
        scan_sources(tmp_path / "missing")


def _decode_payload(payload: str) -> Image.Image:
    return Image.open(io.BytesIO(base64.b64decode(payload)))


def test_encode_image_base64_downscales_long_edge(tmp_path: Path) -> None:
    path = tmp_path / "wide.png"
    Image.new("RGBA", (2000, 1000), color=(10, 20, 30, 255)).save(path)

    payload = encode_image_base64(path, EncodeOptions(resize_enabled=True, max_edge=500, jpeg_quality=60))

    decoded = _decode_payload(payload)
    assert decoded.format == "JPEG"
    assert decoded.size == (500, 250)


def test_encode_image_base64_keeps_size_when_resize_disabled(tmp_path: Path) -> None:
    path = tmp_path / "photo.jpg"
    Image.new("RGB", (300, 200), color="blue").save(path)

    payload = encode_image_base64(path, EncodeOptions(resize_enabled=False, max_edge=100, jpeg_quality=500))

    assert _decode_payload(payload).size == (300, 200)


def test_resize_long_edge_leaves_small_images() -> None:
    image = Image.new("RGB", (100, 50))

    assert resize_long_edge(image, 768) is image
    assert resize_long_edge(image, 0) is image


def test_decode_image_rejects_garbage(tmp_path: Path) -> None:
    path = tmp_path / "broken.jpg"
    path.write_bytes(b"definitely not a jpeg")

    with pytest.raises(ImageDecodeError):
        decode_image(path)
