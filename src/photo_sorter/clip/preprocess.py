"""Turn an image file into the CLIP vision tower's input tensor."""

from __future__ import annotations

from pathlib import Path

import numpy as np
from numpy.typing import NDArray
from PIL import Image

from photo_sorter.decode import decode_image

IMAGE_SIZE = 224

# OpenAI CLIP normalization statistics.
CLIP_MEAN = np.array([0.48145466, 0.4578275, 0.40821073], dtype=np.float32)
CLIP_STD = np.array([0.26862954, 0.26130258, 0.27577711], dtype=np.float32)


def image_to_clip_tensor(image: Image.Image) -> NDArray[np.float32]:
    """Resize to 224x224 and return a normalized ``(1, 3, 224, 224)`` float32 array."""

    rgb = image.convert("RGB").resize((IMAGE_SIZE, IMAGE_SIZE), Image.Resampling.BILINEAR)
    pixels = np.asarray(rgb, dtype=np.float32) / 255.0
    pixels = (pixels - CLIP_MEAN) / CLIP_STD
    return np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)


def preprocess_clip_image(path: Path) -> NDArray[np.float32]:
    """Decode ``path`` and convert it into a CLIP pixel tensor."""

    with decode_image(path) as image:
        return image_to_clip_tensor(image)


__all__ = ["CLIP_MEAN", "CLIP_STD", "IMAGE_SIZE", "image_to_clip_tensor", "preprocess_clip_image"]
