"""Image decoding and model-input preparation.

Handles decoding of raw image bytes with Pillow, EXIF orientation, RGB
conversion, and the square-crop / resize / [-1, 1] scaling expected by the
exported fish classifier.
"""

from __future__ import annotations

import base64
import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray


def decode_image(image_bytes: bytes) -> Image.Image:
    """Decode raw image bytes into an RGB Pillow image.

    Raises:
        ValueError: If the bytes are not a decodable image.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            img.load()
            oriented = ImageOps.exif_transpose(img)
            return oriented.convert("RGB")
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError(f"Cannot decode image: {exc}") from exc


def to_data_url(image_bytes: bytes, media_type: str) -> str:
    """Return a display-ready ``data:`` URL for the encoded image."""
    encoded = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{media_type};base64,{encoded}"


def preprocess_for_classification(image: Image.Image, size: int) -> NDArray[np.float32]:
    """Prepare an RGB image for the classifier.

    Center-crops to a square, resizes to ``size`` x ``size`` and scales pixel
    values to [-1, 1].

    Returns:
        1 x size x size x 3 float32 tensor (NHWC).
    """
    width, height = image.size
    side = min(width, height)
    left = (width - side) // 2
    top = (height - side) // 2
    cropped = image.crop((left, top, left + side, top + side))
    resized = cropped.resize((size, size), Image.Resampling.BILINEAR)

    pixels = np.asarray(resized, dtype=np.float32)
    pixels = pixels / 127.5 - 1.0
    return pixels[np.newaxis, ...]
