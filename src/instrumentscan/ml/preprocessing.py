"""Image preprocessing: raw upload bytes to a model-ready NHWC tensor.

Steps, in order: decode, apply EXIF orientation, convert to RGB (alpha and
palette dropped), bilinear resize to the model input size, scale to float32,
add the batch axis. The functions here hold no state and are safe to call
from several threads at once.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from instrumentscan.ml.errors import ImageDecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

DEFAULT_INPUT_SIZE = 224


@dataclass(frozen=True)
class Normalization:
    """Per-channel ``(pixel / scale - mean) / std`` applied after resizing."""

    scale: float = 255.0
    mean: tuple[float, float, float] = (0.0, 0.0, 0.0)
    std: tuple[float, float, float] = (1.0, 1.0, 1.0)


NORMALIZATIONS: dict[str, Normalization] = {
    "unit": Normalization(),
    "symmetric": Normalization(mean=(0.5, 0.5, 0.5), std=(0.5, 0.5, 0.5)),
    "imagenet": Normalization(mean=(0.485, 0.456, 0.406), std=(0.229, 0.224, 0.225)),
}


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> Image.Image:
    """Decode raw bytes into an upright RGB PIL image.

    Raises:
        ImageDecodeError: If the bytes are not a supported image or the image
            exceeds ``max_pixels``.
    """
    if not image_bytes:
        raise ImageDecodeError("Empty image payload")

    try:
        image = Image.open(io.BytesIO(image_bytes))
        width, height = image.size
        if max_pixels is not None and width * height > max_pixels:
            raise ImageDecodeError(f"Image is {width}x{height}, larger than the {max_pixels} pixel limit")
        image.load()
        image = ImageOps.exif_transpose(image)
    except ImageDecodeError:
        raise
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError(f"Failed to decode image: {exc}") from exc

    if image.mode != "RGB":
        image = image.convert("RGB")
    return image


def image_to_tensor(
    image: Image.Image,
    size: int = DEFAULT_INPUT_SIZE,
    normalization: Normalization = NORMALIZATIONS["unit"],
) -> NDArray[np.float32]:
    """Resize an RGB image and return a (1, size, size, 3) float32 tensor."""
    if image.mode != "RGB":
        image = image.convert("RGB")
    resized = image.resize((size, size), Image.Resampling.BILINEAR)

    pixels = np.asarray(resized, dtype=np.float32) / np.float32(normalization.scale)
    mean = np.asarray(normalization.mean, dtype=np.float32)
    std = np.asarray(normalization.std, dtype=np.float32)
    pixels = (pixels - mean) / std

    return np.ascontiguousarray(pixels[np.newaxis, ...], dtype=np.float32)


def preprocess(
    image_bytes: bytes,
    size: int = DEFAULT_INPUT_SIZE,
    normalization: Normalization = NORMALIZATIONS["unit"],
    max_pixels: int | None = None,
) -> NDArray[np.float32]:
    """Decode and convert uploaded image bytes into a model input tensor."""
    return image_to_tensor(decode_image(image_bytes, max_pixels=max_pixels), size=size, normalization=normalization)
