"""Image preprocessing pipeline.

Decodes raw bytes once per request, then fits the decoded image to each
model's expected input size and converts it to a float32 tensor.
"""

from __future__ import annotations

from enum import StrEnum
from io import BytesIO
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps

from localvr.errors import ImageDecodeError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray


class CropAndScale(StrEnum):
    """How an image is fitted to a model's fixed input size."""

    SCALE_FILL = "scale_fill"
    CENTER_CROP = "center_crop"
    SCALE_FIT = "scale_fit"


def decode_image(
    image_bytes: bytes,
    *,
    max_file_size: int | None = None,
    max_pixels: int | None = None,
) -> Image.Image:
    """Decode raw image bytes into an RGB PIL image with EXIF orientation applied.

    Raises:
        ImageDecodeError: If the bytes are empty, too large, or not a decodable image.
    """
    if not image_bytes:
        raise ImageDecodeError("Image data is empty")
    if max_file_size is not None and len(image_bytes) > max_file_size:
        raise ImageDecodeError(f"Image data exceeds {max_file_size} bytes")

    try:
        with Image.open(BytesIO(image_bytes)) as raw:
            if max_pixels is not None and raw.width * raw.height > max_pixels:
                raise ImageDecodeError(f"Image has {raw.width * raw.height} pixels, limit is {max_pixels}")
            image = ImageOps.exif_transpose(raw).convert("RGB")
    except ImageDecodeError:
        raise
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError(f"Failed to convert image data: {exc}") from exc
    return image


def resize_for_model(image: Image.Image, size: tuple[int, int], mode: CropAndScale) -> Image.Image:
    """Fit ``image`` to ``size`` (width, height).

    ``SCALE_FILL`` stretches to the target, ignoring aspect ratio.
    ``CENTER_CROP`` scales the short side and crops the center.
    ``SCALE_FIT`` scales the long side and pads with black.
    """
    if mode is CropAndScale.CENTER_CROP:
        return ImageOps.fit(image, size, method=Image.Resampling.BILINEAR)
    if mode is CropAndScale.SCALE_FIT:
        return ImageOps.pad(image, size, method=Image.Resampling.BILINEAR, color=(0, 0, 0))
    return image.resize(size, Image.Resampling.BILINEAR)


def to_tensor(
    image: Image.Image,
    mean: Sequence[float] | None = None,
    std: Sequence[float] | None = None,
    *,
    channels_last: bool = False,
) -> NDArray[np.float32]:
    """Convert an RGB image to a 1xCxHxW (or 1xHxWxC) float32 tensor scaled to [0, 1]."""
    array = np.asarray(image, dtype=np.float32) / 255.0
    if mean is not None:
        array = array - np.asarray(mean, dtype=np.float32)
    if std is not None:
        array = array / np.asarray(std, dtype=np.float32)
    if not channels_last:
        array = np.transpose(array, (2, 0, 1))
    return np.expand_dims(array, 0).astype(np.float32, copy=False)
