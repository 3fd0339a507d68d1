"""Image preprocessing pipeline.

Decodes uploaded bytes, downscales to fit the maximum detection dimension
(never upscaling), and re-encodes as a progressive JPEG. The original
dimensions are reported alongside the resized ones so detections made on
the smaller buffer can be mapped back to original-image pixels.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, UnidentifiedImageError

from facerecog.errors import DecodeError, MissingDimensionsError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

CANONICAL_FORMAT = "jpeg"


@dataclass(frozen=True)
class ProcessedImage:
    """A preprocessed image ready for a detection provider.

    ``width``/``height`` are the original decoded dimensions; ``data`` holds
    the resized JPEG whose size is ``resized_width`` x ``resized_height``.
    """

    data: bytes
    width: int
    height: int
    format: str
    resized_width: int
    resized_height: int

    @property
    def scale_x(self) -> float:
        return self.width / self.resized_width

    @property
    def scale_y(self) -> float:
        return self.height / self.resized_height


def _open(image_bytes: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise DecodeError(f"Cannot decode image: {exc}") from exc
    return image


def decode_to_array(image_bytes: bytes) -> NDArray[np.uint8]:
    """Decode raw image bytes into an HxWx3 RGB uint8 numpy array.

    Raises:
        DecodeError: If the bytes are not a decodable image.
    """
    image = _open(image_bytes)
    return np.asarray(image.convert("RGB"), dtype=np.uint8)


class ImagePreprocessor:
    """Resize-and-re-encode step run before every detection."""

    def __init__(self, max_dimension: int = 1024, quality: int = 80) -> None:
        self.max_dimension = max_dimension
        self.quality = quality

    def preprocess(self, image_bytes: bytes) -> ProcessedImage:
        """Fit the image inside ``max_dimension`` and re-encode it as JPEG.

        Raises:
            DecodeError: If the bytes cannot be decoded as an image.
            MissingDimensionsError: If the decoded image has no width or height.
        """
        image = _open(image_bytes)
        width, height = image.size
        if not width or not height:
            raise MissingDimensionsError("Invalid image: missing dimensions")

        resized = image.convert("RGB")
        resized.thumbnail((self.max_dimension, self.max_dimension), Image.Resampling.LANCZOS)

        buffer = io.BytesIO()
        resized.save(buffer, format="JPEG", quality=self.quality, progressive=True, optimize=True)
        data = buffer.getvalue()

        logger.debug(
            "Preprocessed image %dx%d -> %dx%d (%d -> %d bytes)",
            width,
            height,
            resized.width,
            resized.height,
            len(image_bytes),
            len(data),
        )
        return ProcessedImage(
            data=data,
            width=width,
            height=height,
            format=CANONICAL_FORMAT,
            resized_width=resized.width,
            resized_height=resized.height,
        )
