"""
Image utilities for device face enrollment.

Transcodes source photos into the envelope the devices accept:
a JPEG no larger than 100 KiB, width/height within the device maximum and
height at most twice the width. All payloads are base64 encoded for the
JSON insertMulti body.
"""

import base64
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

import cv2
import numpy as np

from .schemas.roster_schemas import ProcessedPhoto

logger = logging.getLogger(__name__)


@dataclass
class ImageEnvelope:
    """Size/resolution bounds for device-ready photos."""
    target_width: int = 500
    target_height: int = 500
    max_width: int = 600
    max_height: int = 1200
    max_bytes: int = 100 * 1024

    # Iterative quality reduction
    initial_quality: int = 90
    quality_step: int = 10
    min_quality: int = 10

    # Last resort before giving up
    fallback_dimension: int = 300
    fallback_quality: int = 50


class PhotoSizeError(ValueError):
    """Raised when a photo cannot be brought under the envelope byte bound."""

    def __init__(self, message: str, size_bytes: int = 0):
        super().__init__(message)
        self.size_bytes = size_bytes


def _fit_inside(image: np.ndarray, max_w: int, max_h: int) -> np.ndarray:
    """
    Resize so the image fits inside max_w x max_h, keeping aspect ratio.

    Never enlarges.
    """
    h, w = image.shape[:2]
    scale = min(max_w / w, max_h / h, 1.0)
    if scale >= 1.0:
        return image

    new_w = max(1, int(w * scale))
    new_h = max(1, int(h * scale))
    return cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_AREA)


def _limit_aspect(image: np.ndarray) -> np.ndarray:
    """Center-crop vertically so height <= 2 * width."""
    h, w = image.shape[:2]
    if h <= 2 * w:
        return image
    new_h = 2 * w
    top = (h - new_h) // 2
    return image[top:top + new_h, :]


def _encode(image: np.ndarray, quality: int) -> np.ndarray:
    success, encoded = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not success:
        raise ValueError(f"JPEG encoding failed at quality={quality}")
    return encoded


def _compress(image: np.ndarray, envelope: ImageEnvelope) -> Tuple[Optional[np.ndarray], int, int]:
    """
    Encode with iterative quality reduction.

    Returns (encoded, quality, last_size); encoded is None when even the
    quality floor is over the byte bound.
    """
    quality = envelope.initial_quality
    size = 0
    while True:
        encoded = _encode(image, quality)
        size = len(encoded)
        if size <= envelope.max_bytes:
            return encoded, quality, size
        if quality - envelope.quality_step < envelope.min_quality:
            return None, quality, size
        quality -= envelope.quality_step


def decode_image(data: bytes) -> np.ndarray:
    """Decode raw image bytes into a 3-channel BGR array."""
    array = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(array, cv2.IMREAD_COLOR)
    if image is None or image.size == 0:
        raise ValueError("Unreadable image data")
    return image


def transcode_image(
    image: np.ndarray,
    envelope: ImageEnvelope = None,
    source_hash: Optional[str] = None,
) -> ProcessedPhoto:
    """
    Transcode a decoded image into the device envelope.

    Steps:
        1. Fit inside target_width x target_height (no enlargement)
        2. Crop so height <= 2 * width
        3. JPEG encode from initial_quality down by quality_step
        4. If still over max_bytes, shrink to fallback_dimension at fallback_quality

    Raises:
        PhotoSizeError: if no attempt fits within max_bytes
    """
    envelope = envelope or ImageEnvelope()

    target_w = min(envelope.target_width, envelope.max_width)
    target_h = min(envelope.target_height, envelope.max_height)
    img = _limit_aspect(_fit_inside(image, target_w, target_h))

    encoded, quality, size = _compress(img, envelope)

    if encoded is None:
        logger.info(
            f"Photo still {size/1024:.1f}KB at quality={quality}, "
            f"falling back to {envelope.fallback_dimension}px"
        )
        img = _limit_aspect(_fit_inside(img, envelope.fallback_dimension, envelope.fallback_dimension))
        quality = envelope.fallback_quality
        encoded = _encode(img, quality)
        size = len(encoded)
        if size > envelope.max_bytes:
            raise PhotoSizeError(
                f"Photo is {size/1024:.1f}KB after fallback (limit {envelope.max_bytes/1024:.0f}KB)",
                size_bytes=size,
            )

    h, w = img.shape[:2]
    logger.debug(f"Photo transcoded: {w}x{h}, {size/1024:.1f}KB at quality={quality}")

    return ProcessedPhoto(
        data_b64=base64.b64encode(encoded.tobytes()).decode("utf-8"),
        size_bytes=size,
        width=w,
        height=h,
        quality=quality,
        source_hash=source_hash,
    )


def transcode_photo(
    path: Union[str, Path],
    envelope: ImageEnvelope = None,
    source_hash: Optional[str] = None,
) -> ProcessedPhoto:
    """Read a cached photo from disk and transcode it."""
    data = Path(path).read_bytes()
    return transcode_image(decode_image(data), envelope, source_hash=source_hash)
