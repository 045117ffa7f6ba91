"""
Image Decoder
=============

Validation of radar image payloads.

Radar overlays are RGBA PNGs. The pipeline keeps the original bytes
(renderers decode them); this module only proves that a payload decodes.

Design Rules:
    - This is the ONLY place in the codebase that decodes images
    - Fails fast on corrupt payloads with ImageDecodeError
    - Never recompresses or modifies the bytes
"""

import logging

import cv2
import numpy as np

from radarloop.models.errors import ImageDecodeError


logger = logging.getLogger(__name__)


def decode_image(data: bytes) -> np.ndarray:
    """
    Decode image bytes into a pixel matrix, alpha channel preserved.

    Args:
        data: Encoded image bytes (PNG expected)

    Returns:
        Image as np.ndarray (H, W) or (H, W, C), dtype uint8 or uint16

    Raises:
        ImageDecodeError: If the bytes do not decode to an image
    """
    if not data:
        raise ImageDecodeError("Empty image payload")

    try:
        buffer = np.frombuffer(data, np.uint8)
        image = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)
    except cv2.error as e:
        raise ImageDecodeError(f"OpenCV failed to decode payload: {e}") from e

    if image is None:
        raise ImageDecodeError(
            f"Failed to decode {len(data)} byte payload: cv2.imdecode returned None"
        )

    if image.ndim not in (2, 3) or image.shape[0] == 0 or image.shape[1] == 0:
        raise ImageDecodeError(f"Invalid image shape: {image.shape}")

    return image


def validate_image(data: bytes) -> bytes:
    """
    Check that data is a decodable image and return it unchanged.

    Raises:
        ImageDecodeError: If the bytes do not decode to an image
    """
    decode_image(data)
    return data
