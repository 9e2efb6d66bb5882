"""
Utility helpers for image handling and result formatting.
"""

from __future__ import annotations

import base64
from typing import Any, Iterable, List, Union

import cv2
import numpy as np

ImageLike = Union[np.ndarray, bytes, bytearray]


def decode_image_from_bytes(content: bytes) -> np.ndarray:
    """
    Decode raw bytes into an OpenCV BGR image.

    Raises:
        ValueError: When the bytes cannot be decoded into an image.
    """
    if not content:
        raise ValueError("Empty image payload")
    array = np.frombuffer(content, dtype=np.uint8)
    image = cv2.imdecode(array, cv2.IMREAD_COLOR)
    if image is None:
        raise ValueError("Unable to decode image payload")
    return image


def decode_image_from_base64(data: str) -> np.ndarray:
    """
    Decode a base64-encoded string (optionally a data URL) into a BGR image.
    """
    if isinstance(data, str) and data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        binary = base64.b64decode(data, validate=False)
    except (ValueError, TypeError) as exc:
        raise ValueError("Invalid base64 image payload") from exc
    return decode_image_from_bytes(binary)


def load_image(frame: ImageLike) -> np.ndarray:
    """
    Accept either an already decoded frame or encoded image bytes.
    """
    if isinstance(frame, np.ndarray):
        return ensure_uint8(frame)
    if isinstance(frame, (bytes, bytearray)):
        return decode_image_from_bytes(bytes(frame))
    raise ValueError(f"Unsupported frame type: {type(frame).__name__}")


def encode_jpeg(image: np.ndarray, quality: int = 80) -> bytes:
    success, buffer = cv2.imencode(
        ".jpg", ensure_uint8(image), [int(cv2.IMWRITE_JPEG_QUALITY), quality]
    )
    if not success:
        raise ValueError("Failed to encode frame as JPEG")
    return buffer.tobytes()


def bgr_to_rgb(image: np.ndarray) -> np.ndarray:
    """
    Convert an OpenCV BGR image to RGB order.
    """
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


def ensure_uint8(image: np.ndarray) -> np.ndarray:
    """
    Coerce an image to uint8 for downstream model consumption.
    """
    if image.dtype == np.uint8:
        return image
    clipped = np.clip(image, 0, 255)
    return clipped.astype(np.uint8)


def serialize_bbox(bbox: Iterable[float]) -> List[float]:
    """
    Convert a bounding box iterable to a plain list of floats.
    """
    return [float(x) for x in bbox]


def to_float(value: Any) -> float:
    """
    Convert numeric-like values to primitive float.
    """
    return float(value)
