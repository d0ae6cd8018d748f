from __future__ import annotations

import base64
import binascii
from typing import Union

import cv2
import numpy as np

from .exceptions import ImageDecodeError

ImagePayload = Union[bytes, bytearray, memoryview, str]


def _payload_bytes(payload: ImagePayload) -> bytes:
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    if not isinstance(payload, str):
        raise ImageDecodeError(f"Unsupported image payload type: {type(payload).__name__}")

    text = payload.strip()
    if text.startswith("data:"):
        header, sep, text = text.partition(",")
        if not sep or ";base64" not in header:
            raise ImageDecodeError("Image data URL must be base64 encoded.")
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ImageDecodeError(f"Invalid base64 image data: {exc}") from exc


def decode_image(payload: ImagePayload) -> np.ndarray:
    """Decode raw bytes, base64 text or a ``data:image/...;base64,`` URL to a BGR frame."""
    raw = _payload_bytes(payload)
    if not raw:
        raise ImageDecodeError("Image payload is empty.")

    buffer = np.frombuffer(raw, dtype=np.uint8)
    frame = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if frame is None or frame.size == 0:
        raise ImageDecodeError("Image bytes could not be decoded.")
    return frame


def encode_data_url(frame: np.ndarray, quality: int = 80) -> str:
    ok, encoded = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ImageDecodeError("Failed to encode frame as JPEG.")
    return "data:image/jpeg;base64," + base64.b64encode(encoded.tobytes()).decode("utf-8")
