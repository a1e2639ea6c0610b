from __future__ import annotations

import hashlib
from typing import Any, Tuple

import cv2
import numpy as np

# ── Type aliases ────────────────────────────────────────────
# Face crops are np.ndarray, grayscale (H, W) or BGR(A) (H, W, C), uint8
Frame = np.ndarray
Rect = Tuple[int, int, int, int]  # (x, y, w, h)


def is_usable_image(image: Any) -> bool:
    """Return True for a non-empty 2-D or 3-D ndarray with 1, 3 or 4 channels."""
    if not isinstance(image, np.ndarray):
        return False
    if image.size == 0 or image.ndim not in (2, 3):
        return False
    if image.ndim == 3 and image.shape[2] not in (1, 3, 4):
        return False
    return image.shape[0] > 0 and image.shape[1] > 0


def as_uint8(image: np.ndarray) -> np.ndarray:
    """Clip and cast any numeric image to uint8. uint8 input is returned as-is."""
    if image.dtype == np.uint8:
        return image
    return np.clip(np.nan_to_num(image.astype(np.float64)), 0, 255).astype(np.uint8)


def to_gray(image: np.ndarray) -> np.ndarray:
    """
    Return a single-channel uint8 view of *image*.

    Uses ``cv2.cvtColor``. Callers that need a cv2-free path use the
    preprocessor's grayscale stage, which carries its own fallback.
    """
    image = as_uint8(image)
    if image.ndim == 2:
        return image
    channels = image.shape[2]
    if channels == 1:
        return image[:, :, 0]
    if channels == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def content_key(image: np.ndarray) -> str:
    """
    Stable cache key derived from the pixel bytes, shape and dtype.

    Two arrays with identical content produce the same key regardless of
    object identity or memory layout.
    """
    h = hashlib.blake2b(digest_size=16)
    h.update(str(image.shape).encode("ascii"))
    h.update(str(image.dtype).encode("ascii"))
    h.update(np.ascontiguousarray(image).tobytes())
    return h.hexdigest()


def compute_brightness(image: Frame) -> float:
    """Mean grayscale intensity (0.0 – 255.0)."""
    return float(to_gray(image).mean())


def compute_blur_score(image: Frame) -> float:
    """
    Estimate image sharpness using the variance of the Laplacian.
    Higher = sharper.
    """
    return float(cv2.Laplacian(to_gray(image), cv2.CV_64F).var())
