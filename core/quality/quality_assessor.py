# ============================================================
# Biometric Matching Core
# core/quality/quality_assessor.py
# ============================================================
# Scores how usable a face crop is for recognition, in [0, 1]:
#
#   score = w_size · size + w_sharp · sharpness + w_illum · illumination
#
#   size          min(1, min(rows, cols) / min_face_size)
#   sharpness     clamp(var(Laplacian_64F) / sharpness_normaliser)
#   illumination  'balanced':     1 - |mean - 127.5| / 127.5
#                 'inverse_mean': max(0, 1 - mean / 255)
#
# Unusable input scores the neutral value (0.5). Results are
# cached by pixel content, or by a caller-supplied frame key.
# ============================================================

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Hashable, Optional

import cv2
import numpy as np

from config.settings import CacheSettings, QualitySettings
from utils.cache import BoundedCache
from utils.image_utils import (
    compute_blur_score,
    compute_brightness,
    content_key,
    is_usable_image,
    to_gray,
)
from utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class QualityReport:
    """Quality score with its three components (each in [0, 1])."""

    score:        float
    size:         float
    sharpness:    float
    illumination: float

    def as_dict(self) -> Dict[str, float]:
        return {
            "score": round(self.score, 4),
            "size": round(self.size, 4),
            "sharpness": round(self.sharpness, 4),
            "illumination": round(self.illumination, 4),
        }


def _clamp01(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


class QualityAssessor:
    """
    Face image quality scorer with a bounded result cache.

    Args:
        settings:       Weights, normalisers and illumination mode.
        cache_settings: Cache size. ``max_size=0`` disables caching.
    """

    def __init__(
        self,
        settings: Optional[QualitySettings] = None,
        cache_settings: Optional[CacheSettings] = None,
    ) -> None:
        self.settings = settings or QualitySettings()
        cache_cfg = cache_settings or CacheSettings()
        self._cache = BoundedCache("quality", max_size=cache_cfg.max_size)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def assess(self, image: Any, frame_key: Optional[Hashable] = None) -> float:
        """Quality score in [0, 1]; ``neutral_score`` for unusable input."""
        return self.report(image, frame_key=frame_key).score

    def report(self, image: Any, frame_key: Optional[Hashable] = None) -> QualityReport:
        """
        Full quality breakdown for *image*.

        Args:
            image:     Raw face crop (grayscale or BGR).
            frame_key: Optional caller-supplied cache key (e.g. a frame
                       sequence number). Defaults to a hash of the pixels.
        """
        if not is_usable_image(image):
            logger.debug("Quality: unusable input, returning neutral score")
            return self._neutral()

        key = frame_key if frame_key is not None else content_key(image)
        try:
            return self._cache.get_or_compute(key, lambda: self._compute(image))
        except (cv2.error, ValueError, TypeError) as exc:
            # Failures are not cached
            logger.warning("Quality assessment failed, returning neutral score: {}", exc)
            return self._neutral()

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return self._cache.stats()

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def size_score(self, image: np.ndarray) -> float:
        rows, cols = image.shape[:2]
        return _clamp01(min(rows, cols) / float(self.settings.min_face_size))

    def sharpness_score(self, gray: np.ndarray) -> float:
        variance = compute_blur_score(gray)
        return _clamp01(variance / self.settings.sharpness_normaliser)

    def illumination_score(self, gray: np.ndarray) -> float:
        mean = compute_brightness(gray)
        if self.settings.illumination_mode == "inverse_mean":
            return _clamp01(1.0 - mean / 255.0)
        return _clamp01(1.0 - abs(mean - 127.5) / 127.5)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _compute(self, image: np.ndarray) -> QualityReport:
        s = self.settings
        gray = to_gray(image)
        size = self.size_score(image)
        sharp = self.sharpness_score(gray)
        illum = self.illumination_score(gray)
        score = _clamp01(
            s.size_weight * size
            + s.sharpness_weight * sharp
            + s.illumination_weight * illum
        )
        return QualityReport(score=score, size=size, sharpness=sharp, illumination=illum)

    def _neutral(self) -> QualityReport:
        n = self.settings.neutral_score
        return QualityReport(score=n, size=0.0, sharpness=0.0, illumination=0.0)

    def __repr__(self) -> str:
        return (
            f"QualityAssessor(mode={self.settings.illumination_mode}, "
            f"cached={len(self._cache)})"
        )
