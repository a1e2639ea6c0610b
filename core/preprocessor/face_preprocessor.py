# ============================================================
# Biometric Matching Core
# core/preprocessor/face_preprocessor.py
# ============================================================
# Turns an arbitrary face crop into the canonical grayscale
# face_size × face_size image every downstream extractor expects.
#
# Stage order (fixed):
#   1. grayscale   2. resize      3. Gaussian pre-blur
#   4. CLAHE       5. gamma LUT   6. bilateral denoise
#   7. Laplacian sharpen
#
# Each stage carries a fallback chain. A failing primitive is
# logged at WARNING, the next link is tried, and the stage name
# is recorded in PreprocessResult.degraded_stages. The chain
# never aborts; the last link of every stage is pass-through.
# ============================================================

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from config.settings import PreprocessorSettings
from utils.image_utils import as_uint8, is_usable_image
from utils.logger import get_logger

logger = get_logger(__name__)

# Exceptions a cv2 primitive (or its numpy replacement) may raise
_STAGE_ERRORS = (cv2.error, AttributeError, TypeError, ValueError)

Stage = Callable[[np.ndarray], np.ndarray]


# ============================================================
# Enumerations
# ============================================================

class PreprocessStatus(Enum):
    """
    Outcome of one preprocessing call.

    SUCCESS       : Every stage ran its primary primitive.
    DEGRADED      : At least one stage fell back; the image is usable.
    INVALID_INPUT : Null, empty or malformed input; ``image`` is None.
    """
    SUCCESS       = "success"
    DEGRADED      = "degraded"
    INVALID_INPUT = "invalid_input"


# ============================================================
# Data Types
# ============================================================

@dataclass
class PreprocessResult:
    """
    Output of ``FacePreprocessor.preprocess``.

    Attributes:
        image:            Canonical uint8 (face_size, face_size) image,
                          or None for invalid input.
        status:           ``PreprocessStatus``.
        degraded_stages:  ``"stage:link"`` labels for every fallback used.
        input_shape:      Shape of the raw input, when it was an array.
        elapsed_ms:       Wall-clock time of the call.
    """

    image:           Optional[np.ndarray]
    status:          PreprocessStatus
    degraded_stages: List[str] = field(default_factory=list)
    input_shape:     Optional[Tuple[int, ...]] = None
    elapsed_ms:      float = 0.0

    @property
    def valid(self) -> bool:
        return self.image is not None and self.status != PreprocessStatus.INVALID_INPUT

    @property
    def degraded(self) -> bool:
        return self.status == PreprocessStatus.DEGRADED

    def __repr__(self) -> str:
        if not self.valid:
            return "PreprocessResult(status=INVALID_INPUT)"
        h, w = self.image.shape[:2]
        return (
            f"PreprocessResult("
            f"status={self.status.value}, "
            f"size={w}x{h}, "
            f"degraded={self.degraded_stages}, "
            f"{self.elapsed_ms:.1f}ms)"
        )


# ============================================================
# Numpy fallbacks
# ============================================================

def _gray_channel_mean(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    return image[:, :, :3].mean(axis=2).round().astype(np.uint8)


def _resize_nearest(image: np.ndarray, size: int) -> np.ndarray:
    h, w = image.shape[:2]
    rows = (np.arange(size) * h) // size
    cols = (np.arange(size) * w) // size
    return image[rows][:, cols]


def _equalize_cdf(image: np.ndarray) -> np.ndarray:
    hist = np.bincount(image.ravel(), minlength=256)
    cdf = hist.cumsum()
    nonzero = cdf[cdf > 0]
    cdf_min = nonzero[0] if nonzero.size else 0
    span = cdf[-1] - cdf_min
    if span <= 0:
        return image
    lut = np.clip(np.round((cdf - cdf_min) * 255.0 / span), 0, 255).astype(np.uint8)
    return lut[image]


def gamma_table(gamma: float) -> np.ndarray:
    """256-entry uint8 table mapping v → 255·(v/255)^gamma."""
    values = np.arange(256, dtype=np.float64) / 255.0
    return np.clip(np.round(np.power(values, gamma) * 255.0), 0, 255).astype(np.uint8)


# ============================================================
# Preprocessor
# ============================================================

class FacePreprocessor:
    """
    Canonicalises face crops.

    Usage::

        pre = FacePreprocessor(PreprocessorSettings())
        result = pre.preprocess(crop)
        if result.valid:
            canonical = result.image

    Args:
        settings: Stage parameters and on/off switches.
    """

    def __init__(self, settings: Optional[PreprocessorSettings] = None) -> None:
        self.settings = settings or PreprocessorSettings()
        self._gamma_lut = gamma_table(self.settings.gamma)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def preprocess(self, image: Any) -> PreprocessResult:
        """
        Run the full stage chain on one face crop.

        Never raises. Invalid input yields ``status=INVALID_INPUT`` and
        ``image=None``.
        """
        t0 = time.perf_counter()

        if not is_usable_image(image):
            logger.debug(
                "Preprocess skipped: unusable input ({})",
                getattr(image, "shape", type(image).__name__),
            )
            return PreprocessResult(image=None, status=PreprocessStatus.INVALID_INPUT)

        s = self.settings
        degraded: List[str] = []
        img = as_uint8(image)

        img = self.run_stage("grayscale", img, [
            ("cvtColor", self._gray_cv2),
            ("channel_mean", _gray_channel_mean),
        ], degraded)
        img = self.run_stage("resize", img, [
            ("resize", lambda x: cv2.resize(x, (s.face_size, s.face_size), interpolation=cv2.INTER_LINEAR)),
            ("nearest", lambda x: _resize_nearest(x, s.face_size)),
        ], degraded)

        if s.blur_enabled:
            img = self.run_stage("blur", img, [
                ("GaussianBlur", lambda x: cv2.GaussianBlur(x, (s.blur_kernel, s.blur_kernel), s.blur_sigma)),
            ], degraded)
        if s.clahe_enabled:
            img = self.run_stage("clahe", img, [
                ("CLAHE", self._clahe),
                ("equalizeHist", cv2.equalizeHist),
                ("cdf", _equalize_cdf),
            ], degraded)
        if s.gamma_enabled:
            img = self.run_stage("gamma", img, [
                ("LUT", lambda x: cv2.LUT(x, self._gamma_lut)),
                ("numpy_lut", lambda x: self._gamma_lut[x]),
            ], degraded)
        if s.bilateral_enabled:
            img = self.run_stage("bilateral", img, [
                ("bilateralFilter", lambda x: cv2.bilateralFilter(
                    x, s.bilateral_diameter, s.bilateral_sigma_color, s.bilateral_sigma_space
                )),
                ("medianBlur", lambda x: cv2.medianBlur(x, 3)),
            ], degraded)
        if s.sharpen_enabled:
            img = self.run_stage("sharpen", img, [
                ("laplacian", self._sharpen),
            ], degraded)

        img = np.ascontiguousarray(img, dtype=np.uint8)
        status = PreprocessStatus.DEGRADED if degraded else PreprocessStatus.SUCCESS
        elapsed = (time.perf_counter() - t0) * 1000.0

        return PreprocessResult(
            image=img,
            status=status,
            degraded_stages=degraded,
            input_shape=tuple(image.shape),
            elapsed_ms=elapsed,
        )

    def to_canonical(self, image: Any) -> Optional[np.ndarray]:
        """Shorthand: the canonical image, or None for invalid input."""
        return self.preprocess(image).image

    # ------------------------------------------------------------------
    # Stage primitives
    # ------------------------------------------------------------------

    @staticmethod
    def _gray_cv2(image: np.ndarray) -> np.ndarray:
        if image.ndim == 2:
            return image
        channels = image.shape[2]
        if channels == 1:
            return image[:, :, 0]
        code = cv2.COLOR_BGRA2GRAY if channels == 4 else cv2.COLOR_BGR2GRAY
        return cv2.cvtColor(image, code)

    def _clahe(self, image: np.ndarray) -> np.ndarray:
        tiles = self.settings.clahe_tile_grid
        clahe = cv2.createCLAHE(clipLimit=self.settings.clahe_clip_limit, tileGridSize=(tiles, tiles))
        return clahe.apply(image)

    def _sharpen(self, image: np.ndarray) -> np.ndarray:
        lap = cv2.Laplacian(image, cv2.CV_8U)
        return cv2.addWeighted(image, 1.0, lap, self.settings.sharpen_weight, 0.0)

    # ------------------------------------------------------------------
    # Fallback runner
    # ------------------------------------------------------------------

    @staticmethod
    def run_stage(
        name: str,
        image: np.ndarray,
        chain: Sequence[Tuple[str, Stage]],
        degraded: List[str],
    ) -> np.ndarray:
        """
        Try each ``(label, fn)`` in *chain* until one succeeds.

        Any link after the first counts as degraded. If every link fails
        the stage passes the image through unchanged.
        """
        for position, (label, fn) in enumerate(chain):
            try:
                out = fn(image)
            except _STAGE_ERRORS as exc:
                logger.warning("Preprocess stage '{}' primitive '{}' failed: {}", name, label, exc)
                continue
            if position > 0:
                degraded.append(f"{name}:{label}")
            return out

        logger.warning("Preprocess stage '{}' passed through unchanged", name)
        degraded.append(f"{name}:passthrough")
        return image

    def __repr__(self) -> str:
        return f"FacePreprocessor(face_size={self.settings.face_size})"
