# ============================================================
# Biometric Matching Core
# core/features/signature_extractor.py
# ============================================================
# Coarse 128-float biometric signature, used by the matcher as an
# independent second opinion next to the embedding similarity.
#
#   geometry   (32)  8×4 grid of region intensity variance / 255²
#   texture    (32)  8×4 grid of mean Sobel magnitude, scaled to [0, 1]
#   gradient   (32)  magnitude-weighted direction histogram, sums to 1
#   frequency  (32)  mean squared difference at lags 1..8 along
#                    4 directions (→, ↓, ↘, ↙) / 255²
#
# A block that fails is left at zeros; the others are kept.
# ============================================================

from __future__ import annotations

from typing import Any, Callable, List, Optional, Tuple

import cv2
import numpy as np

from config.settings import PreprocessorSettings, SignatureSettings
from core.features.base_extractor import (
    EPSILON,
    SIGNATURE_BLOCK,
    BaseExtractor,
    BiometricSignature,
    as_vector,
    is_sentinel_vector,
)
from core.preprocessor.face_preprocessor import FacePreprocessor
from utils.image_utils import is_usable_image
from utils.logger import get_logger

logger = get_logger(__name__)

_PIXEL_SQ = 255.0 ** 2
# Largest 3×3 Sobel response on uint8 input is 4·255 per axis
_MAX_SOBEL_MAGNITUDE = float(np.hypot(4 * 255.0, 4 * 255.0))

# (row, col) unit steps: horizontal, vertical, diagonal, anti-diagonal
_DIRECTIONS: Tuple[Tuple[int, int], ...] = ((0, 1), (1, 0), (1, 1), (1, -1))

BLOCK_NAMES: Tuple[str, ...] = ("geometry", "texture", "gradient", "frequency")


# ============================================================
# Block helpers
# ============================================================

def _grid_cells(shape: Tuple[int, int], rows: int, cols: int):
    """Yield (r0, r1, c0, c1) bounds of a near-even rows × cols partition."""
    h, w = shape
    r_edges = np.linspace(0, h, rows + 1).astype(int)
    c_edges = np.linspace(0, w, cols + 1).astype(int)
    for i in range(rows):
        for j in range(cols):
            yield r_edges[i], r_edges[i + 1], c_edges[j], c_edges[j + 1]


def _grid_reduce(
    values: np.ndarray,
    rows: int,
    cols: int,
    reduce: Callable[[np.ndarray], float],
) -> np.ndarray:
    out = np.zeros(rows * cols, dtype=np.float64)
    for k, (r0, r1, c0, c1) in enumerate(_grid_cells(values.shape[:2], rows, cols)):
        cell = values[r0:r1, c0:c1]
        if cell.size:
            out[k] = reduce(cell)
    return out


def _lag_pairs(gray: np.ndarray, dr: int, dc: int) -> Tuple[np.ndarray, np.ndarray]:
    """Two equally-shaped views offset by (dr, dc), dr >= 0."""
    h, w = gray.shape
    if dc >= 0:
        a = gray[0:h - dr, 0:w - dc]
        b = gray[dr:h, dc:w]
    else:
        a = gray[0:h - dr, -dc:w]
        b = gray[dr:h, 0:w + dc]
    return a, b


def block_cosine(a: np.ndarray, b: np.ndarray) -> float:
    na, nb = np.linalg.norm(a), np.linalg.norm(b)
    if na <= EPSILON or nb <= EPSILON:
        return 0.0
    return float(np.clip(np.dot(a, b) / (na * nb), 0.0, 1.0))


def signature_similarity(a: Any, b: Any) -> float:
    """
    Mean per-block cosine similarity between two signatures.

    Only blocks that are non-zero in both signatures take part; returns
    0.0 when no block qualifies.
    """
    va = as_vector(a).astype(np.float64)
    vb = as_vector(b).astype(np.float64)
    if va.shape != vb.shape or va.shape[0] % SIGNATURE_BLOCK:
        return 0.0

    scores: List[float] = []
    for start in range(0, va.shape[0], SIGNATURE_BLOCK):
        ba = va[start:start + SIGNATURE_BLOCK]
        bb = vb[start:start + SIGNATURE_BLOCK]
        if np.any(ba) and np.any(bb):
            scores.append(block_cosine(ba, bb))
    return float(np.mean(scores)) if scores else 0.0


def signature_from_embedding(embedding: Any) -> BiometricSignature:
    """
    Signature inferred from an embedding when no crop is available.

    The vector is split into four contiguous segments, one per block,
    and each segment into 32 chunks summarised by their mean.
    Only comparable with other embedding-derived signatures. The zero
    sentinel (or an empty vector) gives the empty signature.
    """
    vector = as_vector(embedding).astype(np.float64)
    if is_sentinel_vector(vector):
        return BiometricSignature.empty()

    blocks = []
    for segment in np.array_split(vector, len(BLOCK_NAMES)):
        block = np.zeros(SIGNATURE_BLOCK, dtype=np.float64)
        for k, chunk in enumerate(np.array_split(segment, SIGNATURE_BLOCK)):
            if chunk.size:
                block[k] = float(chunk.mean())
        blocks.append(block)
    return BiometricSignature.from_blocks(*blocks)


# ============================================================
# Signature Extractor
# ============================================================

class SignatureExtractor(BaseExtractor):
    """
    Extracts a ``BiometricSignature`` from a face crop.

    Args:
        settings:     Grid shape, direction bins and maximum lag.
        preprocessor: Shared ``FacePreprocessor``; built from
                      *preprocessor_settings* when omitted.
    """

    def __init__(
        self,
        settings: Optional[SignatureSettings] = None,
        preprocessor: Optional[FacePreprocessor] = None,
        preprocessor_settings: Optional[PreprocessorSettings] = None,
    ) -> None:
        self.settings = settings or SignatureSettings()
        self.preprocessor = preprocessor or FacePreprocessor(preprocessor_settings)

    def extract(self, image: Any) -> BiometricSignature:
        """Signature of a raw crop. All zeros for unusable input."""
        if not is_usable_image(image):
            logger.debug("Signature extraction skipped: unusable input")
            return BiometricSignature.empty()
        canonical = self.preprocessor.to_canonical(image)
        if canonical is None:
            return BiometricSignature.empty()
        return self.extract_preprocessed(canonical)

    def extract_preprocessed(self, gray: np.ndarray) -> BiometricSignature:
        """Signature of an already canonical grayscale image."""
        if not is_usable_image(gray) or gray.ndim != 2:
            return BiometricSignature.empty()

        blocks = [
            self._safe_block(name, fn, gray)
            for name, fn in zip(
                BLOCK_NAMES,
                (self.geometry_block, self.texture_block, self.gradient_block, self.frequency_block),
            )
        ]
        return BiometricSignature.from_blocks(*blocks)

    def compare(self, a: Any, b: Any) -> float:
        return signature_similarity(a, b)

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    def geometry_block(self, gray: np.ndarray) -> np.ndarray:
        s = self.settings
        g = gray.astype(np.float64)
        return _grid_reduce(g, s.grid_rows, s.grid_cols, lambda c: float(c.var())) / _PIXEL_SQ

    def texture_block(self, gray: np.ndarray) -> np.ndarray:
        s = self.settings
        gx, gy = self._sobel(gray)
        magnitude = np.hypot(gx, gy)
        means = _grid_reduce(magnitude, s.grid_rows, s.grid_cols, lambda c: float(c.mean()))
        return np.clip(means / _MAX_SOBEL_MAGNITUDE, 0.0, 1.0)

    def gradient_block(self, gray: np.ndarray) -> np.ndarray:
        bins = self.settings.direction_bins
        gx, gy = self._sobel(gray)
        magnitude = np.hypot(gx, gy).ravel()
        angle = np.arctan2(gy, gx).ravel()
        idx = np.floor((angle + np.pi) / (2.0 * np.pi) * bins).astype(np.int64)
        idx = np.clip(idx, 0, bins - 1)
        hist = np.bincount(idx, weights=magnitude, minlength=bins)
        total = hist.sum()
        return hist / total if total > EPSILON else hist

    def frequency_block(self, gray: np.ndarray) -> np.ndarray:
        g = gray.astype(np.float64)
        out = np.zeros(len(_DIRECTIONS) * self.settings.max_lag, dtype=np.float64)
        k = 0
        for dr, dc in _DIRECTIONS:
            for lag in range(1, self.settings.max_lag + 1):
                a, b = _lag_pairs(g, dr * lag, dc * lag)
                if a.size:
                    out[k] = float(np.mean((b - a) ** 2)) / _PIXEL_SQ
                k += 1
        return out

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _sobel(gray: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        gx = cv2.Sobel(gray, cv2.CV_64F, 1, 0, ksize=3)
        gy = cv2.Sobel(gray, cv2.CV_64F, 0, 1, ksize=3)
        return gx, gy

    @staticmethod
    def _safe_block(name: str, fn: Callable[[np.ndarray], np.ndarray], gray: np.ndarray) -> np.ndarray:
        try:
            block = np.asarray(fn(gray), dtype=np.float32)
        except (cv2.error, ValueError, TypeError, IndexError) as exc:
            logger.warning("Signature block '{}' failed, using zeros: {}", name, exc)
            return np.zeros(SIGNATURE_BLOCK, dtype=np.float32)
        if block.shape != (SIGNATURE_BLOCK,):
            logger.warning("Signature block '{}' has shape {}, using zeros", name, block.shape)
            return np.zeros(SIGNATURE_BLOCK, dtype=np.float32)
        return block

    def __repr__(self) -> str:
        s = self.settings
        return f"SignatureExtractor(grid={s.grid_rows}x{s.grid_cols}, lags={s.max_lag})"
