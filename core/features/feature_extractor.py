# ============================================================
# Biometric Matching Core
# core/features/feature_extractor.py
# ============================================================
# Hand-crafted face embedding:
#
#   FAST                : intensity histogram + fine edge-density grid
#   STANDARD / ULTRA    : intensity histogram + LBP histogram
#                         + coarse edge-count grid
#
# Blocks are concatenated in that order, zero-padded or truncated
# to ``embedding_dim`` and L2-normalised. Unusable input yields
# the all-zero sentinel. A failing block is replaced by zeros and
# logged; the remaining blocks still contribute.
# ============================================================

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple

import cv2
import numpy as np

from config.settings import CacheSettings, FeatureSettings, PreprocessorSettings
from core.features.base_extractor import (
    BaseExtractor,
    FaceEmbedding,
    RecognitionMode,
    fit_length,
    l2_normalise,
)
from core.preprocessor.face_preprocessor import FacePreprocessor
from utils.cache import BoundedCache
from utils.image_utils import content_key, is_usable_image
from utils.logger import get_logger

logger = get_logger(__name__)

# (row, col) neighbour offsets; bit k of the LBP code ↔ _LBP_OFFSETS[k]
_LBP_OFFSETS: Tuple[Tuple[int, int], ...] = (
    (-1, -1), (-1, 0), (-1, 1),
    (0, -1),           (0, 1),
    (1, -1),  (1, 0),  (1, 1),
)


# ============================================================
# Sub-extractors (module-level, operate on canonical grayscale)
# ============================================================

def histogram_features(gray: np.ndarray, bins: int = 256) -> np.ndarray:
    """
    Intensity histogram with *bins* buckets of width ``256 // bins``.

    When 256 is not a multiple of *bins*, intensities past the last full
    bucket are not counted.
    """
    bin_size = 256 // bins
    idx = gray.ravel().astype(np.int64) // bin_size
    idx = idx[idx < bins]
    return np.bincount(idx, minlength=bins).astype(np.float64)


def lbp_codes(gray: np.ndarray) -> np.ndarray:
    """
    8-neighbour Local Binary Pattern codes for interior pixels.

    Bit k is set when neighbour k is >= the centre pixel. Returns a
    (rows-2, cols-2) uint8 array; empty when the image is under 3×3.
    """
    rows, cols = gray.shape[:2]
    if rows < 3 or cols < 3:
        return np.zeros((0, 0), dtype=np.uint8)

    g = gray.astype(np.int16)
    centre = g[1:rows - 1, 1:cols - 1]
    codes = np.zeros_like(centre, dtype=np.uint8)
    for bit, (dr, dc) in enumerate(_LBP_OFFSETS):
        neighbour = g[1 + dr:rows - 1 + dr, 1 + dc:cols - 1 + dc]
        codes |= (neighbour >= centre).astype(np.uint8) << bit
    return codes


def lbp_features(gray: np.ndarray) -> np.ndarray:
    """256-bucket histogram of interior LBP codes."""
    codes = lbp_codes(gray)
    return np.bincount(codes.ravel(), minlength=256).astype(np.float64)


def edge_grid_features(
    gray: np.ndarray,
    grid: int,
    low: int,
    high: int,
    density: bool,
) -> np.ndarray:
    """
    Canny edges summarised over a *grid* × *grid* partition.

    Cells are ``rows // grid`` by ``cols // grid`` pixels, scanned row-major;
    trailing pixels that do not fill a whole cell are ignored.

    Args:
        density: True → edge fraction per cell, False → raw edge count.
    """
    out = np.zeros(grid * grid, dtype=np.float64)
    rows, cols = gray.shape[:2]
    rh, rw = rows // grid, cols // grid
    if rh == 0 or rw == 0:
        return out

    edges = cv2.Canny(gray, low, high)
    mask = edges[: rh * grid, : rw * grid] > 0
    counts = mask.reshape(grid, rh, grid, rw).sum(axis=(1, 3)).astype(np.float64)
    if density:
        counts /= float(rh * rw)
    return counts.ravel()


# ============================================================
# Feature Extractor
# ============================================================

class FeatureExtractor(BaseExtractor):
    """
    Deterministic, fixed-length embedding extractor.

    Args:
        settings:          Embedding length, histogram bins, edge grids,
                           mode and thread-pool size.
        preprocessor:      Shared ``FacePreprocessor``. A default one is
                           built from *preprocessor_settings* when omitted.
        cache_settings:    Size of the per-image embedding cache.

    Context-manager usage (shuts the thread pool down)::

        with FeatureExtractor(FeatureSettings(parallel_workers=3)) as fx:
            emb = fx.extract(crop)
    """

    def __init__(
        self,
        settings: Optional[FeatureSettings] = None,
        preprocessor: Optional[FacePreprocessor] = None,
        preprocessor_settings: Optional[PreprocessorSettings] = None,
        cache_settings: Optional[CacheSettings] = None,
    ) -> None:
        self.settings = settings or FeatureSettings()
        self.mode = RecognitionMode.parse(self.settings.recognition_mode)
        self.preprocessor = preprocessor or FacePreprocessor(preprocessor_settings)
        cache_cfg = cache_settings or CacheSettings()
        self._cache = BoundedCache("embedding", max_size=cache_cfg.max_size)
        self._executor: Optional[ThreadPoolExecutor] = None
        if self.settings.parallel_workers > 0:
            self._executor = ThreadPoolExecutor(
                max_workers=self.settings.parallel_workers,
                thread_name_prefix="feature",
            )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def dim(self) -> int:
        return self.settings.embedding_dim

    def sentinel(self) -> FaceEmbedding:
        return FaceEmbedding.sentinel(self.dim, mode=self.mode)

    def extract(self, image: Any, frame_key: Optional[Hashable] = None) -> FaceEmbedding:
        """
        Embed one raw face crop.

        Never raises. Unusable input returns the zero sentinel.

        Args:
            image:     Raw crop (grayscale or BGR/BGRA).
            frame_key: Optional caller-supplied cache key; defaults to a
                       hash of the pixel content.
        """
        if not is_usable_image(image):
            logger.debug("Feature extraction skipped: unusable input")
            return self.sentinel()

        key = frame_key if frame_key is not None else content_key(image)
        cached = self._cache.get(key)
        if cached is not None:
            return FaceEmbedding(vector=cached.copy(), mode=self.mode)

        pre = self.preprocessor.preprocess(image)
        if not pre.valid:
            return self.sentinel()

        embedding = self.extract_preprocessed(pre.image)
        if not embedding.is_sentinel:
            # Only the vector is cached; callers own the returned object
            self._cache.put(key, embedding.vector.copy())
        return embedding

    def extract_preprocessed(self, gray: np.ndarray) -> FaceEmbedding:
        """Embed an image that is already canonical (grayscale uint8)."""
        if not is_usable_image(gray) or gray.ndim != 2:
            logger.debug("Feature extraction skipped: canonical image expected")
            return self.sentinel()

        jobs = self._blocks_for_mode()
        if self._executor is not None:
            blocks = list(self._executor.map(lambda job: self._safe_block(job, gray), jobs))
        else:
            blocks = [self._safe_block(job, gray) for job in jobs]

        raw = np.concatenate(blocks) if blocks else np.zeros(0)
        vector = l2_normalise(fit_length(raw, self.dim))
        return FaceEmbedding(vector=vector, mode=self.mode)

    def block_layout(self) -> List[Tuple[str, int]]:
        """``(name, length)`` of each block, in concatenation order."""
        return [(name, length) for name, length, _ in self._blocks_for_mode()]

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return self._cache.stats()

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    def __enter__(self) -> "FeatureExtractor":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _blocks_for_mode(self) -> List[Tuple[str, int, Callable[[np.ndarray], np.ndarray]]]:
        s = self.settings
        hist = ("histogram", s.histogram_bins, lambda g: histogram_features(g, s.histogram_bins))
        if self.mode is RecognitionMode.FAST:
            return [
                hist,
                ("edges_fast", s.fast_edge_grid ** 2, lambda g: edge_grid_features(
                    g, s.fast_edge_grid, s.fast_canny_low, s.fast_canny_high, density=True,
                )),
            ]
        return [
            hist,
            ("lbp", 256, lbp_features),
            ("edges", s.edge_grid ** 2, lambda g: edge_grid_features(
                g, s.edge_grid, s.edge_canny_low, s.edge_canny_high, density=False,
            )),
        ]

    @staticmethod
    def _safe_block(
        job: Tuple[str, int, Callable[[np.ndarray], np.ndarray]],
        gray: np.ndarray,
    ) -> np.ndarray:
        name, length, fn = job
        try:
            return np.asarray(fn(gray), dtype=np.float64)
        except (cv2.error, ValueError, TypeError, IndexError) as exc:
            logger.warning("Feature block '{}' failed, using zeros: {}", name, exc)
            return np.zeros(length, dtype=np.float64)

    def __repr__(self) -> str:
        return (
            f"FeatureExtractor(mode={self.mode.value}, dim={self.dim}, "
            f"parallel={self.settings.parallel_workers})"
        )
