# ============================================================
# Biometric Matching Core
# core/matcher/similarity.py
# ============================================================
# Base similarity metrics and mode-dependent fusion.
#
# Every metric:
#   - returns a float in [0, 1]
#   - is symmetric: m(a, b) == m(b, a)
#   - returns 0.0 when the lengths differ (logged at WARNING)
#   - returns 0.0 when either side is the zero sentinel
#
# Fusion:
#   FAST             cosine
#   STANDARD         0.50 cos + 0.30 euc + 0.20 corr
#   ULTRA_PRECISION  0.35 cos + 0.25 euc + 0.20 manh + 0.20 corr
#
# Optional quality weighting multiplies the fused value by
# clamp(q + 0.3, 0.5, 1.2) before the final clamp to [0, 1].
# ============================================================

from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Tuple

import numpy as np

from config.settings import SimilaritySettings
from core.features.base_extractor import EPSILON, RecognitionMode, as_vector, is_sentinel_vector
from utils.logger import get_logger

logger = get_logger(__name__)

_CHI_EPS = 1e-12


# ============================================================
# Base metrics (module-level, no class needed)
# ============================================================

def _prepare(a: Any, b: Any) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    """Float64 views of both inputs, or None when they cannot be compared."""
    va = as_vector(a).astype(np.float64)
    vb = as_vector(b).astype(np.float64)
    if va.shape != vb.shape:
        logger.warning(
            "Embedding length mismatch ({} vs {}); similarity is 0. "
            "Re-enrol the gallery with the current feature settings.",
            va.shape[0], vb.shape[0],
        )
        return None
    if is_sentinel_vector(va) or is_sentinel_vector(vb):
        return None
    return va, vb


def _clamp01(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


def cosine(a: Any, b: Any) -> float:
    """Cosine similarity clamped to [0, 1]; orthogonal or opposite → 0."""
    pair = _prepare(a, b)
    if pair is None:
        return 0.0
    va, vb = pair
    na, nb = np.linalg.norm(va), np.linalg.norm(vb)
    if na <= EPSILON or nb <= EPSILON:
        return 0.0
    return _clamp01(np.dot(va, vb) / (na * nb))


def euclidean(a: Any, b: Any) -> float:
    """1 − ‖a − b‖ / sqrt(2·len)."""
    pair = _prepare(a, b)
    if pair is None:
        return 0.0
    va, vb = pair
    dist = float(np.linalg.norm(va - vb))
    return _clamp01(1.0 - dist / np.sqrt(2.0 * va.shape[0]))


def manhattan(a: Any, b: Any) -> float:
    """1 − Σ|aᵢ − bᵢ| / (2·len)."""
    pair = _prepare(a, b)
    if pair is None:
        return 0.0
    va, vb = pair
    return _clamp01(1.0 - float(np.abs(va - vb).sum()) / (2.0 * va.shape[0]))


def correlation(a: Any, b: Any) -> float:
    """
    Pearson correlation rescaled to [0, 1] as (r + 1) / 2.

    Degenerate (zero-variance) inputs score 1.0 when identical and 0.0
    otherwise.
    """
    pair = _prepare(a, b)
    if pair is None:
        return 0.0
    va, vb = pair
    da = va - va.mean()
    db = vb - vb.mean()
    den = float(np.sqrt(np.dot(da, da) * np.dot(db, db)))
    if den < EPSILON:
        return 1.0 if np.array_equal(va, vb) else 0.0
    r = float(np.dot(da, db)) / den
    return _clamp01((r + 1.0) / 2.0)


def chi_square(a: Any, b: Any) -> float:
    """1 / (1 + χ²/len), skipping terms whose aᵢ + bᵢ ≤ 1e-12."""
    pair = _prepare(a, b)
    if pair is None:
        return 0.0
    va, vb = pair
    s = va + vb
    mask = s > _CHI_EPS
    d = va[mask] - vb[mask]
    chi = float(np.sum(d * d / s[mask]))
    return _clamp01(1.0 / (1.0 + chi / va.shape[0]))


def weighted_cosine(a: Any, b: Any) -> float:
    """
    Cosine with per-dimension weight 1 + min(0.5, max(|aᵢ|, |bᵢ|)).

    The weight uses both inputs so the metric stays symmetric.
    """
    pair = _prepare(a, b)
    if pair is None:
        return 0.0
    va, vb = pair
    w = 1.0 + np.minimum(0.5, np.maximum(np.abs(va), np.abs(vb)))
    wa, wb = va * w, vb * w
    na, nb = np.linalg.norm(wa), np.linalg.norm(wb)
    if na <= EPSILON or nb <= EPSILON:
        return 0.0
    return _clamp01(np.dot(wa, wb) / (na * nb))


METRICS: Dict[str, Callable[[Any, Any], float]] = {
    "cosine": cosine,
    "euclidean": euclidean,
    "manhattan": manhattan,
    "correlation": correlation,
    "chi_square": chi_square,
    "weighted_cosine": weighted_cosine,
}


# ============================================================
# Similarity Engine
# ============================================================

class SimilarityEngine:
    """
    Mode-dependent fusion of the base metrics.

    Weights for each mode come from ``SimilaritySettings`` and are
    renormalised to sum to 1 when they do not.

    Args:
        settings: Fusion weights and quality-factor bounds.
        mode:     ``RecognitionMode`` (or its string value).
    """

    def __init__(
        self,
        settings: Optional[SimilaritySettings] = None,
        mode: RecognitionMode | str = RecognitionMode.STANDARD,
    ) -> None:
        self.settings = settings or SimilaritySettings()
        self.mode = RecognitionMode.parse(mode)
        self.weights = self._weights_for_mode()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fuse(self, a: Any, b: Any) -> float:
        """Mode-weighted combination of the base metrics, in [0, 1]."""
        total = 0.0
        for name, weight in self.weights.items():
            if weight > 0.0:
                total += weight * METRICS[name](a, b)
        return _clamp01(total)

    def similarity(self, a: Any, b: Any, quality: Optional[float] = None) -> float:
        """
        Fused similarity, optionally weighted by input quality.

        The quality factor is monotone non-decreasing in *quality*.
        """
        value = self.fuse(a, b)
        if quality is not None:
            value *= self.quality_factor(quality)
        return _clamp01(value)

    def quality_factor(self, quality: float) -> float:
        s = self.settings
        return float(min(s.quality_factor_max, max(s.quality_factor_min, quality + s.quality_offset)))

    def compare_all(self, a: Any, b: Any) -> Dict[str, float]:
        """Every base metric plus the fused score, for diagnostics."""
        scores = {name: fn(a, b) for name, fn in METRICS.items()}
        scores["fused"] = self.fuse(a, b)
        return scores

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _weights_for_mode(self) -> Dict[str, float]:
        s = self.settings
        if self.mode is RecognitionMode.FAST:
            weights = {"cosine": 1.0}
        elif self.mode is RecognitionMode.STANDARD:
            weights = {
                "cosine": s.standard_cosine,
                "euclidean": s.standard_euclidean,
                "correlation": s.standard_correlation,
            }
        else:
            weights = {
                "cosine": s.ultra_cosine,
                "euclidean": s.ultra_euclidean,
                "manhattan": s.ultra_manhattan,
                "correlation": s.ultra_correlation,
            }

        total = sum(weights.values())
        if total <= 0.0:
            raise ValueError(f"Fusion weights for mode {self.mode.value!r} sum to zero")
        if abs(total - 1.0) > 0.01:
            logger.warning(
                "Fusion weights for {} sum to {:.3f}, not 1.0. Normalising.",
                self.mode.value, total,
            )
        return {name: w / total for name, w in weights.items()}

    def __repr__(self) -> str:
        weights = ", ".join(f"{k}={v:.2f}" for k, v in self.weights.items())
        return f"SimilarityEngine(mode={self.mode.value}, {weights})"
