# ============================================================
# Biometric Matching Core
# core/quality/spoof_heuristic.py
# ============================================================
# Cheap, advisory presentation-attack check on a single crop.
#
#   flat print     intensity variance < min_variance
#   screen/moiré   Canny edge-pixel ratio > max_edge_ratio
#
# Either trip flags the crop. This is NOT a liveness detector:
# the matcher ignores the flag unless configured to gate on it.
# ============================================================

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional

import cv2
import numpy as np

from config.settings import SpoofSettings
from utils.image_utils import is_usable_image, to_gray
from utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class SpoofReport:
    """
    Outcome of one spoof check.

    Attributes:
        variance:    Grayscale intensity variance.
        edge_ratio:  Fraction of Canny edge pixels.
        reasons:     Which checks tripped ('flat_print', 'screen_pattern').
        evaluated:   False when the image could not be analysed.
    """

    variance:   float = 0.0
    edge_ratio: float = 0.0
    reasons:    List[str] = field(default_factory=list)
    evaluated:  bool = True

    @property
    def is_spoof(self) -> bool:
        return bool(self.reasons)

    def __repr__(self) -> str:
        if not self.evaluated:
            return "SpoofReport(not evaluated)"
        return (
            f"SpoofReport(variance={self.variance:.1f}, "
            f"edge_ratio={self.edge_ratio:.3f}, "
            f"reasons={self.reasons})"
        )


class SpoofHeuristic:
    """Variance / edge-density replay heuristic."""

    def __init__(self, settings: Optional[SpoofSettings] = None) -> None:
        self.settings = settings or SpoofSettings()

    def looks_spoofed(self, image: Any) -> bool:
        return self.analyze(image).is_spoof

    def analyze(self, image: Any) -> SpoofReport:
        """Run both checks. Never raises; failures report not-spoofed."""
        if not is_usable_image(image):
            logger.debug("Spoof check skipped: unusable input")
            return SpoofReport(evaluated=False)

        s = self.settings
        try:
            gray = to_gray(image)
            variance = float(np.var(gray.astype(np.float64)))
            edges = cv2.Canny(gray, s.canny_low, s.canny_high)
            edge_ratio = float(np.count_nonzero(edges)) / float(edges.size)
        except (cv2.error, ValueError, TypeError) as exc:
            logger.warning("Spoof check failed, treating as live: {}", exc)
            return SpoofReport(evaluated=False)

        reasons: List[str] = []
        if variance < s.min_variance:
            reasons.append("flat_print")
        if edge_ratio > s.max_edge_ratio:
            reasons.append("screen_pattern")

        if reasons:
            logger.debug(
                "Spoof heuristic tripped: {} (var={:.1f}, edges={:.3f})",
                reasons, variance, edge_ratio,
            )
        return SpoofReport(variance=variance, edge_ratio=edge_ratio, reasons=reasons)

    def __repr__(self) -> str:
        return (
            f"SpoofHeuristic(min_variance={self.settings.min_variance}, "
            f"max_edge_ratio={self.settings.max_edge_ratio})"
        )
