# ============================================================
# Biometric Matching Core
# core/matcher/match_types.py
# ============================================================
# Data types produced by the matcher.
#
#   IdentityScore     — per-identity breakdown of one gallery scan
#   MatchResult       — (identity | None, confidence) + diagnostics
#   RecognitionStats  — adaptive per-identity statistics (EMA)
# ============================================================

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple

UNKNOWN_LABEL = "Unknown"


@dataclass
class IdentityScore:
    """
    Score components for one gallery identity.

    Attributes:
        identity:     Gallery person id.
        max_sim:      Best fused similarity over the identity's embeddings.
        avg_sim:      Mean fused similarity over the identity's embeddings.
        biometric:    Signature match, crop or embedding-inferred
                      (``avg_sim`` with biometric analysis off).
        geometric:    exp(-var(input) · scale) · quality.
        score:        Weighted combination after strict-mode penalties.
        samples:      Number of embeddings compared.
    """

    identity:  str
    max_sim:   float
    avg_sim:   float
    biometric: float
    geometric: float
    score:     float
    samples:   int = 0

    def as_dict(self) -> Dict[str, float]:
        return {
            "max_sim": round(self.max_sim, 4),
            "avg_sim": round(self.avg_sim, 4),
            "biometric": round(self.biometric, 4),
            "geometric": round(self.geometric, 4),
            "score": round(self.score, 4),
            "samples": self.samples,
        }


# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class MatchResult:
    """
    Outcome of one recognition call.

    Attributes:
        identity:         Matched person id, or None for Unknown.
        confidence:       Winning score; for Unknown, the best score seen.
        quality:          Quality score of the input image.
        threshold:        Dynamic threshold applied.
        used_fallback:    True when the plain-cosine fallback decided.
        spoof_suspected:  Advisory spoof flag for the input.
        rejected_reason:  Why the scan was skipped ('empty_gallery',
                          'extraction_failed', 'low_quality', 'spoof').
        scores:           Per-identity breakdown, best first.
        elapsed_ms:       Wall-clock time of the call.
    """

    identity:        Optional[str]
    confidence:      float
    quality:         float = 0.0
    threshold:       float = 0.0
    used_fallback:   bool = False
    spoof_suspected: bool = False
    rejected_reason: Optional[str] = None
    scores:          List[IdentityScore] = field(default_factory=list, repr=False)
    elapsed_ms:      float = 0.0

    @classmethod
    def unknown(cls, confidence: float = 0.0, **kwargs) -> "MatchResult":
        return cls(identity=None, confidence=confidence, **kwargs)

    @property
    def is_known(self) -> bool:
        return self.identity is not None

    @property
    def label(self) -> str:
        return self.identity if self.identity is not None else UNKNOWN_LABEL

    def as_tuple(self) -> Tuple[Optional[str], float]:
        return self.identity, self.confidence

    def __repr__(self) -> str:
        extra = ", fallback" if self.used_fallback else ""
        reason = f", reason={self.rejected_reason}" if self.rejected_reason else ""
        return (
            f"MatchResult("
            f"label={self.label!r}, "
            f"confidence={self.confidence:.4f}, "
            f"quality={self.quality:.3f}, "
            f"threshold={self.threshold:.3f}"
            f"{extra}{reason})"
        )


# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class RecognitionStats:
    """
    Adaptive statistics for one identity.

    Created on the identity's first successful recognition. Not persisted.

    Attributes:
        identity:        Person id.
        ema_confidence:  Exponential moving average of match confidence.
        count:           Number of successful recognitions.
        quality_history: Most recent input quality scores (bounded).
    """

    identity:        str
    ema_confidence:  float = 0.0
    count:           int = 0
    quality_history: Deque[float] = field(default_factory=lambda: deque(maxlen=10))

    @classmethod
    def create(cls, identity: str, history_size: int = 10) -> "RecognitionStats":
        return cls(identity=identity, quality_history=deque(maxlen=history_size))

    def update(self, confidence: float, quality: float, alpha: float = 0.2) -> None:
        """Fold one recognition into the statistics. The first one seeds the EMA."""
        if self.count == 0:
            self.ema_confidence = confidence
        else:
            self.ema_confidence = (1.0 - alpha) * self.ema_confidence + alpha * confidence
        self.count += 1
        self.quality_history.append(quality)

    @property
    def mean_quality(self) -> float:
        if not self.quality_history:
            return 0.0
        return sum(self.quality_history) / len(self.quality_history)

    def snapshot(self) -> "RecognitionStats":
        return RecognitionStats(
            identity=self.identity,
            ema_confidence=self.ema_confidence,
            count=self.count,
            quality_history=deque(self.quality_history, maxlen=self.quality_history.maxlen),
        )

    def __repr__(self) -> str:
        return (
            f"RecognitionStats({self.identity!r}, count={self.count}, "
            f"ema={self.ema_confidence:.3f}, mean_quality={self.mean_quality:.3f})"
        )
