# ============================================================
# Biometric Matching Core
# core/quality/__init__.py
# ============================================================

from core.quality.quality_assessor import QualityAssessor, QualityReport
from core.quality.spoof_heuristic import SpoofHeuristic, SpoofReport

__all__ = [
    "QualityAssessor",
    "QualityReport",
    "SpoofHeuristic",
    "SpoofReport",
]
