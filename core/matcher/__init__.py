# ============================================================
# Biometric Matching Core
# core/matcher/__init__.py
# ============================================================

from core.matcher.face_matcher import FaceMatcher, group_gallery
from core.matcher.match_types import IdentityScore, MatchResult, RecognitionStats
from core.matcher.similarity import SimilarityEngine

__all__ = [
    "FaceMatcher",
    "group_gallery",
    "IdentityScore",
    "MatchResult",
    "RecognitionStats",
    "SimilarityEngine",
]
