# ============================================================
# Biometric Matching Core
# core/detector/__init__.py
# ============================================================

from core.detector.base_detector import (
    BaseDetector,
    DetectionResult,
    FaceBox,
    face_box_from_xywh,
)
from core.detector.haar_detector import HaarFaceDetector

__all__ = [
    "BaseDetector",
    "DetectionResult",
    "FaceBox",
    "face_box_from_xywh",
    "HaarFaceDetector",
]
