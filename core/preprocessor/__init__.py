# ============================================================
# Biometric Matching Core
# core/preprocessor/__init__.py
# ============================================================

from core.preprocessor.face_preprocessor import (
    FacePreprocessor,
    PreprocessResult,
    PreprocessStatus,
    gamma_table,
)

__all__ = [
    "FacePreprocessor",
    "PreprocessResult",
    "PreprocessStatus",
    "gamma_table",
]
