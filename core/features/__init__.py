# ============================================================
# Biometric Matching Core
# core/features/__init__.py
# ============================================================

from core.features.base_extractor import (
    BaseExtractor,
    BiometricSignature,
    FaceEmbedding,
    RecognitionMode,
    l2_normalise,
)
from core.features.feature_extractor import FeatureExtractor
from core.features.signature_extractor import (
    SignatureExtractor,
    signature_from_embedding,
    signature_similarity,
)

__all__ = [
    "BaseExtractor",
    "BiometricSignature",
    "FaceEmbedding",
    "RecognitionMode",
    "l2_normalise",
    "FeatureExtractor",
    "SignatureExtractor",
    "signature_from_embedding",
    "signature_similarity",
]
