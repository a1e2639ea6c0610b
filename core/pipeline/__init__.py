# ============================================================
# Biometric Matching Core
# core/pipeline/__init__.py
# ============================================================

from core.pipeline.recognition_pipeline import (
    FaceRecognition,
    FrameResult,
    FrameStatus,
    FrameTiming,
    PipelineConfig,
    RecognitionPipeline,
)

__all__ = [
    "FaceRecognition",
    "FrameResult",
    "FrameStatus",
    "FrameTiming",
    "PipelineConfig",
    "RecognitionPipeline",
]
