# ============================================================
# Biometric Matching Core
# core/pipeline/recognition_pipeline.py
# ============================================================
# Per-frame orchestration for the capture loop:
#
#   Frame
#       │
#       ▼
#   [1] Face detector   → DetectionResult
#       │                 (largest face only, or every face)
#       ▼
#   [2] Crop            → face crop per box
#       │
#       ▼
#   [3] FaceMatcher     → MatchResult per face
#       │
#       ▼
#   FrameResult
#
# process_frame() always runs. try_process() returns None
# immediately when a previous frame is still in flight, so a
# capture loop running faster than recognition drops frames
# instead of queueing them.
# ============================================================

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

import numpy as np

from core.detector.base_detector import BaseDetector, DetectionResult, FaceBox
from core.matcher.face_matcher import FaceMatcher
from core.matcher.match_types import MatchResult
from utils.logger import get_logger

logger = get_logger(__name__)


def _timer() -> float:
    return time.perf_counter() * 1000.0


# ============================================================
# Enumerations
# ============================================================

class FrameStatus(Enum):
    """
    Overall status of one processed frame.

    SUCCESS         : At least one face was detected and matched.
    NO_FACE         : The detector found nothing.
    INVALID_FRAME   : Null, empty or malformed frame.
    DETECTION_ERROR : The detector raised; no faces were matched.
    """
    SUCCESS         = "success"
    NO_FACE         = "no_face"
    INVALID_FRAME   = "invalid_frame"
    DETECTION_ERROR = "detection_error"


# ============================================================
# Configuration
# ============================================================

@dataclass
class PipelineConfig:
    """
    Per-pipeline behaviour switches.

    Attributes:
        largest_face_only: Recognise only the biggest detected face.
        max_faces:         Cap on faces recognised per frame.
        crop_padding:      Fractional padding added around each box
                           before cropping (0.1 = 10 % per side).
        min_face_px:       Skip boxes narrower or shorter than this.
    """

    largest_face_only: bool  = True
    max_faces:         int   = 5
    crop_padding:      float = 0.0
    min_face_px:       int   = 0


# ============================================================
# Timing / results
# ============================================================

@dataclass
class FrameTiming:
    """Wall-clock time (ms) spent per stage of one frame."""

    detect_ms:    float = 0.0
    recognize_ms: float = 0.0
    total_ms:     float = 0.0

    def __repr__(self) -> str:
        return (
            f"FrameTiming("
            f"detect={self.detect_ms:.1f}ms, "
            f"recognize={self.recognize_ms:.1f}ms, "
            f"total={self.total_ms:.1f}ms)"
        )


@dataclass
class FaceRecognition:
    """One detected face and what the matcher made of it."""

    box:   FaceBox
    match: MatchResult

    @property
    def label(self) -> str:
        return self.match.label


@dataclass
class FrameResult:
    """
    The complete output of ``RecognitionPipeline.process_frame``.

    Attributes:
        status:       ``FrameStatus``.
        frame_index:  Caller frame number, or the pipeline's own counter.
        detection:    Raw detector output (None when detection did not run).
        faces:        One ``FaceRecognition`` per recognised face.
        timing:       Per-stage timing.
        error:        Detector error message for DETECTION_ERROR.
    """

    status:      FrameStatus
    frame_index: int
    detection:   Optional[DetectionResult]  = None
    faces:       List[FaceRecognition]      = field(default_factory=list)
    timing:      FrameTiming                = field(default_factory=FrameTiming)
    error:       Optional[str]              = None

    @property
    def identities(self) -> List[str]:
        """Known identities in this frame, in face order."""
        return [f.match.identity for f in self.faces if f.match.is_known]

    @property
    def best(self) -> Optional[FaceRecognition]:
        """The face with the highest match confidence, or None."""
        if not self.faces:
            return None
        return max(self.faces, key=lambda f: f.match.confidence)

    def __repr__(self) -> str:
        labels = [f.label for f in self.faces]
        return (
            f"FrameResult("
            f"frame={self.frame_index}, "
            f"status={self.status.value}, "
            f"faces={labels}, "
            f"total={self.timing.total_ms:.1f}ms)"
        )


# ============================================================
# RecognitionPipeline
# ============================================================

class RecognitionPipeline:
    """
    Detect → crop → recognise, one frame at a time.

    Example usage::

        with HaarFaceDetector(cfg.detector) as detector, FaceMatcher(cfg) as matcher:
            pipeline = RecognitionPipeline(detector, matcher, gallery)
            while True:
                ok, frame = capture.read()
                result = pipeline.try_process(frame)
                if result is not None and result.best:
                    print(result.best.label)

    Args:
        detector: Loaded face detector.
        matcher:  Face matcher.
        gallery:  Anything ``FaceMatcher.recognize`` accepts as a gallery.
        config:   ``PipelineConfig`` (defaults if omitted).
    """

    def __init__(
        self,
        detector: BaseDetector,
        matcher:  FaceMatcher,
        gallery:  Any,
        config:   Optional[PipelineConfig] = None,
    ) -> None:
        self.detector = detector
        self.matcher  = matcher
        self.gallery  = gallery
        self.config   = config or PipelineConfig()

        self._busy = threading.Lock()
        self._counter_lock = threading.Lock()
        self._frames_processed = 0
        self._frames_dropped = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def process_frame(
        self,
        frame: np.ndarray,
        frame_index: Optional[int] = None,
    ) -> FrameResult:
        """
        Run the full pipeline on one frame. Never raises.

        Args:
            frame:       BGR or grayscale frame.
            frame_index: Optional caller frame number.
        """
        with self._busy:
            return self._process(frame, frame_index)

    def try_process(
        self,
        frame: np.ndarray,
        frame_index: Optional[int] = None,
    ) -> Optional[FrameResult]:
        """
        Like ``process_frame`` but returns None without waiting when a
        previous frame is still being processed.
        """
        if not self._busy.acquire(blocking=False):
            with self._counter_lock:
                self._frames_dropped += 1
            logger.debug("Frame dropped: pipeline busy")
            return None
        try:
            return self._process(frame, frame_index)
        finally:
            self._busy.release()

    @property
    def frames_processed(self) -> int:
        with self._counter_lock:
            return self._frames_processed

    @property
    def frames_dropped(self) -> int:
        with self._counter_lock:
            return self._frames_dropped

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _process(self, frame: np.ndarray, frame_index: Optional[int]) -> FrameResult:
        cfg = self.config
        t_total = _timer()
        timing = FrameTiming()

        with self._counter_lock:
            index = self._frames_processed if frame_index is None else frame_index
            self._frames_processed += 1

        if not isinstance(frame, np.ndarray) or frame.size == 0 or frame.ndim not in (2, 3):
            logger.debug(f"Frame {index} skipped: invalid frame")
            timing.total_ms = _timer() - t_total
            return FrameResult(status=FrameStatus.INVALID_FRAME, frame_index=index, timing=timing)

        # ── Stage 1: detection ──────────────────────────────────────
        t0 = _timer()
        try:
            detection = self.detector.detect(frame, frame_index=index)
        except (RuntimeError, ValueError) as exc:
            logger.warning(f"Frame {index} detection failed: {exc}")
            timing.detect_ms = _timer() - t0
            timing.total_ms = _timer() - t_total
            return FrameResult(
                status=FrameStatus.DETECTION_ERROR,
                frame_index=index,
                timing=timing,
                error=str(exc),
            )
        timing.detect_ms = _timer() - t0

        if cfg.min_face_px > 0:
            detection = detection.filter_by_min_size(cfg.min_face_px)

        boxes = self._select_faces(detection)
        if not boxes:
            timing.total_ms = _timer() - t_total
            return FrameResult(
                status=FrameStatus.NO_FACE,
                frame_index=index,
                detection=detection,
                timing=timing,
            )

        # ── Stage 2+3: crop and recognise ───────────────────────────
        t0 = _timer()
        h, w = frame.shape[:2]
        faces: List[FaceRecognition] = []
        for box in boxes:
            crop = box.pad(cfg.crop_padding, img_w=w, img_h=h).crop(frame)
            match = self.matcher.recognize(crop, self.gallery)
            faces.append(FaceRecognition(box=box, match=match))
        timing.recognize_ms = _timer() - t0
        timing.total_ms = _timer() - t_total

        result = FrameResult(
            status=FrameStatus.SUCCESS,
            frame_index=index,
            detection=detection,
            faces=faces,
            timing=timing,
        )
        logger.debug(f"{result!r} | {timing!r}")
        return result

    def _select_faces(self, detection: DetectionResult) -> List[FaceBox]:
        if detection.is_empty:
            return []
        if self.config.largest_face_only:
            return [detection.largest_face]
        return list(detection.faces[: self.config.max_faces])

    def __repr__(self) -> str:
        return (
            f"RecognitionPipeline("
            f"detector={self.detector.__class__.__name__}, "
            f"largest_only={self.config.largest_face_only}, "
            f"processed={self.frames_processed}, "
            f"dropped={self.frames_dropped})"
        )
