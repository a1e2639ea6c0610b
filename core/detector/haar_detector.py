# ============================================================
# Biometric Matching Core
# core/detector/haar_detector.py
# ============================================================
# OpenCV Haar-cascade face detector.
#
# Each frame is enhanced before detectMultiScale:
#   grayscale → 3×3 Gaussian blur → CLAHE → Laplacian sharpen
# When the primary pass finds nothing, a relaxed pass with a
# finer scale step, fewer neighbours and a smaller minimum size
# is tried on the same enhanced frame.
# ============================================================

from __future__ import annotations

import os
import threading
from typing import List, Optional

import cv2
import numpy as np
from loguru import logger

from config.settings import DetectorSettings
from core.detector.base_detector import BaseDetector, DetectionResult, FaceBox, face_box_from_xywh
from core.preprocessor.face_preprocessor import FacePreprocessor
from utils.image_utils import as_uint8, to_gray


class HaarFaceDetector(BaseDetector):
    """
    Face detector built on ``cv2.CascadeClassifier``.

    Usage::

        detector = HaarFaceDetector(DetectorSettings())
        detector.load_model()

        rects = detector.detect_faces(frame)          # [(x, y, w, h), ...]
        face  = detector.detect_largest_face(frame)   # (x, y, w, h) | None

    Args:
        settings: Cascade file, detectMultiScale parameters for both
                  passes, and enhancement switches.
    """

    def __init__(self, settings: Optional[DetectorSettings] = None) -> None:
        self.settings = settings or DetectorSettings()
        super().__init__(max_faces=self.settings.max_faces)
        self._load_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Model loading
    # ------------------------------------------------------------------

    @property
    def cascade_path(self) -> str:
        name = self.settings.cascade_name
        if os.path.isabs(name):
            return name
        return os.path.join(cv2.data.haarcascades, name)

    def load_model(self) -> None:
        """
        Load the cascade XML.

        Raises:
            RuntimeError: If OpenCV cannot parse the cascade file.
        """
        with self._load_lock:
            if self._is_loaded:
                logger.debug(f"{self.__class__.__name__} already loaded, skipping.")
                return

            path = self.cascade_path
            t0 = self._timer()
            cascade = cv2.CascadeClassifier(path)
            if cascade.empty():
                raise RuntimeError(f"Failed to load Haar cascade from {path}")

            self._model = cascade
            self._is_loaded = True
            logger.info(
                f"Haar face detector ready in {self._timer() - t0:.0f} ms | "
                f"cascade={os.path.basename(path)}"
            )

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def detect(
        self,
        image: np.ndarray,
        *,
        frame_index: Optional[int] = None,
    ) -> DetectionResult:
        """
        Detect faces in a BGR or grayscale frame.

        Returns:
            DetectionResult with faces sorted by area, largest first,
            capped at ``max_faces``.

        Raises:
            RuntimeError: If the cascade has not been loaded.
            ValueError:   If the image is invalid or empty.
        """
        self._require_loaded()
        self._validate_image(image)

        s = self.settings
        t0 = self._timer()
        gray = self.enhance(image)

        raw = self._model.detectMultiScale(
            gray,
            scaleFactor=s.scale_factor,
            minNeighbors=s.min_neighbors,
            minSize=(s.min_size, s.min_size),
            maxSize=(s.max_size, s.max_size),
        )
        used_pass = "primary"

        if len(raw) == 0 and s.relaxed_pass:
            raw = self._model.detectMultiScale(
                gray,
                scaleFactor=s.relaxed_scale_factor,
                minNeighbors=s.relaxed_min_neighbors,
                minSize=(s.relaxed_min_size, s.relaxed_min_size),
            )
            used_pass = "relaxed"

        faces = self._to_boxes(raw)
        elapsed = self._timer() - t0
        h, w = image.shape[:2]

        logger.debug(
            f"Detected {len(faces)} face(s) | pass={used_pass} | "
            f"{elapsed:.1f}ms | frame={frame_index}"
        )

        return DetectionResult(
            faces=faces,
            image_width=w,
            image_height=h,
            inference_time_ms=elapsed,
            frame_index=frame_index,
            metadata={"pass": used_pass, "cascade": s.cascade_name},
        )

    def enhance(self, image: np.ndarray) -> np.ndarray:
        """
        Grayscale frame prepared for the cascade.

        With ``enhance`` off only the grayscale conversion runs. Failing
        primitives fall back the same way the face preprocessor's do.
        """
        degraded: List[str] = []
        gray = to_gray(as_uint8(image))
        if not self.settings.enhance:
            return gray

        gray = FacePreprocessor.run_stage("blur", gray, [
            ("GaussianBlur", lambda x: cv2.GaussianBlur(x, (3, 3), 0)),
        ], degraded)
        gray = FacePreprocessor.run_stage("clahe", gray, [
            ("CLAHE", lambda x: cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8)).apply(x)),
            ("equalizeHist", cv2.equalizeHist),
        ], degraded)
        gray = FacePreprocessor.run_stage("sharpen", gray, [
            ("laplacian", self._sharpen),
        ], degraded)

        if degraded:
            logger.warning(f"Detector enhancement degraded: {degraded}")
        return gray

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _sharpen(self, gray: np.ndarray) -> np.ndarray:
        lap = cv2.Laplacian(gray, cv2.CV_8U)
        return cv2.addWeighted(gray, 1.0, lap, self.settings.sharpen_weight, 0.0)

    def _to_boxes(self, raw) -> List[FaceBox]:
        """detectMultiScale output → FaceBox list, largest first."""
        if len(raw) == 0:
            return []
        rects = sorted(
            (tuple(int(v) for v in r) for r in np.asarray(raw).reshape(-1, 4)),
            key=lambda r: r[2] * r[3],
            reverse=True,
        )
        return [
            face_box_from_xywh(x, y, w, h, face_index=i)
            for i, (x, y, w, h) in enumerate(rects[: self.max_faces])
        ]

    def __repr__(self) -> str:
        status = "loaded" if self._is_loaded else "not loaded"
        return (
            f"HaarFaceDetector("
            f"cascade={self.settings.cascade_name!r}, "
            f"scale={self.settings.scale_factor}, "
            f"neighbors={self.settings.min_neighbors}, "
            f"status={status})"
        )
