# ============================================================
# Biometric Matching Core
# core/detector/base_detector.py
# ============================================================
# Abstract contract for face detectors plus the box / result
# types the frame pipeline consumes.
#
# Hierarchy:
#   BaseDetector  (abstract)
#       └── HaarFaceDetector
# ============================================================

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from utils.image_utils import Rect


@dataclass
class FaceBox:
    """
    A single detected face bounding box.

    All coordinates are in absolute pixel space of the source frame.

    Attributes:
        x1:          Left edge (pixels).
        y1:          Top edge (pixels).
        x2:          Right edge (pixels, exclusive).
        y2:          Bottom edge (pixels, exclusive).
        confidence:  Detection confidence in [0.0, 1.0]. Cascade
                     detectors report 1.0.
        face_index:  Zero-based position in the result (largest first).
    """

    x1: int
    y1: int
    x2: int
    y2: int
    confidence: float = 1.0
    face_index: int = 0

    # ------------------------------------------------------------------
    # Derived geometry
    # ------------------------------------------------------------------

    @property
    def width(self) -> int:
        return max(0, self.x2 - self.x1)

    @property
    def height(self) -> int:
        return max(0, self.y2 - self.y1)

    @property
    def area(self) -> int:
        """Bounding box area in pixels²."""
        return self.width * self.height

    @property
    def center(self) -> Tuple[int, int]:
        return (self.x1 + self.x2) // 2, (self.y1 + self.y2) // 2

    @property
    def as_tuple(self) -> Tuple[int, int, int, int]:
        """(x1, y1, x2, y2)."""
        return self.x1, self.y1, self.x2, self.y2

    @property
    def as_xywh(self) -> Rect:
        """(x, y, width, height), the shape ``detect_faces`` returns."""
        return self.x1, self.y1, self.width, self.height

    # ------------------------------------------------------------------
    # Geometry helpers
    # ------------------------------------------------------------------

    def pad(
        self,
        frac: float = 0.0,
        img_w: Optional[int] = None,
        img_h: Optional[int] = None,
    ) -> "FaceBox":
        """
        Expand the box by *frac* × its own size on each side, optionally
        clamped to the frame.
        """
        px = int(self.width * frac)
        py = int(self.height * frac)
        x1 = max(0, self.x1 - px)
        y1 = max(0, self.y1 - py)
        x2 = self.x2 + px if img_w is None else min(img_w, self.x2 + px)
        y2 = self.y2 + py if img_h is None else min(img_h, self.y2 + py)
        return FaceBox(x1, y1, x2, y2, self.confidence, self.face_index)

    def iou(self, other: "FaceBox") -> float:
        """Intersection-over-Union with *other*, in [0.0, 1.0]."""
        inter_w = max(0, min(self.x2, other.x2) - max(self.x1, other.x1))
        inter_h = max(0, min(self.y2, other.y2) - max(self.y1, other.y1))
        inter_area = inter_w * inter_h
        union_area = self.area + other.area - inter_area
        if union_area <= 0:
            return 0.0
        return inter_area / union_area

    def crop(self, image: np.ndarray) -> np.ndarray:
        """
        Cut this face out of *image*.

        Returns an empty array when the box lies outside the frame.
        """
        h, w = image.shape[:2]
        x1 = max(0, self.x1)
        y1 = max(0, self.y1)
        x2 = min(w, self.x2)
        y2 = min(h, self.y2)
        if x2 <= x1 or y2 <= y1:
            return np.empty((0, 0) + image.shape[2:], dtype=image.dtype)
        return image[y1:y2, x1:x2].copy()

    def __repr__(self) -> str:
        return (
            f"FaceBox(idx={self.face_index}, "
            f"bbox=[{self.x1},{self.y1},{self.x2},{self.y2}], "
            f"size={self.width}×{self.height})"
        )


def face_box_from_xywh(
    x: float,
    y: float,
    w: float,
    h: float,
    confidence: float = 1.0,
    face_index: int = 0,
) -> FaceBox:
    """Build a FaceBox from an (x, y, w, h) rectangle, rounding to int."""
    x1 = int(round(x))
    y1 = int(round(y))
    return FaceBox(
        x1=x1,
        y1=y1,
        x2=x1 + int(round(w)),
        y2=y1 + int(round(h)),
        confidence=float(confidence),
        face_index=face_index,
    )


@dataclass
class DetectionResult:
    """
    The complete output of one detection call on one frame.

    Attributes:
        faces:             Detected FaceBox objects, largest first.
        image_width:       Source frame width in pixels.
        image_height:      Source frame height in pixels.
        inference_time_ms: Wall-clock time of the call, enhancement included.
        frame_index:       Optional frame number from the capture loop.
        metadata:          Free-form info (pass used, cascade name).
    """

    faces: List[FaceBox]
    image_width: int
    image_height: int
    inference_time_ms: float = 0.0
    frame_index: Optional[int] = None
    metadata: dict = field(default_factory=dict)

    @property
    def num_faces(self) -> int:
        return len(self.faces)

    @property
    def is_empty(self) -> bool:
        return len(self.faces) == 0

    @property
    def largest_face(self) -> Optional[FaceBox]:
        """The face with the biggest area, or None."""
        if not self.faces:
            return None
        return max(self.faces, key=lambda f: f.area)

    @property
    def rects(self) -> List[Rect]:
        """All boxes as (x, y, w, h) tuples."""
        return [f.as_xywh for f in self.faces]

    def filter_by_min_size(self, min_px: int) -> "DetectionResult":
        """Keep only faces whose width and height are both ≥ *min_px*."""
        kept = [f for f in self.faces if f.width >= min_px and f.height >= min_px]
        faces = [
            FaceBox(f.x1, f.y1, f.x2, f.y2, f.confidence, face_index=i)
            for i, f in enumerate(kept)
        ]
        return DetectionResult(
            faces=faces,
            image_width=self.image_width,
            image_height=self.image_height,
            inference_time_ms=self.inference_time_ms,
            frame_index=self.frame_index,
            metadata=dict(self.metadata),
        )

    def __repr__(self) -> str:
        return (
            f"DetectionResult("
            f"num_faces={self.num_faces}, "
            f"image={self.image_width}×{self.image_height}, "
            f"time={self.inference_time_ms:.1f}ms"
            f")"
        )


class BaseDetector(ABC):
    """
    Abstract base class for face detectors.

    Subclasses must implement:
        - ``load_model()``  — load the classifier into memory
        - ``detect(image)`` — return a DetectionResult

    ``detect_faces`` and ``detect_largest_face`` are built on ``detect``
    and never raise on an unusable frame; they return ``[]`` / ``None``.

    Usage::

        with HaarFaceDetector(DetectorSettings()) as detector:
            for x, y, w, h in detector.detect_faces(frame):
                ...
    """

    def __init__(self, max_faces: int = 20) -> None:
        self.max_faces = int(max_faces)
        self._model = None
        self._is_loaded: bool = False

    # ------------------------------------------------------------------
    # Abstract interface
    # ------------------------------------------------------------------

    @abstractmethod
    def load_model(self) -> None:
        """
        Load the detector into memory.

        Must populate ``self._model``, set ``self._is_loaded = True`` and
        raise ``RuntimeError`` if loading fails. Safe to call twice.
        """

    @abstractmethod
    def detect(
        self,
        image: np.ndarray,
        *,
        frame_index: Optional[int] = None,
    ) -> DetectionResult:
        """
        Run face detection on a single frame.

        Raises:
            RuntimeError:  If the model has not been loaded yet.
            ValueError:    If the image is invalid or empty.
        """

    # ------------------------------------------------------------------
    # Convenience API
    # ------------------------------------------------------------------

    def detect_faces(self, image: np.ndarray) -> List[Rect]:
        """All faces in *image* as (x, y, w, h), largest first."""
        try:
            self._validate_image(image)
        except ValueError:
            return []
        return self.detect(image).rects

    def detect_largest_face(self, image: np.ndarray) -> Optional[Rect]:
        """The largest face in *image* as (x, y, w, h), or None."""
        try:
            self._validate_image(image)
        except ValueError:
            return None
        face = self.detect(image).largest_face
        return face.as_xywh if face is not None else None

    def release(self) -> None:
        self._model = None
        self._is_loaded = False

    @property
    def is_loaded(self) -> bool:
        return self._is_loaded

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    def __enter__(self) -> "BaseDetector":
        if not self._is_loaded:
            self.load_model()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_loaded(self) -> None:
        if not self._is_loaded:
            raise RuntimeError(
                f"{self.__class__.__name__} is not loaded. "
                "Call load_model() or use the detector as a context manager."
            )

    @staticmethod
    def _validate_image(image: np.ndarray) -> None:
        """
        Raise ValueError for obviously invalid images.

        Raises:
            ValueError: If the image is None, empty, or wrong shape.
        """
        if image is None:
            raise ValueError("Image is None.")
        if not isinstance(image, np.ndarray):
            raise ValueError(f"Expected numpy ndarray, got {type(image).__name__}.")
        if image.ndim not in (2, 3):
            raise ValueError(f"Expected 2-D or 3-D array, got shape {image.shape}.")
        if image.ndim == 3 and image.shape[2] not in (1, 3, 4):
            raise ValueError(f"Expected 1, 3 or 4 channels, got shape {image.shape}.")
        if image.size == 0:
            raise ValueError("Image array is empty (zero size).")

    @staticmethod
    def _timer() -> float:
        """Current time in milliseconds (monotonic clock)."""
        return time.perf_counter() * 1000.0

    def __repr__(self) -> str:
        status = "loaded" if self._is_loaded else "not loaded"
        return f"{self.__class__.__name__}(max_faces={self.max_faces}, status={status})"
