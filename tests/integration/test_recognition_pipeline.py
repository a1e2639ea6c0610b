# Integration tests for RecognitionPipeline:
#   frame → detector → crop → FaceMatcher → FrameResult
#
# A scripted detector stands in for the Haar cascade so the boxes are
# known; every other component is real.

from __future__ import annotations

import threading
from typing import List, Optional

import numpy as np
import pytest

from core.detector.base_detector import BaseDetector, DetectionResult, FaceBox
from core.pipeline.recognition_pipeline import (
    FrameResult,
    FrameStatus,
    PipelineConfig,
    RecognitionPipeline,
)

FACE_ORIGIN = (100, 50)


class ScriptedDetector(BaseDetector):
    """Returns the same boxes for every frame."""

    def __init__(self, boxes: List[FaceBox]) -> None:
        super().__init__()
        self.boxes = boxes
        self.calls = 0

    def load_model(self) -> None:
        self._model = object()
        self._is_loaded = True

    def detect(self, image: np.ndarray, *, frame_index: Optional[int] = None) -> DetectionResult:
        self._require_loaded()
        self._validate_image(image)
        self.calls += 1
        h, w = image.shape[:2]
        return DetectionResult(
            faces=list(self.boxes),
            image_width=w,
            image_height=h,
            frame_index=frame_index,
        )


class FailingDetector(ScriptedDetector):

    def detect(self, image, *, frame_index=None):
        raise RuntimeError("cascade crashed")


class BlockingDetector(ScriptedDetector):
    """Parks inside detect() until released."""

    def __init__(self, boxes: List[FaceBox]) -> None:
        super().__init__(boxes)
        self.entered = threading.Event()
        self.release_event = threading.Event()

    def detect(self, image, *, frame_index=None):
        self.entered.set()
        self.release_event.wait(timeout=10)
        return super().detect(image, frame_index=frame_index)


def _frame_with_face(face: np.ndarray, origin=FACE_ORIGIN) -> np.ndarray:
    frame = np.full((360, 480, 3), 40, dtype=np.uint8)
    x, y = origin
    h, w = face.shape[:2]
    frame[y:y + h, x:x + w] = face
    return frame


def _box_for(face: np.ndarray, origin=FACE_ORIGIN) -> FaceBox:
    x, y = origin
    h, w = face.shape[:2]
    return FaceBox(x, y, x + w, y + h)


def _pipeline(detector, matcher, gallery, **config) -> RecognitionPipeline:
    detector.load_model()
    return RecognitionPipeline(detector, matcher, gallery, PipelineConfig(**config))


@pytest.fixture
def enrolled(matcher, gallery, face_image):
    matcher.enroll(face_image, person_id="alice", gallery=gallery)
    return gallery


class TestProcessFrame:

    def test_enrolled_face_recognised(self, matcher, enrolled, face_image):
        pipeline = _pipeline(ScriptedDetector([_box_for(face_image)]), matcher, enrolled)
        result = pipeline.process_frame(_frame_with_face(face_image), frame_index=12)

        assert isinstance(result, FrameResult)
        assert result.status == FrameStatus.SUCCESS
        assert result.frame_index == 12
        assert result.identities == ["alice"]
        assert result.best.label == "alice"
        assert result.detection.num_faces == 1
        assert result.timing.total_ms >= result.timing.detect_ms

    def test_no_face(self, matcher, enrolled, face_image):
        pipeline = _pipeline(ScriptedDetector([]), matcher, enrolled)
        result = pipeline.process_frame(_frame_with_face(face_image))
        assert result.status == FrameStatus.NO_FACE
        assert result.faces == []
        assert result.best is None

    @pytest.mark.parametrize("bad", [None, np.zeros((0, 0, 3), dtype=np.uint8), "frame"])
    def test_invalid_frame(self, matcher, enrolled, bad):
        detector = ScriptedDetector([FaceBox(0, 0, 10, 10)])
        pipeline = _pipeline(detector, matcher, enrolled)
        result = pipeline.process_frame(bad)
        assert result.status == FrameStatus.INVALID_FRAME
        assert detector.calls == 0

    def test_detector_error_is_reported(self, matcher, enrolled, face_image):
        pipeline = _pipeline(FailingDetector([]), matcher, enrolled)
        result = pipeline.process_frame(_frame_with_face(face_image))
        assert result.status == FrameStatus.DETECTION_ERROR
        assert "cascade crashed" in result.error
        assert result.detection is None

    def test_unknown_face(self, matcher, gallery, face_image, random_image):
        matcher.enroll(random_image, person_id="noise", gallery=gallery)
        pipeline = _pipeline(ScriptedDetector([_box_for(face_image)]), matcher, gallery)
        result = pipeline.process_frame(_frame_with_face(face_image))
        assert result.status == FrameStatus.SUCCESS
        assert len(result.faces) == 1
        assert result.faces[0].box.as_tuple == _box_for(face_image).as_tuple

    def test_frame_counter(self, matcher, enrolled, face_image):
        pipeline = _pipeline(ScriptedDetector([]), matcher, enrolled)
        first = pipeline.process_frame(_frame_with_face(face_image))
        second = pipeline.process_frame(_frame_with_face(face_image))
        assert (first.frame_index, second.frame_index) == (0, 1)
        assert pipeline.frames_processed == 2


class TestFaceSelection:

    def _two_face_frame(self, face_image):
        frame = np.full((400, 600, 3), 40, dtype=np.uint8)
        small = face_image[::2, ::2]
        frame[20:180, 20:180] = face_image
        frame[250:330, 400:480] = small
        boxes = [FaceBox(400, 250, 480, 330), FaceBox(20, 20, 180, 180)]
        return frame, boxes

    def test_largest_face_only(self, matcher, enrolled, face_image):
        frame, boxes = self._two_face_frame(face_image)
        pipeline = _pipeline(ScriptedDetector(boxes), matcher, enrolled)
        result = pipeline.process_frame(frame)
        assert len(result.faces) == 1
        assert result.faces[0].box.as_tuple == (20, 20, 180, 180)
        assert result.identities == ["alice"]

    def test_every_face(self, matcher, enrolled, face_image):
        frame, boxes = self._two_face_frame(face_image)
        pipeline = _pipeline(ScriptedDetector(boxes), matcher, enrolled, largest_face_only=False)
        result = pipeline.process_frame(frame)
        assert len(result.faces) == 2

    def test_max_faces(self, matcher, enrolled, face_image):
        frame, boxes = self._two_face_frame(face_image)
        pipeline = _pipeline(
            ScriptedDetector(boxes), matcher, enrolled, largest_face_only=False, max_faces=1,
        )
        assert len(pipeline.process_frame(frame).faces) == 1

    def test_min_face_px_filters_small_boxes(self, matcher, enrolled, face_image):
        frame, boxes = self._two_face_frame(face_image)
        pipeline = _pipeline(
            ScriptedDetector(boxes), matcher, enrolled, largest_face_only=False, min_face_px=100,
        )
        result = pipeline.process_frame(frame)
        assert [f.box.width for f in result.faces] == [160]

    def test_min_face_px_can_empty_the_frame(self, matcher, enrolled, face_image):
        frame, boxes = self._two_face_frame(face_image)
        pipeline = _pipeline(ScriptedDetector(boxes), matcher, enrolled, min_face_px=500)
        assert pipeline.process_frame(frame).status == FrameStatus.NO_FACE


class TestBackpressure:

    def test_try_process_drops_while_busy(self, matcher, enrolled, face_image):
        detector = BlockingDetector([_box_for(face_image)])
        pipeline = _pipeline(detector, matcher, enrolled)
        frame = _frame_with_face(face_image)
        results = []

        worker = threading.Thread(target=lambda: results.append(pipeline.process_frame(frame)))
        worker.start()
        assert detector.entered.wait(timeout=10)

        assert pipeline.try_process(frame) is None
        assert pipeline.frames_dropped == 1

        detector.release_event.set()
        worker.join(timeout=30)
        assert results[0].status == FrameStatus.SUCCESS

        # Idle again: the next frame is processed
        assert pipeline.try_process(frame) is not None
        assert pipeline.frames_dropped == 1
