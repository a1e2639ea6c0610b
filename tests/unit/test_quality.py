# Unit tests for:
#   - QualityAssessor (components, weighting, cache, neutral score)
#   - QualityReport
#   - SpoofHeuristic / SpoofReport

from __future__ import annotations

from unittest.mock import patch

import numpy as np
import pytest

from config.settings import CacheSettings, QualitySettings, SpoofSettings
from core.quality.quality_assessor import QualityAssessor, QualityReport
from core.quality.spoof_heuristic import SpoofHeuristic, SpoofReport


@pytest.fixture
def assessor() -> QualityAssessor:
    return QualityAssessor(QualitySettings(), CacheSettings())


# ============================================================
# QualityAssessor
# ============================================================

class TestQualityAssessor:

    def test_score_in_unit_range(self, assessor, face_image, random_image, tiny_dark_image):
        for img in (face_image, random_image, tiny_dark_image):
            assert 0.0 <= assessor.assess(img) <= 1.0

    def test_mid_gray_beats_tiny_dark(self, assessor, mid_gray_image, tiny_dark_image):
        good = assessor.assess(mid_gray_image)
        bad = assessor.assess(tiny_dark_image)
        assert good > bad
        assert good - bad >= 0.2

    def test_mid_gray_breakdown(self, assessor, mid_gray_image):
        report = assessor.report(mid_gray_image)
        assert isinstance(report, QualityReport)
        assert report.size == pytest.approx(1.0)
        assert report.sharpness == pytest.approx(0.0)
        assert report.illumination == pytest.approx(1.0 - 0.5 / 127.5)
        assert report.score == pytest.approx(0.3 + 0.3 * report.illumination)

    def test_size_score_saturates(self, assessor):
        assert assessor.size_score(np.zeros((40, 200))) == pytest.approx(0.5)
        assert assessor.size_score(np.zeros((400, 400))) == pytest.approx(1.0)

    def test_sharp_image_scores_higher_than_flat(self, assessor, random_image, mid_gray_image):
        gray_sharp = random_image[:, :, 0]
        gray_flat = mid_gray_image[:, :, 0]
        assert assessor.sharpness_score(gray_sharp) > assessor.sharpness_score(gray_flat)

    def test_balanced_illumination_penalises_both_extremes(self, assessor):
        dark = np.zeros((10, 10), dtype=np.uint8)
        bright = np.full((10, 10), 255, dtype=np.uint8)
        mid = np.full((10, 10), 128, dtype=np.uint8)
        assert assessor.illumination_score(dark) == pytest.approx(0.0)
        assert assessor.illumination_score(bright) == pytest.approx(0.0)
        assert assessor.illumination_score(mid) > 0.99

    def test_inverse_mean_illumination(self):
        qa = QualityAssessor(QualitySettings(illumination_mode="inverse_mean"))
        dark = np.zeros((10, 10), dtype=np.uint8)
        bright = np.full((10, 10), 255, dtype=np.uint8)
        assert qa.illumination_score(dark) == pytest.approx(1.0)
        assert qa.illumination_score(bright) == pytest.approx(0.0)

    @pytest.mark.parametrize("bad", [None, np.zeros((0, 5), dtype=np.uint8), [1, 2, 3]])
    def test_unusable_input_scores_neutral(self, assessor, bad):
        assert assessor.assess(bad) == pytest.approx(0.5)

    def test_custom_neutral_score(self):
        qa = QualityAssessor(QualitySettings(neutral_score=0.3))
        assert qa.assess(None) == pytest.approx(0.3)

    def test_primitive_failure_scores_neutral(self, assessor, face_image):
        with patch.object(QualityAssessor, "_compute", side_effect=ValueError("bad pixels")):
            assert assessor.assess(face_image) == pytest.approx(0.5)

    def test_failure_is_not_cached(self, assessor, face_image):
        with patch.object(QualityAssessor, "_compute", side_effect=ValueError("bad pixels")):
            assessor.assess(face_image)
        assert assessor.cache_stats()["size"] == 0
        real = assessor.assess(face_image)
        assert real != pytest.approx(0.5)
        assert assessor.cache_stats()["size"] == 1

    def test_cached_by_content(self, assessor, face_image):
        first = assessor.assess(face_image)
        second = assessor.assess(face_image.copy())
        assert first == second
        stats = assessor.cache_stats()
        assert stats["hits"] == 1
        assert stats["size"] == 1

    def test_frame_key_overrides_content(self, assessor, face_image, tiny_dark_image):
        first = assessor.assess(face_image, frame_key=7)
        # Same key, different pixels: cached result for the key wins
        assert assessor.assess(tiny_dark_image, frame_key=7) == first

    def test_clear_cache(self, assessor, face_image):
        assessor.assess(face_image)
        assessor.clear_cache()
        assert assessor.cache_stats()["size"] == 0

    def test_cache_disabled(self, face_image):
        qa = QualityAssessor(cache_settings=CacheSettings(max_size=0))
        qa.assess(face_image)
        qa.assess(face_image)
        assert qa.cache_stats()["size"] == 0
        assert qa.cache_stats()["hits"] == 0

    def test_report_as_dict(self, assessor, mid_gray_image):
        d = assessor.report(mid_gray_image).as_dict()
        assert set(d) == {"score", "size", "sharpness", "illumination"}


# ============================================================
# SpoofHeuristic
# ============================================================

class TestSpoofHeuristic:

    def test_uniform_image_looks_like_flat_print(self, mid_gray_image):
        report = SpoofHeuristic().analyze(mid_gray_image)
        assert isinstance(report, SpoofReport)
        assert report.is_spoof
        assert "flat_print" in report.reasons
        assert report.variance == pytest.approx(0.0)

    def test_edge_ratio_above_limit_flags_screen(self, face_image):
        report = SpoofHeuristic(SpoofSettings(max_edge_ratio=0.0)).analyze(face_image)
        assert report.edge_ratio > 0.0
        assert "screen_pattern" in report.reasons

    def test_face_image_passes(self, face_image):
        heuristic = SpoofHeuristic()
        assert heuristic.looks_spoofed(face_image) is False
        report = heuristic.analyze(face_image)
        assert report.evaluated
        assert report.reasons == []

    def test_unusable_input_not_evaluated(self):
        report = SpoofHeuristic().analyze(None)
        assert not report.evaluated
        assert not report.is_spoof

    def test_thresholds_are_configurable(self, mid_gray_image):
        heuristic = SpoofHeuristic(SpoofSettings(min_variance=0.0))
        assert heuristic.looks_spoofed(mid_gray_image) is False
